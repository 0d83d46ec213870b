"""Short-term per-model memory of load observations.

The cache is a passive store: callers supply the retention period an
observation was computed over and the number of requests seen in that window.
It is shared by concurrent reconciliation cycles; every operation is an O(1)
dictionary access under a short-held lock, last writer wins per model.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from variant_autoscaling.numeric import fix_value


@dataclass(frozen=True)
class LoadObservation:
    arrival_rate: float = 0.0  # requests/minute
    avg_input_tokens: float = 0.0
    avg_output_tokens: float = 0.0

    def sanitized(self) -> LoadObservation:
        """Copy with NaN/Inf/negative fields replaced by 0."""
        return LoadObservation(
            arrival_rate=max(0.0, fix_value(self.arrival_rate)),
            avg_input_tokens=max(0.0, fix_value(self.avg_input_tokens)),
            avg_output_tokens=max(0.0, fix_value(self.avg_output_tokens)),
        )


@dataclass(frozen=True)
class CachedMetrics:
    model_id: str
    load: LoadObservation
    retention_period: timedelta
    total_requests_over_retention_period: float
    last_updated: datetime

    def expires_at(self) -> datetime:
        return self.last_updated + self.retention_period

    def is_stale(self, now: datetime | None = None) -> bool:
        """True once `now` is past the stored timestamp plus the retention period."""
        now = now or datetime.now(timezone.utc)
        return now > self.expires_at()

    def is_idle(self) -> bool:
        """No requests over the whole retention window (a real idle signal)."""
        return self.total_requests_over_retention_period <= 0


class ModelMetricsCache:
    """Thread-safe map of model id -> latest CachedMetrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, CachedMetrics] = {}

    def put(
        self,
        model_id: str,
        observation: LoadObservation,
        retention_period: timedelta,
        total_requests: float,
        now: datetime | None = None,
    ) -> CachedMetrics:
        """Store (or overwrite) the observation for a model and return the entry."""
        if retention_period <= timedelta(0):
            raise ValueError("retention_period must be > 0")
        entry = CachedMetrics(
            model_id=model_id,
            load=observation.sanitized(),
            retention_period=retention_period,
            total_requests_over_retention_period=max(0.0, fix_value(float(total_requests))),
            last_updated=now or datetime.now(timezone.utc),
        )
        with self._lock:
            self._entries[model_id] = entry
        return entry

    def get(self, model_id: str) -> CachedMetrics | None:
        """Most recent entry for a model, stale or not; None if never observed."""
        with self._lock:
            return self._entries.get(model_id)

    def get_fresh(self, model_id: str, now: datetime | None = None) -> CachedMetrics | None:
        """Like get(), but hides stale entries."""
        entry = self.get(model_id)
        if entry is None or entry.is_stale(now):
            return None
        return entry

    def delete(self, model_id: str) -> None:
        with self._lock:
            self._entries.pop(model_id, None)

    def evict_stale(self, now: datetime | None = None) -> list[str]:
        """Drop every stale entry; returns the evicted model ids."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.is_stale(now)]
            for key in stale:
                del self._entries[key]
        return stale

    def model_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, model_id: object) -> bool:
        with self._lock:
            return model_id in self._entries
