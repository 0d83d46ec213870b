"""Publishes optimization targets as Prometheus gauges for external autoscalers."""

from __future__ import annotations

import logging
from typing import Callable

from prometheus_client import CollectorRegistry, Gauge

from variant_autoscaling.contracts import VariantAutoscaling

logger = logging.getLogger(__name__)

LABELS = ("variant_name", "namespace", "variant_id", "accelerator_type")

# Returns the live replica count of a variant's deployment.
ReplicaLookup = Callable[[VariantAutoscaling], int]


class ReplicaMetricsEmitter:
    """Container for the replica gauges."""

    def __init__(self, registry: CollectorRegistry | None = None, prefix: str = "wva") -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.current_replicas = Gauge(
            f"{prefix}_current_replicas",
            "Current number of replicas per variant",
            LABELS,
            registry=self.registry,
        )
        self.desired_replicas = Gauge(
            f"{prefix}_desired_replicas",
            "Desired number of replicas per variant",
            LABELS,
            registry=self.registry,
        )
        self.desired_ratio = Gauge(
            f"{prefix}_desired_ratio",
            "Ratio of desired to current replicas per variant",
            LABELS,
            registry=self.registry,
        )

    def emit_replica_metrics(
        self,
        variant: VariantAutoscaling,
        current: int,
        desired: int,
        accelerator: str,
        variant_id: str,
    ) -> None:
        labels = {
            "variant_name": variant.name,
            "namespace": variant.namespace,
            "variant_id": variant_id,
            "accelerator_type": accelerator,
        }
        self.current_replicas.labels(**labels).set(current)
        self.desired_replicas.labels(**labels).set(desired)
        # scale-from-zero reports the desired count itself
        ratio = desired / current if current > 0 else float(desired)
        self.desired_ratio.labels(**labels).set(ratio)


class Actuator:
    def __init__(
        self,
        emitter: ReplicaMetricsEmitter | None = None,
        replica_lookup: ReplicaLookup | None = None,
    ) -> None:
        self.emitter = emitter or ReplicaMetricsEmitter()
        self.replica_lookup = replica_lookup

    def _current_replicas(self, variant: VariantAutoscaling, variant_id: str) -> int:
        if self.replica_lookup is not None:
            try:
                return int(self.replica_lookup(variant))
            except Exception as exc:  # noqa: BLE001 - fall back to status
                logger.warning(
                    "could not read deployment replicas for %s/%s, using status: %s",
                    variant.namespace,
                    variant.name,
                    exc,
                )
        for alloc in variant.status.current_allocs:
            if alloc.variant_id == variant_id:
                return alloc.num_replicas
        return 0

    def emit_metrics(self, variant: VariantAutoscaling) -> int:
        """Emit gauges for each desired allocation; returns how many were emitted."""
        desired_allocs = variant.status.desired_optimized_allocs
        if not desired_allocs:
            logger.info("skipping replica metrics for %s: no desired allocations", variant.name)
            return 0

        emitted = 0
        for desired in desired_allocs:
            if desired.num_replicas < 0:
                logger.info("skipping replica metrics for %s/%s: negative replicas", variant.name, desired.variant_id)
                continue
            current = self._current_replicas(variant, desired.variant_id)
            self.emitter.emit_replica_metrics(
                variant,
                current=current,
                desired=desired.num_replicas,
                accelerator=desired.accelerator,
                variant_id=desired.variant_id,
            )
            emitted += 1
            logger.debug(
                "replica metrics for %s/%s: current=%d desired=%d accelerator=%s",
                variant.name,
                desired.variant_id,
                current,
                desired.num_replicas,
                desired.accelerator,
            )
        return emitted
