"""Metrics ingestion from Prometheus and GPU inventory discovery.

Turns vLLM metrics for a model into the variant's current allocation, its
aggregate load and latency averages, and records the load in the metrics
cache so later cycles can tell "went idle" apart from "no data yet".
"""

from __future__ import annotations

import http.client
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Protocol
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from variant_autoscaling.config import (
    ACCELERATOR_NAME_LABEL,
    DEFAULT_MAX_BATCH_SIZE,
    DEFAULT_METRICS_RETENTION,
    GPU_VENDORS,
    LABEL_MODEL_NAME,
    LABEL_NAMESPACE,
    VLLM_REQUEST_GENERATION_TOKENS_COUNT,
    VLLM_REQUEST_GENERATION_TOKENS_SUM,
    VLLM_REQUEST_PROMPT_TOKENS_COUNT,
    VLLM_REQUEST_PROMPT_TOKENS_SUM,
    VLLM_REQUEST_SUCCESS_TOTAL,
    VLLM_TIME_PER_OUTPUT_TOKEN_SECONDS_COUNT,
    VLLM_TIME_PER_OUTPUT_TOKEN_SECONDS_SUM,
    VLLM_TIME_TO_FIRST_TOKEN_SECONDS_COUNT,
    VLLM_TIME_TO_FIRST_TOKEN_SECONDS_SUM,
)
from variant_autoscaling.contracts import (
    Allocation,
    ConditionStatus,
    ConditionType,
    LoadProfile,
    MetricsReason,
    VariantAutoscaling,
    set_condition,
)
from variant_autoscaling.errors import PrometheusError
from variant_autoscaling.metrics_cache import LoadObservation, ModelMetricsCache
from variant_autoscaling.numeric import fix_value, format_decimal, format_duration, parse_duration
from variant_autoscaling.retry import PROMETHEUS_BACKOFF, RetryPolicy, retry_call

logger = logging.getLogger(__name__)


class PrometheusAPI(Protocol):
    def query(self, promql: str) -> list[float]:
        """Run an instant query and return the sample values of the vector."""


class PrometheusClient:
    """Minimal Prometheus HTTP API client for instant vector queries."""

    def __init__(self, base_url: str, token: str | None = None, timeout_seconds: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds

    def query(self, promql: str) -> list[float]:
        url = f"{self.base_url}/api/v1/query?{urlencode({'query': promql})}"
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        request = Request(url, headers=headers, method="GET")
        try:
            with urlopen(request, timeout=self.timeout_seconds) as resp:  # noqa: S310
                payload = json.loads(resp.read().decode("utf-8"))
        # OSError covers URLError, HTTPError, timeouts and connection resets
        except (OSError, http.client.HTTPException, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PrometheusError(f"query {promql!r} failed: {exc}") from exc
        return parse_vector_response(payload)


def parse_vector_response(payload: Any) -> list[float]:
    """Extract sample values from a /api/v1/query response body."""
    if not isinstance(payload, dict) or payload.get("status") != "success":
        error = payload.get("error") if isinstance(payload, dict) else None
        raise PrometheusError(f"query failed: {error or 'unexpected response'}")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise PrometheusError(f"malformed data section: {type(data).__name__}")
    if data.get("resultType") != "vector":
        raise PrometheusError(f"expected a vector result, got {data.get('resultType')!r}")

    values: list[float] = []
    for sample in data.get("result") or []:
        try:
            values.append(float(sample["value"][1]))
        except (KeyError, IndexError, TypeError, ValueError):
            continue
    for warning in payload.get("warnings") or []:
        logger.warning("prometheus warning: %s", warning)
    return values


def validate_prometheus_api(prom: PrometheusAPI, policy: RetryPolicy = PROMETHEUS_BACKOFF, **kwargs: Any) -> None:
    """Check connectivity with a trivial query, retrying with backoff."""
    retry_call(
        lambda: prom.query("up"),
        policy=policy,
        resource_kind="Prometheus API",
        is_transient=lambda exc: isinstance(exc, PrometheusError),
        **kwargs,
    )
    logger.info("prometheus API validation succeeded")


# =============================================================================
# Queries
# =============================================================================


def _selector(metric: str, model_id: str, namespace: str) -> str:
    return f'{metric}{{{LABEL_MODEL_NAME}="{model_id}",{LABEL_NAMESPACE}="{namespace}"}}'


def _ratio_query(sum_metric: str, count_metric: str, model_id: str, namespace: str) -> str:
    return (
        f"sum(rate({_selector(sum_metric, model_id, namespace)}[1m]))"
        f"/sum(rate({_selector(count_metric, model_id, namespace)}[1m]))"
    )


def arrival_query(model_id: str, namespace: str) -> str:
    """Requests per minute."""
    return f"sum(rate({_selector(VLLM_REQUEST_SUCCESS_TOTAL, model_id, namespace)}[1m])) * 60"


def input_tokens_query(model_id: str, namespace: str) -> str:
    return _ratio_query(VLLM_REQUEST_PROMPT_TOKENS_SUM, VLLM_REQUEST_PROMPT_TOKENS_COUNT, model_id, namespace)


def output_tokens_query(model_id: str, namespace: str) -> str:
    return _ratio_query(
        VLLM_REQUEST_GENERATION_TOKENS_SUM, VLLM_REQUEST_GENERATION_TOKENS_COUNT, model_id, namespace
    )


def ttft_query(model_id: str, namespace: str) -> str:
    return _ratio_query(
        VLLM_TIME_TO_FIRST_TOKEN_SECONDS_SUM, VLLM_TIME_TO_FIRST_TOKEN_SECONDS_COUNT, model_id, namespace
    )


def itl_query(model_id: str, namespace: str) -> str:
    return _ratio_query(
        VLLM_TIME_PER_OUTPUT_TOKEN_SECONDS_SUM, VLLM_TIME_PER_OUTPUT_TOKEN_SECONDS_COUNT, model_id, namespace
    )


def total_requests_query(model_id: str, namespace: str, retention_period: timedelta) -> str:
    selector = _selector(VLLM_REQUEST_SUCCESS_TOTAL, model_id, namespace)
    return f"sum(increase({selector}[{format_duration(retention_period)}]))"


def _first_value(prom: PrometheusAPI, promql: str) -> float:
    values = prom.query(promql)
    return fix_value(values[0]) if values else 0.0


def _optional_value(prom: PrometheusAPI, promql: str, what: str, model_id: str) -> float:
    try:
        return _first_value(prom, promql)
    except PrometheusError as exc:
        logger.warning("failed to get %s for model %s, using 0: %s", what, model_id, exc)
        return 0.0


# =============================================================================
# Collection
# =============================================================================


@dataclass(frozen=True)
class DeploymentInfo:
    name: str
    namespace: str
    replicas: int


@dataclass(frozen=True)
class CollectedMetrics:
    allocation: Allocation
    load: LoadProfile
    itl_average: str
    ttft_average: str
    total_requests: float


def variant_retention_period(variant: VariantAutoscaling, default: timedelta | None = None) -> timedelta:
    """Retention window for a variant: its scale-to-zero setting, else the default."""
    scale_to_zero = variant.spec.scale_to_zero
    if scale_to_zero is not None and scale_to_zero.retention_period:
        period = parse_duration(scale_to_zero.retention_period)
        if period > timedelta(0):
            return period
    return default or DEFAULT_METRICS_RETENTION


def collect_variant_metrics(
    variant: VariantAutoscaling,
    deployment: DeploymentInfo,
    accelerator_cost: float,
    prom: PrometheusAPI,
    cache: ModelMetricsCache,
    retention_period: timedelta | None = None,
    now: datetime | None = None,
) -> CollectedMetrics:
    """Query load and latency metrics for a variant and cache the load.

    Arrival rate, token and request-count query failures propagate (nothing is
    cached); TTFT and ITL failures degrade to 0. Empty results read as 0.
    """
    model_id = variant.spec.model_id
    namespace = deployment.namespace
    retention = variant_retention_period(variant, retention_period)

    arrival_rate = _first_value(prom, arrival_query(model_id, namespace))
    avg_input_tokens = _first_value(prom, input_tokens_query(model_id, namespace))
    avg_output_tokens = _first_value(prom, output_tokens_query(model_id, namespace))
    total_requests = _first_value(prom, total_requests_query(model_id, namespace, retention))

    ttft_ms = fix_value(_optional_value(prom, ttft_query(model_id, namespace), "average TTFT", model_id) * 1000)
    itl_ms = fix_value(_optional_value(prom, itl_query(model_id, namespace), "average ITL", model_id) * 1000)

    accelerator = variant.labels.get(ACCELERATOR_NAME_LABEL, "")
    if not accelerator:
        logger.warning("label %s not found on variant %s", ACCELERATOR_NAME_LABEL, variant.name)

    observation = LoadObservation(
        arrival_rate=arrival_rate,
        avg_input_tokens=avg_input_tokens,
        avg_output_tokens=avg_output_tokens,
    )
    cache.put(model_id, observation, retention, total_requests, now=now or datetime.now(timezone.utc))

    allocation = Allocation(
        variant_id=variant.spec.variant_id,
        accelerator=accelerator,
        num_replicas=deployment.replicas,
        max_batch=DEFAULT_MAX_BATCH_SIZE,
        variant_cost=format_decimal(deployment.replicas * accelerator_cost),
    )
    load = LoadProfile(
        arrival_rate=format_decimal(arrival_rate),
        avg_input_tokens=format_decimal(avg_input_tokens),
        avg_output_tokens=format_decimal(avg_output_tokens),
    )
    return CollectedMetrics(
        allocation=allocation,
        load=load,
        itl_average=format_decimal(itl_ms),
        ttft_average=format_decimal(ttft_ms),
        total_requests=fix_value(total_requests),
    )


def update_variant_metrics(
    variant: VariantAutoscaling,
    deployment: DeploymentInfo,
    accelerator_cost: float,
    prom: PrometheusAPI,
    cache: ModelMetricsCache,
    retention_period: timedelta | None = None,
    now: datetime | None = None,
) -> bool:
    """Collect metrics into the variant's status and set MetricsAvailable.

    A backend failure leaves the previous load in place and marks the
    condition PrometheusError; returns whether fresh metrics were recorded.
    """
    now = now or datetime.now(timezone.utc)
    status = variant.status
    try:
        collected = collect_variant_metrics(
            variant, deployment, accelerator_cost, prom, cache, retention_period, now=now
        )
    except PrometheusError as exc:
        logger.error("metrics collection failed for %s/%s: %s", variant.namespace, variant.name, exc)
        set_condition(
            status,
            ConditionType.METRICS_AVAILABLE,
            ConditionStatus.FALSE,
            MetricsReason.PROMETHEUS_ERROR.value,
            str(exc),
            now,
        )
        return False

    status.load = collected.load
    status.itl_average = collected.itl_average
    status.ttft_average = collected.ttft_average
    status.current_allocs = [collected.allocation]
    status.primary_replicas = collected.allocation.num_replicas
    condition_status, reason, message = metrics_condition(cache, variant.spec.model_id, now)
    set_condition(status, ConditionType.METRICS_AVAILABLE, condition_status, reason.value, message, now)
    return True


def metrics_condition(
    cache: ModelMetricsCache,
    model_id: str,
    now: datetime | None = None,
) -> tuple[ConditionStatus, MetricsReason, str]:
    """Map the cache state for a model to the MetricsAvailable condition."""
    entry = cache.get(model_id)
    if entry is None:
        return (
            ConditionStatus.FALSE,
            MetricsReason.METRICS_MISSING,
            f"no metrics have been collected for model {model_id}",
        )
    if entry.is_stale(now):
        return (
            ConditionStatus.FALSE,
            MetricsReason.METRICS_STALE,
            f"metrics for model {model_id} are older than {format_duration(entry.retention_period)}",
        )
    return ConditionStatus.TRUE, MetricsReason.METRICS_FOUND, f"metrics available for model {model_id}"


# =============================================================================
# Inventory (only needed by capacity-constrained mode)
# =============================================================================


@dataclass(frozen=True)
class AcceleratorModelInfo:
    count: int
    memory: str


@dataclass(frozen=True)
class NodeDescription:
    name: str
    labels: Mapping[str, str]
    allocatable: Mapping[str, str | int]


@dataclass(frozen=True)
class VendorLabels:
    product_key: str
    memory_key: str
    resource_name: str


def vendor_registry(vendors: Iterable[str] = GPU_VENDORS) -> dict[str, VendorLabels]:
    return {
        vendor: VendorLabels(
            product_key=f"{vendor}/gpu.product",
            memory_key=f"{vendor}/gpu.memory",
            resource_name=f"{vendor}/gpu",
        )
        for vendor in vendors
    }


def collect_inventory(
    nodes: Iterable[NodeDescription],
    registry: Mapping[str, VendorLabels] | None = None,
) -> dict[str, dict[str, AcceleratorModelInfo]]:
    """Build node name -> accelerator model -> (count, memory) from node labels."""
    registry = registry if registry is not None else vendor_registry()
    inventory: dict[str, dict[str, AcceleratorModelInfo]] = {}
    for node in nodes:
        for labels in registry.values():
            model = node.labels.get(labels.product_key)
            if model is None:
                continue
            raw_count = node.allocatable.get(labels.resource_name, 0)
            try:
                count = int(raw_count)
            except (TypeError, ValueError):
                count = 0
            inventory.setdefault(node.name, {})[model] = AcceleratorModelInfo(
                count=count,
                memory=node.labels.get(labels.memory_key, ""),
            )
            logger.debug("found inventory: node=%s model=%s count=%d", node.name, model, count)
    return inventory
