"""Service-layer handlers for API endpoints."""

from __future__ import annotations

import dataclasses
import logging
import math
from datetime import datetime, timedelta, timezone

from variant_autoscaling.adapter import build_system_model, full_name
from variant_autoscaling.api_models import (
    CachedMetricsResponse,
    CachedMetricsUpdate,
    OptimizeRequest,
    OptimizeResponse,
    PredictRequest,
    PredictResponse,
    VariantResult,
)
from variant_autoscaling.collector import metrics_condition
from variant_autoscaling.config import Settings
from variant_autoscaling.contracts import (
    ConditionStatus,
    ConditionType,
    MetricsReason,
    OptimizationReason,
    VariantAutoscaling,
    VariantAutoscalingStatus,
    set_condition,
)
from variant_autoscaling.errors import NoFeasibleAllocationError
from variant_autoscaling.metrics_cache import LoadObservation, ModelMetricsCache
from variant_autoscaling.optimizer import VariantAutoscalingEngine
from variant_autoscaling.performance import DecodeParameters, PrefillParameters, itl, predict, ttft

logger = logging.getLogger(__name__)


def _metrics_state(
    variant: VariantAutoscaling,
    cache: ModelMetricsCache | None,
    now: datetime,
) -> tuple[ConditionStatus, MetricsReason, str]:
    # models the cache has never seen fall back to the load reported in status
    if cache is not None and variant.spec.model_id in cache:
        return metrics_condition(cache, variant.spec.model_id, now)
    if variant.status.load.arrival_rate:
        return ConditionStatus.TRUE, MetricsReason.METRICS_FOUND, "load reported in status"
    return (
        ConditionStatus.FALSE,
        MetricsReason.METRICS_MISSING,
        f"no load reported for model {variant.spec.model_id}",
    )


def _fail(status: VariantAutoscalingStatus, reason: OptimizationReason, message: str, now: datetime) -> None:
    set_condition(status, ConditionType.OPTIMIZATION_READY, ConditionStatus.FALSE, reason.value, message, now)


def run_optimize(
    payload: OptimizeRequest,
    cache: ModelMetricsCache | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> OptimizeResponse:
    """Run one optimization cycle over the request's variants.

    Variants with neither a cached observation nor a load in their status are
    not optimized (their zero load would read as idle). Per-variant errors only
    fail that variant; an empty global solution fails every variant and no
    allocation is returned.
    """
    settings = settings or Settings()
    overrides: dict[str, object] = {}
    if payload.scale_to_zero is not None:
        overrides["scale_to_zero"] = payload.scale_to_zero
    if payload.max_num_replicas is not None:
        overrides["max_num_replicas"] = payload.max_num_replicas
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    now = now or datetime.now(timezone.utc)

    statuses: dict[str, VariantAutoscalingStatus] = {}
    runnable: list[VariantAutoscaling] = []
    warnings: list[str] = []
    for variant in payload.variants:
        key = full_name(variant.name, variant.namespace)
        status = variant.status.model_copy(deep=True)
        statuses[key] = status
        metrics_status, metrics_reason, message = _metrics_state(variant, cache, now)
        set_condition(status, ConditionType.METRICS_AVAILABLE, metrics_status, metrics_reason.value, message, now)
        if metrics_reason == MetricsReason.METRICS_MISSING:
            _fail(status, OptimizationReason.METRICS_UNAVAILABLE, message, now)
            warnings.append(f"{key}: {message}")
            continue
        runnable.append(variant)

    build = build_system_model(
        runnable,
        payload.accelerators,
        payload.service_classes,
        settings=settings,
        cache=cache,
        now=now,
    )
    for key, error in build.errors.items():
        _fail(statuses[key], OptimizationReason.OPTIMIZATION_FAILED, error, now)
        warnings.append(f"{key}: {error}")

    engine = VariantAutoscalingEngine(settings)
    built = [v for v in runnable if full_name(v.name, v.namespace) not in build.errors]
    optimized = {}
    infeasible: dict[str, str] = {}
    if built:
        try:
            optimized = engine.optimize(built, build.system, now=now)
            infeasible = engine.last_result.infeasible if engine.last_result else {}
        except NoFeasibleAllocationError as exc:
            logger.error("optimization failed: %s", exc)
            warnings.append(str(exc))
            infeasible = exc.infeasible
            for variant in built:
                status = statuses[full_name(variant.name, variant.namespace)]
                _fail(status, OptimizationReason.OPTIMIZATION_FAILED, str(exc), now)

    solution = engine.last_result.solution if engine.last_result else {}
    results: list[VariantResult] = []
    for variant in payload.variants:
        server_name = full_name(variant.name, variant.namespace)
        status = statuses[server_name]
        desired = optimized.get(server_name)
        decision = solution.get(server_name)
        if desired is not None and decision is not None:
            set_condition(
                status,
                ConditionType.OPTIMIZATION_READY,
                ConditionStatus.TRUE,
                OptimizationReason.OPTIMIZATION_SUCCEEDED.value,
                f"{decision.accelerator} x{decision.num_replicas}",
                now,
            )
        elif server_name in infeasible and engine.last_result is not None:
            _fail(status, OptimizationReason.OPTIMIZATION_FAILED, infeasible[server_name], now)

        results.append(
            VariantResult(
                name=variant.name,
                namespace=variant.namespace,
                variant_id=variant.spec.variant_id,
                desired_alloc=desired,
                cost=decision.cost if decision is not None else None,
                predicted_itl_ms=decision.itl_ms if decision is not None else None,
                predicted_ttft_ms=decision.ttft_ms if decision is not None else None,
                conditions=status.conditions,
            )
        )

    solved = sum(1 for row in results if row.desired_alloc is not None)
    return OptimizeResponse(
        results=results,
        solved_count=solved,
        failed_count=len(results) - solved,
        warnings=warnings,
    )


def run_predict(payload: PredictRequest) -> PredictResponse:
    """Evaluate the latency model at a batch size, or at a load split over replicas."""
    decode = DecodeParameters.from_mapping(payload.decode_parms)
    prefill = PrefillParameters.from_mapping(payload.prefill_parms)

    if payload.batch_size is not None:
        batch = payload.batch_size
        return PredictResponse(
            batch_size=batch,
            itl_ms=itl(decode.alpha, decode.beta, batch),
            ttft_ms=ttft(prefill.gamma, prefill.delta, payload.avg_input_tokens, batch),
            saturated=False,
            within_max_batch=batch <= payload.max_batch_size,
        )

    prediction = predict(
        decode,
        prefill,
        arrival_rate=payload.arrival_rate,
        avg_input_tokens=payload.avg_input_tokens,
        avg_output_tokens=payload.avg_output_tokens,
        num_replicas=payload.num_replicas,
    )
    if prediction.saturated or math.isinf(prediction.batch_size):
        return PredictResponse(batch_size=None, itl_ms=None, ttft_ms=None, saturated=True, within_max_batch=False)
    return PredictResponse(
        batch_size=prediction.batch_size,
        itl_ms=prediction.itl_ms,
        ttft_ms=prediction.ttft_ms,
        saturated=False,
        within_max_batch=prediction.batch_size <= payload.max_batch_size,
    )


def run_get_cached_metrics(
    cache: ModelMetricsCache,
    model_id: str,
    now: datetime | None = None,
) -> CachedMetricsResponse:
    entry = cache.get(model_id)
    if entry is None:
        raise KeyError(model_id)
    _, reason, _ = metrics_condition(cache, model_id, now)
    return CachedMetricsResponse(
        model_id=entry.model_id,
        arrival_rate=entry.load.arrival_rate,
        avg_input_tokens=entry.load.avg_input_tokens,
        avg_output_tokens=entry.load.avg_output_tokens,
        retention_seconds=entry.retention_period.total_seconds(),
        total_requests=entry.total_requests_over_retention_period,
        last_updated=entry.last_updated,
        stale=entry.is_stale(now),
        reason=reason.value,
    )


def run_put_cached_metrics(
    cache: ModelMetricsCache,
    model_id: str,
    payload: CachedMetricsUpdate,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> CachedMetricsResponse:
    """Record an externally collected observation for a model."""
    settings = settings or Settings()
    now = now or datetime.now(timezone.utc)
    retention = (
        timedelta(seconds=payload.retention_seconds)
        if payload.retention_seconds is not None
        else settings.metrics_retention
    )
    cache.put(
        model_id,
        LoadObservation(
            arrival_rate=payload.arrival_rate,
            avg_input_tokens=payload.avg_input_tokens,
            avg_output_tokens=payload.avg_output_tokens,
        ),
        retention,
        payload.total_requests,
        now=now,
    )
    logger.info("cached metrics for %s: %.3f req/min", model_id, payload.arrival_rate)
    return run_get_cached_metrics(cache, model_id, now=now)
