"""Adapters between the VariantAutoscaling resources and the system model.

Builds a fresh SystemModel every cycle from the accelerator and service class
config maps, each variant's profile and each variant's current allocation and
load, and maps the optimizer's solution back to per-variant allocations.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

import yaml
from pydantic import ValidationError

from variant_autoscaling.config import Settings
from variant_autoscaling.contracts import (
    OptimizedAlloc,
    ServiceClassConfig,
    ServiceClassEntry,
    VariantAutoscaling,
    VariantProfile,
)
from variant_autoscaling.errors import ConfigurationError
from variant_autoscaling.metrics_cache import LoadObservation, ModelMetricsCache
from variant_autoscaling.numeric import check_value, parse_decimal
from variant_autoscaling.performance import DecodeParameters, PrefillParameters
from variant_autoscaling.system import (
    AcceleratorSpec,
    AllocationData,
    AllocationSolution,
    ModelTarget,
    OptimizerSpec,
    ServerEntry,
    ServiceClass,
    SystemModel,
    VariantPerformanceProfile,
)

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]")


def full_name(name: str, namespace: str) -> str:
    """Unique server identity for a variant."""
    return f"{name}:{namespace}"


def suggest_resource_name_from_variant_id(variant_id: str) -> str:
    """Turn a variant id into a DNS-1123 resource name.

    "meta/llama-3.1-8b-A100-1" -> "meta-llama-3-1-8b-a100-1"
    """
    name = variant_id.lower().replace("/", "-").replace(".", "-")
    name = _INVALID_NAME_CHARS.sub("", name)
    return name.strip("-")


def validate_variant_autoscaling_name(variant: VariantAutoscaling) -> bool:
    """Log when the resource name differs from the normalized variant id.

    A mismatch is normal (the resource name usually follows the Deployment);
    returns True when the names match.
    """
    suggested = suggest_resource_name_from_variant_id(variant.spec.variant_id)
    if variant.name != suggested:
        logger.info(
            "variant resource name %r differs from normalized variant id %r (variant id %r)",
            variant.name,
            suggested,
            variant.spec.variant_id,
        )
        return False
    return True


# =============================================================================
# Config maps
# =============================================================================


def parse_service_class(key: str, document: str) -> ServiceClassConfig:
    """Parse one service class YAML document from the config map."""
    try:
        raw = yaml.safe_load(document)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"service class {key!r} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"service class {key!r} must be a mapping")
    try:
        return ServiceClassConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"service class {key!r} is invalid: {exc}") from exc


def _parse_accelerator(name: str, values: Mapping[str, Any]) -> AcceleratorSpec:
    try:
        cost = float(values["cost"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"accelerator {name!r} has no usable cost") from exc
    if not check_value(cost) or cost < 0:
        raise ConfigurationError(f"accelerator {name!r} has an invalid cost {values['cost']!r}")

    multiplicity_raw = values.get("multiplicity", 1)
    try:
        multiplicity = int(multiplicity_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"accelerator {name!r} has an invalid multiplicity {multiplicity_raw!r}"
        ) from exc
    if multiplicity < 1:
        raise ConfigurationError(f"accelerator {name!r} multiplicity must be >= 1")

    return AcceleratorSpec(
        name=name,
        device=str(values.get("device", "")),
        cost=cost,
        multiplicity=multiplicity,
    )


def create_system_data(
    accelerator_config: Mapping[str, Mapping[str, Any]],
    service_class_config: Mapping[str, str],
) -> SystemModel:
    """Start a cycle's system model from the two config maps.

    Accelerators with an unparseable cost and service classes that fail to
    parse are skipped with a warning. Only unlimited mode is supported, so no
    capacity data is collected.
    """
    system = SystemModel(optimizer=OptimizerSpec(unlimited=True))

    for name in sorted(accelerator_config):
        try:
            system.add_accelerator(_parse_accelerator(name, accelerator_config[name]))
        except ConfigurationError as exc:
            logger.warning("skipping accelerator: %s", exc)

    for key in sorted(service_class_config):
        try:
            parsed = parse_service_class(key, service_class_config[key])
        except ConfigurationError as exc:
            logger.warning("skipping service class: %s", exc)
            continue
        system.add_service_class(
            ServiceClass(
                name=parsed.name,
                priority=parsed.priority,
                targets=tuple(
                    ModelTarget(model=entry.model, slo_itl=entry.slo_itl, slo_ttft=entry.slo_ttft)
                    for entry in parsed.data
                ),
            )
        )
    return system


def find_model_slo(
    service_class_config: Mapping[str, str],
    model: str,
    key: str | None = None,
) -> tuple[ServiceClassEntry, str]:
    """Find the SLO entry and service class name for a model.

    When `key` names a config map entry only that class is searched; otherwise
    every class is searched in key order and the first match wins.
    """
    if key is not None and key in service_class_config:
        keys = [key]
    else:
        if key is not None:
            logger.warning("service class key %r not found, searching all classes", key)
        keys = sorted(service_class_config)

    for candidate in keys:
        service_class = parse_service_class(candidate, service_class_config[candidate])
        for entry in service_class.data:
            if entry.model == model:
                return entry, service_class.name
    raise ConfigurationError(f"model {model!r} not found in any service class")


# =============================================================================
# Variants
# =============================================================================


def add_variant_profile(
    system: SystemModel,
    model: str,
    accelerator: str,
    accelerator_count: int,
    profile: VariantProfile,
) -> VariantPerformanceProfile:
    """Add a variant's performance profile; malformed coefficients fail fast."""
    perf = VariantPerformanceProfile(
        model=model,
        accelerator=accelerator,
        accelerator_count=accelerator_count,
        max_batch_size=profile.max_batch_size,
        decode=DecodeParameters.from_mapping(profile.perf_parms.decode_parms),
        prefill=PrefillParameters.from_mapping(profile.perf_parms.prefill_parms),
    )
    system.add_profile(perf)
    return perf


def scale_to_zero_enabled(variant: VariantAutoscaling, default: bool) -> bool:
    """Variant setting wins over the environment default."""
    if variant.spec.scale_to_zero is not None:
        return variant.spec.scale_to_zero.enabled
    return default


def resolve_min_replicas(
    variant: VariantAutoscaling,
    scale_to_zero_default: bool = False,
    cache: ModelMetricsCache | None = None,
    now: datetime | None = None,
) -> int:
    """Replica floor for a variant: 1, or 0 when it may scale to zero.

    With a cache, the floor only drops to 0 once a fresh entry shows no
    requests over its full retention window. A missing or stale entry is not
    evidence of idleness.
    """
    if not scale_to_zero_enabled(variant, scale_to_zero_default):
        return 1
    if cache is None:
        return 0
    entry = cache.get(variant.spec.model_id)
    if entry is None or entry.is_stale(now):
        return 1
    return 0 if entry.is_idle() else 1


def _observed_load(
    variant: VariantAutoscaling,
    cache: ModelMetricsCache | None,
    now: datetime | None,
) -> LoadObservation:
    if cache is not None:
        entry = cache.get_fresh(variant.spec.model_id, now)
        if entry is not None:
            return entry.load
    load = variant.status.load
    return LoadObservation(
        arrival_rate=parse_decimal(load.arrival_rate, "arrival rate"),
        avg_input_tokens=parse_decimal(load.avg_input_tokens, "average input tokens"),
        avg_output_tokens=parse_decimal(load.avg_output_tokens, "average output tokens"),
    )


def add_server_info(
    system: SystemModel,
    variant: VariantAutoscaling,
    class_name: str,
    scale_to_zero_default: bool = False,
    cache: ModelMetricsCache | None = None,
    now: datetime | None = None,
) -> ServerEntry:
    """Add the server entry for a live variant.

    Load comes from a fresh cache entry when there is one, otherwise from the
    status; numeric fields that do not parse are sanitised to 0.
    """
    status = variant.status
    if not status.current_allocs:
        raise ConfigurationError(f"no current allocations found for variant {variant.name}")
    current = status.current_allocs[0]

    allocation = AllocationData(
        accelerator=current.accelerator or variant.spec.accelerator,
        num_replicas=current.num_replicas,
        max_batch=current.max_batch,
        cost=parse_decimal(current.variant_cost, "variant cost"),
        itl_average=parse_decimal(status.itl_average, "ITL average"),
        ttft_average=parse_decimal(status.ttft_average, "TTFT average"),
        load=_observed_load(variant, cache, now),
    )

    server = ServerEntry(
        name=full_name(variant.name, variant.namespace),
        model=variant.spec.model_id,
        service_class=class_name,
        current_alloc=allocation,
        variant_id=variant.spec.variant_id,
        accelerator_count=variant.spec.accelerator_count,
        min_num_replicas=resolve_min_replicas(variant, scale_to_zero_default, cache, now),
        keep_accelerator=True,
    )
    system.add_server(server)
    return server


@dataclass
class SystemBuild:
    system: SystemModel
    errors: dict[str, str] = field(default_factory=dict)  # "name:namespace" -> reason
    class_names: dict[str, str] = field(default_factory=dict)  # "name:namespace" -> class


def build_system_model(
    variants: Iterable[VariantAutoscaling],
    accelerator_config: Mapping[str, Mapping[str, Any]],
    service_class_config: Mapping[str, str],
    settings: Settings | None = None,
    cache: ModelMetricsCache | None = None,
    now: datetime | None = None,
) -> SystemBuild:
    """Build the complete system model for one cycle.

    A configuration error on one variant is recorded in `errors` and the
    variant left out; the other variants are still built.
    """
    settings = settings or Settings()
    now = now or datetime.now(timezone.utc)
    build = SystemBuild(system=create_system_data(accelerator_config, service_class_config))

    for variant in sorted(variants, key=lambda va: (va.namespace, va.name)):
        validate_variant_autoscaling_name(variant)
        try:
            _, class_name = find_model_slo(
                service_class_config,
                variant.spec.model_id,
                key=variant.spec.slo_class_ref.key,
            )
            add_variant_profile(
                build.system,
                variant.spec.model_id,
                variant.spec.accelerator,
                variant.spec.accelerator_count,
                variant.spec.variant_profile,
            )
            add_server_info(
                build.system,
                variant,
                class_name,
                scale_to_zero_default=settings.scale_to_zero,
                cache=cache,
                now=now,
            )
        except ConfigurationError as exc:
            logger.warning("variant %s/%s excluded from optimization: %s", variant.namespace, variant.name, exc)
            build.errors[full_name(variant.name, variant.namespace)] = str(exc)
            continue
        build.class_names[full_name(variant.name, variant.namespace)] = class_name

    logger.debug(
        "system model built: %d accelerators, %d profiles, %d classes, %d servers",
        len(build.system.accelerators),
        len(build.system.profiles),
        len(build.system.service_classes),
        len(build.system.servers),
    )
    return build


def create_optimized_alloc(
    name: str,
    namespace: str,
    variant_id: str,
    solution: AllocationSolution,
    now: datetime | None = None,
) -> OptimizedAlloc:
    """Map one server's decision back to the variant's desired allocation."""
    server_name = full_name(name, namespace)
    decision = solution.get(server_name)
    if decision is None:
        raise KeyError(f"server {server_name} not found")
    logger.debug("optimized allocation for %s: %s x%d", server_name, decision.accelerator, decision.num_replicas)
    return OptimizedAlloc(
        last_run_time=now or datetime.now(timezone.utc),
        variant_id=variant_id,
        accelerator=decision.accelerator,
        num_replicas=decision.num_replicas,
    )
