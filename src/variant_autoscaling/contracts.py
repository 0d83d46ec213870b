"""Data contracts for the VariantAutoscaling resource.

Pydantic models mirroring the externally-owned declarative resource and its
status. Field names are snake_case in Python and camelCase on the wire
(`model_dump(by_alias=True)`), so manifests can be validated as-is.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from variant_autoscaling.numeric import parse_duration

VARIANT_ID_PATTERN = r"^.+-[A-Za-z0-9]+-[1-9][0-9]*$"


def _resource_config() -> ConfigDict:
    return ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )


# =============================================================================
# Condition vocabulary
# =============================================================================


class ConditionType(str, Enum):
    """Condition types written back on the variant status.

    - METRICS_AVAILABLE: whether vLLM metrics could be read for the model
    - OPTIMIZATION_READY: whether the optimizer produced an allocation
    """

    METRICS_AVAILABLE = "MetricsAvailable"
    OPTIMIZATION_READY = "OptimizationReady"


class MetricsReason(str, Enum):
    METRICS_FOUND = "MetricsFound"
    METRICS_MISSING = "MetricsMissing"
    METRICS_STALE = "MetricsStale"
    PROMETHEUS_ERROR = "PrometheusError"


class OptimizationReason(str, Enum):
    OPTIMIZATION_SUCCEEDED = "OptimizationSucceeded"
    OPTIMIZATION_FAILED = "OptimizationFailed"
    METRICS_UNAVAILABLE = "MetricsUnavailable"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(BaseModel):
    model_config = _resource_config()

    type: ConditionType
    status: ConditionStatus
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    observed_generation: int = 0


# =============================================================================
# Spec
# =============================================================================


class ConfigMapKeyRef(BaseModel):
    model_config = _resource_config()

    name: str = Field(min_length=1)
    key: str = Field(min_length=1)


class PerfParms(BaseModel):
    """Raw coefficient maps as written in the manifest.

    Expected keys: alpha/beta (decode, ITL) and gamma/delta (prefill, TTFT).
    Typed validation happens when the profile enters the system model.
    """

    model_config = _resource_config()

    decode_parms: dict[str, str] = Field(min_length=1)
    prefill_parms: dict[str, str] = Field(min_length=1)


class VariantProfile(BaseModel):
    model_config = _resource_config()

    perf_parms: PerfParms
    max_batch_size: int = Field(ge=1)


class ScaleToZeroConfig(BaseModel):
    model_config = _resource_config()

    enabled: bool = False
    retention_period: Optional[str] = Field(
        default=None,
        description="How long an idle variant keeps its pods, e.g. '10m'",
    )

    @field_validator("retention_period")
    @classmethod
    def _valid_duration(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_duration(value)
        return value


class VariantAutoscalingSpec(BaseModel):
    model_config = _resource_config()

    model_id: str = Field(min_length=1, alias="modelID")
    variant_id: str = Field(min_length=1, pattern=VARIANT_ID_PATTERN, alias="variantID")
    accelerator: str = Field(min_length=1)
    accelerator_count: int = Field(ge=1)
    slo_class_ref: ConfigMapKeyRef
    variant_profile: VariantProfile
    scale_to_zero: Optional[ScaleToZeroConfig] = None


# =============================================================================
# Status
# =============================================================================


class LoadProfile(BaseModel):
    """Aggregate load as decimal strings. Parsed defensively downstream."""

    model_config = _resource_config()

    arrival_rate: str = ""
    avg_input_tokens: str = ""
    avg_output_tokens: str = ""


class Allocation(BaseModel):
    model_config = _resource_config()

    variant_id: str = Field(default="", alias="variantID")
    accelerator: str = ""
    num_replicas: int = Field(ge=0, default=0)
    max_batch: int = Field(ge=0, default=0)
    variant_cost: str = ""


class OptimizedAlloc(BaseModel):
    model_config = _resource_config()

    last_run_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    variant_id: str = Field(default="", alias="variantID")
    accelerator: str = Field(min_length=1)
    num_replicas: int = Field(ge=0)


class ActuationStatus(BaseModel):
    model_config = _resource_config()

    applied: bool = False


class VariantAutoscalingStatus(BaseModel):
    model_config = _resource_config()

    load: LoadProfile = Field(default_factory=LoadProfile)
    itl_average: str = Field(default="", validation_alias=AliasChoices("itlAverage", "itl_average", "ITLAverage"))
    ttft_average: str = Field(default="", validation_alias=AliasChoices("ttftAverage", "ttft_average", "TTFTAverage"))
    primary_replicas: int = 0
    current_allocs: list[Allocation] = Field(default_factory=list)
    desired_optimized_allocs: list[OptimizedAlloc] = Field(default_factory=list)
    actuation: ActuationStatus = Field(default_factory=ActuationStatus)
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: ConditionType) -> Condition | None:
        return next((c for c in self.conditions if c.type == condition_type), None)


class VariantAutoscaling(BaseModel):
    """One variant of a model pinned to an accelerator type and count."""

    model_config = _resource_config()

    name: str = Field(min_length=1)
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    spec: VariantAutoscalingSpec
    status: VariantAutoscalingStatus = Field(default_factory=VariantAutoscalingStatus)


# =============================================================================
# Service class configuration (one YAML document per config map key)
# =============================================================================


class ServiceClassEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, protected_namespaces=())

    model: str = Field(min_length=1)
    slo_itl: float = Field(
        ge=0,
        default=0.0,
        validation_alias=AliasChoices("slo-tpot", "slo-itl", "slo_itl"),
    )
    slo_ttft: float = Field(
        ge=0,
        default=0.0,
        validation_alias=AliasChoices("slo-ttft", "slo_ttft"),
    )


class ServiceClassConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    priority: int = 0
    data: list[ServiceClassEntry] = Field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================


def set_condition(
    status: VariantAutoscalingStatus,
    condition_type: ConditionType,
    status_value: ConditionStatus,
    reason: str,
    message: str = "",
    now: datetime | None = None,
) -> Condition:
    """Insert or update a condition, keyed by type.

    The transition time only moves when the condition's status flips.
    """
    now = now or datetime.now(timezone.utc)
    existing = status.get_condition(condition_type)
    if existing is None:
        condition = Condition(
            type=condition_type,
            status=status_value,
            reason=reason,
            message=message,
            last_transition_time=now,
        )
        status.conditions.append(condition)
        return condition

    if existing.status != status_value:
        existing.last_transition_time = now
    existing.status = status_value
    existing.reason = reason
    existing.message = message
    return existing
