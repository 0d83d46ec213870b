"""Pydantic API contracts for backend endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from variant_autoscaling.contracts import Condition, OptimizedAlloc, VariantAutoscaling


class OptimizeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    accelerators: dict[str, dict[str, Any]] = Field(
        description="Accelerator config map: name -> {device, cost[, multiplicity]}",
    )
    service_classes: dict[str, str] = Field(
        description="Service class config map: key -> YAML document",
    )
    variants: list[VariantAutoscaling] = Field(default_factory=list)
    scale_to_zero: Optional[bool] = None
    max_num_replicas: Optional[int] = Field(default=None, ge=1)


class VariantResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    namespace: str
    variant_id: str
    desired_alloc: Optional[OptimizedAlloc] = None
    cost: Optional[float] = None
    predicted_itl_ms: Optional[float] = None
    predicted_ttft_ms: Optional[float] = None
    conditions: list[Condition] = Field(default_factory=list)


class OptimizeResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    results: list[VariantResult]
    solved_count: int
    failed_count: int
    warnings: list[str] = Field(default_factory=list)


class PredictRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    decode_parms: dict[str, str] = Field(min_length=1)
    prefill_parms: dict[str, str] = Field(min_length=1)
    max_batch_size: int = Field(ge=1, default=256)
    batch_size: Optional[float] = Field(default=None, ge=0)
    arrival_rate: float = Field(ge=0, default=0.0)
    avg_input_tokens: float = Field(ge=0, default=0.0)
    avg_output_tokens: float = Field(ge=0, default=0.0)
    num_replicas: int = Field(ge=1, default=1)


class PredictResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    batch_size: Optional[float]
    itl_ms: Optional[float]
    ttft_ms: Optional[float]
    saturated: bool
    within_max_batch: bool


class CachedMetricsUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    arrival_rate: float = Field(ge=0, description="Requests per minute")
    avg_input_tokens: float = Field(ge=0, default=0.0)
    avg_output_tokens: float = Field(ge=0, default=0.0)
    total_requests: float = Field(ge=0, default=0.0)
    retention_seconds: Optional[float] = Field(default=None, gt=0)


class CachedMetricsResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    model_id: str
    arrival_rate: float
    avg_input_tokens: float
    avg_output_tokens: float
    retention_seconds: float
    total_requests: float
    last_updated: datetime
    stale: bool
    reason: str
