"""Configuration constants and environment-level settings.

This module centralizes the defaults used by the optimizer, the metrics
ingestion path and the actuation metrics, plus the few process-wide switches
read from the environment. Settings are passed explicitly as arguments; nothing
here is consulted implicitly at optimization time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

from variant_autoscaling.numeric import parse_duration

# Environment variables
ENV_SCALE_TO_ZERO = "WVA_SCALE_TO_ZERO"
ENV_LOG_LEVEL = "LOG_LEVEL"
ENV_METRICS_RETENTION = "WVA_METRICS_RETENTION"
ENV_MAX_NUM_REPLICAS = "WVA_MAX_NUM_REPLICAS"

# Optimizer defaults
DEFAULT_MAX_NUM_REPLICAS = 1000  # Replica search ceiling per accelerator
DEFAULT_MIN_NUM_REPLICAS = 1
DEFAULT_MAX_BATCH_SIZE = 256  # Used when the server does not report one
MS_PER_MINUTE = 60_000.0  # Arrival rates are requests/minute, latencies are ms

# Metrics cache defaults
DEFAULT_METRICS_RETENTION = timedelta(minutes=10)

# Resource labels
ACCELERATOR_NAME_LABEL = "inference.optimization/acceleratorName"

# vLLM metric names and labels used by the ingestion queries
VLLM_REQUEST_SUCCESS_TOTAL = "vllm:request_success_total"
VLLM_REQUEST_PROMPT_TOKENS_SUM = "vllm:request_prompt_tokens_sum"
VLLM_REQUEST_PROMPT_TOKENS_COUNT = "vllm:request_prompt_tokens_count"
VLLM_REQUEST_GENERATION_TOKENS_SUM = "vllm:request_generation_tokens_sum"
VLLM_REQUEST_GENERATION_TOKENS_COUNT = "vllm:request_generation_tokens_count"
VLLM_TIME_TO_FIRST_TOKEN_SECONDS_SUM = "vllm:time_to_first_token_seconds_sum"
VLLM_TIME_TO_FIRST_TOKEN_SECONDS_COUNT = "vllm:time_to_first_token_seconds_count"
VLLM_TIME_PER_OUTPUT_TOKEN_SECONDS_SUM = "vllm:time_per_output_token_seconds_sum"
VLLM_TIME_PER_OUTPUT_TOKEN_SECONDS_COUNT = "vllm:time_per_output_token_seconds_count"
LABEL_MODEL_NAME = "model_name"
LABEL_NAMESPACE = "namespace"

# GPU vendors scanned during inventory collection.
# Each vendor exposes <vendor>/gpu.product, <vendor>/gpu.memory labels and a
# <vendor>/gpu allocatable resource.
GPU_VENDORS = (
    "nvidia.com",
    "amd.com",
    "intel.com",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Environment-level defaults, used only when a variant does not say otherwise."""

    scale_to_zero: bool = False
    log_level: str = "info"
    metrics_retention: timedelta = DEFAULT_METRICS_RETENTION
    max_num_replicas: int = DEFAULT_MAX_NUM_REPLICAS

    def __post_init__(self) -> None:
        if self.max_num_replicas < 1:
            raise ValueError("max_num_replicas must be >= 1")
        if self.metrics_retention <= timedelta(0):
            raise ValueError("metrics_retention must be > 0")


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from environment variables (or an explicit mapping)."""
    env = os.environ if environ is None else environ

    max_replicas_raw = env.get(ENV_MAX_NUM_REPLICAS, "").strip()
    try:
        max_replicas = int(max_replicas_raw) if max_replicas_raw else DEFAULT_MAX_NUM_REPLICAS
    except ValueError as exc:
        raise ValueError(
            f"{ENV_MAX_NUM_REPLICAS} must be an integer, got {max_replicas_raw!r}"
        ) from exc

    retention_raw = env.get(ENV_METRICS_RETENTION, "").strip()
    retention = parse_duration(retention_raw) if retention_raw else DEFAULT_METRICS_RETENTION

    return Settings(
        scale_to_zero=_env_bool(env.get(ENV_SCALE_TO_ZERO), False),
        log_level=(env.get(ENV_LOG_LEVEL) or "info").strip().lower(),
        metrics_retention=retention,
        max_num_replicas=max_replicas,
    )
