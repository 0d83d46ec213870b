"""Closed-form latency model for a variant on an accelerator.

Decode (inter-token latency) and prefill (time to first token) are linear in
the batch size:

    itl  = alpha + beta * batch_size
    ttft = gamma + delta * avg_input_tokens * batch_size

All latencies are in milliseconds and arrival rates in requests per minute.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping

from variant_autoscaling.config import MS_PER_MINUTE
from variant_autoscaling.errors import ConfigurationError
from variant_autoscaling.numeric import check_value


def _coefficient(parms: Mapping[str, str], key: str, phase: str) -> float:
    if key not in parms:
        raise ConfigurationError(f"{phase} parameters missing required coefficient '{key}'")
    try:
        value = float(parms[key])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{phase} coefficient '{key}' is not a number: {parms[key]!r}"
        ) from exc
    if not check_value(value) or value < 0:
        raise ConfigurationError(f"{phase} coefficient '{key}' must be finite and >= 0")
    return value


@dataclass(frozen=True)
class DecodeParameters:
    alpha: float
    beta: float

    @classmethod
    def from_mapping(cls, parms: Mapping[str, str]) -> DecodeParameters:
        """Build from the resource's string map; both alpha and beta are required."""
        if len(parms) < 2:
            raise ConfigurationError("decode parameters need both 'alpha' and 'beta'")
        return cls(
            alpha=_coefficient(parms, "alpha", "decode"),
            beta=_coefficient(parms, "beta", "decode"),
        )


@dataclass(frozen=True)
class PrefillParameters:
    gamma: float
    delta: float

    @classmethod
    def from_mapping(cls, parms: Mapping[str, str]) -> PrefillParameters:
        """Build from the resource's string map; both gamma and delta are required."""
        if len(parms) < 2:
            raise ConfigurationError("prefill parameters need both 'gamma' and 'delta'")
        return cls(
            gamma=_coefficient(parms, "gamma", "prefill"),
            delta=_coefficient(parms, "delta", "prefill"),
        )


@dataclass(frozen=True)
class LatencyPrediction:
    batch_size: float
    itl_ms: float
    ttft_ms: float
    saturated: bool


def itl(alpha: float, beta: float, batch_size: float) -> float:
    """Predicted inter-token latency (ms)."""
    return alpha + beta * batch_size


def ttft(gamma: float, delta: float, avg_input_tokens: float, batch_size: float) -> float:
    """Predicted time to first token (ms)."""
    return gamma + delta * avg_input_tokens * batch_size


def effective_batch_size(
    decode: DecodeParameters,
    prefill: PrefillParameters,
    arrival_rate: float,
    avg_input_tokens: float,
    avg_output_tokens: float,
) -> float:
    """Steady-state batch size of one replica receiving `arrival_rate` req/min.

    Solves Little's law b = rate * service_time(b), where the service time of a
    request is its prefill plus `avg_output_tokens` decode steps at batch b.
    Returns math.inf when the replica cannot keep up with the offered load.
    """
    if arrival_rate <= 0:
        return 0.0
    rate_per_ms = arrival_rate / MS_PER_MINUTE
    numerator = rate_per_ms * (prefill.gamma + avg_output_tokens * decode.alpha)
    denominator = 1.0 - rate_per_ms * (
        prefill.delta * avg_input_tokens + avg_output_tokens * decode.beta
    )
    if denominator <= 0:
        return math.inf
    return numerator / denominator


def predict(
    decode: DecodeParameters,
    prefill: PrefillParameters,
    arrival_rate: float,
    avg_input_tokens: float,
    avg_output_tokens: float,
    num_replicas: int,
) -> LatencyPrediction:
    """Predict per-replica latency with the load split evenly over `num_replicas`."""
    if num_replicas < 1:
        raise ValueError("num_replicas must be >= 1")
    batch = effective_batch_size(
        decode,
        prefill,
        arrival_rate / num_replicas,
        avg_input_tokens,
        avg_output_tokens,
    )
    if math.isinf(batch):
        return LatencyPrediction(batch_size=batch, itl_ms=math.inf, ttft_ms=math.inf, saturated=True)
    return LatencyPrediction(
        batch_size=batch,
        itl_ms=itl(decode.alpha, decode.beta, batch),
        ttft_ms=ttft(prefill.gamma, prefill.delta, avg_input_tokens, batch),
        saturated=False,
    )
