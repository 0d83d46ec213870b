"""Exception types raised across the allocation pipeline."""

from __future__ import annotations


class VariantAutoscalingError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(VariantAutoscalingError, ValueError):
    """A variant, profile or service class is malformed.

    Fails the affected variant only; the rest of the cycle proceeds.
    """


class InfeasibleAllocationError(VariantAutoscalingError):
    """No accelerator/replica combination satisfies the SLO of one server."""

    def __init__(self, server_name: str, reason: str) -> None:
        super().__init__(f"no feasible allocation for server {server_name}: {reason}")
        self.server_name = server_name
        self.reason = reason


class NoFeasibleAllocationError(VariantAutoscalingError):
    """The global solution is empty (no servers, or every server infeasible)."""

    def __init__(self, message: str, infeasible: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.infeasible = dict(infeasible or {})


class UnsupportedModeError(VariantAutoscalingError):
    """The optimizer was asked to run in capacity-constrained mode."""


class PrometheusError(VariantAutoscalingError):
    """A query against the metrics backend failed."""


class TransientError(VariantAutoscalingError):
    """A failure worth retrying (timeouts, connection resets, conflicts)."""


class PermanentError(VariantAutoscalingError):
    """A failure that retrying cannot fix (not found, invalid, forbidden)."""


class RetryExhaustedError(VariantAutoscalingError):
    """All retry steps were used up without success."""

    def __init__(self, resource_kind: str, attempts: int, last_error: Exception | None) -> None:
        message = f"giving up on {resource_kind} after {attempts} attempts"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)
        self.resource_kind = resource_kind
        self.attempts = attempts
        self.last_error = last_error
