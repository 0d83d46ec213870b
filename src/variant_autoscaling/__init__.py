"""Variant autoscaling: SLO-driven, cost-minimal replica allocation for inference variants.

Builds a per-cycle system model from variant profiles, SLO classes, accelerator
costs and observed load, and solves it for the cheapest (accelerator, replicas)
pair per variant that keeps predicted ITL and TTFT within the SLO.
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from variant_autoscaling.actuator import Actuator, ReplicaMetricsEmitter
from variant_autoscaling.adapter import (
    add_server_info,
    add_variant_profile,
    build_system_model,
    create_optimized_alloc,
    create_system_data,
    find_model_slo,
    full_name,
    suggest_resource_name_from_variant_id,
)
from variant_autoscaling.collector import (
    DeploymentInfo,
    PrometheusClient,
    collect_inventory,
    collect_variant_metrics,
    metrics_condition,
    update_variant_metrics,
)
from variant_autoscaling.config import Settings, load_settings
from variant_autoscaling.contracts import (
    ConditionType,
    MetricsReason,
    OptimizationReason,
    OptimizedAlloc,
    VariantAutoscaling,
)
from variant_autoscaling.errors import (
    ConfigurationError,
    InfeasibleAllocationError,
    NoFeasibleAllocationError,
)
from variant_autoscaling.metrics_cache import CachedMetrics, LoadObservation, ModelMetricsCache
from variant_autoscaling.optimizer import VariantAutoscalingEngine, optimize
from variant_autoscaling.performance import DecodeParameters, PrefillParameters, itl, ttft
from variant_autoscaling.system import AllocationDecision, AllocationSolution, SystemModel

__all__ = [
    # Version
    "__version__",
    # Performance model
    "itl",
    "ttft",
    "DecodeParameters",
    "PrefillParameters",
    # Metrics cache
    "ModelMetricsCache",
    "CachedMetrics",
    "LoadObservation",
    # System model + adapters
    "SystemModel",
    "create_system_data",
    "add_variant_profile",
    "add_server_info",
    "build_system_model",
    "find_model_slo",
    "full_name",
    "suggest_resource_name_from_variant_id",
    "create_optimized_alloc",
    # Optimizer
    "optimize",
    "VariantAutoscalingEngine",
    "AllocationDecision",
    "AllocationSolution",
    # Metrics ingestion
    "PrometheusClient",
    "DeploymentInfo",
    "collect_variant_metrics",
    "update_variant_metrics",
    "metrics_condition",
    "collect_inventory",
    # Actuation
    "Actuator",
    "ReplicaMetricsEmitter",
    # Contracts
    "VariantAutoscaling",
    "OptimizedAlloc",
    "ConditionType",
    "MetricsReason",
    "OptimizationReason",
    # Errors
    "ConfigurationError",
    "InfeasibleAllocationError",
    "NoFeasibleAllocationError",
    # Configuration
    "Settings",
    "load_settings",
]
