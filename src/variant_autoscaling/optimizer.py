"""Global allocation optimizer.

For every server in a SystemModel, pick the (accelerator, replica count) pair
of minimum cost whose predicted ITL and TTFT both meet the server's SLO. In
unlimited mode servers are independent, so the problem decomposes into one
small search per server:

1. candidate profiles: the server's own (model, accelerator, accelerator
   count) profile when it keeps its accelerator, otherwise every profile of
   the model on a configured accelerator;
2. per candidate, the smallest feasible replica count in
   [min_num_replicas, max_num_replicas]. Per-replica load falls as replicas are
   added and the latency model is non-decreasing in load, so feasibility is
   monotone in the replica count and a binary search finds the minimum;
3. cheapest candidate wins; ties go to the current accelerator and count,
   then to fewer replicas, then to the accelerator name.

The solver does no I/O and is deterministic for a given SystemModel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from variant_autoscaling.adapter import create_optimized_alloc, full_name
from variant_autoscaling.config import DEFAULT_MAX_NUM_REPLICAS, Settings
from variant_autoscaling.contracts import OptimizedAlloc, VariantAutoscaling
from variant_autoscaling.errors import (
    InfeasibleAllocationError,
    NoFeasibleAllocationError,
    UnsupportedModeError,
)
from variant_autoscaling.performance import LatencyPrediction, predict
from variant_autoscaling.system import (
    AcceleratorSpec,
    AllocationDecision,
    AllocationSolution,
    ModelTarget,
    ServerEntry,
    SystemModel,
    VariantPerformanceProfile,
)

logger = logging.getLogger(__name__)

_SLO_TOLERANCE = 1e-9


@dataclass(frozen=True)
class Candidate:
    accelerator: str
    accelerator_count: int
    num_replicas: int
    cost: float
    prediction: LatencyPrediction | None
    max_batch: int


@dataclass
class OptimizationResult:
    solution: AllocationSolution = field(default_factory=dict)
    infeasible: dict[str, str] = field(default_factory=dict)  # server name -> reason


def replica_cost(accelerator: AcceleratorSpec, profile: VariantPerformanceProfile) -> float:
    """Cost of one replica of a profile on an accelerator."""
    return accelerator.cost * accelerator.multiplicity * profile.accelerator_count


def meets_slo(
    prediction: LatencyPrediction,
    profile: VariantPerformanceProfile,
    target: ModelTarget,
) -> bool:
    """Both ITL and TTFT must hold; a zero target leaves that metric unconstrained."""
    if prediction.saturated or prediction.batch_size > profile.max_batch_size:
        return False
    if target.slo_itl > 0 and prediction.itl_ms > target.slo_itl + _SLO_TOLERANCE:
        return False
    if target.slo_ttft > 0 and prediction.ttft_ms > target.slo_ttft + _SLO_TOLERANCE:
        return False
    return True


def _evaluate(server: ServerEntry, profile: VariantPerformanceProfile, num_replicas: int) -> LatencyPrediction:
    load = server.load
    return predict(
        profile.decode,
        profile.prefill,
        arrival_rate=load.arrival_rate,
        avg_input_tokens=load.avg_input_tokens,
        avg_output_tokens=load.avg_output_tokens,
        num_replicas=num_replicas,
    )


def min_feasible_replicas(
    server: ServerEntry,
    profile: VariantPerformanceProfile,
    target: ModelTarget,
    max_num_replicas: int = DEFAULT_MAX_NUM_REPLICAS,
) -> tuple[int, LatencyPrediction | None] | None:
    """Smallest replica count meeting the SLO on one accelerator, or None.

    A scale-to-zero server with no traffic resolves to 0 replicas without
    consulting the latency model.
    """
    if server.min_num_replicas <= 0 and server.load.arrival_rate <= 0:
        return 0, None

    low = max(1, server.min_num_replicas)
    prediction = _evaluate(server, profile, low)
    if meets_slo(prediction, profile, target):
        return low, prediction

    high = max(low, max_num_replicas)
    best = _evaluate(server, profile, high)
    if not meets_slo(best, profile, target):
        return None

    # invariant: low infeasible, high feasible
    while high - low > 1:
        mid = (low + high) // 2
        prediction = _evaluate(server, profile, mid)
        if meets_slo(prediction, profile, target):
            high, best = mid, prediction
        else:
            low = mid
    return high, best


def candidate_profiles(system: SystemModel, server: ServerEntry) -> list[VariantPerformanceProfile]:
    """The server's own profile when it keeps its accelerator, else every profile of its model."""
    if server.keep_accelerator:
        profile = system.profile_for(server.model, server.current_alloc.accelerator, server.accelerator_count)
        return [profile] if profile is not None else []
    return system.profiles_for_model(server.model)


def solve_server(
    system: SystemModel,
    server: ServerEntry,
    max_num_replicas: int = DEFAULT_MAX_NUM_REPLICAS,
) -> AllocationDecision:
    """Cheapest feasible allocation for one server; raises InfeasibleAllocationError."""
    target = system.target_for(server)
    if target is None:
        raise InfeasibleAllocationError(
            server.name,
            f"no SLO target for model {server.model!r} in service class {server.service_class!r}",
        )

    profiles = candidate_profiles(system, server)
    if not profiles:
        raise InfeasibleAllocationError(
            server.name,
            f"no performance profile for {server.current_alloc.accelerator or '<none>'}"
            f" x{server.accelerator_count}",
        )

    candidates: list[Candidate] = []
    unconfigured: list[str] = []
    for profile in profiles:
        accelerator = system.accelerators.get(profile.accelerator)
        if accelerator is None:
            unconfigured.append(profile.accelerator)
            continue
        found = min_feasible_replicas(server, profile, target, max_num_replicas)
        if found is None:
            logger.debug(
                "server %s: SLO not attainable on %s x%d within %d replicas",
                server.name,
                profile.accelerator,
                profile.accelerator_count,
                max_num_replicas,
            )
            continue
        num_replicas, prediction = found
        candidates.append(
            Candidate(
                accelerator=profile.accelerator,
                accelerator_count=profile.accelerator_count,
                num_replicas=num_replicas,
                cost=num_replicas * replica_cost(accelerator, profile),
                prediction=prediction,
                max_batch=profile.max_batch_size,
            )
        )

    if not candidates:
        if unconfigured:
            reason = f"no configured accelerator {', '.join(unconfigured)}"
        else:
            reason = f"SLO not attainable within {max_num_replicas} replicas"
        raise InfeasibleAllocationError(server.name, reason)

    current = (server.current_alloc.accelerator, server.accelerator_count)
    best = min(
        candidates,
        key=lambda c: (
            c.cost,
            (c.accelerator, c.accelerator_count) != current,
            c.num_replicas,
            c.accelerator,
            c.accelerator_count,
        ),
    )
    prediction = best.prediction
    return AllocationDecision(
        accelerator=best.accelerator,
        num_replicas=best.num_replicas,
        cost=best.cost,
        max_batch=best.max_batch,
        itl_ms=prediction.itl_ms if prediction is not None else 0.0,
        ttft_ms=prediction.ttft_ms if prediction is not None else 0.0,
        batch_size=prediction.batch_size if prediction is not None else 0.0,
        accelerator_count=best.accelerator_count,
    )


def optimize(system: SystemModel, max_num_replicas: int = DEFAULT_MAX_NUM_REPLICAS) -> OptimizationResult:
    """Solve every server of the system model.

    Infeasible servers are reported in `infeasible` and left out of the
    solution. An empty solution raises NoFeasibleAllocationError: callers must
    not read it as "nothing to do".
    """
    if not system.optimizer.unlimited:
        raise UnsupportedModeError("capacity-constrained optimization is not supported")
    if max_num_replicas < 1:
        raise ValueError("max_num_replicas must be >= 1")

    result = OptimizationResult()
    for name in sorted(system.servers):
        server = system.servers[name]
        try:
            result.solution[name] = solve_server(system, server, max_num_replicas)
        except InfeasibleAllocationError as exc:
            logger.warning("%s", exc)
            result.infeasible[name] = exc.reason

    if not result.solution:
        raise NoFeasibleAllocationError(
            "no feasible allocations found for all variants",
            infeasible=result.infeasible,
        )
    logger.info(
        "optimization solved %d server(s), %d infeasible",
        len(result.solution),
        len(result.infeasible),
    )
    return result


class VariantAutoscalingEngine:
    """Runs a global optimization and maps it back onto variants."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.last_result: OptimizationResult | None = None

    def optimize(
        self,
        variants: Iterable[VariantAutoscaling],
        system: SystemModel,
        now: datetime | None = None,
    ) -> dict[str, OptimizedAlloc]:
        """Return "name:namespace" -> desired allocation.

        Variants the solver could not place are absent from the result.
        """
        self.last_result = None
        result = optimize(system, max_num_replicas=self.settings.max_num_replicas)
        self.last_result = result

        optimized: dict[str, OptimizedAlloc] = {}
        for variant in variants:
            try:
                optimized[full_name(variant.name, variant.namespace)] = create_optimized_alloc(
                    variant.name,
                    variant.namespace,
                    variant.spec.variant_id,
                    result.solution,
                    now=now,
                )
            except KeyError:
                continue
        return optimized
