"""In-memory representation of one optimization cycle.

A SystemModel is rebuilt from scratch every cycle: the accelerators and their
costs, the per-(model, accelerator) performance profiles, the service classes
and one ServerEntry per live variant. It is owned by the invocation that built
it and never shared across cycles.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from variant_autoscaling.metrics_cache import LoadObservation
from variant_autoscaling.performance import DecodeParameters, PrefillParameters


@dataclass(frozen=True)
class AcceleratorSpec:
    name: str
    device: str
    cost: float  # per unit
    multiplicity: int = 1  # units per instance

    def __post_init__(self) -> None:
        if self.cost < 0:
            raise ValueError(f"accelerator {self.name}: cost must be >= 0")
        if self.multiplicity < 1:
            raise ValueError(f"accelerator {self.name}: multiplicity must be >= 1")


@dataclass(frozen=True)
class VariantPerformanceProfile:
    model: str
    accelerator: str
    accelerator_count: int
    max_batch_size: int
    decode: DecodeParameters
    prefill: PrefillParameters


@dataclass(frozen=True)
class ModelTarget:
    model: str
    slo_itl: float  # ms, 0 means unconstrained
    slo_ttft: float  # ms, 0 means unconstrained


@dataclass(frozen=True)
class ServiceClass:
    name: str
    priority: int
    targets: tuple[ModelTarget, ...] = ()

    def target_for(self, model: str) -> ModelTarget | None:
        return next((t for t in self.targets if t.model == model), None)


@dataclass(frozen=True)
class AllocationData:
    accelerator: str
    num_replicas: int
    max_batch: int = 0
    cost: float = 0.0
    itl_average: float = 0.0
    ttft_average: float = 0.0
    load: LoadObservation = field(default_factory=LoadObservation)


@dataclass(frozen=True)
class ServerEntry:
    name: str  # "<variant name>:<namespace>"
    model: str
    service_class: str
    current_alloc: AllocationData
    variant_id: str = ""
    accelerator_count: int = 1
    min_num_replicas: int = 1
    keep_accelerator: bool = True

    @property
    def load(self) -> LoadObservation:
        return self.current_alloc.load


@dataclass(frozen=True)
class AcceleratorCount:
    accelerator_type: str
    count: int


@dataclass(frozen=True)
class OptimizerSpec:
    # Capacity-constrained mode (unlimited=False) would add, per accelerator
    # type, sum(replicas * accelerator_count) <= inventory count.
    unlimited: bool = True


@dataclass
class SystemModel:
    accelerators: dict[str, AcceleratorSpec] = field(default_factory=dict)
    profiles: dict[tuple[str, str, int], VariantPerformanceProfile] = field(default_factory=dict)
    service_classes: dict[str, ServiceClass] = field(default_factory=dict)
    servers: dict[str, ServerEntry] = field(default_factory=dict)
    optimizer: OptimizerSpec = field(default_factory=OptimizerSpec)
    capacity: tuple[AcceleratorCount, ...] = ()

    def add_accelerator(self, spec: AcceleratorSpec) -> None:
        self.accelerators[spec.name] = spec

    def add_profile(self, profile: VariantPerformanceProfile) -> None:
        self.profiles[(profile.model, profile.accelerator, profile.accelerator_count)] = profile

    def add_service_class(self, service_class: ServiceClass) -> None:
        self.service_classes[service_class.name] = service_class

    def add_server(self, server: ServerEntry) -> None:
        self.servers[server.name] = server

    def profile_for(
        self,
        model: str,
        accelerator: str,
        accelerator_count: int = 1,
    ) -> VariantPerformanceProfile | None:
        return self.profiles.get((model, accelerator, accelerator_count))

    def profiles_for_model(self, model: str) -> list[VariantPerformanceProfile]:
        """Profiles of `model` on configured accelerators, sorted by (accelerator, count)."""
        return [
            self.profiles[key]
            for key in sorted(self.profiles)
            if key[0] == model and key[1] in self.accelerators
        ]

    def target_for(self, server: ServerEntry) -> ModelTarget | None:
        service_class = self.service_classes.get(server.service_class)
        if service_class is None:
            return None
        return service_class.target_for(server.model)


@dataclass(frozen=True)
class AllocationDecision:
    accelerator: str
    num_replicas: int
    cost: float
    max_batch: int
    itl_ms: float
    ttft_ms: float
    batch_size: float
    accelerator_count: int = 1


# Server name -> decision, scoped to one optimization cycle.
AllocationSolution = dict[str, AllocationDecision]
