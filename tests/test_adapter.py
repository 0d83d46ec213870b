from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from variant_autoscaling.adapter import (
    add_server_info,
    add_variant_profile,
    build_system_model,
    create_optimized_alloc,
    create_system_data,
    find_model_slo,
    full_name,
    resolve_min_replicas,
    suggest_resource_name_from_variant_id,
    validate_variant_autoscaling_name,
)
from variant_autoscaling.config import Settings
from variant_autoscaling.contracts import VariantAutoscaling, VariantProfile
from variant_autoscaling.errors import ConfigurationError
from variant_autoscaling.metrics_cache import LoadObservation, ModelMetricsCache
from variant_autoscaling.optimizer import optimize
from variant_autoscaling.system import AllocationDecision, SystemModel

MODEL = "default/default"
NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

ACCELERATORS = {
    "A100": {"device": "NVIDIA-A100-PCIE-80GB", "cost": "40.00"},
    "MI300X": {"device": "AMD-MI300X-192G", "cost": "65.00", "multiplicity": "2"},
}

PREMIUM = """
name: Premium
priority: 1
data:
  - model: default/default
    slo-tpot: 24
    slo-ttft: 500
  - model: meta/llama0-70b
    slo-tpot: 80
    slo-ttft: 500
"""

FREEMIUM = """
name: Freemium
priority: 10
data:
  - model: ibm/granite-13b
    slo-tpot: 200
    slo-ttft: 2000
  - model: default/default
    slo-tpot: 150
    slo-ttft: 1500
"""

SERVICE_CLASSES = {"premium.yaml": PREMIUM, "freemium.yaml": FREEMIUM}


def _variant(
    name: str = "vllm-a100",
    model: str = MODEL,
    key: str = "premium.yaml",
    status: dict[str, Any] | None = None,
    scale_to_zero: dict[str, Any] | None = None,
    decode: dict[str, str] | None = None,
    count: int = 1,
) -> VariantAutoscaling:
    spec: dict[str, Any] = {
        "modelID": model,
        "variantID": f"{model}-A100-{count}",
        "accelerator": "A100",
        "acceleratorCount": count,
        "sloClassRef": {"name": "service-classes-config", "key": key},
        "variantProfile": {
            "perfParms": {
                "decodeParms": decode or {"alpha": "10", "beta": "2"},
                "prefillParms": {"gamma": "5", "delta": "0.01"},
            },
            "maxBatchSize": 4,
        },
    }
    if scale_to_zero is not None:
        spec["scaleToZero"] = scale_to_zero
    if status is None:
        status = {
            "load": {"arrivalRate": "60.00", "avgInputTokens": "0.00", "avgOutputTokens": "100.00"},
            "itlAverage": "12.50",
            "ttftAverage": "5.00",
            "currentAllocs": [
                {
                    "variantID": f"{model}-A100-{count}",
                    "accelerator": "A100",
                    "numReplicas": 1,
                    "maxBatch": 4,
                    "variantCost": "40.00",
                }
            ],
        }
    return VariantAutoscaling.model_validate(
        {"name": name, "namespace": "default", "spec": spec, "status": status}
    )


def test_full_name() -> None:
    assert full_name("vllm-a100", "default") == "vllm-a100:default"


@pytest.mark.parametrize(
    "variant_id,expected",
    [
        ("meta/llama-3.1-8b-A100-1", "meta-llama-3-1-8b-a100-1"),
        ("Meta/Llama-3.1-8B-A100-1", "meta-llama-3-1-8b-a100-1"),
        ("model@name/variant_1", "modelname-variant1"),
        ("-model/variant-", "model-variant"),
        ("vllm-deployment", "vllm-deployment"),
        ("org/team/model-A100-1", "org-team-model-a100-1"),
        ("model_name_variant_1", "modelnamevariant1"),
        ("model name variant 1", "modelnamevariant1"),
        ("", ""),
        ("@#$%", ""),
    ],
)
def test_suggest_resource_name_from_variant_id(variant_id: str, expected: str) -> None:
    assert suggest_resource_name_from_variant_id(variant_id) == expected


@pytest.mark.parametrize("variant_id", ["Meta/Llama-3.1-8B-A100-1", "model@name/variant_1!test", "modèl/variánt"])
def test_suggested_names_are_dns_labels(variant_id: str) -> None:
    suggested = suggest_resource_name_from_variant_id(variant_id)
    assert re.fullmatch(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?", suggested)


def test_validate_variant_autoscaling_name() -> None:
    assert not validate_variant_autoscaling_name(_variant(name="vllm-a100"))
    assert validate_variant_autoscaling_name(_variant(name="default-default-a100-1"))


def test_create_system_data_skips_bad_accelerator_cost() -> None:
    accelerators = dict(ACCELERATORS)
    accelerators["BROKEN"] = {"device": "X", "cost": "not-a-number"}
    accelerators["NEGATIVE"] = {"device": "Y", "cost": "-1"}

    system = create_system_data(accelerators, SERVICE_CLASSES)

    assert sorted(system.accelerators) == ["A100", "MI300X"]
    assert system.accelerators["A100"].cost == pytest.approx(40.0)
    assert system.accelerators["MI300X"].multiplicity == 2
    assert system.optimizer.unlimited
    assert sorted(system.service_classes) == ["Freemium", "Premium"]
    target = system.service_classes["Premium"].target_for(MODEL)
    assert target is not None
    assert target.slo_itl == pytest.approx(24.0)
    assert target.slo_ttft == pytest.approx(500.0)


def test_create_system_data_skips_unparseable_service_class() -> None:
    classes = dict(SERVICE_CLASSES)
    classes["broken.yaml"] = "name: [unclosed"
    classes["nameless.yaml"] = "priority: 3\n"

    system = create_system_data(ACCELERATORS, classes)
    assert sorted(system.service_classes) == ["Freemium", "Premium"]


def test_find_model_slo_uses_referenced_class() -> None:
    entry, class_name = find_model_slo(SERVICE_CLASSES, MODEL, key="freemium.yaml")
    assert class_name == "Freemium"
    assert entry.slo_itl == pytest.approx(150.0)


def test_find_model_slo_scans_all_classes_without_key() -> None:
    entry, class_name = find_model_slo(SERVICE_CLASSES, "ibm/granite-13b")
    assert class_name == "Freemium"
    assert entry.slo_ttft == pytest.approx(2000.0)

    # unknown key falls back to the full scan
    _, class_name = find_model_slo(SERVICE_CLASSES, "meta/llama0-70b", key="missing.yaml")
    assert class_name == "Premium"


def test_find_model_slo_unknown_model() -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        find_model_slo(SERVICE_CLASSES, "unknown/model")


def test_add_variant_profile() -> None:
    system = SystemModel()
    profile = VariantProfile.model_validate(
        {
            "perfParms": {
                "decodeParms": {"alpha": "20.58", "beta": "0.41"},
                "prefillParms": {"gamma": "200.2", "delta": "0.041"},
            },
            "maxBatchSize": 64,
        }
    )

    perf = add_variant_profile(system, MODEL, "A100", 2, profile)

    assert system.profile_for(MODEL, "A100", 2) == perf
    assert system.profile_for(MODEL, "A100") is None
    assert perf.decode.alpha == pytest.approx(20.58)
    assert perf.prefill.delta == pytest.approx(0.041)
    assert perf.accelerator_count == 2
    assert perf.max_batch_size == 64


def test_add_variant_profile_rejects_incomplete_coefficients() -> None:
    variant = _variant(decode={"alpha": "10"})
    system = SystemModel()
    with pytest.raises(ConfigurationError):
        add_variant_profile(system, MODEL, "A100", 1, variant.spec.variant_profile)
    assert system.profiles == {}


def test_add_server_info_reads_status() -> None:
    system = SystemModel()
    server = add_server_info(system, _variant(), "Premium")

    assert system.servers["vllm-a100:default"] == server
    assert server.model == MODEL
    assert server.service_class == "Premium"
    assert server.keep_accelerator
    assert server.min_num_replicas == 1
    assert server.accelerator_count == 1
    assert server.current_alloc.accelerator == "A100"
    assert server.current_alloc.cost == pytest.approx(40.0)
    assert server.current_alloc.itl_average == pytest.approx(12.5)
    assert server.load == LoadObservation(60.0, 0.0, 100.0)


def test_add_server_info_sanitizes_invalid_numbers() -> None:
    status = {
        "load": {"arrivalRate": "NaN", "avgInputTokens": "bogus", "avgOutputTokens": "-5"},
        "itlAverage": "Inf",
        "ttftAverage": "",
        "currentAllocs": [{"accelerator": "A100", "numReplicas": 2, "variantCost": "abc"}],
    }
    server = add_server_info(SystemModel(), _variant(status=status), "Premium")

    assert server.load == LoadObservation(0.0, 0.0, 0.0)
    assert server.current_alloc.itl_average == 0.0
    assert server.current_alloc.ttft_average == 0.0
    assert server.current_alloc.cost == 0.0
    assert server.current_alloc.num_replicas == 2


def test_add_server_info_requires_current_allocation() -> None:
    variant = _variant(status={"load": {"arrivalRate": "10"}})
    with pytest.raises(ConfigurationError, match="no current allocations"):
        add_server_info(SystemModel(), variant, "Premium")


def test_add_server_info_prefers_fresh_cached_load() -> None:
    cache = ModelMetricsCache()
    cache.put(MODEL, LoadObservation(300.0, 10.0, 100.0), timedelta(minutes=10), 3000.0, now=NOW)

    fresh = add_server_info(SystemModel(), _variant(), "Premium", cache=cache, now=NOW + timedelta(minutes=1))
    assert fresh.load.arrival_rate == pytest.approx(300.0)

    stale = add_server_info(SystemModel(), _variant(), "Premium", cache=cache, now=NOW + timedelta(hours=1))
    assert stale.load.arrival_rate == pytest.approx(60.0)


def test_resolve_min_replicas_variant_setting_wins() -> None:
    enabled = _variant(scale_to_zero={"enabled": True})
    disabled = _variant(scale_to_zero={"enabled": False})
    unset = _variant()

    assert resolve_min_replicas(enabled, scale_to_zero_default=False) == 0
    assert resolve_min_replicas(disabled, scale_to_zero_default=True) == 1
    assert resolve_min_replicas(unset, scale_to_zero_default=True) == 0
    assert resolve_min_replicas(unset, scale_to_zero_default=False) == 1


def test_resolve_min_replicas_requires_observed_idleness() -> None:
    variant = _variant(scale_to_zero={"enabled": True, "retentionPeriod": "5m"})
    cache = ModelMetricsCache()
    retention = timedelta(minutes=5)

    # never observed: not evidence of idleness
    assert resolve_min_replicas(variant, cache=cache, now=NOW) == 1

    cache.put(MODEL, LoadObservation(), retention, 12.0, now=NOW)
    assert resolve_min_replicas(variant, cache=cache, now=NOW) == 1

    cache.put(MODEL, LoadObservation(), retention, 0.0, now=NOW)
    assert resolve_min_replicas(variant, cache=cache, now=NOW + timedelta(minutes=1)) == 0
    assert resolve_min_replicas(variant, cache=cache, now=NOW + timedelta(minutes=6)) == 1


def test_build_system_model_isolates_variant_errors() -> None:
    variants = [
        _variant(name="good"),
        _variant(name="bad-profile", decode={"alpha": "10"}),
        _variant(name="unknown-model", model="unknown/model"),
        _variant(name="no-allocs", status={}),
    ]

    build = build_system_model(variants, ACCELERATORS, SERVICE_CLASSES, settings=Settings(), now=NOW)

    assert list(build.system.servers) == ["good:default"]
    assert build.class_names == {"good:default": "Premium"}
    assert sorted(build.errors) == ["bad-profile:default", "no-allocs:default", "unknown-model:default"]
    assert "not found" in build.errors["unknown-model:default"]


def test_build_system_model_keeps_profiles_per_accelerator_count() -> None:
    variants = [
        _variant(name="v1", decode={"alpha": "10", "beta": "2"}),
        _variant(name="v2", decode={"alpha": "5", "beta": "1"}, count=2),
    ]

    build = build_system_model(variants, ACCELERATORS, SERVICE_CLASSES, settings=Settings(), now=NOW)
    assert build.errors == {}
    assert build.system.servers["v2:default"].accelerator_count == 2
    assert build.system.profile_for(MODEL, "A100", 1).decode.alpha == pytest.approx(10.0)
    assert build.system.profile_for(MODEL, "A100", 2).decode.alpha == pytest.approx(5.0)

    solution = optimize(build.system).solution
    v1 = solution["v1:default"]
    assert v1.accelerator_count == 1
    assert v1.num_replicas == 1
    assert v1.cost == pytest.approx(40.0)
    assert v1.itl_ms == pytest.approx(10 + 2 * 1.005 / 0.8)

    v2 = solution["v2:default"]
    assert v2.accelerator_count == 2
    assert v2.num_replicas == 1
    assert v2.cost == pytest.approx(80.0)
    assert v2.itl_ms == pytest.approx(5 + 0.505 / 0.9)


def test_build_system_model_applies_scale_to_zero_default() -> None:
    build = build_system_model([_variant()], ACCELERATORS, SERVICE_CLASSES, settings=Settings(scale_to_zero=True), now=NOW)
    assert build.system.servers["vllm-a100:default"].min_num_replicas == 0


def test_create_optimized_alloc() -> None:
    solution = {
        "vllm-a100:default": AllocationDecision(
            accelerator="A100",
            num_replicas=3,
            cost=120.0,
            max_batch=4,
            itl_ms=15.0,
            ttft_ms=5.0,
            batch_size=2.5,
        )
    }

    alloc = create_optimized_alloc("vllm-a100", "default", "default/default-A100-1", solution, now=NOW)
    assert alloc.accelerator == "A100"
    assert alloc.num_replicas == 3
    assert alloc.last_run_time == NOW
    assert alloc.model_dump(by_alias=True)["variantID"] == "default/default-A100-1"

    with pytest.raises(KeyError):
        create_optimized_alloc("vllm-a100", "other", "default/default-A100-1", solution, now=NOW)
