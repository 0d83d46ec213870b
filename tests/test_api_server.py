from __future__ import annotations

from datetime import datetime, timezone

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from variant_autoscaling.api_server import create_app
from variant_autoscaling.config import DEFAULT_METRICS_RETENTION, Settings
from variant_autoscaling.metrics_cache import LoadObservation, ModelMetricsCache

PREMIUM = """
name: Premium
priority: 1
data:
  - model: default/default
    slo-tpot: 50
    slo-ttft: 1000
"""

VARIANT = {
    "name": "vllm-a100",
    "namespace": "default",
    "spec": {
        "modelID": "default/default",
        "variantID": "default/default-A100-1",
        "accelerator": "A100",
        "acceleratorCount": 1,
        "sloClassRef": {"name": "service-classes-config", "key": "premium.yaml"},
        "variantProfile": {
            "perfParms": {
                "decodeParms": {"alpha": "10", "beta": "2"},
                "prefillParms": {"gamma": "0", "delta": "0"},
            },
            "maxBatchSize": 4,
        },
    },
    "status": {
        "load": {"arrivalRate": "300.00", "avgInputTokens": "0.00", "avgOutputTokens": "100.00"},
        "currentAllocs": [{"variantID": "default/default-A100-1", "accelerator": "A100", "numReplicas": 1}],
    },
}


def _client(cache: ModelMetricsCache | None = None) -> TestClient:
    return TestClient(create_app(settings=Settings(), cache=cache))


def test_healthz() -> None:
    response = _client().get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_optimize_endpoint() -> None:
    response = _client().post(
        "/api/v1/optimize",
        json={
            "accelerators": {"A100": {"device": "NVIDIA-A100-PCIE-80GB", "cost": 40}},
            "service_classes": {"premium.yaml": PREMIUM},
            "variants": [VARIANT],
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["solved_count"] == 1
    desired = body["results"][0]["desired_alloc"]
    assert desired["accelerator"] == "A100"
    assert desired["numReplicas"] == 3
    assert desired["variantID"] == "default/default-A100-1"
    conditions = {c["type"]: c for c in body["results"][0]["conditions"]}
    assert conditions["OptimizationReady"]["status"] == "True"


def test_optimize_endpoint_validates_payload() -> None:
    response = _client().post("/api/v1/optimize", json={"accelerators": {}})
    assert response.status_code == 422


def test_predict_endpoint() -> None:
    response = _client().post(
        "/api/v1/predict",
        json={
            "decode_parms": {"alpha": "10", "beta": "2"},
            "prefill_parms": {"gamma": "0", "delta": "0"},
            "max_batch_size": 4,
            "arrival_rate": 60,
            "avg_output_tokens": 100,
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["itl_ms"] == pytest.approx(12.5)
    assert body["within_max_batch"] is True


def test_predict_endpoint_bad_coefficients_returns_400() -> None:
    response = _client().post(
        "/api/v1/predict",
        json={"decode_parms": {"alpha": "10"}, "prefill_parms": {"gamma": "0", "delta": "0"}},
    )
    assert response.status_code == 400
    assert "alpha" in response.json()["detail"]


def test_metrics_cache_endpoint() -> None:
    assert _client().get("/api/v1/metrics-cache/default/default").status_code == 404

    cache = ModelMetricsCache()
    client = _client(cache)
    assert client.get("/api/v1/metrics-cache/default/default").status_code == 404

    cache.put(
        "default/default",
        LoadObservation(10.5, 120.0, 150.0),
        DEFAULT_METRICS_RETENTION,
        105.0,
        now=datetime.now(timezone.utc),
    )
    response = client.get("/api/v1/metrics-cache/default/default")
    assert response.status_code == 200
    body = response.json()
    assert body["model_id"] == "default/default"
    assert body["total_requests"] == 105.0
    assert body["stale"] is False


OPTIMIZE_BODY = {
    "accelerators": {"A100": {"device": "NVIDIA-A100-PCIE-80GB", "cost": 40}},
    "service_classes": {"premium.yaml": PREMIUM},
    "variants": [VARIANT],
}


def test_optimize_endpoint_with_empty_cache_uses_status_load() -> None:
    response = _client(ModelMetricsCache()).post("/api/v1/optimize", json=OPTIMIZE_BODY)
    assert response.status_code == 200
    body = response.json()
    assert body["solved_count"] == 1
    assert body["results"][0]["desired_alloc"]["numReplicas"] == 3
    conditions = {c["type"]: c for c in body["results"][0]["conditions"]}
    assert conditions["MetricsAvailable"]["reason"] == "MetricsFound"


def test_put_metrics_cache_endpoint() -> None:
    body = {"arrival_rate": 60, "avg_output_tokens": 100, "total_requests": 600}
    assert _client().put("/api/v1/metrics-cache/default/default", json=body).status_code == 404

    cache = ModelMetricsCache()
    client = _client(cache)
    response = client.put("/api/v1/metrics-cache/default/default", json=body)
    assert response.status_code == 200
    assert response.json()["arrival_rate"] == 60.0
    assert "default/default" in cache

    # the cached 60 req/min replaces the 300 req/min reported in status
    optimized = client.post("/api/v1/optimize", json=OPTIMIZE_BODY).json()
    assert optimized["results"][0]["desired_alloc"]["numReplicas"] == 1

    assert client.put("/api/v1/metrics-cache/default/default", json={"arrival_rate": -1}).status_code == 422
