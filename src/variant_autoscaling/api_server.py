"""Optional FastAPI server exposing the optimizer."""

from __future__ import annotations

from variant_autoscaling.api_models import (
    CachedMetricsResponse,
    CachedMetricsUpdate,
    OptimizeRequest,
    OptimizeResponse,
    PredictRequest,
    PredictResponse,
)
from variant_autoscaling.api_service import (
    run_get_cached_metrics,
    run_optimize,
    run_predict,
    run_put_cached_metrics,
)
from variant_autoscaling.config import Settings, load_settings
from variant_autoscaling.metrics_cache import ModelMetricsCache


def create_app(
    settings: Settings | None = None,
    cache: ModelMetricsCache | None = None,
):
    """Create FastAPI app lazily so base package has no hard FastAPI dependency."""
    try:
        from fastapi import FastAPI, HTTPException
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError(
            "FastAPI is not installed. Install with: "
            "pip install 'fastapi>=0.110,<1.0' 'uvicorn>=0.30,<1.0'"
        ) from exc

    from variant_autoscaling import __version__

    settings = settings or load_settings()
    app = FastAPI(title="Variant Autoscaling Optimizer", version=__version__)
    app.state.settings = settings
    app.state.metrics_cache = cache

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/v1/optimize", response_model=OptimizeResponse)
    def optimize(payload: OptimizeRequest) -> OptimizeResponse:
        try:
            return run_optimize(payload, cache=app.state.metrics_cache, settings=app.state.settings)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.post("/api/v1/predict", response_model=PredictResponse)
    def predict(payload: PredictRequest) -> PredictResponse:
        try:
            return run_predict(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.get("/api/v1/metrics-cache/{model_id:path}", response_model=CachedMetricsResponse)
    def cached_metrics(model_id: str) -> CachedMetricsResponse:
        if app.state.metrics_cache is None:
            raise HTTPException(status_code=404, detail="metrics cache is not enabled")
        try:
            return run_get_cached_metrics(app.state.metrics_cache, model_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"no cached metrics for {model_id}") from exc

    @app.put("/api/v1/metrics-cache/{model_id:path}", response_model=CachedMetricsResponse)
    def put_cached_metrics(model_id: str, payload: CachedMetricsUpdate) -> CachedMetricsResponse:
        if app.state.metrics_cache is None:
            raise HTTPException(status_code=404, detail="metrics cache is not enabled")
        try:
            return run_put_cached_metrics(
                app.state.metrics_cache, model_id, payload, settings=app.state.settings
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    return app
