#!/usr/bin/env python3
"""Run the optional FastAPI optimizer backend."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from variant_autoscaling.api_server import create_app  # noqa: E402
from variant_autoscaling.config import load_settings  # noqa: E402
from variant_autoscaling.logging_config import configure_logging  # noqa: E402
from variant_autoscaling.metrics_cache import ModelMetricsCache  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the variant autoscaling optimizer API server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--no-metrics-cache", action="store_true", help="Use status load only")
    args = parser.parse_args()

    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover
        raise SystemExit(
            "uvicorn not installed. Install with: pip install 'uvicorn>=0.30,<1.0'"
        ) from exc

    settings = load_settings()
    configure_logging(settings.log_level)
    cache = None if args.no_metrics_cache else ModelMetricsCache()
    app = create_app(settings=settings, cache=cache)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
