"""Process-level logging setup."""

from __future__ import annotations

import logging
import os

from variant_autoscaling.config import ENV_LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def level_from_name(name: str | None) -> int:
    """Map a verbosity name to a logging level, falling back to INFO."""
    if not name:
        return logging.INFO
    return _LEVELS.get(name.strip().lower(), logging.INFO)


def level_from_env() -> int:
    return level_from_name(os.getenv(ENV_LOG_LEVEL))


def configure_logging(level: int | str | None = None) -> None:
    """Configure the package logger once for the running process."""
    if level is None:
        resolved = level_from_env()
    elif isinstance(level, str):
        resolved = level_from_name(level)
    else:
        resolved = level

    root = logging.getLogger("variant_autoscaling")
    root.setLevel(resolved)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
