"""
Environment-driven configuration.

Values are read on every call so tests can monkeypatch the environment.
Invalid values fall back to the defaults instead of failing a run.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

DEFAULT_MAX_LOOP_ITERATIONS = 10
DEFAULT_NODE_HANDLER_URL = "http://localhost:3001"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _flag(name: str) -> bool:
    raw = os.getenv(name, "0").strip().lower()
    return raw in _TRUE_VALUES


def node_timeout_seconds() -> float | None:
    raw = os.getenv("CONTENTFLOW_NODE_TIMEOUT_SECONDS")
    if not raw:
        return None
    try:
        parsed = float(raw)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def max_loop_iterations() -> int:
    raw = os.getenv("CONTENTFLOW_MAX_LOOP_ITERATIONS", str(DEFAULT_MAX_LOOP_ITERATIONS))
    try:
        parsed = int(raw)
        if parsed <= 0:
            return DEFAULT_MAX_LOOP_ITERATIONS
        return parsed
    except ValueError:
        return DEFAULT_MAX_LOOP_ITERATIONS


def halt_on_failure() -> bool:
    return _flag("CONTENTFLOW_HALT_ON_FAILURE")


def continue_on_partial() -> bool:
    return _flag("CONTENTFLOW_CONTINUE_ON_PARTIAL")


def node_handler_url() -> str:
    return os.getenv("CONTENTFLOW_NODE_HANDLER_URL", DEFAULT_NODE_HANDLER_URL).rstrip("/")


def log_level() -> str:
    return os.getenv("CONTENTFLOW_LOG_LEVEL", "INFO").upper()


def configure_logging() -> None:
    """Apply CONTENTFLOW_LOG_LEVEL to the root logger (API process only)."""
    level = getattr(logging, log_level(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(level)
