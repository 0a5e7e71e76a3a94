"""Environment-driven tunables.

Every public operation also accepts keyword overrides; these helpers only
supply the defaults. Values are read at call time, never at import time.
"""

from __future__ import annotations

import logging
import os

from .logging_setup import get_logger, log_event

DEFAULT_COMMIT_CHUNK_SIZE: int = 450
# Hard ceiling imposed by the store on writes per atomic commit.
MAX_COMMIT_CHUNK_SIZE: int = 500
DEFAULT_SUGGEST_CHUNK_SIZE: int = 20
DEFAULT_CLASSIFIER_MODEL: str = "gpt-4o-mini"

_logger = get_logger("budget_rules.config")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        log_event(
            _logger,
            "config:invalid_int",
            level=logging.WARNING,
            name=name,
            value=raw,
            default=default,
        )
        return default


def commit_chunk_size(override: int | None = None) -> int:
    """Return the number of writes per atomic commit, clamped to ``1..500``."""

    size = override if override is not None else _env_int(
        "BR_COMMIT_CHUNK_SIZE", DEFAULT_COMMIT_CHUNK_SIZE
    )
    return max(1, min(size, MAX_COMMIT_CHUNK_SIZE))


def suggestion_chunk_size(override: int | None = None) -> int:
    """Return the number of transactions sent per classifier request."""

    size = override if override is not None else _env_int(
        "BR_SUGGEST_CHUNK_SIZE", DEFAULT_SUGGEST_CHUNK_SIZE
    )
    return max(1, size)


def classifier_model(override: str | None = None) -> str:
    if override:
        return override
    return (os.getenv("BR_CLASSIFIER_MODEL") or "").strip() or DEFAULT_CLASSIFIER_MODEL


__all__ = [
    "DEFAULT_CLASSIFIER_MODEL",
    "DEFAULT_COMMIT_CHUNK_SIZE",
    "DEFAULT_SUGGEST_CHUNK_SIZE",
    "MAX_COMMIT_CHUNK_SIZE",
    "classifier_model",
    "commit_chunk_size",
    "suggestion_chunk_size",
]
