"""Logging for the ``budget_rules`` package.

Every log line the engine emits is an *event*: a short ``area:action`` name
followed by ``key=value`` fields, e.g.::

    reapply:chunk_committed index=0 size=450 applied=450 total=912

Modules obtain a logger with ``get_logger("budget_rules.<module>")`` and
emit through ``log_event(...)``, which renders the fields consistently.
Handlers are attached only by ``configure_logging(...)``, which entrypoints
(the CLI) call once; until then the package logger carries a ``NullHandler``
and library use stays silent.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from typing import IO, Any

_PKG_LOGGER_NAME = "budget_rules"
_LEVEL_ENV = "BR_LOG_LEVEL"
_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(message)s"
_CONFIGURED = False


def _parse_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        level = level.strip().upper()
        if level.isdigit():
            return int(level)
        numeric = getattr(logging, level, None)
        if isinstance(numeric, int):
            return numeric
        return logging.INFO
    env_val = os.getenv(_LEVEL_ENV)
    if env_val:
        return _parse_level(env_val)
    return logging.INFO


def _render(value: Any) -> str:
    if isinstance(value, BaseException):
        value = f"{value.__class__.__name__}: {value}"
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, str):
        # Quote anything that would break ``key=value`` tokenization.
        if not value or any(c.isspace() for c in value) or "=" in value:
            return repr(value)
        return value
    if value is None:
        return "-"
    return str(value)


def format_fields(fields: Mapping[str, Any]) -> str:
    """Render ``fields`` as space-separated ``key=value`` pairs in insertion order.

    >>> format_fields({"owner": "u1", "key": "uber eats", "applied": 3})
    "owner=u1 key='uber eats' applied=3"
    """

    return " ".join(f"{k}={_render(v)}" for k, v in fields.items())


def log_event(
    logger: logging.Logger, event: str, /, *, level: int = logging.INFO, **fields: Any
) -> None:
    """Emit ``event`` with ``fields`` at ``level`` on ``logger``.

    Rendering is skipped entirely when ``level`` is disabled.
    """

    if not logger.isEnabledFor(level):
        return
    line = f"{event} {format_fields(fields)}" if fields else event
    logger.log(level, "%s", line, stacklevel=2)


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Attach a single stream handler to the package logger, once per process.

    Parameters
    ----------
    level:
        ``int`` or level name; ``None`` reads ``BR_LOG_LEVEL`` and falls back
        to ``INFO``.
    fmt:
        Format string; defaults to ``"%(asctime)s %(levelname)s %(message)s"``
        since the message already carries the event name.
    stream:
        Handler stream; ``sys.stderr`` at call time when omitted.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in list(logger.handlers):
        if isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    resolved = _parse_level(level)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))

    logger.setLevel(resolved)
    logger.addHandler(handler)
    logger.propagate = False

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return ``name``'s logger, keeping the package silent until configured."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "format_fields", "get_logger", "log_event"]
