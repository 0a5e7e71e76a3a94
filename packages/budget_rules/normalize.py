"""Canonical text form used for every rule key and description comparison."""

from __future__ import annotations

import re

_WS_RE = re.compile(r"\s+")


def normalize_match_text(text: str | None) -> str:
    """Lowercase, spell out ``&`` as ``and``, collapse whitespace and trim.

    Total and idempotent: ``normalize_match_text(normalize_match_text(x))``
    equals ``normalize_match_text(x)``. ``None`` normalizes to ``""``.

    >>> normalize_match_text("Mugg & Bean")
    'mugg and bean'
    >>> normalize_match_text("  POS   PURCHASE\\tCHECKERS ")
    'pos purchase checkers'
    """

    if not text:
        return ""
    s = text.lower().replace("&", " and ")
    return _WS_RE.sub(" ", s).strip()


def contains_key(normalized_description: str, key: str) -> bool:
    """Return True when ``key`` equals or occurs inside the description.

    Both arguments must already be normalized. An empty key never matches.
    """

    return bool(key) and key in normalized_description


__all__ = ["contains_key", "normalize_match_text"]
