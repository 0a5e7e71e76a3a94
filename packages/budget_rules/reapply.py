# ruff: noqa: I001
"""Propagate a rule change to an owner's transaction history.

After a rule for some normalized key is created, edited, or deleted, every
transaction of the owner whose normalized description contains that key is
rewritten to reflect the current winner for the key, or reverted to its raw
description when no rule is left. A winner without a category clears the
row's category; forward categorization (``categorize``) never does.

The run snapshots rules and transactions once, then streams chunked writes.
It is at-least-once rather than atomic: a failed chunk leaves earlier chunks
applied. Only rows whose stored state differs from the target are written,
so running it again after success changes nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from db.client import session_scope
from db.models.budget import SYSTEM_SCOPE, BrMappingRule

from .batching import apply_writes
from .categories import CategoryResolver
from .categorize import load_transactions, write_for_rule
from .errors import CategoryResolutionError
from .logging_setup import get_logger, log_event
from .models import ReapplyReport, TransactionWrite, parse_category_ref
from .normalize import contains_key, normalize_match_text
from .resolver import build_index, match
from .rule_store import rules_for_key

_logger = get_logger("budget_rules.reapply")


def _tier(rule: BrMappingRule, owner_id: str) -> int:
    if rule.owner_scope == owner_id:
        return 0
    if parse_category_ref(rule.category_id, rule.category_name) is not None:
        return 1
    return 2


def pick_winner(rules: Iterable[BrMappingRule], owner_id: str) -> BrMappingRule | None:
    """Choose the rule that governs a key for ``owner_id``.

    Precedence: the owner's personal rule, then a SYSTEM rule carrying a
    category, then a SYSTEM rule without one. Within a tier the most
    recently updated rule wins, then the lowest id. Rules belonging to other
    owners are ignored. Returns ``None`` when nothing applies.
    """

    candidates = [r for r in rules if r.owner_scope in (owner_id, SYSTEM_SCOPE)]
    if not candidates:
        return None
    # Stable sorts, least significant key first.
    candidates.sort(key=lambda r: r.id or "")
    candidates.sort(key=lambda r: r.updated_at or datetime.min, reverse=True)
    candidates.sort(key=lambda r: _tier(r, owner_id))
    return candidates[0]


def reapply_rule_change(
    owner_id: str,
    match_text: str,
    *,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> ReapplyReport:
    """Rewrite the owner's transactions affected by a change to ``match_text``.

    Parameters
    ----------
    owner_id:
        Owner whose history is rewritten.
    match_text:
        Match text (raw or normalized) of the rule that changed.
    chunk_size:
        Writes per commit; defaults to ``BR_COMMIT_CHUNK_SIZE``.

    Returns
    -------
    ReapplyReport
        ``written.not_updated`` is non-zero when a chunk failed part-way.

    Notes
    -----
    A transaction that contains the key but is claimed by a longer rule is
    left to that rule. When the key has no rule left and a shorter rule
    still matches a transaction, that rule's mapping is applied instead of a
    plain reversion.
    """

    key = normalize_match_text(match_text)
    if not key:
        raise ValueError("match_text must contain at least one non-space character")

    writes: list[TransactionWrite] = []
    unresolved: list[tuple[str, str]] = []
    affected = 0
    with session_scope(database_url=database_url) as session:
        winner = pick_winner(rules_for_key(session, owner_id, key), owner_id)
        rule_set = build_index(session, owner_id)
        resolver = CategoryResolver(session, owner_id)
        winner_id = winner.id if winner is not None else None

        for tx in load_transactions(session, owner_id):
            if not contains_key(normalize_match_text(tx.raw_description), key):
                continue
            effective = match(rule_set, tx.raw_description)
            effective_key = (
                normalize_match_text(effective.normalized_match_text) if effective else ""
            )
            if winner is not None:
                if effective is not None and effective_key != key:
                    continue
                target: BrMappingRule | None = winner
            elif effective is None:
                target = None
            elif len(effective_key) < len(key):
                target = effective
            else:
                continue

            affected += 1
            if target is None:
                write = TransactionWrite.reverted(tx.id, tx.raw_description)
            else:
                try:
                    write = write_for_rule(tx, target, resolver, clear_category=True)
                except CategoryResolutionError as e:
                    log_event(
                        _logger,
                        "reapply:unresolved",
                        level=logging.WARNING,
                        tx=tx.id,
                        rule=target.id,
                        error=e,
                    )
                    unresolved.append((tx.id, str(e)))
                    continue
            if write.differs_from(tx):
                writes.append(write)

    log_event(
        _logger,
        "reapply:planned",
        owner=owner_id,
        key=key,
        winner=winner_id,
        affected=affected,
        writes=len(writes),
    )
    written = apply_writes(
        writes, event="reapply", database_url=database_url, chunk_size=chunk_size
    )
    return ReapplyReport(
        owner_id=owner_id,
        normalized_text=key,
        winner_rule_id=winner_id,
        affected=affected,
        unresolved=tuple(unresolved),
        written=written,
    )


__all__ = ["pick_winner", "reapply_rule_change"]
