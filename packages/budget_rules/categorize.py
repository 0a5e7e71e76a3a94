# ruff: noqa: I001
"""Apply a resolved rule set to transactions.

Public API:
    - :func:`write_for_rule`: the write a single rule implies for a transaction.
    - :func:`categorize`: plan writes for a batch (pure apart from category
      creation through the resolver).
    - :func:`update_all_mappings`: run ``categorize`` over an owner's history
      and commit the result in chunks.

Two modes:

- ``"unmapped"`` only looks at transactions without a category; already
  categorized rows (manual mappings included) are never touched.
- ``"rescan"`` looks at every transaction but only writes rows that a rule
  positively matches; a miss never clears anything.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from db.client import session_scope
from db.models.budget import BrTransaction
from sqlalchemy import select
from sqlalchemy.orm import Session

from .batching import apply_writes
from .categories import CategoryResolver
from .errors import CategoryResolutionError
from .logging_setup import get_logger, log_event
from .models import (
    CategorizationResult,
    CategorizeMode,
    MappingUpdateReport,
    TransactionWrite,
    parse_category_ref,
)
from .resolver import ResolvedRuleSet, build_index, match

_logger = get_logger("budget_rules.categorize")

_MODES: tuple[str, ...] = ("unmapped", "rescan")


def write_for_rule(
    tx: Any, rule: Any, resolver: CategoryResolver, *, clear_category: bool = False
) -> TransactionWrite:
    """Return the write that makes ``tx`` reflect ``rule``.

    A rule without a category sets the display text and, by default, leaves
    the stored category alone. With ``clear_category=True`` it also clears the
    category, which is what reapplying an edited rule needs: the rule the row
    was categorized by no longer names one. Raises ``CategoryResolutionError``
    when the rule's category cannot be resolved.
    """

    ref = parse_category_ref(rule.category_id, rule.category_name)
    if ref is None:
        if clear_category:
            return TransactionWrite.uncategorized(tx.id, rule.mapped_description)
        return TransactionWrite.described(tx.id, rule.mapped_description)
    category = resolver.resolve(ref, amount_hint=tx.amount)
    return TransactionWrite.categorized(tx.id, category, rule.mapped_description)


def categorize(
    transactions: Iterable[Any],
    rule_set: ResolvedRuleSet,
    resolver: CategoryResolver,
    *,
    mode: CategorizeMode = "unmapped",
) -> CategorizationResult:
    """Plan categorization writes for ``transactions``.

    Parameters
    ----------
    transactions:
        Objects exposing ``id``, ``raw_description``, ``amount`` and the
        transaction category/suggestion fields (ORM rows or equivalents).
    rule_set:
        Output of :func:`budget_rules.resolver.build_index`.
    resolver:
        Category resolver for the same owner as ``rule_set``.
    mode:
        ``"unmapped"`` or ``"rescan"`` (see module docstring).

    Returns
    -------
    CategorizationResult
        Only writes that change the stored row are returned, so re-running
        over unchanged data yields no writes.
    """

    if mode not in _MODES:
        raise ValueError(f"mode must be one of {_MODES}, got {mode!r}")

    result = CategorizationResult()
    for tx in transactions:
        if mode == "unmapped" and tx.category_id is not None:
            continue
        rule = match(rule_set, tx.raw_description)
        if rule is None:
            continue
        result.matched += 1
        try:
            write = write_for_rule(tx, rule, resolver)
        except CategoryResolutionError as e:
            log_event(
                _logger,
                "categorize:unresolved",
                level=logging.WARNING,
                tx=tx.id,
                rule=rule.id,
                error=e,
            )
            result.unresolved.append((tx.id, str(e)))
            continue
        if write.differs_from(tx):
            result.writes.append(write)
    return result


def load_transactions(session: Session, owner_id: str) -> list[BrTransaction]:
    return list(
        session.execute(
            select(BrTransaction)
            .where(BrTransaction.owner_id == owner_id)
            .order_by(BrTransaction.date, BrTransaction.id)
        )
        .scalars()
        .all()
    )


def update_all_mappings(
    owner_id: str,
    *,
    mode: CategorizeMode = "unmapped",
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> MappingUpdateReport:
    """Categorize the owner's whole history and commit the writes in chunks.

    Categories materialized by the resolver commit with the planning session,
    before any transaction write references them.
    """

    with session_scope(database_url=database_url) as session:
        rows = load_transactions(session, owner_id)
        rule_set = build_index(session, owner_id)
        resolver = CategoryResolver(session, owner_id)
        result = categorize(rows, rule_set, resolver, mode=mode)

    written = apply_writes(
        result.writes, event="categorize", database_url=database_url, chunk_size=chunk_size
    )
    log_event(
        _logger,
        "categorize:summary",
        owner=owner_id,
        mode=mode,
        scanned=len(rows),
        matched=result.matched,
        writes=len(result.writes),
        applied=written.applied,
        unresolved=len(result.unresolved),
    )
    return MappingUpdateReport(
        owner_id=owner_id,
        mode=mode,
        scanned=len(rows),
        matched=result.matched,
        unresolved=tuple(result.unresolved),
        written=written,
    )


__all__ = ["categorize", "load_transactions", "update_all_mappings", "write_for_rule"]
