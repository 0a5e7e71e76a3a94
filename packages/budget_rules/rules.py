# ruff: noqa: I001
"""Rule lifecycle and manual mapping operations.

Every rule write commits first and then runs the retroactive reapplication
for the affected owners, so one rule edit propagates to the whole history.
The two steps are separate commits: a second edit racing in between can
leave a stale reapplication, which the next reapplication for the same key
repairs.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from db.client import session_scope
from db.models.budget import SYSTEM_SCOPE, BrDefaultCategory, BrTransaction
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import rule_store
from .batching import apply_writes
from .categories import CategoryResolver, normalize_name, validate_name
from .categorize import load_transactions
from .logging_setup import get_logger, log_event
from .models import (
    PENDING_PREFIX,
    ByName,
    CategoryRef,
    Existing,
    MapResult,
    PendingDefault,
    ReapplyReport,
    RuleChange,
    SeedReport,
    TransactionWrite,
    parse_category_ref,
)
from .normalize import contains_key, normalize_match_text
from .reapply import reapply_rule_change

_logger = get_logger("budget_rules.rules")


def category_ref_from_text(text: str | None) -> CategoryRef | None:
    """Interpret user input: ``NEW:<name>`` is a pending default, anything else a name."""

    s = (text or "").strip()
    if not s:
        return None
    if s.startswith(PENDING_PREFIX):
        name = s[len(PENDING_PREFIX) :].strip()
        return PendingDefault(name) if name else None
    return ByName(s)


def _ref_for_scope(session: Session, scope: str, ref: CategoryRef | None) -> CategoryRef | None:
    """Pin a reference to what a rule in ``scope`` may store.

    Personal rules store a concrete category of the owner (created on demand).
    SYSTEM rules cannot point at any owner's category, so names become
    pending defaults.
    """

    if ref is None:
        return None
    if scope == SYSTEM_SCOPE:
        if not ref.name:
            raise ValueError("SYSTEM rules need a category name, not a bare id")
        return PendingDefault(ref.name)
    resolved = CategoryResolver(session, scope).resolve(ref)
    return Existing(resolved.id, resolved.name)


def _owners_with_transactions(session: Session) -> list[str]:
    return list(
        session.execute(select(BrTransaction.owner_id).distinct().order_by(BrTransaction.owner_id))
        .scalars()
        .all()
    )


def reapply_keys(
    scope: str,
    keys: Sequence[str],
    *,
    reapply_owners: Iterable[str] | None = None,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> tuple[ReapplyReport, ...]:
    """Reapply every key in ``keys`` for the owners a rule in ``scope`` governs.

    A personal scope reapplies that owner only; SYSTEM reapplies
    ``reapply_owners`` or, by default, every owner with transactions.
    """

    if scope != SYSTEM_SCOPE:
        owners: list[str] = [scope]
    elif reapply_owners is not None:
        owners = list(reapply_owners)
    else:
        with session_scope(database_url=database_url) as session:
            owners = _owners_with_transactions(session)

    reports: list[ReapplyReport] = []
    for owner in owners:
        for key in dict.fromkeys(keys):
            reports.append(
                reapply_rule_change(owner, key, database_url=database_url, chunk_size=chunk_size)
            )
    return tuple(reports)


def create_rule(
    scope: str,
    match_text: str,
    mapped_description: str | None,
    category: CategoryRef | None,
    *,
    source: str = "manual",
    reapply_owners: Iterable[str] | None = None,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> RuleChange:
    """Create (or update in place) the rule for ``match_text`` in ``scope``.

    ``scope`` is an owner id or ``SYSTEM``. For SYSTEM rules
    ``reapply_owners`` limits which owners are reapplied; by default every
    owner with transactions is.
    """

    with session_scope(database_url=database_url) as session:
        stored_ref = _ref_for_scope(session, scope, category)
        row, created = rule_store.upsert_rule(
            session,
            scope=scope,
            match_text=match_text,
            mapped_description=mapped_description,
            category=stored_ref,
            source=source,
        )
        rule_id, key = row.id, row.normalized_match_text

    reports = reapply_keys(
        scope,
        [key],
        reapply_owners=reapply_owners,
        database_url=database_url,
        chunk_size=chunk_size,
    )
    return RuleChange(
        rule_id=rule_id, scope=scope, normalized_text=key, created=created, reapplied=reports
    )


_UNSET: Any = object()


def update_rule(
    rule_id: str,
    *,
    match_text: str | None = None,
    mapped_description: str | None = None,
    category: CategoryRef | None = _UNSET,
    reapply_owners: Iterable[str] | None = None,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> RuleChange:
    """Edit a rule; omitted fields keep their current value.

    Pass ``category=None`` to remove the rule's category. When the new match
    text collides with another rule of the same scope, that rule absorbs the
    edit and this one is deleted. Both the old and the new key are reapplied.
    Raises ``LookupError`` for unknown ids.
    """

    with session_scope(database_url=database_url) as session:
        row = rule_store.get_rule(session, rule_id)
        if row is None:
            raise LookupError(f"mapping rule not found: {rule_id!r}")
        scope, source = row.owner_scope, row.source
        old_key = row.normalized_match_text
        new_text = match_text if match_text is not None else row.match_text
        new_key = normalize_match_text(new_text)
        if not new_key:
            raise ValueError("match_text must contain at least one non-space character")
        description = (
            mapped_description if mapped_description is not None else row.mapped_description
        )
        if category is _UNSET:
            stored_ref = parse_category_ref(row.category_id, row.category_name)
        else:
            stored_ref = _ref_for_scope(session, scope, category)

        if new_key != old_key:
            other = rule_store.find_by_normalized_text(session, scope, new_key)
            if other is not None:
                session.delete(row)
                session.flush()
            else:
                row.normalized_match_text = new_key
                session.flush()
        target, _ = rule_store.upsert_rule(
            session,
            scope=scope,
            match_text=new_text,
            mapped_description=description,
            category=stored_ref,
            source=source,
        )
        target_id = target.id

    reports = reapply_keys(
        scope,
        [old_key, new_key],
        reapply_owners=reapply_owners,
        database_url=database_url,
        chunk_size=chunk_size,
    )
    return RuleChange(
        rule_id=target_id, scope=scope, normalized_text=new_key, created=False, reapplied=reports
    )


def delete_rule(
    rule_id: str,
    *,
    reapply_owners: Iterable[str] | None = None,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> RuleChange:
    """Delete a rule and reapply its key (reverting or falling back to SYSTEM)."""

    with session_scope(database_url=database_url) as session:
        row = rule_store.delete_rule(session, rule_id)
        scope, key = row.owner_scope, row.normalized_match_text

    reports = reapply_keys(
        scope,
        [key],
        reapply_owners=reapply_owners,
        database_url=database_url,
        chunk_size=chunk_size,
    )
    return RuleChange(
        rule_id=None, scope=scope, normalized_text=key, created=False, reapplied=reports
    )


def revert_to_system(
    owner_id: str,
    match_text: str,
    *,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> RuleChange:
    """Remove the owner's personal rule for ``match_text`` so the SYSTEM rule shows through."""

    key = normalize_match_text(match_text)
    with session_scope(database_url=database_url) as session:
        row = rule_store.find_by_normalized_text(session, owner_id, key)
        if row is None:
            raise LookupError(f"no personal rule for {match_text!r} and owner {owner_id!r}")
        rule_id = row.id
    return delete_rule(rule_id, database_url=database_url, chunk_size=chunk_size)


def map_transaction(
    owner_id: str,
    transaction_id: str,
    category: CategoryRef,
    mapped_description: str | None = None,
    *,
    match_text: str | None = None,
    save_rule: bool = False,
    update_similar: bool = False,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> MapResult:
    """Manually categorize one transaction, optionally spreading the mapping.

    The chosen transaction is always updated (suggestions cleared). With
    ``save_rule`` a personal rule keyed on ``match_text`` (default: the raw
    description) is upserted and reapplied. With ``update_similar`` the
    owner's other transactions whose normalized description contains the
    match text receive the same mapping directly, in chunks.

    Raises ``LookupError`` when the transaction does not belong to the owner
    and ``CategoryResolutionError`` when the category cannot be resolved.
    """

    with session_scope(database_url=database_url) as session:
        tx = session.get(BrTransaction, transaction_id)
        if tx is None or tx.owner_id != owner_id:
            raise LookupError(f"transaction not found for owner {owner_id!r}: {transaction_id!r}")
        resolved = CategoryResolver(session, owner_id).resolve(category, amount_hint=tx.amount)
        description = (mapped_description or "").strip() or tx.raw_description
        write = TransactionWrite.categorized(tx.id, resolved, description)
        for k, v in write.values().items():
            setattr(tx, k, v)
        rule_text = (match_text or "").strip() or tx.raw_description

    rule_change: RuleChange | None = None
    if save_rule:
        rule_change = create_rule(
            owner_id,
            rule_text,
            description,
            Existing(resolved.id, resolved.name),
            database_url=database_url,
            chunk_size=chunk_size,
        )

    similar = None
    if update_similar:
        key = normalize_match_text(rule_text)
        with session_scope(database_url=database_url) as session:
            writes = []
            for other in load_transactions(session, owner_id):
                if other.id == transaction_id:
                    continue
                if not contains_key(normalize_match_text(other.raw_description), key):
                    continue
                w = TransactionWrite.categorized(other.id, resolved, description)
                if w.differs_from(other):
                    writes.append(w)
        similar = apply_writes(
            writes, event="map_similar", database_url=database_url, chunk_size=chunk_size
        )

    log_event(
        _logger,
        "rules:mapped",
        owner=owner_id,
        tx=transaction_id,
        category=resolved.name,
        save_rule=save_rule,
        similar=similar.applied if similar is not None else 0,
    )
    return MapResult(
        transaction_id=transaction_id,
        category=resolved,
        mapped_description=description,
        rule=rule_change,
        similar=similar,
    )


# ---------------------------
# System seed
# ---------------------------


def _load_seed(source: Path | str | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(source, Mapping):
        return source
    with Path(source).open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, Mapping):
        raise ValueError("seed file must contain a JSON object")
    return data


def seed_system_defaults(
    source: Path | str | Mapping[str, Any],
    *,
    database_url: str | None = None,
) -> SeedReport:
    """Load default category names and SYSTEM rules, idempotently.

    Expected shape::

        {
          "default_categories": ["Groceries", "Eating Out", ...],
          "rules": [
            {"match_text": "checkers", "mapped_description": "Checkers",
             "category": "Groceries"}
          ]
        }

    Rule categories are stored as pending defaults. No reapplication runs;
    use ``update_all_mappings`` afterwards.
    """

    data = _load_seed(source)
    names = data.get("default_categories") or []
    rules = data.get("rules") or []

    created = updated = 0
    seen_names: set[str] = set()
    with session_scope(database_url=database_url) as session:
        for order, raw_name in enumerate(names):
            name = normalize_name(str(raw_name))
            v = validate_name(name)
            key = normalize_match_text(name)
            if not v.ok or key in seen_names:
                log_event(
                    _logger,
                    "seed:category_skipped",
                    level=logging.WARNING,
                    name=raw_name,
                    reason=v.reason,
                )
                continue
            seen_names.add(key)
            row = session.get(BrDefaultCategory, key)
            if row is None:
                session.add(BrDefaultCategory(name_norm=key, name=name, sort_order=order))
            else:
                row.name = name
                row.sort_order = order

        for item in rules:
            match_text = str(item.get("match_text") or "").strip()
            if not normalize_match_text(match_text):
                log_event(_logger, "seed:rule_skipped", level=logging.WARNING, item=repr(item))
                continue
            category_name = str(item.get("category") or "").strip()
            _, was_created = rule_store.upsert_rule(
                session,
                scope=SYSTEM_SCOPE,
                match_text=match_text,
                mapped_description=item.get("mapped_description"),
                category=PendingDefault(category_name) if category_name else None,
                source="seed",
            )
            if was_created:
                created += 1
            else:
                updated += 1

    log_event(
        _logger,
        "seed:summary",
        default_categories=len(seen_names),
        rules_created=created,
        rules_updated=updated,
    )
    return SeedReport(
        default_categories=len(seen_names), rules_created=created, rules_updated=updated
    )


__all__ = [
    "category_ref_from_text",
    "create_rule",
    "delete_rule",
    "map_transaction",
    "reapply_keys",
    "revert_to_system",
    "seed_system_defaults",
    "update_rule",
]
