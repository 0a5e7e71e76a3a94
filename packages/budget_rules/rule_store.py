"""Repository for mapping rules scoped to ``SYSTEM`` or a single owner.

No precedence logic lives here; ``resolver`` and ``reapply`` decide which
rule wins. The one invariant enforced is the natural key: a scope never holds
two rules with the same normalized match text, so ``upsert_rule`` updates in
place instead of inserting a duplicate.
"""

from __future__ import annotations

from datetime import UTC, datetime

from db.models.budget import SYSTEM_SCOPE, BrMappingRule
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .logging_setup import get_logger, log_event
from .models import CategoryRef, encode_category_ref
from .normalize import normalize_match_text

_logger = get_logger("budget_rules.rule_store")

_SOURCES = ("manual", "suggestion", "seed", "admin")


def list_rules(session: Session, scope: str) -> list[BrMappingRule]:
    """Return every rule in ``scope`` ordered by normalized text."""

    return list(
        session.execute(
            select(BrMappingRule)
            .where(BrMappingRule.owner_scope == scope)
            .order_by(BrMappingRule.normalized_match_text, BrMappingRule.id)
        )
        .scalars()
        .all()
    )


def get_rule(session: Session, rule_id: str) -> BrMappingRule | None:
    return session.get(BrMappingRule, rule_id)


def find_by_normalized_text(
    session: Session, scope: str, normalized_text: str
) -> BrMappingRule | None:
    return (
        session.execute(
            select(BrMappingRule).where(
                BrMappingRule.owner_scope == scope,
                BrMappingRule.normalized_match_text == normalized_text,
            )
        )
        .scalars()
        .first()
    )


def rules_for_key(session: Session, owner_id: str, normalized_text: str) -> list[BrMappingRule]:
    """Return the SYSTEM and ``owner_id`` rules sharing ``normalized_text``."""

    return list(
        session.execute(
            select(BrMappingRule).where(
                or_(
                    BrMappingRule.owner_scope == SYSTEM_SCOPE,
                    BrMappingRule.owner_scope == owner_id,
                ),
                BrMappingRule.normalized_match_text == normalized_text,
            )
        )
        .scalars()
        .all()
    )


def upsert_rule(
    session: Session,
    *,
    scope: str,
    match_text: str,
    mapped_description: str | None,
    category: CategoryRef | None,
    source: str = "manual",
) -> tuple[BrMappingRule, bool]:
    """Insert a rule, or update the one already holding the same normalized key.

    Returns ``(row, created)``. ``mapped_description`` defaults to the trimmed
    match text. Raises ``ValueError`` when the match text normalizes to an
    empty string.
    """

    key = normalize_match_text(match_text)
    if not key:
        raise ValueError("match_text must contain at least one non-space character")
    if source not in _SOURCES:
        raise ValueError(f"Invalid rule source {source!r}; expected one of {_SOURCES}")
    description = (mapped_description or "").strip() or match_text.strip()
    category_id, category_name = encode_category_ref(category)

    row = find_by_normalized_text(session, scope, key)
    created = row is None
    if row is None:
        row = BrMappingRule(owner_scope=scope, normalized_match_text=key)
        session.add(row)
    else:
        row.updated_at = datetime.now(UTC)
    row.match_text = match_text.strip()
    row.mapped_description = description
    row.category_id = category_id
    row.category_name = category_name
    row.source = source
    session.flush()

    log_event(
        _logger,
        "rule_store:upsert",
        scope=scope,
        key=key,
        created=created,
        category=category_name,
    )
    return row, created


def delete_rule(session: Session, rule_id: str) -> BrMappingRule:
    """Delete a rule and return the (now detached) row.

    Raises ``LookupError`` for unknown ids.
    """

    row = get_rule(session, rule_id)
    if row is None:
        raise LookupError(f"mapping rule not found: {rule_id!r}")
    session.delete(row)
    session.flush()
    log_event(
        _logger,
        "rule_store:delete",
        scope=row.owner_scope,
        key=row.normalized_match_text,
        id=rule_id,
    )
    return row


__all__ = [
    "delete_rule",
    "find_by_normalized_text",
    "get_rule",
    "list_rules",
    "rules_for_key",
    "upsert_rule",
]
