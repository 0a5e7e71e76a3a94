# ruff: noqa: I001
"""Import of typed statement rows into ``br_transactions``.

Rows arrive already extracted from the statement file by an external parser
as mappings with ``date``, ``description`` and ``amount`` (optionally
``id``). Rows whose date or amount cannot be parsed, or whose description is
blank, are logged and skipped. Survivors are categorized against the owner's
rule set before insertion and written in independently committed chunks.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

from db.client import session_scope
from db.models.budget import BrTransaction
from sqlalchemy.orm import Session

from .batching import commit_in_chunks
from .categories import CategoryResolver
from .categorize import categorize
from .logging_setup import get_logger, log_event
from .models import ImportReport
from .resolver import build_index

_logger = get_logger("budget_rules.persistence")


def _to_decimal_2(raw: Any) -> Decimal | None:
    if raw is None or isinstance(raw, bool):
        return None
    s = str(raw).strip().replace(",", "")
    if not s:
        return None
    try:
        d = Decimal(s)
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _to_date(raw: Any) -> date | None:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if raw is None:
        return None
    s = str(raw).strip()
    if not s:
        return None
    try:
        # Expect YYYY-MM-DD
        parts = [int(p) for p in s.split("-")]
        if len(parts) != 3:
            return None
        return date(parts[0], parts[1], parts[2])
    except ValueError:
        return None


def _norm_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


def parse_row(
    owner_id: str, row: Mapping[str, Any], *, statement_id: str | None
) -> BrTransaction | None:
    """Build an unsaved transaction from ``row`` or return ``None`` when unusable."""

    tx_date = _to_date(row.get("date"))
    amount = _to_decimal_2(row.get("amount"))
    description = _norm_str(row.get("description"))
    if tx_date is None or amount is None or description is None:
        log_event(
            _logger,
            "import:row_skipped",
            level=logging.WARNING,
            owner=owner_id,
            date=row.get("date"),
            amount=row.get("amount"),
            description=row.get("description"),
        )
        return None
    return BrTransaction(
        id=_norm_str(row.get("id")) or uuid.uuid4().hex,
        owner_id=owner_id,
        statement_id=statement_id,
        date=tx_date,
        raw_description=description,
        amount=amount,
        category_id=None,
        category_name=None,
        mapped_description=None,
        suggested_category_id=None,
        suggested_category_name=None,
        suggested_merchant=None,
    )


def _insert_chunk(session: Session, chunk: Sequence[BrTransaction]) -> None:
    session.add_all(chunk)


def import_transactions(
    owner_id: str,
    rows: Iterable[Mapping[str, Any]],
    *,
    statement_id: str | None = None,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> ImportReport:
    """Parse, categorize, and insert statement rows for ``owner_id``.

    Categories referenced by matching rules are created in the planning
    session, which commits before any insert chunk runs.
    """

    materialized = list(rows)
    parsed: list[BrTransaction] = []
    for row in materialized:
        tx = parse_row(owner_id, row, statement_id=statement_id)
        if tx is not None:
            parsed.append(tx)

    with session_scope(database_url=database_url) as session:
        rule_set = build_index(session, owner_id)
        resolver = CategoryResolver(session, owner_id)
        result = categorize(parsed, rule_set, resolver, mode="unmapped")

    by_id = {tx.id: tx for tx in parsed}
    for write in result.writes:
        tx = by_id[write.transaction_id]
        for k, v in write.changes.items():
            setattr(tx, k, v)

    written = commit_in_chunks(
        parsed,
        _insert_chunk,
        event="import",
        database_url=database_url,
        chunk_size=chunk_size,
    )
    skipped = len(materialized) - len(parsed)
    categorized = sum(1 for w in result.writes if w.changes.get("category_id"))
    log_event(
        _logger,
        "import:summary",
        owner=owner_id,
        received=len(materialized),
        skipped=skipped,
        categorized=categorized,
        inserted=written.applied,
    )
    return ImportReport(
        owner_id=owner_id,
        received=len(materialized),
        skipped=skipped,
        categorized=categorized,
        written=written,
    )


__all__ = ["import_transactions", "parse_row"]
