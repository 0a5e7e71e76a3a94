# ruff: noqa: I001
"""Classifier suggestions and the review/approval workflow.

Public API:
    - :func:`request_suggestions`: classify unmapped transactions in chunks
      and store the proposals in the ``suggested_*`` fields only.
    - :func:`parse_suggestions`: tolerant parser for the classifier output.
    - :func:`build_suggestion_batches`, :func:`propose_rules`: review views.
    - :func:`accept_one`, :func:`reject_one`, :func:`bulk_approve`,
      :func:`approve_proposed_rule`: promote or discard proposals.

Suggestions are non-authoritative: nothing here writes ``category_id``
except the explicit accept/approve operations.
"""

from __future__ import annotations

import json
import logging
import random
import re
import time
from collections.abc import Collection, Iterable, Sequence
from typing import Any

from openai import OpenAI
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from db.client import session_scope
from db.models.budget import BrTransaction

from . import config, prompting, rule_store
from .batching import apply_writes, chunked
from .categories import CategoryResolver, category_choices
from .categorize import load_transactions
from .errors import CategoryResolutionError, ClassifierResponseError
from .logging_setup import get_logger, log_event
from .models import (
    ApprovalReport,
    BulkWriteReport,
    CategoryRef,
    ClassifierSuggestion,
    Existing,
    ProposedRule,
    ReapplyReport,
    ResolvedCategory,
    RuleChange,
    SuggestionBatch,
    SuggestionItem,
    SuggestionRunReport,
    TransactionWrite,
    encode_category_ref,
    parse_category_ref,
)
from .normalize import contains_key, normalize_match_text
from .rules import create_rule, reapply_keys

# ---- Tunables (private) ------------------------------------------------------

_MAX_ATTEMPTS: int = 3
_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
_JITTER_PCT: float = 0.20
_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)

_logger = get_logger("budget_rules.suggestions")


# ---- Classifier transport ----------------------------------------------------


def _create_client() -> OpenAI:
    return OpenAI()


def _is_retryable(exc: BaseException) -> bool:
    """Return True only for HTTP 429 and 5xx errors."""

    sc = getattr(exc, "status_code", None)
    return isinstance(sc, int) and (sc == 429 or 500 <= sc < 600)


def _sleep_backoff(attempt_no: int) -> None:
    if attempt_no - 1 < len(_BACKOFF_SCHEDULE_SEC):
        base = _BACKOFF_SCHEDULE_SEC[attempt_no - 1]
    else:
        base = _BACKOFF_SCHEDULE_SEC[-1]
    jitter = base * _JITTER_PCT
    time.sleep(max(0.0, base + random.uniform(-jitter, jitter)))


def _extract_response_text(resp: Any) -> str:
    """Return the text of a Responses API result.

    Prefers ``resp.output_text`` and falls back to
    ``resp.output[0].content[0].text``.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        try:
            first = resp.output[0] if getattr(resp, "output", None) else None
            content = getattr(first, "content", None)
            if content:
                txt_obj = getattr(content[0], "text", None)
                if isinstance(txt_obj, str):
                    text = txt_obj
                else:
                    maybe_val = getattr(txt_obj, "value", None)
                    if isinstance(maybe_val, str):
                        text = maybe_val
        except (AttributeError, IndexError, TypeError):
            text = None
    if not text or not isinstance(text, str):
        raise ClassifierResponseError("Unexpected Responses API shape; no text output")
    return text


def parse_suggestions(text: str) -> list[ClassifierSuggestion]:
    """Parse the classifier's JSON array.

    Accepts a bare array or an array embedded in surrounding prose. Elements
    that do not validate are logged and dropped. Raises
    ``ClassifierResponseError`` when no array can be decoded at all.
    """

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        m = _ARRAY_RE.search(text or "")
        if m is None:
            raise ClassifierResponseError("classifier output contains no JSON array") from None
        try:
            decoded = json.loads(m.group(0))
        except json.JSONDecodeError as e:
            raise ClassifierResponseError("classifier output is not valid JSON") from e
    if not isinstance(decoded, list):
        raise ClassifierResponseError(
            f"classifier output must be a JSON array, got {type(decoded).__name__}"
        )

    out: list[ClassifierSuggestion] = []
    for item in decoded:
        try:
            out.append(ClassifierSuggestion.model_validate(item))
        except ValidationError as e:
            log_event(
                _logger,
                "suggest:item_invalid",
                level=logging.WARNING,
                item=repr(item),
                errors=e.error_count(),
            )
    return out


def _classify_chunk(
    client: OpenAI,
    chunk: Sequence[BrTransaction],
    category_names: Sequence[str],
    *,
    model: str,
    chunk_index: int,
) -> list[ClassifierSuggestion]:
    user_content = prompting.build_user_content(
        [(tx.id, tx.raw_description) for tx in chunk], category_names
    )
    instructions = prompting.build_system_instructions()
    attempt = 1
    while True:
        t0 = time.perf_counter()
        try:
            resp = client.responses.create(
                model=model, instructions=instructions, input=user_content
            )
        except Exception as e:  # noqa: BLE001 - SDK raises many transport types
            dt_ms = (time.perf_counter() - t0) * 1000.0
            if attempt >= _MAX_ATTEMPTS or not _is_retryable(e):
                raise
            log_event(
                _logger,
                "suggest:chunk_retry",
                level=logging.WARNING,
                index=chunk_index,
                count=len(chunk),
                latency_ms=dt_ms,
                error=e.__class__.__name__,
                attempt=attempt,
            )
            _sleep_backoff(attempt)
            attempt += 1
            continue
        suggestions = parse_suggestions(_extract_response_text(resp))
        log_event(
            _logger,
            "suggest:chunk_done",
            index=chunk_index,
            count=len(chunk),
            suggestions=len(suggestions),
            latency_ms=(time.perf_counter() - t0) * 1000.0,
        )
        return suggestions


def _choice_for(category: str | None, choices: Iterable[CategoryRef]) -> CategoryRef | None:
    """Match a suggested category name against the owner's choices (case-insensitive)."""

    key = normalize_match_text(category)
    if not key or key == normalize_match_text(prompting.UNCATEGORIZED):
        return None
    for ref in choices:
        if normalize_match_text(ref.name) == key:
            return ref
    return None


def _unmapped_without_suggestion(
    session: Session, owner_id: str, transaction_ids: Collection[str] | None
) -> list[BrTransaction]:
    stmt = (
        select(BrTransaction)
        .where(
            BrTransaction.owner_id == owner_id,
            BrTransaction.category_id.is_(None),
            BrTransaction.suggested_category_id.is_(None),
        )
        .order_by(BrTransaction.date, BrTransaction.id)
    )
    if transaction_ids is not None:
        stmt = stmt.where(BrTransaction.id.in_(list(transaction_ids)))
    return list(session.execute(stmt).scalars().all())


def request_suggestions(
    owner_id: str,
    *,
    transaction_ids: Collection[str] | None = None,
    database_url: str | None = None,
    chunk_size: int | None = None,
    commit_chunk_size: int | None = None,
    model: str | None = None,
) -> SuggestionRunReport:
    """Ask the classifier about the owner's unmapped, unsuggested transactions.

    Parameters
    ----------
    owner_id:
        Owner whose backlog is classified.
    transaction_ids:
        Optional subset to consider (still limited to unmapped rows).
    chunk_size:
        Transactions per classifier request (``BR_SUGGEST_CHUNK_SIZE``).
    commit_chunk_size:
        Writes per commit when storing suggestions.
    model:
        Classifier model (``BR_CLASSIFIER_MODEL``).

    Returns
    -------
    SuggestionRunReport
        A chunk whose call or response fails is logged and counted in
        ``chunks_failed``; the rest of the batch still runs.
    """

    with session_scope(database_url=database_url) as session:
        rows = _unmapped_without_suggestion(session, owner_id, transaction_ids)
        choices = category_choices(session, owner_id)

    if not rows:
        log_event(_logger, "suggest:nothing_to_do", owner=owner_id)
        return SuggestionRunReport(
            requested=0, chunks=0, chunks_failed=0, suggested=0, written=BulkWriteReport.empty()
        )

    size = config.suggestion_chunk_size(chunk_size)
    model_name = config.classifier_model(model)
    category_names = [ref.name for ref in choices]
    client = _create_client()

    writes: list[TransactionWrite] = []
    chunks = failed = 0
    for index, chunk in enumerate(chunked(rows, size)):
        chunks += 1
        try:
            suggestions = _classify_chunk(
                client, chunk, category_names, model=model_name, chunk_index=index
            )
        except Exception as e:  # noqa: BLE001 - one bad chunk must not abort the batch
            failed += 1
            log_event(
                _logger,
                "suggest:chunk_failed",
                level=logging.ERROR,
                index=index,
                count=len(chunk),
                error=e,
            )
            continue

        by_id = {tx.id: tx for tx in chunk}
        for s in suggestions:
            if s.id not in by_id:
                log_event(
                    _logger, "suggest:unknown_id", level=logging.WARNING, index=index, id=s.id
                )
                continue
            ref = _choice_for(s.category, choices)
            if ref is None:
                continue
            category_id, category_name = encode_category_ref(ref)
            writes.append(
                TransactionWrite.suggested(
                    s.id, category_id=category_id, category_name=category_name, merchant=s.merchant
                )
            )
            by_id.pop(s.id)

    written = apply_writes(
        writes, event="suggest", database_url=database_url, chunk_size=commit_chunk_size
    )
    log_event(
        _logger,
        "suggest:summary",
        owner=owner_id,
        requested=len(rows),
        chunks=chunks,
        failed=failed,
        suggested=written.applied,
    )
    return SuggestionRunReport(
        requested=len(rows),
        chunks=chunks,
        chunks_failed=failed,
        suggested=written.applied,
        written=written,
    )


# ---- Review ------------------------------------------------------------------


def _with_suggestions(session: Session, owner_id: str) -> list[BrTransaction]:
    return list(
        session.execute(
            select(BrTransaction)
            .where(
                BrTransaction.owner_id == owner_id,
                BrTransaction.suggested_category_id.is_not(None),
            )
            .order_by(BrTransaction.date, BrTransaction.id)
        )
        .scalars()
        .all()
    )


def build_suggestion_batches(
    owner_id: str, *, database_url: str | None = None
) -> list[SuggestionBatch]:
    """Group the owner's pending suggestions by suggested category name."""

    with session_scope(database_url=database_url) as session:
        rows = _with_suggestions(session, owner_id)

    groups: dict[str, list[SuggestionItem]] = {}
    for tx in rows:
        name = tx.suggested_category_name or prompting.UNCATEGORIZED
        groups.setdefault(name, []).append(
            SuggestionItem(
                transaction_id=tx.id,
                raw_description=tx.raw_description,
                amount=tx.amount,
                suggested_merchant=tx.suggested_merchant,
                suggested_category_id=tx.suggested_category_id,
                suggested_category_name=tx.suggested_category_name,
            )
        )
    return [
        SuggestionBatch(category_name=name, items=tuple(items))
        for name, items in sorted(groups.items(), key=lambda kv: kv[0].casefold())
    ]


def propose_rules(transactions: Iterable[Any]) -> list[ProposedRule]:
    """Group transactions carrying suggestions into candidate rules.

    One proposal per normalized suggested merchant (first occurrence wins
    for name and category). ``affected_ids`` lists the unmapped transactions
    whose normalized description contains the merchant.
    """

    txs = list(transactions)
    proposals: dict[str, ProposedRule] = {}
    members: dict[str, list[str]] = {}
    for tx in txs:
        merchant = (tx.suggested_merchant or "").strip()
        key = normalize_match_text(merchant)
        if not key or not tx.suggested_category_id:
            continue
        members.setdefault(key, []).append(tx.id)
        if key in proposals:
            continue
        affected = tuple(
            other.id
            for other in txs
            if other.category_id is None
            and contains_key(normalize_match_text(other.raw_description), key)
        )
        proposals[key] = ProposedRule(
            match_text=merchant,
            mapped_description=merchant,
            category_id=tx.suggested_category_id,
            category_name=tx.suggested_category_name,
            transaction_ids=(),
            affected_ids=affected,
        )
    return [
        ProposedRule(
            match_text=p.match_text,
            mapped_description=p.mapped_description,
            category_id=p.category_id,
            category_name=p.category_name,
            transaction_ids=tuple(members[key]),
            affected_ids=p.affected_ids,
        )
        for key, p in proposals.items()
    ]


def propose_rules_for_owner(
    owner_id: str, *, database_url: str | None = None
) -> list[ProposedRule]:
    with session_scope(database_url=database_url) as session:
        rows = load_transactions(session, owner_id)
    return propose_rules(rows)


def _accept_write(
    tx: BrTransaction, resolver: CategoryResolver
) -> tuple[TransactionWrite, ResolvedCategory]:
    ref = parse_category_ref(tx.suggested_category_id, tx.suggested_category_name)
    if ref is None:
        raise ValueError(f"transaction {tx.id!r} has no suggestion to accept")
    category = resolver.resolve(ref, amount_hint=tx.amount)
    description = tx.suggested_merchant or tx.mapped_description or tx.raw_description
    return TransactionWrite.categorized(tx.id, category, description), category


def _owned(session: Session, owner_id: str, transaction_id: str) -> BrTransaction:
    tx = session.get(BrTransaction, transaction_id)
    if tx is None or tx.owner_id != owner_id:
        raise LookupError(f"transaction not found for owner {owner_id!r}: {transaction_id!r}")
    return tx


def accept_one(
    owner_id: str, transaction_id: str, *, database_url: str | None = None
) -> ResolvedCategory:
    """Promote a transaction's suggestion into its category and display text.

    Pending-default suggestions are materialized as owner categories.
    Raises ``ValueError`` when the transaction carries no suggestion.
    """

    with session_scope(database_url=database_url) as session:
        tx = _owned(session, owner_id, transaction_id)
        write, category = _accept_write(tx, CategoryResolver(session, owner_id))
        for k, v in write.values().items():
            setattr(tx, k, v)
    log_event(
        _logger, "suggest:accepted", owner=owner_id, tx=transaction_id, category=category.name
    )
    return category


def reject_one(owner_id: str, transaction_id: str, *, database_url: str | None = None) -> None:
    """Clear a transaction's suggestion fields; its category is untouched."""

    with session_scope(database_url=database_url) as session:
        tx = _owned(session, owner_id, transaction_id)
        for k, v in TransactionWrite.suggestion_cleared(tx.id).values().items():
            setattr(tx, k, v)
    log_event(_logger, "suggest:rejected", owner=owner_id, tx=transaction_id)


def bulk_approve(
    owner_id: str,
    selected_ids: Collection[str],
    rule_flag_ids: Collection[str] = (),
    *,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> ApprovalReport:
    """Accept the selected suggestions and reject every other pending one.

    For selected transactions that are also flagged, a personal rule keyed on
    the suggested merchant is upserted, at most one per normalized merchant
    in this batch. After the writes, each saved key is reapplied to the
    owner's history, so rows the new rule governs (including ones another
    rule had categorized) follow it.
    """

    selected = set(selected_ids)
    flagged = set(rule_flag_ids)
    writes: list[TransactionWrite] = []
    unresolved: list[tuple[str, str]] = []
    rule_keys: set[str] = set()
    approved = rejected = 0

    with session_scope(database_url=database_url) as session:
        resolver = CategoryResolver(session, owner_id)
        for tx in _with_suggestions(session, owner_id):
            if tx.id not in selected:
                writes.append(TransactionWrite.suggestion_cleared(tx.id))
                rejected += 1
                continue
            try:
                write, category = _accept_write(tx, resolver)
            except CategoryResolutionError as e:
                log_event(
                    _logger, "suggest:approve_unresolved", level=logging.WARNING, tx=tx.id, error=e
                )
                unresolved.append((tx.id, str(e)))
                continue
            writes.append(write)
            approved += 1

            merchant = (tx.suggested_merchant or "").strip()
            key = normalize_match_text(merchant)
            if tx.id in flagged and key and key not in rule_keys:
                rule_keys.add(key)
                rule_store.upsert_rule(
                    session,
                    scope=owner_id,
                    match_text=merchant,
                    mapped_description=merchant,
                    category=Existing(category.id, category.name),
                    source="suggestion",
                )

    written = apply_writes(
        writes, event="approve", database_url=database_url, chunk_size=chunk_size
    )
    reapplied: tuple[ReapplyReport, ...] = ()
    if rule_keys and written.ok:
        reapplied = reapply_keys(
            owner_id, sorted(rule_keys), database_url=database_url, chunk_size=chunk_size
        )
    log_event(
        _logger,
        "suggest:approved",
        owner=owner_id,
        approved=approved,
        rejected=rejected,
        rules=len(rule_keys),
        applied=written.applied,
        reapplied=sum(r.written.applied for r in reapplied),
    )
    return ApprovalReport(
        approved=approved,
        rejected=rejected,
        rules_saved=len(rule_keys),
        unresolved=tuple(unresolved),
        written=written,
        reapplied=reapplied,
    )


def approve_proposed_rule(
    owner_id: str,
    proposal: ProposedRule,
    *,
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> RuleChange:
    """Save a proposed rule for the owner and reapply it to their history."""

    return create_rule(
        owner_id,
        proposal.match_text,
        proposal.mapped_description,
        parse_category_ref(proposal.category_id, proposal.category_name),
        source="suggestion",
        database_url=database_url,
        chunk_size=chunk_size,
    )


__all__ = [
    "accept_one",
    "approve_proposed_rule",
    "build_suggestion_batches",
    "bulk_approve",
    "parse_suggestions",
    "propose_rules",
    "propose_rules_for_owner",
    "reject_one",
    "request_suggestions",
]
