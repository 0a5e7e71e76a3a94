"""Chunked commits against the shared store.

Every chunk runs in its own ``session_scope`` and therefore commits (or rolls
back) on its own. A failing chunk stops the run; chunks committed before it
stay applied and the caller receives a ``BulkWriteReport`` with the counts.
Writers are expected to be idempotent so a partial run can simply be retried.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from typing import TypeVar

from db.client import session_scope
from db.models.budget import BrTransaction
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .errors import ChunkWriteError
from .logging_setup import get_logger, log_event
from .models import BulkWriteReport, TransactionWrite

_logger = get_logger("budget_rules.batching")

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of ``items`` of at most ``size`` elements."""

    if size <= 0:
        raise ValueError("size must be a positive integer")
    for base in range(0, len(items), size):
        yield items[base : base + size]


def _run_chunks(
    items: Sequence[T],
    apply_chunk: Callable[[Session, Sequence[T]], None],
    *,
    event: str,
    database_url: str | None,
    chunk_size: int,
) -> int:
    """Commit ``items`` chunk by chunk; raise ``ChunkWriteError`` on the first failure."""

    applied = 0
    for index, chunk in enumerate(chunked(items, chunk_size)):
        try:
            with session_scope(database_url=database_url) as session:
                apply_chunk(session, chunk)
        except SQLAlchemyError as e:
            raise ChunkWriteError(
                f"{event}: chunk {index} failed: {e.__class__.__name__}: {e}",
                chunk_index=index,
                applied=applied,
                not_updated=len(items) - applied,
            ) from e
        applied += len(chunk)
        log_event(
            _logger,
            f"{event}:chunk_committed",
            index=index,
            size=len(chunk),
            applied=applied,
            total=len(items),
        )
    return applied


def commit_in_chunks(
    items: Sequence[T],
    apply_chunk: Callable[[Session, Sequence[T]], None],
    *,
    event: str = "bulk",
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> BulkWriteReport:
    """Apply ``items`` in independently committed chunks and report the outcome.

    Parameters
    ----------
    items:
        Records to write; order is preserved across chunks.
    apply_chunk:
        Callback receiving an open session and one chunk. It must not commit;
        the surrounding ``session_scope`` does.
    event:
        Log prefix (``reapply``, ``import``...).
    chunk_size:
        Records per commit; defaults to ``BR_COMMIT_CHUNK_SIZE`` and is clamped
        to the store ceiling.

    Returns
    -------
    BulkWriteReport
        ``failed_chunk``/``error`` are set when a chunk could not be committed.
    """

    if not items:
        return BulkWriteReport.empty()
    size = config.commit_chunk_size(chunk_size)
    try:
        applied = _run_chunks(
            items, apply_chunk, event=event, database_url=database_url, chunk_size=size
        )
    except ChunkWriteError as e:
        log_event(
            _logger,
            f"{event}:chunk_failed",
            level=logging.ERROR,
            index=e.chunk_index,
            applied=e.applied,
            not_updated=e.not_updated,
            error=e.__cause__.__class__.__name__,
        )
        return BulkWriteReport(
            total=len(items), applied=e.applied, failed_chunk=e.chunk_index, error=str(e)
        )
    return BulkWriteReport(total=len(items), applied=applied)


def _update_transactions(session: Session, chunk: Sequence[TransactionWrite]) -> None:
    for w in chunk:
        session.execute(
            update(BrTransaction)
            .where(BrTransaction.id == w.transaction_id)
            .values(**w.values())
        )


def apply_writes(
    writes: Sequence[TransactionWrite],
    *,
    event: str = "writes",
    database_url: str | None = None,
    chunk_size: int | None = None,
) -> BulkWriteReport:
    """Apply transaction updates in chunks (see ``commit_in_chunks``)."""

    return commit_in_chunks(
        writes,
        _update_transactions,
        event=event,
        database_url=database_url,
        chunk_size=chunk_size,
    )


__all__ = ["apply_writes", "chunked", "commit_in_chunks"]
