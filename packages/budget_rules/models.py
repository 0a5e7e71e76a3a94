"""Value types shared across the rules engine.

ORM rows live in ``db.models.budget``; this module holds the in-memory shapes
that flow between components: category references, transaction writes, and
the reports returned by bulk operations.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator


# ---------------------------------------------------------------------------
# Category references
# ---------------------------------------------------------------------------

# Stored form of a category that has not been created for the owner yet.
PENDING_PREFIX = "NEW:"


@dataclass(frozen=True, slots=True)
class Existing:
    """A concrete ``br_categories.id``; ``name`` is the cached display name."""

    id: str
    name: str | None = None


@dataclass(frozen=True, slots=True)
class ByName:
    name: str


@dataclass(frozen=True, slots=True)
class PendingDefault:
    """A system default category the owner does not have yet."""

    name: str


type CategoryRef = Existing | ByName | PendingDefault


def parse_category_ref(value: str | None, name: str | None = None) -> CategoryRef | None:
    """Decode a stored ``(category_id, category_name)`` pair into a ``CategoryRef``.

    ``value`` may be a concrete id, a ``NEW:<name>`` placeholder, or empty.
    When ``value`` is empty the name alone yields ``ByName``; when both are
    empty there is no reference.
    """

    v = (value or "").strip()
    n = (name or "").strip() or None
    if v.startswith(PENDING_PREFIX):
        pending = v[len(PENDING_PREFIX) :].strip() or n
        return PendingDefault(pending) if pending else None
    if v:
        return Existing(v, n)
    if n:
        return ByName(n)
    return None


def encode_category_ref(ref: CategoryRef | None) -> tuple[str | None, str | None]:
    """Return the ``(category_id, category_name)`` pair stored on a rule."""

    if ref is None:
        return None, None
    if isinstance(ref, Existing):
        return ref.id, ref.name
    if isinstance(ref, PendingDefault):
        return f"{PENDING_PREFIX}{ref.name}", ref.name
    return None, ref.name


def ref_name(ref: CategoryRef) -> str | None:
    return ref.name


@dataclass(frozen=True, slots=True)
class ResolvedCategory:
    id: str
    name: str
    created: bool = False


# ---------------------------------------------------------------------------
# Transaction writes
# ---------------------------------------------------------------------------

_SUGGESTION_CLEARED: dict[str, Any] = {
    "suggested_category_id": None,
    "suggested_category_name": None,
    "suggested_merchant": None,
}


@dataclass(frozen=True, slots=True)
class TransactionWrite:
    """A partial update of one ``br_transactions`` row.

    Build instances through the classmethods so that the category pair stays
    consistent and suggestions are cleared whenever a category is assigned.
    """

    transaction_id: str
    changes: Mapping[str, Any]

    @classmethod
    def categorized(
        cls, transaction_id: str, category: ResolvedCategory, mapped_description: str
    ) -> TransactionWrite:
        return cls(
            transaction_id,
            {
                "category_id": category.id,
                "category_name": category.name,
                "mapped_description": mapped_description,
                **_SUGGESTION_CLEARED,
            },
        )

    @classmethod
    def described(cls, transaction_id: str, mapped_description: str) -> TransactionWrite:
        """Set the display text only; used by rules that carry no category."""

        return cls(transaction_id, {"mapped_description": mapped_description})

    @classmethod
    def uncategorized(cls, transaction_id: str, mapped_description: str) -> TransactionWrite:
        """Clear the category and set the display text."""

        return cls(
            transaction_id,
            {
                "category_id": None,
                "category_name": None,
                "mapped_description": mapped_description,
            },
        )

    @classmethod
    def reverted(cls, transaction_id: str, raw_description: str) -> TransactionWrite:
        return cls.uncategorized(transaction_id, raw_description)

    @classmethod
    def suggested(
        cls,
        transaction_id: str,
        *,
        category_id: str | None,
        category_name: str | None,
        merchant: str | None,
    ) -> TransactionWrite:
        return cls(
            transaction_id,
            {
                "suggested_category_id": category_id,
                "suggested_category_name": category_name,
                "suggested_merchant": merchant,
            },
        )

    @classmethod
    def suggestion_cleared(cls, transaction_id: str) -> TransactionWrite:
        return cls(transaction_id, dict(_SUGGESTION_CLEARED))

    def differs_from(self, row: Any) -> bool:
        """Return True when applying this write would change ``row``."""

        return any(getattr(row, k) != v for k, v in self.changes.items())

    def values(self) -> dict[str, Any]:
        return {**self.changes, "updated_at": datetime.now(UTC)}


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BulkWriteReport:
    """Outcome of a chunked bulk write.

    Chunks commit independently: when ``failed_chunk`` is set, the ``applied``
    records from earlier chunks remain committed and ``not_updated`` records
    were never written.
    """

    total: int
    applied: int
    failed_chunk: int | None = None
    error: str | None = None

    @property
    def not_updated(self) -> int:
        return self.total - self.applied

    @property
    def ok(self) -> bool:
        return self.failed_chunk is None

    @classmethod
    def empty(cls) -> BulkWriteReport:
        return cls(total=0, applied=0)


type CategorizeMode = Literal["unmapped", "rescan"]


@dataclass(slots=True)
class CategorizationResult:
    writes: list[TransactionWrite] = field(default_factory=list)
    matched: int = 0
    # (transaction_id, reason) for matches whose category could not be resolved.
    unresolved: list[tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class MappingUpdateReport:
    owner_id: str
    mode: CategorizeMode
    scanned: int
    matched: int
    unresolved: tuple[tuple[str, str], ...]
    written: BulkWriteReport


@dataclass(frozen=True, slots=True)
class ReapplyReport:
    owner_id: str
    normalized_text: str
    winner_rule_id: str | None
    affected: int
    unresolved: tuple[tuple[str, str], ...]
    written: BulkWriteReport

    @property
    def reverted(self) -> bool:
        return self.winner_rule_id is None


@dataclass(frozen=True, slots=True)
class ImportReport:
    owner_id: str
    received: int
    skipped: int
    categorized: int
    written: BulkWriteReport


@dataclass(frozen=True, slots=True)
class RuleChange:
    """Result of a rule lifecycle operation and the reapplications it triggered."""

    rule_id: str | None
    scope: str
    normalized_text: str
    created: bool
    reapplied: tuple[ReapplyReport, ...] = ()


@dataclass(frozen=True, slots=True)
class MapResult:
    transaction_id: str
    category: ResolvedCategory
    mapped_description: str
    rule: RuleChange | None = None
    similar: BulkWriteReport | None = None


@dataclass(frozen=True, slots=True)
class SeedReport:
    default_categories: int
    rules_created: int
    rules_updated: int


# ---------------------------------------------------------------------------
# Classifier and review shapes
# ---------------------------------------------------------------------------


class ClassifierSuggestion(BaseModel):
    """One element of the classifier's JSON array response."""

    model_config = ConfigDict(extra="ignore")

    id: str
    merchant: str | None = None
    category: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        if isinstance(v, int | float):
            return str(v)
        return v

    @field_validator("merchant", "category", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v


@dataclass(frozen=True, slots=True)
class SuggestionItem:
    transaction_id: str
    raw_description: str
    amount: Decimal
    suggested_merchant: str | None
    suggested_category_id: str | None
    suggested_category_name: str | None


@dataclass(frozen=True, slots=True)
class SuggestionBatch:
    """Transactions carrying suggestions, grouped by suggested category name."""

    category_name: str
    items: tuple[SuggestionItem, ...]


@dataclass(frozen=True, slots=True)
class SuggestionRunReport:
    requested: int
    chunks: int
    chunks_failed: int
    suggested: int
    written: BulkWriteReport


@dataclass(frozen=True, slots=True)
class ApprovalReport:
    approved: int
    rejected: int
    rules_saved: int
    unresolved: tuple[tuple[str, str], ...]
    written: BulkWriteReport
    reapplied: tuple[ReapplyReport, ...] = ()


@dataclass(frozen=True, slots=True)
class ProposedRule:
    match_text: str
    mapped_description: str
    category_id: str | None
    category_name: str | None
    transaction_ids: tuple[str, ...]
    # Unmapped transactions whose normalized description contains the merchant.
    affected_ids: tuple[str, ...]


__all__ = [
    "PENDING_PREFIX",
    "ApprovalReport",
    "BulkWriteReport",
    "ByName",
    "CategorizationResult",
    "CategorizeMode",
    "CategoryRef",
    "ClassifierSuggestion",
    "Existing",
    "ImportReport",
    "MapResult",
    "MappingUpdateReport",
    "PendingDefault",
    "ProposedRule",
    "ReapplyReport",
    "ResolvedCategory",
    "RuleChange",
    "SeedReport",
    "SuggestionBatch",
    "SuggestionItem",
    "SuggestionRunReport",
    "TransactionWrite",
    "encode_category_ref",
    "parse_category_ref",
    "ref_name",
]
