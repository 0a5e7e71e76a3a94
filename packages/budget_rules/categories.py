"""Owner-scoped budget categories and category reference resolution.

Exports
-------
- ``normalize_name(...)`` / ``validate_name(...)``: display-name cleanup and
  validation shared by the CLI and the resolver.
- ``create_category(...)``: idempotent creation keyed by the normalized name.
- ``CategoryResolver``: turns a ``CategoryRef`` into a concrete category for
  one owner, materializing pending defaults on demand.
- ``category_choices(...)``: the owner's categories plus the system defaults
  the owner does not have yet.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal

from db.models.budget import BrCategory, BrDefaultCategory
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import CategoryResolutionError
from .logging_setup import get_logger, log_event
from .models import (
    ByName,
    CategoryRef,
    Existing,
    PendingDefault,
    ResolvedCategory,
)
from .normalize import normalize_match_text

_logger = get_logger("budget_rules.categories")

_KINDS = ("income", "fixed", "variable")

# ---------------------------
# Name normalization/validation
# ---------------------------

_ALLOWED_RE = re.compile(r"^[\w &\-/,.'()+]+$")


def normalize_name(name: str) -> str:
    """Return a trimmed, single-spaced representation of ``name``.

    Case is preserved; uniqueness is checked on ``normalize_match_text``.
    """

    return " ".join(name.strip().split())


@dataclass(frozen=True, slots=True)
class NameValidation:
    ok: bool
    reason: str | None = None


def validate_name(name: str, *, min_len: int = 1, max_len: int = 64) -> NameValidation:
    """Validate a category name.

    Rules
    -----
    - Trim whitespace; enforce length bounds 1..64.
    - Allowed characters: letters, digits, spaces and ``& - / , . ' ( ) +``.
    """

    n = normalize_name(name)
    if len(n) < min_len:
        return NameValidation(False, "Name cannot be empty")
    if len(n) > max_len:
        return NameValidation(False, f"Name must be at most {max_len} characters")
    if not _ALLOWED_RE.match(n):
        return NameValidation(False, "Name contains unsupported characters")
    return NameValidation(True, None)


def _find_by_norm(session: Session, owner_id: str, name_norm: str) -> BrCategory | None:
    return (
        session.execute(
            select(BrCategory).where(
                BrCategory.owner_id == owner_id, BrCategory.name_norm == name_norm
            )
        )
        .scalars()
        .first()
    )


def create_category(
    session: Session,
    owner_id: str,
    name: str,
    *,
    kind: str = "variable",
    amount: Decimal | int = 0,
) -> tuple[BrCategory, bool]:
    """Create a category for ``owner_id`` unless one with the same normalized name exists.

    Returns ``(row, created)``. Raises ``ValueError`` for invalid names or kinds.
    The caller owns the transaction scope.
    """

    display = normalize_name(name)
    v = validate_name(display)
    if not v.ok:
        raise ValueError(f"Invalid category name {name!r}: {v.reason}")
    if kind not in _KINDS:
        raise ValueError(f"Invalid category kind {kind!r}; expected one of {_KINDS}")

    name_norm = normalize_match_text(display)
    existing = _find_by_norm(session, owner_id, name_norm)
    if existing is not None:
        return existing, False

    row = BrCategory(
        owner_id=owner_id,
        name=display,
        name_norm=name_norm,
        kind=kind,
        amount=Decimal(amount),
    )
    try:
        session.add(row)
        session.flush()
    except IntegrityError:
        # Lost a race on (owner_id, name_norm); treat as idempotent.
        session.rollback()
        existing = _find_by_norm(session, owner_id, name_norm)
        if existing is None:
            raise
        return existing, False

    log_event(_logger, "categories:created", owner=owner_id, name=display, kind=kind)
    return row, True


def list_categories(session: Session, owner_id: str) -> list[BrCategory]:
    return list(
        session.execute(
            select(BrCategory).where(BrCategory.owner_id == owner_id).order_by(BrCategory.name)
        )
        .scalars()
        .all()
    )


def list_default_category_names(session: Session) -> list[str]:
    rows = (
        session.execute(
            select(BrDefaultCategory).order_by(
                BrDefaultCategory.sort_order, BrDefaultCategory.name
            )
        )
        .scalars()
        .all()
    )
    return [r.name for r in rows]


def category_choices(session: Session, owner_id: str) -> list[CategoryRef]:
    """Return the owner's categories plus missing system defaults.

    Owner categories come back as ``Existing``; defaults the owner has not
    materialized yet come back as ``PendingDefault``. Entries are deduplicated
    by normalized name (owner categories win) and sorted by name.
    """

    seen: dict[str, CategoryRef] = {}
    for row in list_categories(session, owner_id):
        seen.setdefault(row.name_norm, Existing(row.id, row.name))
    for name in list_default_category_names(session):
        key = normalize_match_text(name)
        if key and key not in seen:
            seen[key] = PendingDefault(normalize_name(name))
    return sorted(seen.values(), key=lambda ref: (ref.name or "").casefold())


class CategoryResolver:
    """Resolve category references to concrete categories for one owner.

    Resolution order: an existing id owned by the owner, then an existing
    category with the same normalized name, then creation. The owner's
    categories are loaded once and cached for the resolver's lifetime, so a
    name seen twice never creates two rows. Assumes a single writer per owner.
    """

    def __init__(self, session: Session, owner_id: str) -> None:
        self._session = session
        self.owner_id = owner_id
        self._by_id: dict[str, BrCategory] | None = None
        self._by_norm: dict[str, BrCategory] = {}
        self.created: list[ResolvedCategory] = []

    def _load(self) -> dict[str, BrCategory]:
        if self._by_id is None:
            rows = list_categories(self._session, self.owner_id)
            self._by_id = {r.id: r for r in rows}
            self._by_norm = {r.name_norm: r for r in rows}
        return self._by_id

    def resolve(
        self, ref: CategoryRef, *, amount_hint: Decimal | None = None
    ) -> ResolvedCategory:
        """Return the concrete category for ``ref``, creating it when needed.

        ``amount_hint`` (a transaction amount) picks the kind of a newly
        created category: credits create ``income``, everything else
        ``variable``. Raises ``CategoryResolutionError`` when the reference
        names nothing usable.
        """

        by_id = self._load()
        if isinstance(ref, Existing):
            row = by_id.get(ref.id)
            if row is not None:
                return ResolvedCategory(row.id, row.name)
            if not ref.name:
                raise CategoryResolutionError(
                    f"category id {ref.id!r} does not exist for owner {self.owner_id!r}",
                    owner_id=self.owner_id,
                    reference=ref,
                )
            name = ref.name
        elif isinstance(ref, ByName | PendingDefault):
            name = ref.name
        else:
            raise CategoryResolutionError(
                f"unsupported category reference {ref!r}", owner_id=self.owner_id, reference=ref
            )

        return self._resolve_name(name, ref, amount_hint)

    def _resolve_name(
        self, name: str, ref: CategoryRef, amount_hint: Decimal | None
    ) -> ResolvedCategory:
        key = normalize_match_text(normalize_name(name or ""))
        if not key:
            raise CategoryResolutionError(
                "category reference has an empty name", owner_id=self.owner_id, reference=ref
            )
        row = self._by_norm.get(key)
        if row is not None:
            return ResolvedCategory(row.id, row.name)

        kind = "income" if amount_hint is not None and amount_hint > 0 else "variable"
        try:
            row, created = create_category(self._session, self.owner_id, name, kind=kind)
        except ValueError as e:
            raise CategoryResolutionError(str(e), owner_id=self.owner_id, reference=ref) from e
        except IntegrityError as e:
            raise CategoryResolutionError(
                f"could not create category {name!r}: {e.orig}",
                owner_id=self.owner_id,
                reference=ref,
            ) from e
        if not created:
            # Row appeared outside this resolver (or a race rolled back); reload.
            self._by_id = None
            self._load()
        else:
            assert self._by_id is not None
            self._by_id[row.id] = row
            self._by_norm[row.name_norm] = row
        resolved = ResolvedCategory(row.id, row.name, created=created)
        if created:
            self.created.append(resolved)
        return resolved


__all__ = [
    "CategoryResolver",
    "NameValidation",
    "category_choices",
    "create_category",
    "list_categories",
    "list_default_category_names",
    "normalize_name",
    "validate_name",
]
