from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Scope tag for rules that apply to every owner.
SYSTEM_SCOPE = "SYSTEM"


def _new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: br_categories
# ---------------------------


class BrCategory(Base):
    """An owner's named spending bucket."""

    __tablename__ = "br_categories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Normalized name (see budget_rules.normalize). Uniqueness per owner is the
    # case/whitespace-insensitive name constraint; ``name`` keeps user casing.
    name_norm: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'variable'"))
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, server_default=text("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "name_norm", name="uq_br_categories_owner_name"),
        CheckConstraint(
            "kind in ('income','fixed','variable')",
            name="ck_br_categories_kind",
        ),
    )


class BrDefaultCategory(Base):
    """System-wide default category names offered to every owner."""

    __tablename__ = "br_default_categories"

    name_norm: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    sort_order: Mapped[int | None] = mapped_column(Integer, nullable=True)


# ---------------------------
# Rules: br_mapping_rules
# ---------------------------


class BrMappingRule(Base):
    __tablename__ = "br_mapping_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    # ``SYSTEM`` or a concrete owner id. Personal rules shadow system rules that
    # share the same normalized_match_text.
    owner_scope: Mapped[str] = mapped_column(String, nullable=False, index=True)
    match_text: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_match_text: Mapped[str] = mapped_column(Text, nullable=False)
    mapped_description: Mapped[str] = mapped_column(Text, nullable=False)
    # Either a br_categories.id or a pending-default placeholder ("NEW:<name>").
    # No FK on purpose: placeholders do not correspond to a row yet.
    category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Point-in-time cache of the category name when the rule was written.
    category_name: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'manual'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "owner_scope", "normalized_match_text", name="uq_br_mapping_rules_scope_text"
        ),
        CheckConstraint(
            "source in ('manual','suggestion','seed','admin')",
            name="ck_br_mapping_rules_source",
        ),
    )


# ---------------------------
# Core: br_transactions
# ---------------------------


class BrTransaction(Base):
    __tablename__ = "br_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    statement_id: Mapped[str | None] = mapped_column(String, nullable=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # As imported; never mutated after insert.
    raw_description: Mapped[str] = mapped_column(Text, nullable=False)
    # Signed: positive = credit, negative = debit.
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    category_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("br_categories.id"), nullable=True
    )
    category_name: Mapped[str | None] = mapped_column(String, nullable=True)
    mapped_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Non-authoritative classifier output; cleared whenever category_id is set.
    suggested_category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    suggested_category_name: Mapped[str | None] = mapped_column(String, nullable=True)
    suggested_merchant: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_br_transactions_owner_id", "owner_id"),
        CheckConstraint(
            "(category_id IS NULL) = (category_name IS NULL)",
            name="ck_br_tx_category_pair",
        ),
    )


__all__ = [
    "SYSTEM_SCOPE",
    "Base",
    "BrCategory",
    "BrDefaultCategory",
    "BrMappingRule",
    "BrTransaction",
]
