# ruff: noqa: I001
"""Create core budgeting tables: categories, default categories, mapping rules, transactions.

Revision ID: 0001_br_core
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_br_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "br_categories",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("name_norm", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False, server_default=sa.text("'variable'")),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("owner_id", "name_norm", name="uq_br_categories_owner_name"),
        sa.CheckConstraint("kind in ('income','fixed','variable')", name="ck_br_categories_kind"),
    )
    op.create_index("ix_br_categories_owner_id", "br_categories", ["owner_id"])

    op.create_table(
        "br_default_categories",
        sa.Column("name_norm", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=True),
    )

    op.create_table(
        "br_mapping_rules",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("owner_scope", sa.String(), nullable=False),
        sa.Column("match_text", sa.Text(), nullable=False),
        sa.Column("normalized_match_text", sa.Text(), nullable=False),
        sa.Column("mapped_description", sa.Text(), nullable=False),
        sa.Column("category_id", sa.String(), nullable=True),
        sa.Column("category_name", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default=sa.text("'manual'")),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint(
            "owner_scope", "normalized_match_text", name="uq_br_mapping_rules_scope_text"
        ),
        sa.CheckConstraint(
            "source in ('manual','suggestion','seed','admin')",
            name="ck_br_mapping_rules_source",
        ),
    )
    op.create_index("ix_br_mapping_rules_owner_scope", "br_mapping_rules", ["owner_scope"])

    op.create_table(
        "br_transactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("statement_id", sa.String(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("raw_description", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column(
            "category_id",
            sa.String(length=64),
            sa.ForeignKey("br_categories.id"),
            nullable=True,
        ),
        sa.Column("category_name", sa.String(), nullable=True),
        sa.Column("mapped_description", sa.Text(), nullable=True),
        sa.Column("suggested_category_id", sa.String(), nullable=True),
        sa.Column("suggested_category_name", sa.String(), nullable=True),
        sa.Column("suggested_merchant", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "(category_id IS NULL) = (category_name IS NULL)",
            name="ck_br_tx_category_pair",
        ),
    )
    op.create_index("ix_br_transactions_owner_id", "br_transactions", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_br_transactions_owner_id", table_name="br_transactions")
    op.drop_table("br_transactions")
    op.drop_index("ix_br_mapping_rules_owner_scope", table_name="br_mapping_rules")
    op.drop_table("br_mapping_rules")
    op.drop_table("br_default_categories")
    op.drop_index("ix_br_categories_owner_id", table_name="br_categories")
    op.drop_table("br_categories")
