"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the budgeting models used by ``budget_rules``.
"""

from .budget import (
    SYSTEM_SCOPE,
    Base,
    BrCategory,
    BrDefaultCategory,
    BrMappingRule,
    BrTransaction,
)

__all__ = [
    "SYSTEM_SCOPE",
    "Base",
    "BrCategory",
    "BrDefaultCategory",
    "BrMappingRule",
    "BrTransaction",
]
