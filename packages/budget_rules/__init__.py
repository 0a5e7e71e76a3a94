"""Transaction categorization and rule-resolution engine.

Submodules are imported lazily by callers; this module only re-exports the
most common entrypoints.
"""

from __future__ import annotations

from .categorize import categorize, update_all_mappings
from .normalize import normalize_match_text
from .reapply import pick_winner, reapply_rule_change
from .resolver import build_index, build_rule_set, match
from .rules import (
    create_rule,
    delete_rule,
    map_transaction,
    revert_to_system,
    seed_system_defaults,
    update_rule,
)

__all__ = [
    "build_index",
    "build_rule_set",
    "categorize",
    "create_rule",
    "delete_rule",
    "map_transaction",
    "match",
    "normalize_match_text",
    "pick_winner",
    "reapply_rule_change",
    "revert_to_system",
    "seed_system_defaults",
    "update_all_mappings",
    "update_rule",
]
