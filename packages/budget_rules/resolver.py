"""Merged, precedence-ordered view of the rules that apply to one owner.

``build_rule_set`` merges SYSTEM rules with the owner's personal rules into a
table keyed by normalized match text (personal shadows SYSTEM on equal keys)
and orders the survivors by key length, longest first. ``match`` then tries
an exact key hit before scanning that list for the first key contained in
the description, so "checkers hyper" beats "checkers" whenever both fit.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from db.models.budget import SYSTEM_SCOPE, BrMappingRule
from sqlalchemy.orm import Session

from .logging_setup import get_logger, log_event
from .normalize import contains_key, normalize_match_text
from .rule_store import list_rules

_logger = get_logger("budget_rules.resolver")


@dataclass(frozen=True, slots=True)
class ResolvedRuleSet:
    owner_id: str
    # normalized_match_text -> winning rule for that key
    index: Mapping[str, BrMappingRule]
    # Same rules, longest key first; ties broken by rule id.
    ordered: tuple[BrMappingRule, ...]

    def __len__(self) -> int:
        return len(self.ordered)


def _key(rule: BrMappingRule) -> str:
    # Stored keys are normalized on write; re-normalizing keeps legacy rows safe.
    return normalize_match_text(rule.normalized_match_text or rule.match_text)


def build_rule_set(
    owner_id: str,
    system_rules: Iterable[BrMappingRule],
    personal_rules: Iterable[BrMappingRule],
) -> ResolvedRuleSet:
    """Merge SYSTEM and personal rules; personal rules shadow SYSTEM on equal keys."""

    merged: dict[str, BrMappingRule] = {}
    for rule in sorted(system_rules, key=lambda r: r.id or ""):
        k = _key(rule)
        if k:
            merged[k] = rule
    for rule in sorted(personal_rules, key=lambda r: r.id or ""):
        k = _key(rule)
        if k:
            merged[k] = rule

    ordered = tuple(sorted(merged.items(), key=lambda kv: (-len(kv[0]), kv[1].id or "")))
    return ResolvedRuleSet(
        owner_id=owner_id,
        index=dict(merged),
        ordered=tuple(rule for _, rule in ordered),
    )


def build_index(session: Session, owner_id: str) -> ResolvedRuleSet:
    """Load SYSTEM and ``owner_id`` rules from the store and merge them."""

    rule_set = build_rule_set(
        owner_id,
        list_rules(session, SYSTEM_SCOPE),
        list_rules(session, owner_id),
    )
    log_event(
        _logger, "resolver:index_built", level=logging.DEBUG, owner=owner_id, rules=len(rule_set)
    )
    return rule_set


def match(rule_set: ResolvedRuleSet, raw_description: str | None) -> BrMappingRule | None:
    """Return the rule that applies to ``raw_description``, or ``None``.

    Exact key match first; otherwise the longest key contained in the
    normalized description.
    """

    text = normalize_match_text(raw_description)
    if not text:
        return None
    exact = rule_set.index.get(text)
    if exact is not None:
        return exact
    for rule in rule_set.ordered:
        if contains_key(text, _key(rule)):
            return rule
    return None


__all__ = ["ResolvedRuleSet", "build_index", "build_rule_set", "match"]
