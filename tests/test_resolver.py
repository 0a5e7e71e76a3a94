from __future__ import annotations

from db.models.budget import SYSTEM_SCOPE, BrMappingRule

from budget_rules.normalize import normalize_match_text
from budget_rules.resolver import build_index, build_rule_set, match
from tests.helpers.db import add_rule


def _rule(rule_id: str, scope: str, text: str, description: str) -> BrMappingRule:
    return BrMappingRule(
        id=rule_id,
        owner_scope=scope,
        match_text=text,
        normalized_match_text=normalize_match_text(text),
        mapped_description=description,
    )


def test_longest_contained_key_wins() -> None:
    rules = [
        _rule("r1", SYSTEM_SCOPE, "Uber", "Uber"),
        _rule("r2", SYSTEM_SCOPE, "Uber Eats", "Uber Eats"),
    ]
    rs = build_rule_set("u1", rules, [])

    assert match(rs, "UBER EATS JOHANNESBURG ZA").id == "r2"
    assert match(rs, "UBER TRIP 1234").id == "r1"
    assert match(rs, "KFC CENTURION") is None


def test_description_equal_to_a_key_resolves_to_that_key() -> None:
    rs = build_rule_set(
        "u1",
        [_rule("r1", SYSTEM_SCOPE, "checkers", "Checkers")],
        [_rule("r2", "u1", "checkers hyper", "Checkers Hyper")],
    )
    # Whole-description hit and longest contained key agree.
    assert match(rs, "Checkers  HYPER").id == "r2"
    assert match(rs, "checkers").id == "r1"
    assert match(rs, "CHECKERS SANDTON").id == "r1"


def test_personal_rule_shadows_system_on_equal_key() -> None:
    system = [_rule("s1", SYSTEM_SCOPE, "Checkers", "Checkers")]
    mine = [_rule("p1", "u1", "CHECKERS", "Groceries run")]

    rs_u1 = build_rule_set("u1", system, mine)
    rs_u2 = build_rule_set("u2", system, [])

    assert len(rs_u1) == 1
    assert match(rs_u1, "POS CHECKERS SANDTON").id == "p1"
    assert match(rs_u2, "POS CHECKERS SANDTON").id == "s1"


def test_empty_description_and_empty_rule_keys_never_match() -> None:
    rs = build_rule_set("u1", [_rule("r1", SYSTEM_SCOPE, "   ", "blank")], [])
    assert len(rs) == 0
    assert match(rs, "") is None
    assert match(rs, None) is None


def test_ordering_is_longest_first_then_id() -> None:
    rs = build_rule_set(
        "u1",
        [
            _rule("b", SYSTEM_SCOPE, "abc", "x"),
            _rule("a", SYSTEM_SCOPE, "xyz", "y"),
            _rule("c", SYSTEM_SCOPE, "longer key", "z"),
        ],
        [],
    )
    assert [r.id for r in rs.ordered] == ["c", "a", "b"]


def test_build_index_merges_owner_and_system_rules_only(db_url: str) -> None:
    from db.client import session_scope

    add_rule(db_url, "woolworths", "Woolworths")
    add_rule(db_url, "woolworths", "Woolies", scope="u1")
    add_rule(db_url, "netflix", "Netflix", scope="u2")

    with session_scope(database_url=db_url) as s:
        rs = build_index(s, "u1")
        described = match(rs, "WOOLWORTHS ROSEBANK").mapped_description
        assert match(rs, "NETFLIX.COM") is None

    assert described == "Woolies"
    assert set(rs.index) == {"woolworths"}
