from __future__ import annotations

import json
from pathlib import Path

import pytest
from db.models.budget import SYSTEM_SCOPE

from budget_rules.categorize import update_all_mappings
from budget_rules.models import ByName, Existing, PendingDefault
from budget_rules.rules import (
    category_ref_from_text,
    create_rule,
    delete_rule,
    map_transaction,
    revert_to_system,
    seed_system_defaults,
    update_rule,
)
from tests.helpers.db import (
    add_category,
    add_rule,
    add_transaction,
    categories_of,
    get_transaction,
    rules_in,
)

_SEED_FILE = Path(__file__).resolve().parents[1] / "seeds" / "system_defaults.json"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Groceries", ByName("Groceries")),
        ("NEW:Eating Out", PendingDefault("Eating Out")),
        ("NEW:", None),
        ("  ", None),
        (None, None),
    ],
)
def test_category_ref_from_text(text: str | None, expected: object) -> None:
    assert category_ref_from_text(text) == expected


def test_checkers_rule_lifecycle_end_to_end(db_url: str) -> None:
    tx = add_transaction(db_url, "u1", "POS PURCHASE CHECKERS SANDTON 12345", "-250.00")

    nothing = update_all_mappings("u1", database_url=db_url)
    assert nothing.matched == 0
    assert get_transaction(db_url, tx).category_id is None

    change = create_rule("u1", "Checkers", "Checkers", ByName("Groceries"), database_url=db_url)
    assert change.created
    (reapplied,) = change.reapplied
    assert reapplied.written.applied == 1

    again = update_all_mappings("u1", database_url=db_url)
    assert again.written.total == 0
    row = get_transaction(db_url, tx)
    assert row.category_name == "Groceries"
    assert row.mapped_description == "Checkers"

    update_rule(change.rule_id, category=ByName("Shopping"), database_url=db_url)
    row = get_transaction(db_url, tx)
    assert row.category_name == "Shopping"
    assert sorted(c.name for c in categories_of(db_url, "u1")) == ["Groceries", "Shopping"]


def test_system_rule_delete_reverts_every_owner(db_url: str) -> None:
    t1 = add_transaction(db_url, "u1", "NETFLIX.COM 866")
    t2 = add_transaction(db_url, "u2", "NETFLIX SUBSCRIPTION")

    change = create_rule(
        SYSTEM_SCOPE, "Netflix", "Netflix", ByName("Subscriptions"), database_url=db_url
    )
    (rule,) = rules_in(db_url, SYSTEM_SCOPE)
    assert rule.category_id == "NEW:Subscriptions"
    assert {r.owner_id for r in change.reapplied} == {"u1", "u2"}
    for tx, owner in ((t1, "u1"), (t2, "u2")):
        row = get_transaction(db_url, tx)
        (cat,) = categories_of(db_url, owner)
        assert row.category_id == cat.id
        assert row.mapped_description == "Netflix"

    delete_rule(change.rule_id, database_url=db_url)

    for tx, raw in ((t1, "NETFLIX.COM 866"), (t2, "NETFLIX SUBSCRIPTION")):
        row = get_transaction(db_url, tx)
        assert row.category_id is None
        assert row.mapped_description == raw


def test_system_rule_reapply_can_be_limited_to_owners(db_url: str) -> None:
    add_transaction(db_url, "u1", "ENGEN 42")
    other = add_transaction(db_url, "u2", "ENGEN 43")

    change = create_rule(
        SYSTEM_SCOPE, "engen", "Engen", PendingDefault("Fuel"), reapply_owners=["u1"],
        database_url=db_url,
    )

    assert [r.owner_id for r in change.reapplied] == ["u1"]
    assert get_transaction(db_url, other).category_id is None


def test_personal_override_and_revert_to_system(db_url: str) -> None:
    add_rule(db_url, "woolworths", "Woolworths", category_id="NEW:Groceries",
             category_name="Groceries")
    tx = add_transaction(db_url, "u1", "WOOLWORTHS FOOD ROSEBANK")
    update_all_mappings("u1", database_url=db_url)
    assert get_transaction(db_url, tx).category_name == "Groceries"

    create_rule("u1", "woolworths", "Woolies", ByName("Treats"), database_url=db_url)
    row = get_transaction(db_url, tx)
    assert row.category_name == "Treats"
    assert row.mapped_description == "Woolies"

    change = revert_to_system("u1", "WOOLWORTHS", database_url=db_url)

    assert change.rule_id is None
    row = get_transaction(db_url, tx)
    assert row.category_name == "Groceries"
    assert row.mapped_description == "Woolworths"
    assert rules_in(db_url, "u1") == []


def test_revert_to_system_without_personal_rule(db_url: str) -> None:
    with pytest.raises(LookupError):
        revert_to_system("u1", "woolworths", database_url=db_url)


def test_update_rule_onto_existing_key_merges(db_url: str) -> None:
    cid = add_category(db_url, "u1", "Takeaways")
    keep = add_rule(db_url, "kfc", "KFC", scope="u1", category_id=cid,
                    category_name="Takeaways")
    edited = add_rule(db_url, "kfc cent", "KFC Centurion", scope="u1")
    tx = add_transaction(db_url, "u1", "KFC CENT400723 CENTURION ZA")

    change = update_rule(edited, match_text="KFC", database_url=db_url)

    assert change.rule_id == keep
    (rule,) = rules_in(db_url, "u1")
    assert rule.id == keep
    assert rule.mapped_description == "KFC Centurion"
    assert rule.category_id is None
    assert {r.normalized_text for r in change.reapplied} == {"kfc cent", "kfc"}
    row = get_transaction(db_url, tx)
    assert row.mapped_description == "KFC Centurion"


def test_update_rule_renames_key_in_place(db_url: str) -> None:
    rule_id = add_rule(db_url, "mugg bean", "Mugg & Bean", scope="u1")

    change = update_rule(rule_id, match_text="Mugg & Bean", database_url=db_url)

    assert change.rule_id == rule_id
    (rule,) = rules_in(db_url, "u1")
    assert rule.normalized_match_text == "mugg and bean"
    assert rule.match_text == "Mugg & Bean"


def test_update_unknown_rule_raises(db_url: str) -> None:
    with pytest.raises(LookupError):
        update_rule("missing", mapped_description="x", database_url=db_url)


def test_system_rules_need_a_category_name(db_url: str) -> None:
    with pytest.raises(ValueError):
        create_rule(SYSTEM_SCOPE, "kfc", "KFC", Existing("c1"), database_url=db_url)


def test_map_transaction_with_rule_and_similar(db_url: str) -> None:
    chosen = add_transaction(db_url, "u1", "KAUAI IRENE LINK")
    similar = add_transaction(db_url, "u1", "KAUAI MENLYN")
    unrelated = add_transaction(db_url, "u1", "KFC CENTURION")
    foreign = add_transaction(db_url, "u2", "KAUAI IRENE LINK")

    result = map_transaction(
        "u1",
        chosen,
        ByName("Eating Out"),
        "Kauai",
        match_text="kauai",
        save_rule=True,
        update_similar=True,
        database_url=db_url,
    )

    assert result.category.name == "Eating Out"
    assert result.rule is not None and result.rule.created
    for tx in (chosen, similar):
        row = get_transaction(db_url, tx)
        assert row.category_id == result.category.id
        assert row.mapped_description == "Kauai"
    assert get_transaction(db_url, unrelated).category_id is None
    assert get_transaction(db_url, foreign).category_id is None
    (rule,) = rules_in(db_url, "u1")
    assert rule.normalized_match_text == "kauai"
    assert rule.category_id == result.category.id


def test_map_transaction_clears_suggestions(db_url: str) -> None:
    tx = add_transaction(
        db_url,
        "u1",
        "APPLE.COM/BILL",
        suggested_category_id="NEW:Subscriptions",
        suggested_category_name="Subscriptions",
        suggested_merchant="Apple",
    )

    result = map_transaction("u1", tx, PendingDefault("Subscriptions"), database_url=db_url)

    row = get_transaction(db_url, tx)
    assert result.rule is None
    assert result.similar is None
    assert row.category_name == "Subscriptions"
    assert row.mapped_description == "APPLE.COM/BILL"
    assert row.suggested_category_id is None
    assert row.suggested_merchant is None


def test_map_transaction_of_another_owner(db_url: str) -> None:
    tx = add_transaction(db_url, "u2", "KFC")
    with pytest.raises(LookupError):
        map_transaction("u1", tx, ByName("Eating Out"), database_url=db_url)


def test_seed_file_is_idempotent(db_url: str) -> None:
    data = json.loads(_SEED_FILE.read_text(encoding="utf-8"))

    first = seed_system_defaults(_SEED_FILE, database_url=db_url)
    second = seed_system_defaults(_SEED_FILE, database_url=db_url)

    assert first.default_categories == len(data["default_categories"])
    assert first.rules_created == len(data["rules"])
    assert second.rules_created == 0
    assert second.rules_updated == len(data["rules"])
    rules = rules_in(db_url, SYSTEM_SCOPE)
    assert len(rules) == len(data["rules"])
    assert all(r.source == "seed" for r in rules)
    assert all((r.category_id or "NEW:").startswith("NEW:") for r in rules)


def test_seed_then_categorize(db_url: str) -> None:
    seed_system_defaults(
        {
            "default_categories": ["Groceries", "Eating Out"],
            "rules": [
                {"match_text": "Checkers Hyper", "mapped_description": "Checkers Hyper",
                 "category": "Groceries"},
                {"match_text": "Mugg & Bean", "category": "Eating Out"},
                {"match_text": "   "},
            ],
        },
        database_url=db_url,
    )
    hyper = add_transaction(db_url, "u1", "CHECKERS HYPER MENLYN")
    mugg = add_transaction(db_url, "u1", "MUGG AND BEAN ROSEBANK")

    report = update_all_mappings("u1", database_url=db_url)

    assert report.written.applied == 2
    assert get_transaction(db_url, hyper).category_name == "Groceries"
    row = get_transaction(db_url, mugg)
    assert row.category_name == "Eating Out"
    assert row.mapped_description == "Mugg & Bean"
