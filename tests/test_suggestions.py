# ruff: noqa: I001
from __future__ import annotations

import json
from datetime import date
from typing import Any

import pytest

import budget_rules.suggestions as suggestions_mod
from budget_rules.errors import ClassifierResponseError
from budget_rules.suggestions import (
    accept_one,
    approve_proposed_rule,
    build_suggestion_batches,
    bulk_approve,
    parse_suggestions,
    propose_rules_for_owner,
    reject_one,
    request_suggestions,
)
from tests.helpers.db import (
    add_category,
    add_default_categories,
    add_rule,
    add_transaction,
    categories_of,
    get_transaction,
    rules_in,
)
from tests.helpers.openai_stub import OpenAIStub, extract_transactions, scripted_client

_MERCHANTS: dict[str, tuple[str, str]] = {
    "kfc": ("KFC", "Eating Out"),
    "uber eats": ("Uber Eats", "Eating Out"),
    "checkers": ("Checkers", "Groceries"),
    "mystery": ("Mystery", "Uncategorized"),
}


def _decide(_tx_id: str, desc: str) -> tuple[str, str] | None:
    low = desc.lower()
    for key, answer in _MERCHANTS.items():
        if key in low:
            return answer
    return None


def _install_stub(monkeypatch: pytest.MonkeyPatch) -> OpenAIStub:
    stub = OpenAIStub(_decide)
    monkeypatch.setattr(suggestions_mod, "OpenAI", lambda *a, **kw: stub)
    return stub


class _HTTPError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


# ---- parse_suggestions -------------------------------------------------------


def test_parse_accepts_bare_array_and_coerces_ids() -> None:
    out = parse_suggestions(
        json.dumps(
            [
                {"id": 7, "merchant": " KFC ", "category": "Eating Out"},
                {"id": "t2", "merchant": "", "category": "Groceries", "extra": 1},
            ]
        )
    )
    assert [(s.id, s.merchant, s.category) for s in out] == [
        ("7", "KFC", "Eating Out"),
        ("t2", None, "Groceries"),
    ]


def test_parse_extracts_array_from_prose_and_drops_bad_items() -> None:
    text = (
        "Sure! Here you go:\n"
        '[{"id": "t1", "merchant": "Uber", "category": "Transport"}, {"merchant": "no id"}]\n'
        "Let me know if you need anything else."
    )
    (only,) = parse_suggestions(text)
    assert only.id == "t1"


@pytest.mark.parametrize("text", ["no json here", '{"id": "t1"}', "[not json]"])
def test_parse_rejects_non_arrays(text: str) -> None:
    with pytest.raises(ClassifierResponseError):
        parse_suggestions(text)


# ---- request_suggestions -----------------------------------------------------


def test_request_writes_suggestions_only(db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
    eating_out = add_category(db_url, "u1", "Eating Out")
    add_default_categories(db_url, "Groceries", "Eating Out")
    kfc = add_transaction(db_url, "u1", "KFC CENT400723 CENTURION ZA")
    checkers = add_transaction(db_url, "u1", "CHECKERS SANDTON")
    mystery = add_transaction(db_url, "u1", "MYSTERY CHARGE")
    unknown = add_transaction(db_url, "u1", "ZZZ 123")
    stub = _install_stub(monkeypatch)

    report = request_suggestions("u1", database_url=db_url, chunk_size=2, model="test-model")

    assert report.requested == 4
    assert report.chunks == 2
    assert report.chunks_failed == 0
    assert report.suggested == 2
    assert all(c["model"] == "test-model" for c in stub.calls)
    assert "My Categories: Eating Out, Groceries" in stub.calls[0]["input"]
    sent = [tx_id for call in stub.calls for tx_id, _ in extract_transactions(call["input"])]
    assert sorted(sent) == sorted([kfc, checkers, mystery, unknown])

    row = get_transaction(db_url, kfc)
    assert row.suggested_category_id == eating_out
    assert row.suggested_merchant == "KFC"
    assert row.category_id is None
    row = get_transaction(db_url, checkers)
    assert row.suggested_category_id == "NEW:Groceries"
    assert row.suggested_category_name == "Groceries"
    assert get_transaction(db_url, mystery).suggested_category_id is None
    assert get_transaction(db_url, unknown).suggested_category_id is None
    # Defaults stay pending until a suggestion is accepted.
    assert [c.name for c in categories_of(db_url, "u1")] == ["Eating Out"]


def test_request_skips_mapped_and_already_suggested(
    db_url: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    cid = add_category(db_url, "u1", "Eating Out")
    add_transaction(db_url, "u1", "KFC ONE", category_id=cid, category_name="Eating Out")
    add_transaction(db_url, "u1", "KFC TWO", suggested_category_id=cid,
                    suggested_category_name="Eating Out")
    stub = _install_stub(monkeypatch)

    report = request_suggestions("u1", database_url=db_url)

    assert report.requested == 0
    assert stub.calls == []


def test_failed_chunk_does_not_abort_batch(db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
    add_category(db_url, "u1", "Eating Out")
    first = add_transaction(db_url, "u1", "KFC A", tx_id="t1")
    second = add_transaction(db_url, "u1", "KFC B", tx_id="t2")
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(
        suggestions_mod,
        "OpenAI",
        scripted_client(
            [
                "I'm sorry, I can't help with that.",
                json.dumps([{"id": second, "merchant": "KFC", "category": "eating out"}]),
            ],
            calls,
        ),
    )

    report = request_suggestions("u1", database_url=db_url, chunk_size=1)

    assert report.chunks == 2
    assert report.chunks_failed == 1
    assert report.suggested == 1
    assert get_transaction(db_url, first).suggested_category_id is None
    assert get_transaction(db_url, second).suggested_merchant == "KFC"


def test_rate_limit_is_retried(db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
    add_category(db_url, "u1", "Eating Out")
    tx = add_transaction(db_url, "u1", "KFC A")
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(suggestions_mod, "_sleep_backoff", lambda attempt: None)
    monkeypatch.setattr(
        suggestions_mod,
        "OpenAI",
        scripted_client(
            [
                _HTTPError(429),
                _HTTPError(503),
                json.dumps([{"id": tx, "merchant": "KFC", "category": "Eating Out"}]),
            ],
            calls,
        ),
    )

    report = request_suggestions("u1", database_url=db_url)

    assert len(calls) == 3
    assert report.chunks_failed == 0
    assert report.suggested == 1


def test_client_errors_are_not_retried(db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
    add_transaction(db_url, "u1", "KFC A")
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(suggestions_mod, "_sleep_backoff", lambda attempt: None)
    monkeypatch.setattr(suggestions_mod, "OpenAI", scripted_client([_HTTPError(400)], calls))

    report = request_suggestions("u1", database_url=db_url)

    assert len(calls) == 1
    assert report.chunks_failed == 1
    assert report.suggested == 0


# ---- review and approval -----------------------------------------------------


def _suggested(
    db_url: str, owner: str, desc: str, merchant: str, category: str, **fields: Any
) -> str:
    return add_transaction(
        db_url,
        owner,
        desc,
        **fields,
        suggested_category_id=f"NEW:{category}",
        suggested_category_name=category,
        suggested_merchant=merchant,
    )


def test_batches_group_by_category(db_url: str) -> None:
    _suggested(db_url, "u1", "KFC A", "KFC", "Eating Out")
    _suggested(db_url, "u1", "CHECKERS A", "Checkers", "Groceries")
    _suggested(db_url, "u1", "UBER EATS", "Uber Eats", "Eating Out")
    add_transaction(db_url, "u1", "NO SUGGESTION")

    batches = build_suggestion_batches("u1", database_url=db_url)

    assert [(b.category_name, len(b.items)) for b in batches] == [
        ("Eating Out", 2),
        ("Groceries", 1),
    ]


def test_accept_one_materializes_category(db_url: str) -> None:
    tx = _suggested(db_url, "u1", "APPLE.COM/BILL", "Apple", "Subscriptions")

    category = accept_one("u1", tx, database_url=db_url)

    assert category.created
    row = get_transaction(db_url, tx)
    assert row.category_id == category.id
    assert row.category_name == "Subscriptions"
    assert row.mapped_description == "Apple"
    assert row.suggested_category_id is None
    assert row.suggested_merchant is None


def test_accept_without_suggestion_raises(db_url: str) -> None:
    tx = add_transaction(db_url, "u1", "KFC A")
    with pytest.raises(ValueError):
        accept_one("u1", tx, database_url=db_url)


def test_reject_one_keeps_category(db_url: str) -> None:
    cid = add_category(db_url, "u1", "Groceries")
    tx = add_transaction(
        db_url,
        "u1",
        "CHECKERS",
        category_id=cid,
        category_name="Groceries",
        suggested_category_id="NEW:Shopping",
        suggested_category_name="Shopping",
        suggested_merchant="Checkers",
    )

    reject_one("u1", tx, database_url=db_url)

    row = get_transaction(db_url, tx)
    assert row.category_id == cid
    assert row.suggested_category_id is None


def test_reject_other_owners_transaction(db_url: str) -> None:
    tx = _suggested(db_url, "u2", "KFC", "KFC", "Eating Out")
    with pytest.raises(LookupError):
        reject_one("u1", tx, database_url=db_url)


def test_bulk_approve_accepts_rejects_and_saves_rules(db_url: str) -> None:
    kfc_a = _suggested(db_url, "u1", "KFC CENTURION", "KFC", "Eating Out")
    kfc_b = _suggested(db_url, "u1", "KFC MENLYN", "KFC", "Eating Out")
    wrong = _suggested(db_url, "u1", "CHECKERS SANDTON", "Checkers", "Shopping")
    backlog = add_transaction(db_url, "u1", "KFC IRENE")
    # Flagged but not selected: no rule.
    flagged_only = _suggested(db_url, "u1", "MUGG & BEAN", "Mugg & Bean", "Eating Out")

    report = bulk_approve(
        "u1",
        [kfc_a, kfc_b],
        [kfc_a, kfc_b, flagged_only],
        database_url=db_url,
    )

    assert report.approved == 2
    assert report.rejected == 2
    assert report.rules_saved == 1
    assert report.written.ok
    (rule,) = rules_in(db_url, "u1")
    assert rule.normalized_match_text == "kfc"
    assert rule.source == "suggestion"
    (eating_out,) = categories_of(db_url, "u1")
    for tx in (kfc_a, kfc_b, backlog):
        row = get_transaction(db_url, tx)
        assert row.category_id == eating_out.id
        assert row.mapped_description == "KFC"
    assert [r.normalized_text for r in report.reapplied] == ["kfc"]
    assert report.reapplied[0].written.applied == 1
    for tx in (wrong, flagged_only):
        row = get_transaction(db_url, tx)
        assert row.category_id is None
        assert row.suggested_category_id is None


def test_bulk_approve_recategorizes_history_claimed_by_shorter_rule(db_url: str) -> None:
    add_rule(db_url, "UBER", "Uber", category_id="NEW:Transport", category_name="Transport")
    transport = add_category(db_url, "u1", "Transport")
    history = add_transaction(
        db_url,
        "u1",
        "UBER EATS JHB 1",
        tx_date=date(2025, 1, 5),
        category_id=transport,
        category_name="Transport",
        mapped_description="Uber",
    )
    order = _suggested(
        db_url, "u1", "UE ORDER 9", "Uber Eats", "Eating Out", tx_date=date(2025, 2, 1)
    )

    report = bulk_approve("u1", [order], [order], database_url=db_url)

    assert report.rules_saved == 1
    (reapplied,) = report.reapplied
    assert reapplied.normalized_text == "uber eats"
    assert reapplied.written.applied == 1
    eating_out = next(c for c in categories_of(db_url, "u1") if c.name == "Eating Out")
    row = get_transaction(db_url, history)
    assert row.category_id == eating_out.id
    assert row.category_name == "Eating Out"
    assert row.mapped_description == "Uber Eats"
    assert get_transaction(db_url, order).category_id == eating_out.id


def test_proposed_rules_and_approval(db_url: str) -> None:
    uber_a = _suggested(
        db_url, "u1", "UBER EATS JHB", "Uber Eats", "Eating Out", tx_date=date(2025, 1, 1)
    )
    uber_b = _suggested(db_url, "u1", "UBER EATS PTA", "uber eats", "Eating Out")
    other = add_transaction(db_url, "u1", "UBER EATS CPT")
    _suggested(db_url, "u1", "NOWHERE", "", "Eating Out")

    (proposal,) = propose_rules_for_owner("u1", database_url=db_url)

    assert proposal.match_text == "Uber Eats"
    assert proposal.category_id == "NEW:Eating Out"
    assert set(proposal.transaction_ids) == {uber_a, uber_b}
    assert set(proposal.affected_ids) == {uber_a, uber_b, other}

    change = approve_proposed_rule("u1", proposal, database_url=db_url)

    assert change.created
    for tx in (uber_a, uber_b, other):
        row = get_transaction(db_url, tx)
        assert row.category_name == "Eating Out"
        assert row.mapped_description == "Uber Eats"
        assert row.suggested_category_id is None
