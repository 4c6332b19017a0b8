"""Tests for storyforge.store.ledger — awards, spends, audit trail, atomicity."""

import asyncio

import pytest

from storyforge.errors import AccountMissingError, InsufficientBalanceError, NotFoundError, ValidationError
from storyforge.store import Ledger
from storyforge.store.ledger import OPENING_SOURCE, UNLOCK_SOURCE


async def _assert_consistent(ledger: Ledger, user_id: str) -> None:
    account = await ledger.get_account(user_id)
    history = await ledger.get_transaction_history(user_id, limit=1000)
    earned = sum(t.amount for t in history if t.kind == "earn")
    spent = sum(t.amount for t in history if t.kind == "spend")
    assert account.balance == account.total_earned - account.total_spent
    assert (account.total_earned, account.total_spent) == (earned, spent)
    assert account.balance >= 0


# ── accounts ─────────────────────────────────────────────────


async def test_open_account_books_starting_balance(ledger):
    account = await ledger.open_account("u1", 100)
    assert account.balance == 100
    history = await ledger.get_transaction_history("u1")
    assert [(t.kind, t.amount, t.source) for t in history] == [("earn", 100, OPENING_SOURCE)]


async def test_open_account_is_idempotent(ledger):
    await ledger.open_account("u1", 100)
    await ledger.award("u1", 5, "choice_made")
    again = await ledger.open_account("u1", 100)
    assert again.balance == 105
    assert len(await ledger.get_transaction_history("u1")) == 2


async def test_open_account_with_zero_balance_logs_nothing(ledger):
    account = await ledger.open_account("u1")
    assert account.balance == 0
    assert await ledger.get_transaction_history("u1") == []


async def test_balance_of_unknown_user_is_zero(ledger):
    assert await ledger.get_balance("nobody") == 0
    with pytest.raises(NotFoundError):
        await ledger.get_account("nobody")


# ── award ────────────────────────────────────────────────────


async def test_award(ledger):
    await ledger.open_account("u1", 100)
    outcome = await ledger.award("u1", 5, "choice_made", "pirates")
    assert outcome
    assert outcome.balance == 105
    assert outcome.transaction.kind == "earn"
    assert outcome.transaction.story_id == "pirates"
    await _assert_consistent(ledger, "u1")


async def test_award_without_account_is_rejected(ledger):
    outcome = await ledger.award("ghost", 5, "choice_made")
    assert not outcome
    assert outcome.reason == "account_missing"
    with pytest.raises(AccountMissingError):
        outcome.raise_for_status()
    assert await ledger.get_transaction_history("ghost") == []


async def test_award_can_create_account_when_allowed(db):
    ledger = Ledger(db, create_if_missing=True)
    outcome = await ledger.award("new", 5, "choice_made")
    assert outcome.balance == 5
    await _assert_consistent(ledger, "new")


@pytest.mark.parametrize("amount", [0, -5, 2.5, True])
async def test_award_rejects_bad_amounts(ledger, amount):
    await ledger.open_account("u1", 10)
    with pytest.raises(ValidationError):
        await ledger.award("u1", amount, "choice_made")
    assert await ledger.get_balance("u1") == 10


async def test_award_requires_source(ledger):
    await ledger.open_account("u1")
    with pytest.raises(ValidationError):
        await ledger.award("u1", 5, " ")


# ── spend ────────────────────────────────────────────────────


async def test_spend(ledger):
    await ledger.open_account("u1", 100)
    outcome = await ledger.spend("u1", 30, 7)
    assert outcome
    assert outcome.balance == 70
    assert outcome.transaction.kind == "spend"
    assert outcome.transaction.content_id == "7"
    assert outcome.transaction.source == UNLOCK_SOURCE
    await _assert_consistent(ledger, "u1")


async def test_spend_exact_balance(ledger):
    await ledger.open_account("u1", 30)
    assert (await ledger.spend("u1", 30, "7")).balance == 0


async def test_insufficient_balance_changes_nothing(ledger):
    await ledger.open_account("u1", 10)
    outcome = await ledger.spend("u1", 50, "7")
    assert not outcome
    assert outcome.reason == "insufficient_balance"
    assert outcome.balance == 10
    with pytest.raises(InsufficientBalanceError):
        outcome.raise_for_status()
    assert await ledger.get_balance("u1") == 10
    assert len(await ledger.get_transaction_history("u1")) == 1


async def test_spend_without_account(ledger):
    outcome = await ledger.spend("ghost", 5, "7")
    assert outcome.reason == "account_missing"


async def test_concurrent_spends_never_overdraw(ledger):
    await ledger.open_account("u1", 100)
    outcomes = await asyncio.gather(*(ledger.spend("u1", 30, f"c{i}") for i in range(5)))
    assert sum(1 for o in outcomes if o) == 3
    assert await ledger.get_balance("u1") == 10
    await _assert_consistent(ledger, "u1")


# ── history ──────────────────────────────────────────────────


async def test_history_most_recent_first_and_limited(ledger):
    await ledger.open_account("u1", 10)
    for i in range(1, 4):
        await ledger.award("u1", i, f"source_{i}")
    history = await ledger.get_transaction_history("u1", limit=2)
    assert [t.source for t in history] == ["source_3", "source_2"]


async def test_history_limit_must_be_positive(ledger):
    with pytest.raises(ValidationError):
        await ledger.get_transaction_history("u1", limit=0)


async def test_scenario_award_then_overspend(ledger):
    await ledger.open_account("u1", 100)
    await ledger.award("u1", 5, "choice_made")
    assert (await ledger.spend("u1", 50, "7")).balance == 55
    assert not await ledger.spend("u1", 60, "8")
    assert await ledger.get_balance("u1") == 55
    await _assert_consistent(ledger, "u1")
