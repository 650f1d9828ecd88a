"""Tests for the funds ledger: atomic balance/margin mutations with an audit row each."""

import math

import pytest
from sqlalchemy import func, select

from conftest import add_account, load
from core.db import session_scope
from core.errors import AccountNotFoundError, InsufficientMarginError
from core.models import TradingAccount, Transaction, TransactionType


def _transactions(session_factory, account_id="acct-1"):
    with session_scope(session_factory) as session:
        return list(
            session.execute(
                select(Transaction).where(Transaction.account_id == account_id).order_by(Transaction.created_at)
            ).scalars()
        )


class TestOperations:
    def test_block_then_release(self, session_factory, ledger):
        add_account(session_factory, balance=1000)

        blocked = ledger.block_margin("acct-1", 400, "Margin blocked for order")
        assert (blocked.new_available_margin, blocked.new_used_margin) == (600, 400)

        released = ledger.release_margin("acct-1", 150)
        assert (released.new_available_margin, released.new_used_margin) == (750, 250)
        assert released.new_balance == 1000

        txs = _transactions(session_factory)
        assert [(t.type, t.amount) for t in txs] == [
            (TransactionType.MARGIN_BLOCK, -400),
            (TransactionType.MARGIN_RELEASE, 150),
        ]

    def test_debit_and_credit_move_balance_and_available(self, session_factory, ledger):
        add_account(session_factory, balance=1000)

        ledger.debit("acct-1", 100, "Charges")
        result = ledger.credit("acct-1", 40.5, "Realized profit")

        assert result.new_balance == pytest.approx(940.5)
        assert result.new_available_margin == pytest.approx(940.5)
        assert result.new_used_margin == 0

    def test_block_more_than_available_is_rejected_without_side_effects(self, session_factory, ledger):
        add_account(session_factory, balance=1000)

        with pytest.raises(InsufficientMarginError) as excinfo:
            ledger.block_margin("acct-1", 1000.01)

        assert excinfo.value.code == "INSUFFICIENT_MARGIN"
        assert excinfo.value.required == pytest.approx(1000.01)
        account = load(session_factory, TradingAccount, "acct-1")
        assert (account.available_margin, account.used_margin) == (1000, 0)
        assert _transactions(session_factory) == []

    def test_debit_more_than_available_is_rejected(self, session_factory, ledger):
        add_account(session_factory, balance=1000, available=50, used=950)
        with pytest.raises(InsufficientMarginError):
            ledger.debit("acct-1", 60)
        assert load(session_factory, TradingAccount, "acct-1").balance == 1000

    def test_release_is_clamped_at_used_margin(self, session_factory, ledger):
        add_account(session_factory, balance=1000, available=900, used=100)

        result = ledger.release_margin("acct-1", 300)

        assert result.new_used_margin == 0
        assert result.new_available_margin == 1000
        assert result.amount == 100
        (tx,) = _transactions(session_factory)
        assert tx.amount == 100
        assert "clamped" in tx.description

    @pytest.mark.parametrize("amount", [0, -5, math.nan, math.inf, "abc"])
    def test_invalid_amounts(self, session_factory, ledger, amount):
        add_account(session_factory)
        with pytest.raises(ValueError):
            ledger.credit("acct-1", amount)

    def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            ledger.block_margin("missing", 10)

    def test_account_funds_snapshot(self, session_factory, ledger):
        add_account(session_factory, balance=1000, available=600, used=400)
        funds = ledger.get_account_funds("acct-1")
        assert funds == {"balance": 1000, "available_margin": 600, "used_margin": 400, "total_funds": 1600}


class TestIdempotency:
    def test_debit_with_same_key_applies_once(self, session_factory, ledger):
        add_account(session_factory, balance=1000)

        first = ledger.debit("acct-1", 100, "Charges", idempotency_key="K")
        second = ledger.debit("acct-1", 100, "Charges", idempotency_key="K")

        assert first.replayed is False
        assert second.replayed is True
        assert second.transaction_id == first.transaction_id
        assert second.new_balance == first.new_balance == 900
        assert load(session_factory, TradingAccount, "acct-1").balance == 900
        assert len(_transactions(session_factory)) == 1

    def test_replay_inside_a_caller_session(self, session_factory, ledger):
        add_account(session_factory, balance=1000)
        ledger.block_margin("acct-1", 200, idempotency_key="order:o1:fill:block")

        with session_scope(session_factory) as session:
            replay = ledger.block_margin("acct-1", 200, idempotency_key="order:o1:fill:block", session=session)

        assert replay.replayed is True
        assert load(session_factory, TradingAccount, "acct-1").used_margin == 200


class TestAtomicity:
    def test_joined_operation_rolls_back_with_the_caller(self, session_factory, ledger):
        add_account(session_factory, balance=1000)

        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                ledger.block_margin("acct-1", 300, session=session)
                raise RuntimeError("order update failed")

        account = load(session_factory, TradingAccount, "acct-1")
        assert (account.available_margin, account.used_margin) == (1000, 0)
        assert _transactions(session_factory) == []

    def test_every_mutation_has_exactly_one_audit_row(self, session_factory, ledger):
        add_account(session_factory, balance=1000)
        ledger.block_margin("acct-1", 100)
        ledger.release_margin("acct-1", 50)
        ledger.debit("acct-1", 10)
        ledger.credit("acct-1", 5)
        with pytest.raises(InsufficientMarginError):
            ledger.block_margin("acct-1", 10_000)

        with session_scope(session_factory) as session:
            count = session.execute(select(func.count()).select_from(Transaction)).scalar_one()
        assert count == 4

        txs = _transactions(session_factory)
        last = txs[-1]
        account = load(session_factory, TradingAccount, "acct-1")
        assert (last.balance_after, last.available_margin_after, last.used_margin_after) == (
            account.balance,
            account.available_margin,
            account.used_margin,
        )
