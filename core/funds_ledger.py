"""
Funds Ledger

The only legal path to mutate a trading account's balance/margin fields.

Operations (each one atomic, each one appends exactly one Transaction row in
the same database transaction as the balance change):

- block_margin:   available -= amount, used += amount   (INSUFFICIENT_MARGIN if amount > available)
- release_margin: used -= amount, available += amount   (clamped so used never goes below zero)
- debit:          balance -= amount, available -= amount (INSUFFICIENT_MARGIN if amount > available)
- credit:         balance += amount, available += amount

An operation called with an idempotency key that already has a Transaction
row is a no-op that hands back the original result (``replayed=True``).

Callers that need the ledger change to commit together with their own writes
(the order worker) pass their ``session``; otherwise the ledger opens and
commits its own transaction.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from core.db import session_scope
from core.errors import AccountNotFoundError, InsufficientMarginError
from core.event_logging import log_event
from core.models import TradingAccount, Transaction, TransactionType

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


def _money(value: float) -> float:
    return round(float(value), 2)


def _validate_amount(amount: Any) -> float:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}") from None
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"Amount must be a positive finite number, got {amount!r}")
    return _money(value)


@dataclass
class FundOperationResult:
    success: bool
    new_balance: float
    new_available_margin: float
    new_used_margin: float
    transaction_id: str
    amount: float
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _result_from_transaction(tx: Transaction, *, replayed: bool) -> FundOperationResult:
    return FundOperationResult(
        success=True,
        new_balance=tx.balance_after,
        new_available_margin=tx.available_margin_after,
        new_used_margin=tx.used_margin_after,
        transaction_id=tx.id,
        amount=abs(tx.amount),
        replayed=replayed,
    )


class FundsLedger:
    def __init__(self, session_factory: sessionmaker, logger_instance: Optional[logging.Logger] = None) -> None:
        self._session_factory = session_factory
        self.logger = logger_instance or logger

    # ------------------------------------------------------------------ operations

    def block_margin(
        self,
        account_id: str,
        amount: float,
        description: str = "Margin blocked for order",
        *,
        idempotency_key: Optional[str] = None,
        order_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> FundOperationResult:
        return self._run(TransactionType.MARGIN_BLOCK, account_id, amount, description, idempotency_key, order_id, session)

    def release_margin(
        self,
        account_id: str,
        amount: float,
        description: str = "Margin released",
        *,
        idempotency_key: Optional[str] = None,
        order_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> FundOperationResult:
        return self._run(TransactionType.MARGIN_RELEASE, account_id, amount, description, idempotency_key, order_id, session)

    def debit(
        self,
        account_id: str,
        amount: float,
        description: str = "Debit",
        *,
        idempotency_key: Optional[str] = None,
        order_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> FundOperationResult:
        return self._run(TransactionType.DEBIT, account_id, amount, description, idempotency_key, order_id, session)

    def credit(
        self,
        account_id: str,
        amount: float,
        description: str = "Credit",
        *,
        idempotency_key: Optional[str] = None,
        order_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> FundOperationResult:
        return self._run(TransactionType.CREDIT, account_id, amount, description, idempotency_key, order_id, session)

    def get_account_funds(self, account_id: str, *, session: Optional[Session] = None) -> Dict[str, float]:
        if session is None:
            with session_scope(self._session_factory) as s:
                return self.get_account_funds(account_id, session=s)
        account = session.get(TradingAccount, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account_funds(account)

    # ------------------------------------------------------------------ internals

    def _run(
        self,
        op: TransactionType,
        account_id: str,
        amount: float,
        description: str,
        idempotency_key: Optional[str],
        order_id: Optional[str],
        session: Optional[Session],
    ) -> FundOperationResult:
        value = _validate_amount(amount)

        if session is not None:
            return self._apply(session, op, account_id, value, description, idempotency_key, order_id)

        try:
            with session_scope(self._session_factory) as s:
                result = self._apply(s, op, account_id, value, description, idempotency_key, order_id)
        except IntegrityError:
            # A concurrent caller committed the same idempotency key first.
            if not idempotency_key:
                raise
            with session_scope(self._session_factory) as s:
                prior = self._find_by_key(s, idempotency_key)
                if prior is None:
                    raise
                self.logger.info("Ledger %s replayed after concurrent commit (key=%s)", op.value, idempotency_key)
                return _result_from_transaction(prior, replayed=True)

        if not result.replayed:
            log_event(
                "LEDGER",
                f"{op.value} {value:.2f}",
                account_id=account_id,
                extra={
                    "balance": result.new_balance,
                    "available": result.new_available_margin,
                    "used": result.new_used_margin,
                },
            )
        return result

    @staticmethod
    def _find_by_key(session: Session, key: str) -> Optional[Transaction]:
        return session.execute(select(Transaction).where(Transaction.idempotency_key == key)).scalar_one_or_none()

    def _apply(
        self,
        session: Session,
        op: TransactionType,
        account_id: str,
        amount: float,
        description: str,
        idempotency_key: Optional[str],
        order_id: Optional[str],
    ) -> FundOperationResult:
        if idempotency_key:
            prior = self._find_by_key(session, idempotency_key)
            if prior is not None:
                self.logger.info("Ledger %s skipped; key %s already applied", op.value, idempotency_key)
                return _result_from_transaction(prior, replayed=True)

        account = session.execute(
            select(TradingAccount).where(TradingAccount.id == account_id).with_for_update()
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id)

        available = _money(account.available_margin)
        used = _money(account.used_margin)
        balance = _money(account.balance)

        if op == TransactionType.MARGIN_BLOCK:
            if amount > available + _EPSILON:
                raise InsufficientMarginError(amount, available, account_id=account_id)
            available, used = available - amount, used + amount
            signed = -amount
        elif op == TransactionType.MARGIN_RELEASE:
            released = min(amount, max(0.0, used))
            if released < amount:
                self.logger.warning(
                    "Release of %.2f exceeds used margin %.2f on %s; clamped to %.2f",
                    amount,
                    used,
                    account_id,
                    released,
                )
                description = f"{description} (clamped from {amount:.2f})"
            available, used = available + released, used - released
            signed = released
        elif op == TransactionType.DEBIT:
            if amount > available + _EPSILON:
                raise InsufficientMarginError(amount, available, account_id=account_id)
            balance, available = balance - amount, available - amount
            signed = -amount
        elif op == TransactionType.CREDIT:
            balance, available = balance + amount, available + amount
            signed = amount
        else:  # pragma: no cover - enum is closed
            raise ValueError(f"Unknown ledger operation: {op}")

        account.balance = _money(balance)
        account.available_margin = _money(available)
        account.used_margin = _money(max(0.0, used))

        tx = Transaction(
            account_id=account_id,
            amount=_money(signed),
            type=op,
            description=description,
            idempotency_key=idempotency_key,
            order_id=order_id,
            balance_after=account.balance,
            available_margin_after=account.available_margin,
            used_margin_after=account.used_margin,
        )
        session.add(tx)
        session.flush()

        return FundOperationResult(
            success=True,
            new_balance=account.balance,
            new_available_margin=account.available_margin,
            new_used_margin=account.used_margin,
            transaction_id=tx.id,
            amount=abs(tx.amount),
        )


def account_funds(account: TradingAccount) -> Dict[str, float]:
    """
    Ledger snapshot for an account.

    ``total_funds`` (balance + available margin) is the denominator used for
    loss-only margin utilization.
    """
    return {
        "balance": _money(account.balance),
        "available_margin": _money(account.available_margin),
        "used_margin": _money(account.used_margin),
        "total_funds": _money(account.balance + account.available_margin),
    }
