"""
ORM models for the execution & risk engine.

Rows:
- TradingAccount: per-account ledger fields (balance, available/used margin)
- Order: created PENDING by the placement path, advanced only by the worker
- Position: signed quantity per account+instrument (zero means closed)
- Transaction: immutable audit row appended by every ledger mutation
- SystemSetting: operator-editable key/value configuration store

Timestamps are stored as naive UTC.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum as SAEnum, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(str, Enum):
    """
    Order lifecycle.

    PENDING -> EXECUTED   fill conditions met
    PENDING -> CANCELLED  risk auto-close / operator cancel / invalid order
    PENDING -> REJECTED   fill rejected (e.g. insufficient margin)

    Terminal states are never left.
    """
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.EXECUTED, OrderStatus.CANCELLED, OrderStatus.REJECTED})


class TransactionType(str, Enum):
    MARGIN_BLOCK = "MARGIN_BLOCK"
    MARGIN_RELEASE = "MARGIN_RELEASE"
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


def _enum(cls):
    return SAEnum(cls, native_enum=False, length=24, validate_strings=True)


class Base(DeclarativeBase):
    pass


class TradingAccount(Base):
    __tablename__ = "trading_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    available_margin: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    used_margin: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"TradingAccount(id={self.id!r}, balance={self.balance}, "
            f"available={self.available_margin}, used={self.used_margin})"
        )


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (Index("ix_orders_status_created", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(ForeignKey("trading_accounts.id"), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    instrument_token: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    side: Mapped[OrderSide] = mapped_column(_enum(OrderSide), nullable=False)
    order_type: Mapped[OrderType] = mapped_column(_enum(OrderType), nullable=False, default=OrderType.MARKET)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[OrderStatus] = mapped_column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    filled_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    # Margin reserved by the placement path before the worker ever sees the order.
    blocked_margin: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    segment: Mapped[str] = mapped_column(String(16), nullable=False, default="NSE")
    product_type: Mapped[str] = mapped_column(String(16), nullable=False, default="MIS")
    position_id: Mapped[Optional[str]] = mapped_column(ForeignKey("positions.id"), nullable=True)
    is_auto_close: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.side == OrderSide.BUY else -self.quantity

    def __repr__(self) -> str:
        return (
            f"Order(id={self.id!r}, {self.side.value} {self.quantity} {self.symbol} "
            f"{self.order_type.value}, status={self.status.value})"
        )


class Position(Base):
    __tablename__ = "positions"
    __table_args__ = (Index("ix_positions_account_symbol", "account_id", "symbol"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(ForeignKey("trading_accounts.id"), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    instrument_token: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    stop_loss: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    target: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    unrealized_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    day_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_open(self) -> bool:
        return self.quantity != 0

    def __repr__(self) -> str:
        return f"Position(id={self.id!r}, {self.symbol} qty={self.quantity} avg={self.average_price})"


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(ForeignKey("trading_accounts.id"), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    # Ledger state right after this row was applied; lets an idempotent replay
    # hand back the original result.
    balance_after: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    available_margin_after: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    used_margin_after: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class SystemSetting(Base):
    __tablename__ = "system_settings"
    __table_args__ = (Index("ix_system_settings_key_active", "key", "is_active"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="GENERAL")
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
