"""Shared fixtures: in-memory database, fake feed transport, fake clock."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from core.db import create_db_engine, init_db, make_session_factory, session_scope
from core.event_bus import EventBus
from core.funds_ledger import FundsLedger
from core.market_data_cache import MarketDataCache
from core.models import Order, OrderSide, OrderType, Position, TradingAccount
from core.risk_thresholds import RiskThresholdsResolver
from execution.order_worker import OrderExecutionWorker


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeTicker:
    """Stands in for KiteTicker: records calls, callbacks are fired by the test."""

    def __init__(self) -> None:
        self.connect_calls: List[Dict[str, Any]] = []
        self.subscribe_calls: List[List[int]] = []
        self.mode_calls: List[tuple] = []
        self.closed = False
        self.on_ticks = None
        self.on_connect = None
        self.on_close = None
        self.on_error = None
        self.on_reconnect = None
        self.on_noreconnect = None

    def connect(self, threaded: bool = False, **kwargs: Any) -> None:
        self.connect_calls.append({"threaded": threaded, **kwargs})

    def subscribe(self, tokens) -> None:
        self.subscribe_calls.append(list(tokens))

    def set_mode(self, mode, tokens) -> None:
        self.mode_calls.append((mode, list(tokens)))

    def close(self, code=None, reason=None) -> None:
        self.closed = True

    # test helpers
    def fire_connect(self) -> None:
        self.on_connect(self, {})

    def fire_close(self, code: int = 1006, reason: str = "connection lost") -> None:
        self.on_close(self, code, reason)

    def fire_ticks(self, ticks) -> None:
        self.on_ticks(self, ticks)

    @property
    def subscribed_tokens(self) -> List[int]:
        return [t for call in self.subscribe_calls for t in call]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_ticker() -> FakeTicker:
    return FakeTicker()


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def ledger(session_factory) -> FundsLedger:
    return FundsLedger(session_factory)


@pytest.fixture
def cache(clock) -> MarketDataCache:
    return MarketDataCache({"quote_max_age_ms": 7500}, clock=clock)


@pytest.fixture
def resolver(session_factory, clock) -> RiskThresholdsResolver:
    return RiskThresholdsResolver(session_factory, environ={}, clock=clock)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def worker(session_factory, cache, ledger, resolver, bus) -> OrderExecutionWorker:
    return OrderExecutionWorker(
        session_factory,
        cache,
        ledger,
        resolver,
        notifier=bus,
        cfg={"limit": 25},
        risk_cfg={"max_auto_closes_per_account": 5},
    )


def add_account(session_factory, account_id: str = "acct-1", *, balance: float = 1000.0,
                available: Optional[float] = None, used: float = 0.0) -> str:
    with session_scope(session_factory) as session:
        session.add(
            TradingAccount(
                id=account_id,
                balance=balance,
                available_margin=balance if available is None else available,
                used_margin=used,
            )
        )
    return account_id


def add_order(session_factory, order_id: str, *, account_id: str = "acct-1", symbol: str = "INFY",
              token: Optional[int] = 408065, side: OrderSide = OrderSide.BUY,
              order_type: OrderType = OrderType.MARKET, quantity: int = 10,
              limit_price: Optional[float] = None, blocked_margin: float = 0.0, created_at=None,
              position_id: Optional[str] = None, is_auto_close: bool = False) -> str:
    with session_scope(session_factory) as session:
        order = Order(
            id=order_id,
            account_id=account_id,
            symbol=symbol,
            instrument_token=token,
            side=side,
            order_type=order_type,
            quantity=quantity,
            limit_price=limit_price,
            blocked_margin=blocked_margin,
            position_id=position_id,
            is_auto_close=is_auto_close,
        )
        if created_at is not None:
            order.created_at = created_at
        session.add(order)
    return order_id


def add_position(session_factory, position_id: str, *, account_id: str = "acct-1", symbol: str = "INFY",
                 token: int = 408065, quantity: int = 10, average_price: float = 100.0,
                 stop_loss: Optional[float] = None, target: Optional[float] = None) -> str:
    with session_scope(session_factory) as session:
        session.add(
            Position(
                id=position_id,
                account_id=account_id,
                symbol=symbol,
                instrument_token=token,
                quantity=quantity,
                average_price=average_price,
                stop_loss=stop_loss,
                target=target,
            )
        )
    return position_id


def load(session_factory, model, pk):
    with session_scope(session_factory) as session:
        return session.get(model, pk)
