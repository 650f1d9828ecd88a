"""
Wiring for the engine: one place that turns an AppConfig into live objects.

Both the HTTP app and the self-scheduled runner build an EngineContext and
share the same session factory, cache, ledger, resolver and worker.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from core.config import AppConfig
from core.db import create_db_engine, init_db, make_session_factory
from core.event_bus import EventBus
from core.funds_ledger import FundsLedger
from core.margin import MarginCalculator
from core.market_data_cache import MarketDataCache
from core.risk_thresholds import DEFAULT_CACHE_TTL_MS, RiskThresholdsResolver
from execution.order_worker import OrderExecutionWorker

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    config: AppConfig
    engine: Engine
    session_factory: sessionmaker
    market_data: MarketDataCache
    ledger: FundsLedger
    thresholds: RiskThresholdsResolver
    margin: MarginCalculator
    worker: OrderExecutionWorker
    event_bus: EventBus
    cron_secret: Optional[str] = None
    admin_token: Optional[str] = None

    def close(self) -> None:
        self.market_data.stop()
        self.engine.dispose()


def build_engine_context(
    cfg: AppConfig,
    *,
    environ: Optional[Mapping[str, str]] = None,
    ticker_factory: Optional[Callable[[Dict[str, Any]], Any]] = None,
    market_clock: Optional[Callable[[], int]] = None,
    engine: Optional[Engine] = None,
) -> EngineContext:
    env = os.environ if environ is None else environ

    engine = engine or create_db_engine(cfg.database_url, echo=bool(cfg.database.get("echo", False)))
    init_db(engine)
    session_factory = make_session_factory(engine)

    cache_kwargs: Dict[str, Any] = {"ticker_factory": ticker_factory}
    if market_clock is not None:
        cache_kwargs["clock"] = market_clock
    market_data = MarketDataCache(cfg.market_data, **cache_kwargs)

    ledger = FundsLedger(session_factory)
    thresholds = RiskThresholdsResolver(
        session_factory,
        default_ttl_ms=int(cfg.risk.get("thresholds_cache_ttl_ms", DEFAULT_CACHE_TTL_MS)),
        environ=env,
    )
    margin = MarginCalculator(cfg.risk)
    bus = EventBus()
    worker = OrderExecutionWorker(
        session_factory,
        market_data,
        ledger,
        thresholds,
        margin=margin,
        notifier=bus,
        cfg=cfg.worker,
        risk_cfg=cfg.risk,
    )

    cron_secret = env.get("CRON_SECRET") or env.get("ORDER_WORKER_SECRET") or cfg.server.get("cron_secret")
    admin_token = env.get("ADMIN_API_TOKEN") or cfg.server.get("admin_token")

    return EngineContext(
        config=cfg,
        engine=engine,
        session_factory=session_factory,
        market_data=market_data,
        ledger=ledger,
        thresholds=thresholds,
        margin=margin,
        worker=worker,
        event_bus=bus,
        cron_secret=cron_secret or None,
        admin_token=admin_token or None,
    )
