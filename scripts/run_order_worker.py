"""
Self-scheduled order worker.

Starts the market data feed, subscribes the tokens of every open position and
runs one worker pass every ``--interval`` seconds until interrupted. Use this
where no external cron hits /api/cron/order-worker.

Usage examples:

    # Run forever with configs/dev.yaml
    python -m scripts.run_order_worker

    # One pass, bigger batch, 2s grace window for the placement path
    python -m scripts.run_order_worker --once --limit 100 --max-age-ms 2000
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import List, Optional, Sequence

from sqlalchemy import select

from apps.context import EngineContext, build_engine_context
from core.config import DEFAULT_CONFIG_PATH, load_config
from core.db import session_scope
from core.logging_utils import setup_logging
from core.models import Position

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SEC = 5.0


def open_position_tokens(context: EngineContext) -> List[int]:
    with session_scope(context.session_factory) as session:
        rows = session.execute(
            select(Position.instrument_token).where(Position.quantity != 0, Position.instrument_token.is_not(None))
        ).scalars()
        return sorted(set(rows))


def run_loop(
    context: EngineContext,
    *,
    interval: float,
    limit: Optional[int],
    max_age_ms: Optional[int],
    once: bool,
    stop_event: Optional[threading.Event] = None,
) -> int:
    """Run passes until ``stop_event`` is set (or once). Returns the number of passes."""
    stop_event = stop_event or threading.Event()
    passes = 0
    while not stop_event.is_set():
        result = context.worker.process_pending_orders(limit=limit, max_age_ms=max_age_ms)
        passes += 1
        if not result.success:
            logger.error("Worker pass failed: %s", result.error)
        if once:
            break
        stop_event.wait(interval)
    return passes


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the order execution worker on a fixed interval.")
    parser.add_argument("--config", default=str(DEFAULT_CONFIG_PATH), help="Path to YAML config (default: configs/dev.yaml)")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between passes (default: worker.interval_sec or 5)")
    parser.add_argument("--limit", type=int, default=None, help="Max orders per pass (clamped to 1..200)")
    parser.add_argument("--max-age-ms", type=int, default=None, help="Only pick orders at least this old")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    cfg = load_config(args.config)
    setup_logging(cfg.logging)

    context = build_engine_context(cfg)
    interval = args.interval if args.interval is not None else float(cfg.worker.get("interval_sec", DEFAULT_INTERVAL_SEC))

    stop_event = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received signal %s; stopping after the current pass", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    if cfg.market_data.get("enabled", True):
        context.market_data.start()
    tokens = open_position_tokens(context)
    if tokens:
        context.market_data.ensure_subscribed(tokens)
    logger.info("Order worker runner started: interval=%.1fs, open-position tokens=%d", interval, len(tokens))

    try:
        passes = run_loop(
            context,
            interval=interval,
            limit=args.limit,
            max_age_ms=args.max_age_ms,
            once=args.once,
            stop_event=stop_event,
        )
    finally:
        context.close()
    logger.info("Order worker runner stopped after %d pass(es)", passes)


if __name__ == "__main__":
    main()
