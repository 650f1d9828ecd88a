"""
Order Execution Worker

Stateless, re-entrant pass over PENDING orders:

1. pick up to ``limit`` PENDING orders, oldest first (optionally only those
   older than ``max_age_ms``)
2. price each one from the market data cache; no fresh quote means skip
3. LIMIT orders fill only when the cached price satisfies the limit
4. fill atomically: position merge, ledger reconciliation and the
   PENDING -> EXECUTED transition share one database transaction
5. per-order failures are counted, never raised out of the batch
6. risk pass over every account with open positions (stop-loss / target
   exits, then loss-utilization warning or auto-close)
7. heartbeat, whatever happened

Overlapping passes are safe: the PENDING -> EXECUTED update is guarded by
``WHERE status = 'PENDING'`` and every ledger call carries an idempotency key
derived from the order id.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from itertools import groupby
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from core.db import session_scope
from core.errors import InsufficientMarginError, StaleQuoteError, as_engine_error
from core.event_bus import ORDER_EXECUTED, ORDER_REJECTED, RISK_AUTO_CLOSE, RISK_WARNING
from core.event_logging import log_event
from core.funds_ledger import FundsLedger
from core.margin import MarginCalculator
from core.market_data_cache import MarketDataCache, Quote
from core.models import TERMINAL_ORDER_STATUSES, Order, OrderSide, OrderStatus, OrderType, Position, new_id, utcnow
from core.position_risk import (
    RiskPositionSnapshot,
    compute_day_pnl,
    compute_unrealized_pnl,
    evaluate_exit_trigger,
    pick_risk_auto_close_positions,
)
from core.risk_thresholds import RiskThresholdsResolver
from core.worker_registry import WorkerHeartbeat, is_worker_enabled, utc_now_iso, write_heartbeat
from execution.positions import plan_fill

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 25
MIN_LIMIT = 1
MAX_LIMIT = 200
DEFAULT_MAX_AUTO_CLOSES = 5

REASON_STOP_LOSS = "STOP_LOSS"
REASON_TARGET = "TARGET"
REASON_RISK_AUTO_CLOSE = "RISK_AUTO_CLOSE"
REASON_NOTHING_TO_CLOSE = "POSITION_ALREADY_CLOSED"


class _AlreadyClaimed(Exception):
    """Another pass moved the order out of PENDING first."""


class _NothingToClose(Exception):
    """A closing order found its position already flat or on the other side."""


@dataclass
class ProcessPendingOrdersResult:
    success: bool = True
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: int = 0
    rejected: int = 0
    auto_closed: int = 0
    warnings: int = 0
    elapsed_ms: int = 0
    error: Optional[str] = None
    error_details: List[Dict[str, Any]] = field(default_factory=list)
    heartbeat: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def record_error(self, order_id: Optional[str], exc: BaseException) -> None:
        self.errors += 1
        err = as_engine_error(exc)
        self.error_details.append({"order_id": order_id, "code": err.code, "message": err.message})


def clamp_limit(limit: Any, default: int = DEFAULT_LIMIT) -> int:
    try:
        n = int(limit)
    except (TypeError, ValueError):
        n = default
    return max(MIN_LIMIT, min(MAX_LIMIT, n))


def _closable_quantity(order: Order, position: Optional[Position]) -> int:
    """How much of a closing order still reduces the position; 0 when it would open or add."""
    if position is None or not position.is_open:
        return 0
    if (position.quantity > 0) == (order.side == OrderSide.BUY):
        return 0
    return min(order.quantity, abs(position.quantity))


def _limit_satisfied(side: OrderSide, price: float, limit_price: float) -> bool:
    if side == OrderSide.BUY:
        return price <= limit_price
    return price >= limit_price


class OrderExecutionWorker:
    def __init__(
        self,
        session_factory: sessionmaker,
        market_data: MarketDataCache,
        ledger: FundsLedger,
        thresholds: RiskThresholdsResolver,
        margin: Optional[MarginCalculator] = None,
        notifier: Any = None,
        cfg: Optional[Dict[str, Any]] = None,
        risk_cfg: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._session_factory = session_factory
        self.market_data = market_data
        self.ledger = ledger
        self.thresholds = thresholds
        self.margin = margin or MarginCalculator(risk_cfg)
        self.notifier = notifier

        cfg = cfg or {}
        risk_cfg = risk_cfg or {}
        self.default_limit = clamp_limit(cfg.get("limit", DEFAULT_LIMIT))
        self.default_max_age_ms = max(0, int(cfg.get("max_age_ms", 0) or 0))
        quote_age = cfg.get("quote_max_age_ms")
        self.quote_max_age_ms: Optional[int] = None if quote_age is None else max(0, int(quote_age))
        self.risk_pass_enabled = bool(cfg.get("risk_pass", True))
        self.max_auto_closes = int(risk_cfg.get("max_auto_closes_per_account", DEFAULT_MAX_AUTO_CLOSES))
        self.warning_cooldown_s = float(risk_cfg.get("warning_cooldown_s", 0) or 0)
        self._last_warned: Dict[str, float] = {}

    # ======================================================================
    # Entry point
    # ======================================================================

    def process_pending_orders(
        self,
        limit: Optional[int] = None,
        max_age_ms: Optional[int] = None,
    ) -> ProcessPendingOrdersResult:
        started = time.monotonic()
        result = ProcessPendingOrdersResult()
        reason: Optional[str] = None

        if not is_worker_enabled(self._session_factory):
            logger.info("Order worker disabled via system settings; skipping pass")
            reason = "disabled"
        else:
            try:
                self._run_pass(
                    clamp_limit(limit, self.default_limit) if limit is not None else self.default_limit,
                    self.default_max_age_ms if max_age_ms is None else max(0, int(max_age_ms)),
                    result,
                )
            except Exception as exc:  # noqa: BLE001
                # only infrastructure faults get here; per-order failures are counted inside
                logger.exception("Order worker pass failed")
                result.success = False
                result.error = str(exc)
                reason = "error"

        result.elapsed_ms = int((time.monotonic() - started) * 1000)
        heartbeat = WorkerHeartbeat(
            last_run_at_iso=utc_now_iso(),
            scanned=result.scanned,
            updated=result.updated,
            skipped=result.skipped,
            errors=result.errors,
            elapsed_ms=result.elapsed_ms,
            success=result.success,
            reason=reason,
        )
        write_heartbeat(self._session_factory, heartbeat)
        result.heartbeat = heartbeat.to_dict()

        logger.info(
            "Order worker pass: scanned=%d updated=%d skipped=%d errors=%d cancelled=%d rejected=%d "
            "auto_closed=%d warnings=%d elapsed_ms=%d",
            result.scanned,
            result.updated,
            result.skipped,
            result.errors,
            result.cancelled,
            result.rejected,
            result.auto_closed,
            result.warnings,
            result.elapsed_ms,
        )
        return result

    def _run_pass(self, limit: int, max_age_ms: int, result: ProcessPendingOrdersResult) -> None:
        orders = self._select_pending(limit, max_age_ms)
        result.scanned = len(orders)

        tokens = [o.instrument_token for o in orders if o.instrument_token]
        if tokens:
            self.market_data.ensure_subscribed(tokens)

        for order in orders:
            try:
                self._process_order(order, result)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected error processing order %s", order.id)
                result.record_error(order.id, exc)

        if self.risk_pass_enabled:
            self._run_risk_pass(result)

    def _select_pending(self, limit: int, max_age_ms: int) -> List[Order]:
        stmt = select(Order).where(Order.status == OrderStatus.PENDING)
        if max_age_ms > 0:
            stmt = stmt.where(Order.created_at <= utcnow() - timedelta(milliseconds=max_age_ms))
        stmt = stmt.order_by(Order.created_at.asc(), Order.id.asc()).limit(limit)
        with session_scope(self._session_factory) as session:
            return list(session.execute(stmt).scalars().all())

    # ======================================================================
    # Per-order processing
    # ======================================================================

    def _quote_for(self, token: Optional[int]) -> Optional[Quote]:
        if not token:
            return None
        return self.market_data.get_quote(token, self.quote_max_age_ms)

    def _require_quote(self, order: Order) -> Quote:
        quote = self._quote_for(order.instrument_token)
        if quote is None:
            raise StaleQuoteError(
                f"No fresh quote for token {order.instrument_token}",
                details={"order_id": order.id, "max_age_ms": self.quote_max_age_ms},
            )
        return quote

    def _process_order(self, order: Order, result: ProcessPendingOrdersResult) -> None:
        invalid = self._validation_problem(order)
        if invalid:
            if self.cancel_order(order.id, invalid):
                result.cancelled += 1
            else:
                result.skipped += 1
            return

        try:
            quote = self._require_quote(order)
        except StaleQuoteError as exc:
            # retried next pass, never counted as an error
            result.skipped += 1
            log_event("ORDER_SKIP", str(exc), symbol=order.symbol, order_id=order.id, extra={"code": exc.code})
            return

        price = quote.last_trade_price
        if order.order_type == OrderType.LIMIT and not _limit_satisfied(order.side, price, float(order.limit_price)):
            result.skipped += 1
            logger.debug(
                "LIMIT order %s not marketable: side=%s price=%.2f limit=%.2f",
                order.id,
                order.side.value,
                price,
                order.limit_price,
            )
            return

        outcome = self._attempt_fill(order.id, price, result)
        if outcome == "executed":
            result.updated += 1
        elif outcome == "skipped":
            result.skipped += 1

    @staticmethod
    def _validation_problem(order: Order) -> Optional[str]:
        if not order.quantity or order.quantity <= 0:
            return "INVALID_QUANTITY"
        if not order.instrument_token or order.instrument_token <= 0:
            return "MISSING_INSTRUMENT"
        if order.order_type == OrderType.LIMIT and (order.limit_price is None or order.limit_price <= 0):
            return "INVALID_LIMIT_PRICE"
        return None

    def _attempt_fill(self, order_id: str, price: float, result: ProcessPendingOrdersResult) -> str:
        """Fill one order; returns executed / skipped / cancelled / rejected / error."""
        try:
            outcome = self._fill_order(order_id, price)
        except InsufficientMarginError as exc:
            result.record_error(order_id, exc)
            log_event("ORDER_REJECT", f"rejected: {exc}", order_id=order_id, extra={"code": exc.code})
            if self._reject_order(order_id, exc.code):
                result.rejected += 1
            return "rejected"
        except Exception as exc:  # noqa: BLE001
            logger.exception("Fill failed for order %s; leaving PENDING", order_id)
            result.record_error(order_id, exc)
            return "error"
        if outcome == "cancelled":
            result.cancelled += 1
        return outcome

    def _fill_order(self, order_id: str, price: float) -> str:
        try:
            with session_scope(self._session_factory) as session:
                fill = self._apply_fill(session, order_id, price)
        except _AlreadyClaimed:
            logger.info("Order %s already claimed by another pass; skipping", order_id)
            return "skipped"
        except _NothingToClose as exc:
            logger.info("Closing order %s has nothing left to close: %s", order_id, exc)
            return "cancelled" if self.cancel_order(order_id, REASON_NOTHING_TO_CLOSE) else "skipped"
        if fill is None:
            return "skipped"

        log_event(
            "ORDER_FILL",
            f"{fill['side']} {fill['quantity']} @ {price:.2f}",
            symbol=fill["symbol"],
            account_id=fill["account_id"],
            order_id=order_id,
            extra={"position_qty": fill["position_quantity"], "realized": fill["realized_pnl"]},
        )
        self._notify(ORDER_EXECUTED, fill)
        return "executed"

    def _load_position(self, session: Session, order: Order) -> Optional[Position]:
        if order.position_id:
            stmt = select(Position).where(Position.id == order.position_id)
        else:
            stmt = (
                select(Position)
                .where(Position.account_id == order.account_id, Position.symbol == order.symbol)
                .order_by(Position.created_at.desc())
                .limit(1)
            )
        return session.execute(stmt.with_for_update()).scalar_one_or_none()

    def _apply_fill(self, session: Session, order_id: str, price: float) -> Optional[Dict[str, Any]]:
        order = session.get(Order, order_id)
        if order is None or order.status in TERMINAL_ORDER_STATUSES:
            return None

        position = self._load_position(session, order)
        current_qty = position.quantity if position else 0
        current_avg = position.average_price if position else 0.0

        fill_qty = order.quantity
        if order.is_auto_close:
            # size against the locked row, not the snapshot the closing order was built from
            fill_qty = _closable_quantity(order, position)
            if fill_qty == 0:
                raise _NothingToClose(f"position {order.position_id} is {current_qty}, order is {order.side.value}")
        signed_qty = fill_qty if order.side == OrderSide.BUY else -fill_qty
        plan = plan_fill(current_qty, current_avg, signed_qty, price)

        if position is None:
            position = Position(
                id=new_id(),
                account_id=order.account_id,
                symbol=order.symbol,
                instrument_token=order.instrument_token,
            )
            session.add(position)
        position.quantity = plan.new_quantity
        position.average_price = round(plan.new_average_price, 4)
        if plan.flattened or plan.flipped:
            position.stop_loss = None
            position.target = None
        if plan.flattened:
            position.unrealized_pnl = 0.0
            position.day_pnl = 0.0
        if order.instrument_token:
            position.instrument_token = order.instrument_token
        session.flush()

        claimed = session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .values(
                status=OrderStatus.EXECUTED,
                filled_quantity=fill_qty,
                average_price=price,
                position_id=position.id,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise _AlreadyClaimed(order_id)

        # margin: release what the closed quantity and the placement block held,
        # block whatever the newly opened quantity needs on top
        leverage = self.margin.leverage_for(order.segment, order.product_type)
        required_open = self.margin.required_margin(plan.opened_quantity, price, order.segment, order.product_type)
        held_by_closed = round(plan.closed_quantity * current_avg / leverage, 2)
        net_release = round(held_by_closed + float(order.blocked_margin or 0.0) - required_open, 2)

        if net_release > 0:
            self.ledger.release_margin(
                order.account_id,
                net_release,
                f"Margin released on fill of order {order_id}",
                idempotency_key=f"order:{order_id}:fill:release",
                order_id=order_id,
                session=session,
            )
        elif net_release < 0:
            self.ledger.block_margin(
                order.account_id,
                -net_release,
                f"Margin blocked on fill of order {order_id}",
                idempotency_key=f"order:{order_id}:fill:block",
                order_id=order_id,
                session=session,
            )

        realized = round(plan.realized_pnl, 2)
        if realized > 0:
            self.ledger.credit(
                order.account_id,
                realized,
                f"Realized profit on {order.symbol} (order {order_id})",
                idempotency_key=f"order:{order_id}:fill:settle",
                order_id=order_id,
                session=session,
            )
        elif realized < 0:
            self.ledger.debit(
                order.account_id,
                -realized,
                f"Realized loss on {order.symbol} (order {order_id})",
                idempotency_key=f"order:{order_id}:fill:settle",
                order_id=order_id,
                session=session,
            )

        return {
            "order_id": order_id,
            "account_id": order.account_id,
            "symbol": order.symbol,
            "side": order.side.value,
            "quantity": fill_qty,
            "price": price,
            "position_id": position.id,
            "position_quantity": plan.new_quantity,
            "realized_pnl": realized,
            "is_auto_close": bool(order.is_auto_close),
            "reason": order.status_reason,
        }

    # ======================================================================
    # Terminal transitions other than EXECUTED
    # ======================================================================

    def _finalize(self, order_id: str, status: OrderStatus, reason: str, key_suffix: str) -> bool:
        with session_scope(self._session_factory) as session:
            moved = session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
                .values(status=status, status_reason=reason[:255], updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                return False
            account_id, blocked = session.execute(
                select(Order.account_id, Order.blocked_margin).where(Order.id == order_id)
            ).one()
            if blocked and blocked > 0:
                self.ledger.release_margin(
                    account_id,
                    blocked,
                    f"Margin released for {status.value.lower()} order {order_id}",
                    idempotency_key=f"order:{order_id}:{key_suffix}:release",
                    order_id=order_id,
                    session=session,
                )
        return True

    def _reject_order(self, order_id: str, reason: str) -> bool:
        try:
            moved = self._finalize(order_id, OrderStatus.REJECTED, reason, "reject")
        except Exception:  # noqa: BLE001
            logger.exception("Failed to mark order %s REJECTED", order_id)
            return False
        if moved:
            self._notify(ORDER_REJECTED, {"order_id": order_id, "reason": reason})
        return moved

    def cancel_order(self, order_id: str, reason: str = "OPERATOR_CANCEL") -> bool:
        """PENDING -> CANCELLED and release the placement block. False if no longer PENDING."""
        moved = self._finalize(order_id, OrderStatus.CANCELLED, reason, "cancel")
        if moved:
            log_event("ORDER_CANCEL", "cancelled", order_id=order_id, extra={"reason": reason})
        return moved

    # ======================================================================
    # Risk pass
    # ======================================================================

    def _run_risk_pass(self, result: ProcessPendingOrdersResult) -> None:
        thresholds = self.thresholds.get_risk_thresholds()
        with session_scope(self._session_factory) as session:
            positions = list(
                session.execute(
                    select(Position)
                    .where(Position.quantity != 0)
                    .order_by(Position.account_id, Position.created_at, Position.id)
                )
                .scalars()
                .all()
            )
        if not positions:
            return

        self.market_data.ensure_subscribed([p.instrument_token for p in positions if p.instrument_token])

        for account_id, group in groupby(positions, key=lambda p: p.account_id):
            try:
                self._evaluate_account(account_id, list(group), thresholds, result)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Risk evaluation failed for account %s", account_id)
                result.record_error(None, exc)

    def _evaluate_account(self, account_id: str, positions: Sequence[Position], thresholds, result) -> None:
        quotes: Dict[str, Quote] = {}
        for p in positions:
            quote = self._quote_for(p.instrument_token)
            if quote is not None:
                quotes[p.id] = quote
        self._persist_pnl(positions, quotes)

        remaining: List[Position] = []
        for p in positions:
            quote = quotes.get(p.id)
            trigger = evaluate_exit_trigger(p.quantity, quote.last_trade_price, p.stop_loss, p.target) if quote else None
            if trigger is None:
                remaining.append(p)
                continue
            log_event(
                "STOP_HIT" if trigger == REASON_STOP_LOSS else "TP_HIT",
                f"{trigger} hit at {quote.last_trade_price:.2f} (qty={p.quantity})",
                symbol=p.symbol,
                account_id=account_id,
                extra={"stop_loss": p.stop_loss, "target": p.target},
            )
            if self._close_position(p, quote.last_trade_price, trigger, result) not in ("executed", "cancelled"):
                remaining.append(p)

        if not remaining:
            return

        snapshots = []
        for p in remaining:
            quote = quotes.get(p.id)
            pnl = (
                compute_unrealized_pnl(p.quantity, p.average_price, quote.last_trade_price)
                if quote
                else float(p.unrealized_pnl or 0.0)
            )
            snapshots.append(RiskPositionSnapshot(p.id, p.symbol, p.quantity, pnl))

        funds = self.ledger.get_account_funds(account_id)
        selection = pick_risk_auto_close_positions(
            snapshots, funds["total_funds"], thresholds, max_to_close=self.max_auto_closes
        )
        payload = {
            "account_id": account_id,
            "margin_utilization_percent": round(selection.margin_utilization_percent, 6),
            "total_unrealized_pnl": round(selection.total_unrealized_pnl, 2),
            "total_funds": funds["total_funds"],
            "warning_threshold": thresholds.warning_threshold,
            "auto_close_threshold": thresholds.auto_close_threshold,
            "threshold_source": thresholds.source,
        }

        if selection.should_auto_close:
            log_event(
                "RISK_AUTO_CLOSE",
                f"utilization {selection.margin_utilization_percent:.2%} >= {thresholds.auto_close_threshold:.2%}; "
                f"closing {len(selection.positions_to_close)} position(s)",
                account_id=account_id,
            )
            by_id = {p.id: p for p in remaining}
            closed = []
            for snap in selection.positions_to_close:
                position = by_id[snap.position_id]
                quote = quotes.get(position.id)
                if quote is None:
                    logger.warning("No fresh quote to auto-close %s on %s; retry next pass", position.symbol, account_id)
                    continue
                self._cancel_pending_for_symbol(account_id, position.symbol, result)
                if self._close_position(position, quote.last_trade_price, REASON_RISK_AUTO_CLOSE, result) == "executed":
                    closed.append(position.id)
            self._notify(RISK_AUTO_CLOSE, {**payload, "closed_position_ids": closed})
        elif selection.should_warn:
            if self._warning_due(account_id):
                result.warnings += 1
                log_event(
                    "RISK_WARN",
                    f"utilization {selection.margin_utilization_percent:.2%} >= {thresholds.warning_threshold:.2%}",
                    account_id=account_id,
                )
                self._notify(RISK_WARNING, payload)

    def _warning_due(self, account_id: str) -> bool:
        if self.warning_cooldown_s <= 0:
            return True
        now = time.monotonic()
        last = self._last_warned.get(account_id)
        if last is not None and now - last < self.warning_cooldown_s:
            return False
        self._last_warned[account_id] = now
        return True

    def _persist_pnl(self, positions: Sequence[Position], quotes: Dict[str, Quote]) -> None:
        if not quotes:
            return
        with session_scope(self._session_factory) as session:
            for p in positions:
                quote = quotes.get(p.id)
                if quote is None:
                    continue
                values = {"unrealized_pnl": round(compute_unrealized_pnl(p.quantity, p.average_price, quote.last_trade_price), 2)}
                if quote.prev_close_price:
                    values["day_pnl"] = round(compute_day_pnl(p.quantity, quote.prev_close_price, quote.last_trade_price), 2)
                session.execute(
                    update(Position)
                    .where(Position.id == p.id, Position.quantity == p.quantity)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

    def _cancel_pending_for_symbol(self, account_id: str, symbol: str, result: ProcessPendingOrdersResult) -> None:
        with session_scope(self._session_factory) as session:
            ids = list(
                session.execute(
                    select(Order.id).where(
                        Order.account_id == account_id,
                        Order.symbol == symbol,
                        Order.status == OrderStatus.PENDING,
                        Order.is_auto_close.is_(False),
                    )
                ).scalars()
            )
        for order_id in ids:
            if self.cancel_order(order_id, REASON_RISK_AUTO_CLOSE):
                result.cancelled += 1

    def _close_position(self, position: Position, price: float, reason: str, result: ProcessPendingOrdersResult) -> str:
        order_id = new_id()
        with session_scope(self._session_factory) as session:
            session.add(
                Order(
                    id=order_id,
                    account_id=position.account_id,
                    symbol=position.symbol,
                    instrument_token=position.instrument_token,
                    side=OrderSide.SELL if position.quantity > 0 else OrderSide.BUY,
                    order_type=OrderType.MARKET,
                    quantity=abs(position.quantity),
                    position_id=position.id,
                    is_auto_close=True,
                    status_reason=reason,
                )
            )
        outcome = self._attempt_fill(order_id, price, result)
        if outcome == "executed":
            result.auto_closed += 1
        elif outcome == "error":
            # a closing order must not linger and fire later against a changed position
            try:
                self.cancel_order(order_id, f"{reason}_FAILED")
            except Exception:  # noqa: BLE001
                logger.exception("Could not cancel failed closing order %s", order_id)
        return outcome

    def _notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(event_type, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Notifier failed for %s: %s", event_type, exc)
