"""
Position Risk Evaluator

Pure decision helpers: stop-loss / target hits and account-level loss
utilization. No I/O; the order worker consumes the output and does the work.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional, Sequence

from core.risk_thresholds import RiskThresholds

ExitTrigger = Literal["STOP_LOSS", "TARGET"]


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


@dataclass(frozen=True)
class RiskPositionSnapshot:
    position_id: str
    symbol: str
    quantity: int
    unrealized_pnl: float


@dataclass
class RiskAutoCloseSelection:
    total_unrealized_pnl: float
    margin_utilization_percent: float
    should_warn: bool
    should_auto_close: bool
    positions_to_close: List[RiskPositionSnapshot] = field(default_factory=list)


def _guarded(quantity: Any, current_price: Any, level: Any) -> Optional[tuple]:
    q = _finite(quantity)
    px = _finite(current_price)
    lv = _finite(level)
    if q is None or px is None or lv is None:
        return None
    if q == 0 or px <= 0 or lv <= 0:
        return None
    return q, px, lv


def is_stop_loss_hit(quantity: Any, current_price: Any, stop_loss: Any) -> bool:
    """Long: price <= stop-loss. Short: price >= stop-loss."""
    args = _guarded(quantity, current_price, stop_loss)
    if args is None:
        return False
    q, px, sl = args
    return px <= sl if q > 0 else px >= sl


def is_target_hit(quantity: Any, current_price: Any, target: Any) -> bool:
    """Long: price >= target. Short: price <= target."""
    args = _guarded(quantity, current_price, target)
    if args is None:
        return False
    q, px, tp = args
    return px >= tp if q > 0 else px <= tp


def evaluate_exit_trigger(
    quantity: Any,
    current_price: Any,
    stop_loss: Any = None,
    target: Any = None,
) -> Optional[ExitTrigger]:
    # stop-loss takes precedence if a gap crosses both levels
    if is_stop_loss_hit(quantity, current_price, stop_loss):
        return "STOP_LOSS"
    if is_target_hit(quantity, current_price, target):
        return "TARGET"
    return None


def compute_unrealized_pnl(quantity: Any, average_price: Any, current_price: Any) -> float:
    q = _finite(quantity) or 0.0
    avg = _finite(average_price) or 0.0
    px = _finite(current_price) or 0.0
    return (px - avg) * q


def compute_day_pnl(quantity: Any, prev_close: Any, current_price: Any) -> float:
    return compute_unrealized_pnl(quantity, prev_close, current_price)


def compute_margin_utilization_percent(net_pnl: Any, total_funds: Any) -> float:
    """
    Loss-only utilization as a fraction: max(0, -net_pnl) / total_funds.

    Profitable aggregate P&L gives 0; non-positive funds give 0.
    """
    pnl = _finite(net_pnl) or 0.0
    funds = _finite(total_funds) or 0.0
    if funds <= 0:
        return 0.0
    return max(0.0, -pnl) / funds


def pick_risk_auto_close_positions(
    positions: Sequence[RiskPositionSnapshot],
    total_funds: Any,
    thresholds: RiskThresholds,
    max_to_close: Optional[int] = None,
) -> RiskAutoCloseSelection:
    """
    Aggregate utilization over ``positions`` and rank the losing ones.

    ``positions_to_close`` lists losing positions worst-first (stable sort, so
    equal losses keep input order), truncated to ``max_to_close`` when that is a
    positive number. Callers act on it only when ``should_auto_close`` is set.
    """
    total = sum(_finite(p.unrealized_pnl) or 0.0 for p in positions)
    utilization = compute_margin_utilization_percent(total, total_funds)

    losing = sorted(
        (p for p in positions if (_finite(p.unrealized_pnl) or 0.0) < 0),
        key=lambda p: _finite(p.unrealized_pnl) or 0.0,
    )
    if isinstance(max_to_close, int) and not isinstance(max_to_close, bool) and max_to_close > 0:
        losing = losing[:max_to_close]

    return RiskAutoCloseSelection(
        total_unrealized_pnl=total,
        margin_utilization_percent=utilization,
        should_warn=utilization >= thresholds.warning_threshold,
        should_auto_close=utilization >= thresholds.auto_close_threshold,
        positions_to_close=losing,
    )
