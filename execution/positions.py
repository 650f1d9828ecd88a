"""
Position merge arithmetic for a single fill.

Signed quantities throughout: positive is long, negative is short.

- same direction (or from flat): quantities add, average is volume weighted
- opposite direction, partial: quantity shrinks, average is kept
- opposite direction, exact: position goes flat (zero-quantity row is kept)
- opposite direction, larger: the old side is closed and the remainder
  opens the other side at the fill price
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FillPlan:
    new_quantity: int
    new_average_price: float
    opened_quantity: int
    closed_quantity: int
    realized_pnl: float

    @property
    def flattened(self) -> bool:
        return self.new_quantity == 0

    @property
    def flipped(self) -> bool:
        return self.closed_quantity > 0 and self.opened_quantity > 0


def _sign(n: int) -> int:
    return (n > 0) - (n < 0)


def plan_fill(current_quantity: int, current_average: float, fill_quantity: int, fill_price: float) -> FillPlan:
    """Work out the position after applying a signed ``fill_quantity`` at ``fill_price``."""
    cur = int(current_quantity or 0)
    avg = float(current_average or 0.0)
    qty = int(fill_quantity)
    price = float(fill_price)

    if qty == 0:
        return FillPlan(cur, avg, 0, 0, 0.0)

    if cur == 0 or _sign(cur) == _sign(qty):
        new_qty = cur + qty
        new_avg = (abs(cur) * avg + abs(qty) * price) / abs(new_qty)
        return FillPlan(new_qty, new_avg, abs(qty), 0, 0.0)

    closed = min(abs(qty), abs(cur))
    realized = (price - avg) * closed * _sign(cur)
    remainder = abs(qty) - closed
    if remainder == 0:
        return FillPlan(cur + qty, avg, 0, closed, realized)
    return FillPlan(_sign(qty) * remainder, price, remainder, closed, realized)
