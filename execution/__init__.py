"""
Order execution package.

- OrderExecutionWorker: drains PENDING orders and runs the position risk pass
- plan_fill: position merge arithmetic for a single fill
"""

from execution.order_worker import (
    OrderExecutionWorker,
    ProcessPendingOrdersResult,
    clamp_limit,
)
from execution.positions import FillPlan, plan_fill

__all__ = [
    "OrderExecutionWorker",
    "ProcessPendingOrdersResult",
    "clamp_limit",
    "FillPlan",
    "plan_fill",
]
