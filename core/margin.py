"""
Margin requirement calculator.

required margin = turnover / leverage, turnover = |quantity| * price.
Leverage is looked up per segment/product from config["risk"]["leverage"],
falling back to config["risk"]["default_leverage"] (1.0 = fully funded).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class MarginCalculator:
    def __init__(self, risk_cfg: Optional[Dict[str, Any]] = None) -> None:
        risk_cfg = risk_cfg or {}
        self.default_leverage = self._positive(risk_cfg.get("default_leverage"), 1.0)
        self.leverage_table: Dict[str, Dict[str, Any]] = {
            str(seg).upper(): {str(k).upper(): v for k, v in (products or {}).items()}
            for seg, products in (risk_cfg.get("leverage") or {}).items()
        }

    @staticmethod
    def _positive(value: Any, fallback: float) -> float:
        try:
            n = float(value)
        except (TypeError, ValueError):
            return fallback
        return n if n > 0 else fallback

    def leverage_for(self, segment: str = "NSE", product_type: str = "MIS") -> float:
        products = self.leverage_table.get(str(segment or "NSE").upper(), {})
        return self._positive(products.get(str(product_type or "MIS").upper()), self.default_leverage)

    def required_margin(
        self,
        quantity: int,
        price: float,
        segment: str = "NSE",
        product_type: str = "MIS",
    ) -> float:
        turnover = abs(int(quantity)) * float(price)
        if turnover <= 0:
            return 0.0
        return round(turnover / self.leverage_for(segment, product_type), 2)
