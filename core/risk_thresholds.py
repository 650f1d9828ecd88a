"""
Risk Thresholds Resolver

Resolves the loss-utilization (warning, auto_close) pair from layered config:

1. system settings store: risk_warning_threshold / risk_auto_close_threshold
2. environment: RISK_WARNING_THRESHOLD / RISK_AUTO_CLOSE_THRESHOLD
3. defaults: warning=0.80, auto_close=0.90

Values are ratios in [0, 1]; anything in (1, 100] is read as a percentage.
After normalization auto_close is raised to warning if it is lower, so
auto-close can never trigger before the warning does.

Resolved values are cached for a short TTL; ``max_age_ms=0`` forces a read.
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from core.db import session_scope
from core.errors import ThresholdValidationError
from core.system_settings import get_latest_active_global_settings, upsert_global_setting

logger = logging.getLogger(__name__)

RISK_WARNING_THRESHOLD_KEY = "risk_warning_threshold"
RISK_AUTO_CLOSE_THRESHOLD_KEY = "risk_auto_close_threshold"
ENV_WARNING_KEY = "RISK_WARNING_THRESHOLD"
ENV_AUTO_CLOSE_KEY = "RISK_AUTO_CLOSE_THRESHOLD"

DEFAULT_WARNING_THRESHOLD = 0.80
DEFAULT_AUTO_CLOSE_THRESHOLD = 0.90
DEFAULT_CACHE_TTL_MS = 5_000

ThresholdSource = Literal["system_settings", "env", "default"]


@dataclass(frozen=True)
class RiskThresholds:
    warning_threshold: float
    auto_close_threshold: float
    source: ThresholdSource = "default"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_ratio(value: Any) -> Optional[float]:
    """Parse a fraction or percentage into [0, 1]; None when not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(n):
        return None
    ratio = n / 100.0 if 1 < n <= 100 else n
    return max(0.0, min(1.0, ratio))


def _positive_ratio(value: Any) -> Optional[float]:
    ratio = normalize_ratio(value)
    return ratio if ratio is not None and ratio > 0 else None


def reconcile_thresholds(warning: float, auto_close: float) -> Tuple[float, float]:
    warning = max(0.0, min(1.0, warning))
    auto_close = max(warning, min(1.0, auto_close))
    return warning, auto_close


def _now_ms() -> int:
    return int(time.time() * 1000)


class RiskThresholdsResolver:
    def __init__(
        self,
        session_factory: Optional[sessionmaker],
        *,
        default_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._session_factory = session_factory
        self.default_ttl_ms = max(0, int(default_ttl_ms))
        self._environ = environ
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[RiskThresholds] = None
        self._fetched_at: int = 0

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._fetched_at = 0

    def get_risk_thresholds(self, max_age_ms: Optional[int] = None) -> RiskThresholds:
        ttl = self.default_ttl_ms if max_age_ms is None else max(0, int(max_age_ms))
        now = self._clock()
        with self._lock:
            if self._cached is not None and ttl > 0 and now - self._fetched_at <= ttl:
                return self._cached

        value = self._resolve()
        with self._lock:
            self._cached = value
            self._fetched_at = self._clock()
        return value

    def upsert_risk_thresholds(self, warning_threshold: Any, auto_close_threshold: Any) -> RiskThresholds:
        warning = _positive_ratio(warning_threshold)
        auto_close = _positive_ratio(auto_close_threshold)
        if warning is None or auto_close is None:
            raise ThresholdValidationError(
                "Invalid thresholds (must be numeric ratio in (0, 1] or percent in (1, 100])",
                details={"warning_threshold": warning_threshold, "auto_close_threshold": auto_close_threshold},
            )
        if self._session_factory is None:
            raise RuntimeError("RiskThresholdsResolver has no settings store configured")

        warning, auto_close = reconcile_thresholds(warning, auto_close)
        with session_scope(self._session_factory) as session:
            upsert_global_setting(
                session,
                RISK_WARNING_THRESHOLD_KEY,
                str(warning),
                category="RISK",
                description="Risk warning threshold (loss utilization ratio 0..1).",
            )
            upsert_global_setting(
                session,
                RISK_AUTO_CLOSE_THRESHOLD_KEY,
                str(auto_close),
                category="RISK",
                description="Risk auto-close threshold (loss utilization ratio 0..1).",
            )
        self.invalidate()
        logger.info("Risk thresholds updated: warning=%.4f auto_close=%.4f", warning, auto_close)
        return RiskThresholds(warning, auto_close, "system_settings")

    # ------------------------------------------------------------------ layers

    def _resolve(self) -> RiskThresholds:
        from_store = self._from_settings_store()
        if from_store is not None:
            return from_store

        env_warning = _positive_ratio(self.environ.get(ENV_WARNING_KEY))
        env_auto_close = _positive_ratio(self.environ.get(ENV_AUTO_CLOSE_KEY))
        if env_warning is not None or env_auto_close is not None:
            warning, auto_close = reconcile_thresholds(
                env_warning if env_warning is not None else DEFAULT_WARNING_THRESHOLD,
                env_auto_close if env_auto_close is not None else DEFAULT_AUTO_CLOSE_THRESHOLD,
            )
            return RiskThresholds(warning, auto_close, "env")

        return RiskThresholds(DEFAULT_WARNING_THRESHOLD, DEFAULT_AUTO_CLOSE_THRESHOLD, "default")

    def _from_settings_store(self) -> Optional[RiskThresholds]:
        if self._session_factory is None:
            return None
        try:
            with session_scope(self._session_factory) as session:
                rows = get_latest_active_global_settings(
                    session, [RISK_WARNING_THRESHOLD_KEY, RISK_AUTO_CLOSE_THRESHOLD_KEY]
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to read risk thresholds from settings store; falling back to env/default: %s", exc)
            return None

        warning_row = rows.get(RISK_WARNING_THRESHOLD_KEY)
        auto_close_row = rows.get(RISK_AUTO_CLOSE_THRESHOLD_KEY)
        warning = _positive_ratio(warning_row.value if warning_row else None)
        auto_close = _positive_ratio(auto_close_row.value if auto_close_row else None)
        if warning is None or auto_close is None:
            return None
        warning, auto_close = reconcile_thresholds(warning, auto_close)
        return RiskThresholds(warning, auto_close, "system_settings")
