"""
Market Data Cache

Keeps one long-lived KiteTicker subscription and answers "freshest price for
token T, or None if older than max age" without ever touching the network.

Key behaviour:
- Subscriptions are desired-state: ``ensure_subscribed`` adds to a wanted set
  that survives disconnects and is replayed (chunked) on every connect.
- Ticks overwrite the cached quote for their token (last write wins); zero,
  negative or non-finite prices are dropped.
- Transport failures are logged and left to KiteTicker's capped reconnect;
  readers only ever observe stale or missing quotes.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from core.event_logging import log_event

logger = logging.getLogger(__name__)

DEFAULT_QUOTE_MAX_AGE_MS = 7_500
DEFAULT_SUBSCRIBE_CHUNK = 400
DEFAULT_MODE = "quote"

_PRICE_FIELDS = ("last_price", "last_trade_price", "ltp", "LTP", "price")
_PREV_CLOSE_FIELDS = ("prev_close_price", "close")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _valid_token(value: Any) -> Optional[int]:
    n = _finite(value)
    if n is None or n <= 0 or n != int(n):
        return None
    return int(n)


@dataclass(frozen=True)
class Quote:
    instrument_token: int
    last_trade_price: float
    prev_close_price: Optional[float]
    received_at: int
    upstream_timestamp: Optional[str] = None

    def age_ms(self, now_ms: int) -> int:
        return max(0, now_ms - self.received_at)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_tick(tick: Mapping[str, Any], received_at: int) -> Optional[Quote]:
    """
    Turn one upstream tick into a Quote, or None if it is unusable.

    This is the only place that knows about the feed's field names.
    """
    if not isinstance(tick, Mapping):
        return None
    token = _valid_token(tick.get("instrument_token"))
    if token is None:
        return None

    price = None
    for field in _PRICE_FIELDS:
        price = _finite(tick.get(field))
        if price is not None:
            break
    if price is None or price <= 0:
        return None

    prev_close = None
    ohlc = tick.get("ohlc")
    if isinstance(ohlc, Mapping):
        prev_close = _finite(ohlc.get("close"))
    if prev_close is None:
        for field in _PREV_CLOSE_FIELDS:
            prev_close = _finite(tick.get(field))
            if prev_close is not None:
                break
    if prev_close is not None and prev_close <= 0:
        prev_close = None

    ts = tick.get("exchange_timestamp") or tick.get("last_trade_time") or tick.get("timestamp")
    upstream_ts = ts.isoformat() if hasattr(ts, "isoformat") else (str(ts) if ts else None)

    return Quote(
        instrument_token=token,
        last_trade_price=price,
        prev_close_price=prev_close,
        received_at=received_at,
        upstream_timestamp=upstream_ts,
    )


class MarketDataCache:
    """
    In-memory quote cache fed by a KiteTicker-compatible transport.

    The transport is built lazily by ``ticker_factory(cfg)`` so tests can swap in
    a fake with the same callback surface (on_ticks, on_connect, on_close,
    on_error, on_reconnect, on_noreconnect, subscribe, set_mode, connect, close).
    """

    def __init__(
        self,
        cfg: Optional[Dict[str, Any]] = None,
        *,
        ticker_factory: Optional[Callable[[Dict[str, Any]], Any]] = None,
        clock: Callable[[], int] = _now_ms,
        logger_instance: Optional[logging.Logger] = None,
    ) -> None:
        self.cfg = dict(cfg or {})
        self.logger = logger_instance or logger
        self._ticker_factory = ticker_factory
        self._clock = clock

        self.quote_max_age_ms = int(self.cfg.get("quote_max_age_ms", DEFAULT_QUOTE_MAX_AGE_MS))
        self.subscribe_chunk = max(1, int(self.cfg.get("subscribe_chunk", DEFAULT_SUBSCRIBE_CHUNK)))
        self.mode = str(self.cfg.get("mode", DEFAULT_MODE))

        self._lock = threading.RLock()
        self._ticker: Any = None
        self._connected = False
        self._wanted: set[int] = set()
        self._subscribed: set[int] = set()
        self._quotes: Dict[int, Quote] = {}

        self.last_connected_at: Optional[int] = None
        self.last_disconnected_at: Optional[int] = None
        self.last_message_at: Optional[int] = None
        self.last_error_at: Optional[int] = None
        self.reconnect_attempts = 0
        self.reconnect_exhausted = False

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> bool:
        """Connect the transport in a background thread. Idempotent; never raises."""
        with self._lock:
            if self._ticker is not None:
                return True
            factory = self._ticker_factory
            if factory is None:
                from core.kite_ticker import make_kite_ticker

                factory = make_kite_ticker
            try:
                ticker = factory(self.cfg)
            except Exception as exc:  # noqa: BLE001
                self.last_error_at = self._clock()
                log_event("ERROR", f"market data transport unavailable: {exc}", extra={"stage": "start"})
                return False

            ticker.on_ticks = self._on_ticks
            ticker.on_connect = self._on_connect
            ticker.on_close = self._on_close
            ticker.on_error = self._on_error
            ticker.on_reconnect = self._on_reconnect
            ticker.on_noreconnect = self._on_noreconnect
            self._ticker = ticker

        self.logger.info(
            "MarketDataCache starting: mode=%s, quote_max_age_ms=%d, wanted=%d",
            self.mode,
            self.quote_max_age_ms,
            len(self._wanted),
        )
        try:
            ticker.connect(threaded=True)
        except Exception as exc:  # noqa: BLE001
            self.last_error_at = self._clock()
            log_event("ERROR", f"market data connect failed: {exc}", extra={"stage": "connect"})
            return False
        return True

    def stop(self) -> None:
        with self._lock:
            ticker, self._ticker = self._ticker, None
            self._connected = False
            self._subscribed.clear()
        if ticker is None:
            return
        try:
            ticker.close()
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("MarketDataCache: error while closing ticker: %s", exc)
        self.logger.info("MarketDataCache stopped")

    # ------------------------------------------------------------------ public API

    def ensure_subscribed(self, tokens: Iterable[Any]) -> None:
        """Add tokens to the wanted set and subscribe whatever is missing (non-blocking)."""
        added = 0
        with self._lock:
            for raw in tokens or []:
                token = _valid_token(raw)
                if token is not None and token not in self._wanted:
                    self._wanted.add(token)
                    added += 1
        if added:
            self.logger.debug("MarketDataCache: %d new wanted tokens (total=%d)", added, len(self._wanted))
        self._subscribe_wanted()

    def get_quote(self, token: Any, max_age_ms: Optional[int] = None) -> Optional[Quote]:
        """
        Cached quote for ``token`` or None when absent/too old.

        ``max_age_ms=None`` uses the configured default; ``0`` disables the age check.
        """
        key = _valid_token(token)
        if key is None:
            return None
        with self._lock:
            quote = self._quotes.get(key)
        if quote is None:
            return None
        limit = self.quote_max_age_ms if max_age_ms is None else max(0, int(max_age_ms))
        if limit > 0 and quote.age_ms(self._clock()) > limit:
            return None
        return quote

    def get_health(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "is_connected": self._connected,
                "last_connected_at": self.last_connected_at,
                "last_disconnected_at": self.last_disconnected_at,
                "last_message_at": self.last_message_at,
                "last_error_at": self.last_error_at,
                "subscriptions": len(self._subscribed),
                "wanted": len(self._wanted),
                "cached_quotes": len(self._quotes),
                "reconnect_attempts": self.reconnect_attempts,
                "reconnect_exhausted": self.reconnect_exhausted,
            }

    @property
    def is_connected(self) -> bool:
        return self._connected

    def ingest(self, ticks: Iterable[Mapping[str, Any]]) -> int:
        """Store a batch of raw ticks; returns how many were accepted."""
        now = self._clock()
        accepted = 0
        with self._lock:
            self.last_message_at = now
            for tick in ticks or []:
                quote = normalize_tick(tick, now)
                if quote is None:
                    continue
                self._quotes[quote.instrument_token] = quote
                accepted += 1
        return accepted

    # ------------------------------------------------------------------ subscriptions

    def _subscribe_wanted(self) -> None:
        with self._lock:
            ticker = self._ticker
            if ticker is None or not self._connected:
                return
            pending = sorted(self._wanted - self._subscribed)
        if not pending:
            return

        for i in range(0, len(pending), self.subscribe_chunk):
            chunk = pending[i : i + self.subscribe_chunk]
            try:
                ticker.subscribe(chunk)
                ticker.set_mode(self.mode, chunk)
            except Exception as exc:  # noqa: BLE001
                self.last_error_at = self._clock()
                self.logger.error("MarketDataCache: subscribe failed for %d tokens: %s", len(chunk), exc)
                return
            with self._lock:
                self._subscribed.update(chunk)
        self.logger.info("MarketDataCache: subscribed %d tokens (total=%d)", len(pending), len(self._subscribed))

    # ------------------------------------------------------------------ transport callbacks

    def _on_ticks(self, ws, ticks: List[Dict[str, Any]]) -> None:
        try:
            self.ingest(ticks)
        except Exception as exc:  # noqa: BLE001
            self.last_error_at = self._clock()
            self.logger.error("MarketDataCache: tick handler failed: %s", exc, exc_info=True)

    def _on_connect(self, ws, response) -> None:
        with self._lock:
            self._connected = True
            self._subscribed.clear()
            self.last_connected_at = self._clock()
            self.reconnect_attempts = 0
            self.reconnect_exhausted = False
            wanted = len(self._wanted)
        log_event("FEED", "market data connected", extra={"wanted": wanted})
        self._subscribe_wanted()

    def _on_close(self, ws, code, reason) -> None:
        with self._lock:
            self._connected = False
            self._subscribed.clear()
            self.last_disconnected_at = self._clock()
        log_event("WARN", "market data disconnected", extra={"code": code, "reason": reason})

    def _on_error(self, ws, code, reason) -> None:
        self.last_error_at = self._clock()
        log_event("ERROR", "market data transport error", extra={"code": code, "reason": reason})

    def _on_reconnect(self, ws, attempts_count) -> None:
        self.reconnect_attempts = int(attempts_count or 0)
        self.logger.info("MarketDataCache: reconnecting (attempt %s)", attempts_count)

    def _on_noreconnect(self, ws) -> None:
        with self._lock:
            self._connected = False
            self._subscribed.clear()
            self.reconnect_exhausted = True
            self.last_error_at = self._clock()
        log_event("ERROR", "market data reconnect attempts exhausted; feed stays down until restart")


_cache_lock = threading.Lock()
_cache: Optional[MarketDataCache] = None


def get_market_data_cache(cfg: Optional[Dict[str, Any]] = None, **kwargs: Any) -> MarketDataCache:
    """Process-wide cache instance (created on first use)."""
    global _cache
    with _cache_lock:
        if _cache is None:
            _cache = MarketDataCache(cfg, **kwargs)
        return _cache


def reset_market_data_cache() -> None:
    global _cache
    with _cache_lock:
        if _cache is not None:
            _cache.stop()
        _cache = None
