from __future__ import annotations

import inspect
import logging
import os
from typing import Any, Dict, Literal, Optional

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

EventKind = Literal[
    "ORDER_FILL",
    "ORDER_SKIP",
    "ORDER_REJECT",
    "ORDER_CANCEL",
    "STOP_HIT",
    "TP_HIT",
    "RISK_WARN",
    "RISK_AUTO_CLOSE",
    "LEDGER",
    "FEED",
    "INFO",
    "WARN",
    "ERROR",
]

# ANSI colour per event family; the family is the part before the first underscore.
_FAMILY_COLORS = {
    "ORDER": "\033[32m",   # green
    "STOP": "\033[31m",    # red
    "TP": "\033[34m",      # blue
    "RISK": "\033[33m",    # yellow
    "LEDGER": "\033[36m",  # cyan
    "FEED": "\033[36m",
    "WARN": "\033[33m",
    "ERROR": "\033[31m",
}
_KIND_COLORS = {
    "ORDER_REJECT": "\033[31m",
    "ORDER_CANCEL": "\033[35m",
    "RISK_AUTO_CLOSE": "\033[31m",
}
_COLOR_RESET = "\033[0m"

_LEVEL_BY_KIND = {
    "WARN": logging.WARNING,
    "RISK_WARN": logging.WARNING,
    "RISK_AUTO_CLOSE": logging.WARNING,
    "ORDER_REJECT": logging.WARNING,
    "ERROR": logging.ERROR,
}


def color_for(kind: str) -> Optional[str]:
    kind = kind.upper()
    return _KIND_COLORS.get(kind) or _FAMILY_COLORS.get(kind.split("_", 1)[0])


def _wants_color(stream: Any) -> bool:
    if os.getenv("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class EventLogFormatter(logging.Formatter):
    """Plain formatter that highlights the ``[KIND:...]`` marker on terminals."""

    def __init__(self, *, use_color: bool = False) -> None:
        super().__init__(fmt=DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        kind = getattr(record, "event_kind", None)
        if not (self.use_color and kind):
            return line
        color = color_for(str(kind))
        marker = f"[KIND:{kind}]"
        if not color or marker not in line:
            return line
        return line.replace(marker, f"{color}{marker}{_COLOR_RESET}", 1)


def build_stream_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setFormatter(EventLogFormatter(use_color=_wants_color(handler.stream)))
    return handler


def _caller_module() -> str:
    frame = inspect.currentframe()
    try:
        caller = frame.f_back if frame else None
        while caller:
            name = caller.f_globals.get("__name__")
            if name and name != __name__:
                return name
            caller = caller.f_back
    finally:
        del frame
    return "risk-engine.events"


def log_event(
    kind: EventKind,
    msg: str,
    *,
    symbol: Optional[str] = None,
    account_id: Optional[str] = None,
    order_id: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    level: Optional[int] = None,
) -> None:
    """
    Emit one event line on the caller's module logger.

    The line reads ``[KIND:<kind>] <msg> | sym=.. | account=.. | k=v,..`` so
    it can be grepped in plain log files. The same fields ride on the record as
    ``event_fields`` for the JSON line handler.
    """
    fields: Dict[str, Any] = {}
    tags = []
    if symbol:
        fields["symbol"] = symbol
        tags.append(f"sym={symbol}")
    if account_id:
        fields["account_id"] = account_id
        tags.append(f"account={account_id}")
    if order_id:
        fields["order_id"] = order_id
        tags.append(f"order={order_id}")
    if extra:
        fields.update(extra)
        tags.append(",".join(f"{key}={value}" for key, value in extra.items()))

    line = f"[KIND:{kind}] {msg}"
    if tags:
        line += " | " + " | ".join(tags)

    if level is None:
        level = _LEVEL_BY_KIND.get(kind, logging.INFO)

    logging.getLogger(_caller_module()).log(
        level,
        line,
        extra={"event_kind": kind, "event_fields": fields},
    )
