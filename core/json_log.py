from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict


class JsonLineFileHandler(logging.Handler):
    """
    Appends one JSON object per event record to ``path``.

    Only records produced by ``log_event`` are written unless ``events_only``
    is turned off, so the file stays a clean stream of order, risk, ledger and
    feed events that can be replayed or tailed by tooling.
    """

    def __init__(self, path: Path, *, events_only: bool = True) -> None:
        super().__init__()
        self.path = Path(path)
        self.events_only = events_only
        self._write_lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if self.events_only and not getattr(record, "event_kind", None):
            return False
        return super().filter(record)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = json.dumps(self.to_payload(record), ensure_ascii=False, default=str)
            with self._write_lock, self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except Exception:  # noqa: BLE001
            self.handleError(record)

    @staticmethod
    def to_payload(record: logging.LogRecord) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "kind": getattr(record, "event_kind", None),
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "event_fields", None) or {})
        if record.exc_info:
            payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
        return payload


def install_json_event_logger(path: Path) -> JsonLineFileHandler:
    """Attach a JSON event handler for ``path`` to the root logger once."""
    path = Path(path)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, JsonLineFileHandler) and handler.path == path:
            return handler

    handler = JsonLineFileHandler(path)
    handler.setLevel(logging.DEBUG)
    root.addHandler(handler)
    return handler
