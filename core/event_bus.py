"""
Event Bus

In-process publish/subscribe used as the notification collaborator: the
order worker publishes ``risk.warning`` / ``risk.auto_close`` / ``order.*``
events and whoever cares (alerting, dashboards, tests) subscribes.

Publishing is fire-and-forget. A failing subscriber is logged and never
reaches the publisher.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

RISK_WARNING = "risk.warning"
RISK_AUTO_CLOSE = "risk.auto_close"
ORDER_EXECUTED = "order.executed"
ORDER_REJECTED = "order.rejected"

Subscriber = Callable[[Dict[str, Any]], None]


class EventBus:
    def __init__(self, buffer_size: int = 500) -> None:
        self.buffer: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._lock = Lock()

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            payload = {"data": payload}
        event = {
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }
        with self._lock:
            self.buffer.append(event)
            # wildcard subscribers see every event
            callbacks = list(self._subscribers.get(event_type, [])) + list(self._subscribers.get("*", []))

        # callbacks run outside the lock so a subscriber may publish in turn
        for callback in callbacks:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001
                logger.error("Subscriber for %s failed: %s", event_type, exc, exc_info=True)

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers[event_type].append(callback)
        logger.debug("Subscribed to %s", event_type)

    def unsubscribe(self, event_type: str, callback: Subscriber) -> bool:
        with self._lock:
            subs = self._subscribers.get(event_type, [])
            if callback in subs:
                subs.remove(callback)
                return True
        return False

    def get_recent_events(self, event_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            events = list(self.buffer)
        if event_type:
            events = [e for e in events if e.get("type") == event_type]
        return events[-limit:] if events else []

    def clear_buffer(self) -> None:
        with self._lock:
            self.buffer.clear()
