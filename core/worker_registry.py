"""
Worker registry: enable flag, heartbeat persistence and health snapshots.

Heartbeats are stored as JSON in the system settings store so external
dashboards can tell whether the server-side worker is trustworthy. Writing a
heartbeat never fails the worker.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from sqlalchemy.orm import sessionmaker

from core.db import session_scope
from core.system_settings import get_latest_active_global_settings, parse_boolean_setting, upsert_global_setting

logger = logging.getLogger(__name__)

WORKER_SETTINGS_CATEGORY = "SYSTEM"
WORKER_TRADING_CATEGORY = "TRADING"

ORDER_WORKER_ID = "order_execution"
ORDER_WORKER_ENABLED_KEY = "worker_order_execution_enabled"
ORDER_WORKER_HEARTBEAT_KEY = "order_worker_heartbeat"

DEFAULT_HEALTH_TTL_MS = 2 * 60 * 1000

WorkerHealth = Literal["disabled", "unknown", "healthy", "stale"]


@dataclass
class WorkerHeartbeat:
    last_run_at_iso: str
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    elapsed_ms: int = 0
    success: bool = True
    reason: Optional[str] = None
    host: str = field(default_factory=socket.gethostname)
    pid: int = field(default_factory=os.getpid)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def read_heartbeat(value: Optional[str]) -> Optional[Dict[str, Any]]:
    """Accept a JSON heartbeat object or a bare ISO timestamp."""
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, dict):
        last = parsed.get("last_run_at_iso")
        if isinstance(last, str) and last:
            return parsed
    if _parse_iso(value) is not None:
        return {"last_run_at_iso": value}
    return None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def compute_health(
    enabled: bool,
    last_run_at_iso: Optional[str],
    ttl_ms: int = DEFAULT_HEALTH_TTL_MS,
    now: Optional[datetime] = None,
) -> WorkerHealth:
    if not enabled:
        return "disabled"
    last = _parse_iso(last_run_at_iso)
    if last is None:
        return "unknown"
    now = now or datetime.now(timezone.utc)
    age_ms = (now - last).total_seconds() * 1000
    return "healthy" if age_ms < ttl_ms else "stale"


def write_heartbeat(session_factory: sessionmaker, heartbeat: WorkerHeartbeat) -> bool:
    try:
        with session_scope(session_factory) as session:
            upsert_global_setting(
                session,
                ORDER_WORKER_HEARTBEAT_KEY,
                json.dumps(heartbeat.to_dict()),
                category=WORKER_TRADING_CATEGORY,
                description="Heartbeat for the order execution worker.",
            )
        return True
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to write order worker heartbeat: %s", exc)
        return False


def is_worker_enabled(session_factory: sessionmaker) -> bool:
    try:
        with session_scope(session_factory) as session:
            rows = get_latest_active_global_settings(session, [ORDER_WORKER_ENABLED_KEY])
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to read %s; assuming enabled: %s", ORDER_WORKER_ENABLED_KEY, exc)
        return True
    row = rows.get(ORDER_WORKER_ENABLED_KEY)
    parsed = parse_boolean_setting(row.value if row else None)
    return True if parsed is None else parsed


def set_worker_enabled(session_factory: sessionmaker, enabled: bool) -> None:
    with session_scope(session_factory) as session:
        upsert_global_setting(
            session,
            ORDER_WORKER_ENABLED_KEY,
            "true" if enabled else "false",
            category=WORKER_SETTINGS_CATEGORY,
            description="Soft toggle for the order execution worker.",
        )


def get_workers_snapshot(
    session_factory: sessionmaker,
    ttl_ms: int = DEFAULT_HEALTH_TTL_MS,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    with session_scope(session_factory) as session:
        rows = get_latest_active_global_settings(session, [ORDER_WORKER_ENABLED_KEY, ORDER_WORKER_HEARTBEAT_KEY])

    enabled_row = rows.get(ORDER_WORKER_ENABLED_KEY)
    enabled_setting = parse_boolean_setting(enabled_row.value if enabled_row else None)
    enabled = True if enabled_setting is None else enabled_setting
    hb_row = rows.get(ORDER_WORKER_HEARTBEAT_KEY)
    heartbeat = read_heartbeat(hb_row.value if hb_row else None)
    last_run = heartbeat.get("last_run_at_iso") if heartbeat else None

    return [
        {
            "id": ORDER_WORKER_ID,
            "label": "Order Execution Worker",
            "description": "Executes PENDING orders and applies risk auto-close decisions.",
            "enabled": enabled,
            "enabled_source": "default_enabled" if enabled_setting is None else "setting",
            "health_ttl_ms": ttl_ms,
            "last_run_at_iso": last_run,
            "heartbeat": heartbeat,
            "health": compute_health(enabled, last_run, ttl_ms, now),
        }
    ]
