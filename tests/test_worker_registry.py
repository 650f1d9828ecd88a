"""Tests for worker heartbeat persistence and health computation."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from core.db import session_scope
from core.system_settings import upsert_global_setting
from core.worker_registry import (
    ORDER_WORKER_HEARTBEAT_KEY,
    WorkerHeartbeat,
    compute_health,
    get_workers_snapshot,
    is_worker_enabled,
    read_heartbeat,
    set_worker_enabled,
    write_heartbeat,
)

NOW = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


def test_compute_health_states():
    recent = (NOW - timedelta(seconds=30)).isoformat()
    old = (NOW - timedelta(minutes=5)).isoformat()

    assert compute_health(False, recent, now=NOW) == "disabled"
    assert compute_health(True, None, now=NOW) == "unknown"
    assert compute_health(True, "garbage", now=NOW) == "unknown"
    assert compute_health(True, recent, now=NOW) == "healthy"
    assert compute_health(True, old, now=NOW) == "stale"


def test_read_heartbeat_accepts_json_or_bare_iso():
    payload = json.dumps({"last_run_at_iso": "2026-01-05T10:00:00+00:00", "scanned": 3})
    assert read_heartbeat(payload)["scanned"] == 3
    assert read_heartbeat("2026-01-05T10:00:00Z") == {"last_run_at_iso": "2026-01-05T10:00:00Z"}
    assert read_heartbeat("{}") is None
    assert read_heartbeat("") is None
    assert read_heartbeat("not a timestamp") is None


def test_write_then_snapshot(session_factory):
    hb = WorkerHeartbeat(last_run_at_iso=NOW.isoformat(), scanned=4, updated=3, skipped=1, errors=0, elapsed_ms=12)
    assert write_heartbeat(session_factory, hb) is True

    (snapshot,) = get_workers_snapshot(session_factory, now=NOW + timedelta(seconds=10))

    assert snapshot["id"] == "order_execution"
    assert snapshot["enabled"] is True
    assert snapshot["enabled_source"] == "default_enabled"
    assert snapshot["health"] == "healthy"
    assert snapshot["heartbeat"]["updated"] == 3
    assert snapshot["heartbeat"]["pid"] == hb.pid


def test_heartbeat_overwrites_single_row(session_factory):
    for scanned in (1, 2):
        write_heartbeat(session_factory, WorkerHeartbeat(last_run_at_iso=NOW.isoformat(), scanned=scanned))
    (snapshot,) = get_workers_snapshot(session_factory, now=NOW)
    assert snapshot["heartbeat"]["scanned"] == 2


def test_bare_iso_heartbeat_from_older_writers(session_factory):
    with session_scope(session_factory) as session:
        upsert_global_setting(session, ORDER_WORKER_HEARTBEAT_KEY, NOW.isoformat())
    (snapshot,) = get_workers_snapshot(session_factory, now=NOW)
    assert snapshot["last_run_at_iso"] == NOW.isoformat()
    assert snapshot["health"] == "healthy"


def test_enable_toggle(session_factory):
    assert is_worker_enabled(session_factory) is True
    set_worker_enabled(session_factory, False)
    assert is_worker_enabled(session_factory) is False
    set_worker_enabled(session_factory, True)
    assert is_worker_enabled(session_factory) is True


def test_write_failure_is_swallowed_and_logged():
    broken = Mock(side_effect=RuntimeError("database unreachable"))
    assert write_heartbeat(broken, WorkerHeartbeat(last_run_at_iso=NOW.isoformat())) is False
    assert is_worker_enabled(broken) is True
