"""HTTP surface tests: cron trigger auth, health snapshots, admin threshold management."""

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from apps.auth import bearer_token, token_matches
from apps.context import build_engine_context
from apps.server import create_app
from conftest import FakeTicker, add_account, add_order
from core.config import config_from_dict
from core.db import create_db_engine
from core.models import Order, OrderStatus

CFG = {"market_data": {"quote_max_age_ms": 7500}, "worker": {"limit": 25}}


def _client(clock, environ):
    context = build_engine_context(
        config_from_dict(CFG),
        environ=environ,
        ticker_factory=lambda _cfg: FakeTicker(),
        market_clock=clock,
        engine=create_db_engine("sqlite://"),
    )
    return TestClient(create_app(context, start_feed=False)), context


@pytest.fixture
def secured(clock):
    client, context = _client(clock, {"CRON_SECRET": "cron-s3cret", "ADMIN_API_TOKEN": "admin-s3cret"})
    yield client, context
    context.close()


class TestCronTrigger:
    def test_requires_bearer_when_secret_configured(self, secured):
        client, _ = secured
        assert client.post("/api/cron/order-worker").status_code == 401
        assert client.get("/api/cron/order-worker", headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_runs_a_pass(self, secured):
        client, context = secured
        add_account(context.session_factory, balance=1000)
        add_order(context.session_factory, "o1")
        context.market_data.ingest([{"instrument_token": 408065, "last_price": 50.0}])

        response = client.post(
            "/api/cron/order-worker?limit=5&maxAgeMs=0", headers={"Authorization": "Bearer cron-s3cret"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["result"]["scanned"] == 1
        assert body["result"]["updated"] == 1
        assert "timestamp" in body
        with context.session_factory() as session:
            assert session.get(Order, "o1").status == OrderStatus.EXECUTED

    def test_order_worker_secret_is_accepted_too(self, clock):
        client, context = _client(clock, {"ORDER_WORKER_SECRET": "alt"})
        try:
            assert client.get("/api/cron/order-worker", headers={"Authorization": "Bearer alt"}).status_code == 200
        finally:
            context.close()

    def test_open_when_no_secret_configured(self, clock):
        client, context = _client(clock, {})
        try:
            assert client.get("/api/cron/order-worker").status_code == 200
        finally:
            context.close()

    def test_infrastructure_failure_is_500(self, secured, monkeypatch):
        client, context = secured

        def broken(*_args):
            raise RuntimeError("db down")

        monkeypatch.setattr(context.worker, "_run_pass", broken)
        response = client.post("/api/cron/order-worker", headers={"Authorization": "Bearer cron-s3cret"})

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert "db down" in response.json()["error"]


class TestSnapshots:
    def test_workers_and_feed_health(self, secured):
        client, _ = secured
        client.post("/api/cron/order-worker", headers={"Authorization": "Bearer cron-s3cret"})

        workers = client.get("/api/workers").json()["workers"]
        assert workers[0]["id"] == "order_execution"
        assert workers[0]["health"] == "healthy"

        health = client.get("/api/market-data/health").json()["health"]
        assert health["is_connected"] is False
        assert health["cached_quotes"] == 0


class TestThresholdAdmin:
    AUTH = {"Authorization": "Bearer admin-s3cret"}

    def test_admin_token_required(self, secured):
        client, _ = secured
        assert client.get("/api/risk/thresholds").status_code == 401
        assert client.put("/api/risk/thresholds", json={"warning_threshold": 0.5, "auto_close_threshold": 0.6}).status_code == 401

    def test_forbidden_without_configured_token(self, clock):
        client, context = _client(clock, {})
        try:
            assert client.get("/api/risk/thresholds", headers=self.AUTH).status_code == 403
        finally:
            context.close()

    def test_get_and_put(self, secured):
        client, _ = secured
        assert client.get("/api/risk/thresholds", headers=self.AUTH).json() == {
            "warning_threshold": 0.8,
            "auto_close_threshold": 0.9,
            "source": "default",
        }

        response = client.put(
            "/api/risk/thresholds", headers=self.AUTH, json={"warning_threshold": 90, "auto_close_threshold": 80}
        )
        assert response.status_code == 200
        assert response.json() == {"warning_threshold": 0.9, "auto_close_threshold": 0.9, "source": "system_settings"}

    def test_invalid_put_keeps_prior_values(self, secured):
        client, _ = secured
        client.put("/api/risk/thresholds", headers=self.AUTH, json={"warning_threshold": 0.6, "auto_close_threshold": 0.7})

        response = client.put(
            "/api/risk/thresholds", headers=self.AUTH, json={"warning_threshold": 0, "auto_close_threshold": 0.7}
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"
        current = client.get("/api/risk/thresholds?fresh=true", headers=self.AUTH).json()
        assert (current["warning_threshold"], current["auto_close_threshold"]) == (0.6, 0.7)


class TestEvents:
    def test_recent_events_after_fill(self, secured):
        client, context = secured
        add_account(context.session_factory, balance=1000)
        add_order(context.session_factory, "o1")
        context.market_data.ingest([{"instrument_token": 408065, "last_price": 50.0}])
        client.post("/api/cron/order-worker", headers={"Authorization": "Bearer cron-s3cret"})

        events = client.get("/api/events?type=order.executed").json()["events"]

        assert [e["payload"]["order_id"] for e in events] == ["o1"]
        assert client.get("/api/events?limit=0").status_code == 422


def _request(authorization=None):
    headers = [(b"authorization", authorization.encode())] if authorization is not None else []
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


class TestAuthHelpers:
    def test_bearer_token_parsing(self):
        assert bearer_token(_request("Bearer abc")) == "abc"
        assert bearer_token(_request("bearer  abc ")) == "abc"
        assert bearer_token(_request("Basic abc")) is None
        assert bearer_token(_request("Bearer ")) is None
        assert bearer_token(_request()) is None

    def test_token_matches_exact_value_only(self):
        assert token_matches(_request("Bearer cron-s3cret"), "cron-s3cret") is True
        assert token_matches(_request("Bearer cron-s3cre"), "cron-s3cret") is False
        assert token_matches(_request("Bearer cron-s3cret-extra"), "cron-s3cret") is False
        assert token_matches(_request(), "cron-s3cret") is False

    def test_prefix_of_secret_is_rejected_by_routes(self, secured):
        client, _ = secured
        assert client.post("/api/cron/order-worker", headers={"Authorization": "Bearer cron-s3cre"}).status_code == 401
        assert client.get("/api/risk/thresholds", headers={"Authorization": "Bearer admin-s3cre"}).status_code == 401
