"""Tests for YAML config loading, env overrides and logging setup."""

import json
import logging

import pytest

from core.config import AppConfig, config_from_dict, load_config
from core.event_logging import log_event
from core.json_log import JsonLineFileHandler, install_json_event_logger
from core.kite_ticker import resolve_kite_credentials
from core.margin import MarginCalculator

YAML = """
database:
  url: "sqlite://"
market_data:
  quote_max_age_ms: 5000
worker:
  limit: 10
risk:
  default_leverage: 2
  leverage:
    nse:
      mis: 5
"""


def test_load_config_sections(tmp_path):
    path = tmp_path / "dev.yaml"
    path.write_text(YAML, encoding="utf-8")

    cfg = load_config(path, environ={})

    assert isinstance(cfg, AppConfig)
    assert cfg.database_url == "sqlite://"
    assert cfg.market_data["quote_max_age_ms"] == 5000
    assert cfg.worker["limit"] == 10
    assert cfg.server == {}


def test_env_overrides_win(tmp_path):
    path = tmp_path / "dev.yaml"
    path.write_text(YAML, encoding="utf-8")

    cfg = load_config(
        path,
        environ={
            "DATABASE_URL": "sqlite:///tmp/other.db",
            "MARKETDATA_QUOTE_MAX_AGE_MS": "2500",
            "ORDER_WORKER_LIMIT": "not-a-number",
            "LOG_LEVEL": "DEBUG",
        },
    )

    assert cfg.database_url == "sqlite:///tmp/other.db"
    assert cfg.market_data["quote_max_age_ms"] == 2500
    assert cfg.worker["limit"] == 10  # invalid override ignored
    assert cfg.logging["level"] == "DEBUG"


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", environ={})


def test_default_database_url():
    assert config_from_dict({}).database_url.endswith("engine.db")


def test_margin_calculator_leverage_lookup():
    calc = MarginCalculator(config_from_dict({"risk": {"default_leverage": 2, "leverage": {"nse": {"mis": 5}}}}).risk)
    assert calc.leverage_for("NSE", "MIS") == 5
    assert calc.leverage_for("NFO", "NRML") == 2
    assert calc.required_margin(10, 100.0) == 200.0
    assert calc.required_margin(-10, 100.0, "NFO", "NRML") == 500.0
    assert calc.required_margin(0, 100.0) == 0.0


def test_kite_credentials_lookup_order(tmp_path):
    (tmp_path / "kite.env").write_text("KITE_API_KEY=file-key\n", encoding="utf-8")
    (tmp_path / "kite_tokens.env").write_text("KITE_ACCESS_TOKEN=file-tok\n", encoding="utf-8")
    md_cfg = {"secrets_dir": str(tmp_path)}

    assert resolve_kite_credentials(md_cfg, environ={}) == {"api_key": "file-key", "access_token": "file-tok"}
    assert resolve_kite_credentials(md_cfg, environ={"KITE_API_KEY": "env-key"})["api_key"] == "env-key"
    assert resolve_kite_credentials({**md_cfg, "access_token": "cfg-tok"}, environ={})["access_token"] == "cfg-tok"


def test_log_event_line_and_level(caplog):
    with caplog.at_level(logging.INFO):
        log_event("RISK_WARN", "utilization high", account_id="acct-1", extra={"util": 0.85})

    (record,) = [r for r in caplog.records if getattr(r, "event_kind", None) == "RISK_WARN"]
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "[KIND:RISK_WARN] utilization high | account=acct-1 | util=0.85"


def test_json_event_logger_is_idempotent(tmp_path):
    path = tmp_path / "events.jsonl"
    root = logging.getLogger()
    try:
        install_json_event_logger(path)
        install_json_event_logger(path)
        handlers = [h for h in root.handlers if isinstance(h, JsonLineFileHandler) and h.path == path]
        assert len(handlers) == 1
    finally:
        for handler in [h for h in root.handlers if isinstance(h, JsonLineFileHandler)]:
            root.removeHandler(handler)


def test_json_lines_carry_event_fields(tmp_path):
    path = tmp_path / "events.jsonl"
    handler = JsonLineFileHandler(path)
    logger = logging.getLogger("tests.json_events")
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        logger.info("plain line without a kind")
        logger.info(
            "[KIND:ORDER_FILL] filled",
            extra={"event_kind": "ORDER_FILL", "event_fields": {"order_id": "o1", "price": 101.5}},
        )
    finally:
        logger.removeHandler(handler)

    (line,) = path.read_text(encoding="utf-8").splitlines()
    payload = json.loads(line)
    assert payload["kind"] == "ORDER_FILL"
    assert payload["order_id"] == "o1"
    assert payload["price"] == 101.5
