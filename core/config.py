"""
Config loading utilities.

- Loads YAML config (e.g., configs/dev.yaml).
- Applies environment overrides on top (env wins over file).
- Provides a simple dict-like object for other modules.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = BASE_DIR / "configs" / "dev.yaml"

# env var -> (section, key, caster)
ENV_OVERRIDES = {
    "DATABASE_URL": ("database", "url", str),
    "MARKETDATA_QUOTE_MAX_AGE_MS": ("market_data", "quote_max_age_ms", int),
    "ORDER_WORKER_LIMIT": ("worker", "limit", int),
    "ORDER_WORKER_MAX_AGE_MS": ("worker", "max_age_ms", int),
    "LOG_LEVEL": ("logging", "level", str),
}


@dataclass
class AppConfig:
    raw: Dict[str, Any]

    @property
    def database(self) -> Dict[str, Any]:
        return self.raw.get("database", {})

    @property
    def market_data(self) -> Dict[str, Any]:
        return self.raw.get("market_data", {})

    @property
    def risk(self) -> Dict[str, Any]:
        return self.raw.get("risk", {})

    @property
    def worker(self) -> Dict[str, Any]:
        return self.raw.get("worker", {})

    @property
    def logging(self) -> Dict[str, Any]:
        return self.raw.get("logging", {})

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def database_url(self) -> str:
        return str(self.database.get("url") or f"sqlite:///{BASE_DIR / 'artifacts' / 'engine.db'}")


def load_config(path: str | Path = DEFAULT_CONFIG_PATH, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    path = str(path)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    _apply_env_overrides(raw, os.environ if environ is None else environ)
    return AppConfig(raw=raw)


def config_from_dict(raw: Optional[Dict[str, Any]] = None) -> AppConfig:
    """Build an AppConfig without touching disk or env (tests, embedding)."""
    return AppConfig(raw=dict(raw or {}))


def _apply_env_overrides(raw: Dict[str, Any], environ: Mapping[str, str]) -> None:
    applied = []
    for env_key, (section, key, caster) in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if value is None or value == "":
            continue
        try:
            cast_value = caster(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid %s=%r (expected %s)", env_key, value, caster.__name__)
            continue
        target = raw.setdefault(section, {})
        if not isinstance(target, dict):
            target = {}
            raw[section] = target
        target[key] = cast_value
        applied.append(env_key)
    if applied:
        logger.info("Applied env overrides: %s", ", ".join(applied))
