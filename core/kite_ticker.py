"""KiteTicker construction for the market data cache."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values
from kiteconnect import KiteTicker

from core.errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_SECRETS_DIR = Path(__file__).resolve().parents[1] / "secrets"


def _env_file(path: Path) -> Dict[str, str]:
    if not path.is_file():
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def resolve_kite_credentials(
    md_cfg: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Optional[str]]:
    """
    Find the api key and access token for the ticker.

    Lookup order per key: ``market_data`` config, then ``KITE_API_KEY`` /
    ``KITE_ACCESS_TOKEN`` in the environment, then ``kite.env`` /
    ``kite_tokens.env`` under ``market_data.secrets_dir`` (default ``secrets/``).
    """
    md_cfg = md_cfg or {}
    env = os.environ if environ is None else environ
    secrets_dir = Path(md_cfg.get("secrets_dir") or DEFAULT_SECRETS_DIR)

    api_key = md_cfg.get("api_key") or env.get("KITE_API_KEY")
    access_token = md_cfg.get("access_token") or env.get("KITE_ACCESS_TOKEN")
    if not api_key:
        api_key = _env_file(secrets_dir / "kite.env").get("KITE_API_KEY")
    if not access_token:
        access_token = _env_file(secrets_dir / "kite_tokens.env").get("KITE_ACCESS_TOKEN")
    return {"api_key": api_key, "access_token": access_token}


def make_kite_ticker(md_cfg: Dict[str, Any]) -> KiteTicker:
    """
    Build a KiteTicker with the feed's reconnect policy.

    KiteTicker reconnects on its own with exponential backoff capped at
    ``reconnect_max_delay`` seconds and gives up after ``reconnect_max_tries``.
    """
    creds = resolve_kite_credentials(md_cfg)
    if not creds["api_key"] or not creds["access_token"]:
        raise TransportError("KiteTicker: api_key or access_token missing from config, env and secrets")

    logger.info("KiteTicker: creating ticker for api_key=%s***", creds["api_key"][:4])
    return KiteTicker(
        creds["api_key"],
        creds["access_token"],
        reconnect=True,
        reconnect_max_tries=int(md_cfg.get("reconnect_max_tries", 10)),
        reconnect_max_delay=int(md_cfg.get("reconnect_max_delay", 15)),
        connect_timeout=int(md_cfg.get("connect_timeout", 10)),
    )
