"""
Process-wide logging setup for the worker runner and the HTTP server.

    from core.logging_utils import setup_logging
    setup_logging(cfg.logging)

Console output is colourised by event kind; a dated plain-text file is kept
under ``logging.directory``; ``logging.json_events`` adds a JSON line stream
of ``log_event`` records next to it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from core.event_logging import DEFAULT_DATE_FORMAT, DEFAULT_FORMAT, build_stream_handler
from core.json_log import install_json_event_logger

# Libraries that are chatty at INFO during normal operation.
NOISY_LOGGERS = ("kiteconnect", "sqlalchemy.engine", "urllib3", "uvicorn.access")


def setup_logging(logging_cfg: Optional[Dict[str, Any]] = None) -> Path:
    """Configure the root logger and return the path of today's log file."""
    logging_cfg = logging_cfg or {}
    level = getattr(logging, str(logging_cfg.get("level", "INFO")).upper(), logging.INFO)

    log_dir = Path(logging_cfg.get("directory", "logs"))
    prefix = logging_cfg.get("file_prefix", "risk_engine")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{prefix}_{datetime.now():%Y%m%d}.log"

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT))
    # force=True so a reload (uvicorn factory, repeated CLI setup) does not stack handlers.
    logging.basicConfig(level=level, handlers=[build_stream_handler(), file_handler], force=True)

    _quiet(logging_cfg.get("quiet_loggers", NOISY_LOGGERS), level)

    if logging_cfg.get("json_events"):
        install_json_event_logger(log_dir / f"{prefix}_events.jsonl")
    return log_file


def _quiet(names: Iterable[str], level: int) -> None:
    floor = max(level, logging.WARNING)
    for name in names:
        logging.getLogger(name).setLevel(floor)
