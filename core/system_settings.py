"""
Read/write helpers for global (owner-less) system settings.

Global rows are not unique per key at the storage level, so reads always pick
the newest active row and writes soft-disable any duplicates they find.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.models import SystemSetting, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingRow:
    key: str
    value: str
    updated_at: datetime


def get_latest_active_global_settings(session: Session, keys: Iterable[str]) -> Dict[str, SettingRow]:
    unique = sorted({k for k in keys if isinstance(k, str) and k})
    out: Dict[str, SettingRow] = {}
    if not unique:
        return out

    rows = session.execute(
        select(SystemSetting.key, SystemSetting.value, SystemSetting.updated_at)
        .where(
            SystemSetting.owner_id.is_(None),
            SystemSetting.is_active.is_(True),
            SystemSetting.key.in_(unique),
        )
        .order_by(SystemSetting.updated_at.desc())
    ).all()

    for key, value, updated_at in rows:
        if key not in out:
            out[key] = SettingRow(key=key, value=value, updated_at=updated_at)
    return out


def upsert_global_setting(
    session: Session,
    key: str,
    value: str,
    *,
    category: str = "GENERAL",
    description: Optional[str] = None,
    is_active: bool = True,
) -> SystemSetting:
    now = utcnow()
    existing = session.execute(
        select(SystemSetting)
        .where(SystemSetting.key == key, SystemSetting.owner_id.is_(None))
        .order_by(SystemSetting.updated_at.desc())
        .limit(1)
    ).scalar_one_or_none()

    if existing is not None:
        existing.value = value
        existing.category = category or "GENERAL"
        existing.description = description
        existing.is_active = is_active
        existing.updated_at = now
        session.execute(
            update(SystemSetting)
            .where(
                SystemSetting.key == key,
                SystemSetting.owner_id.is_(None),
                SystemSetting.id != existing.id,
            )
            .values(is_active=False, updated_at=now)
        )
        session.flush()
        return existing

    row = SystemSetting(
        key=key,
        value=value,
        category=category or "GENERAL",
        description=description,
        is_active=is_active,
        updated_at=now,
    )
    session.add(row)
    session.flush()
    logger.debug("Created global setting %s", key)
    return row


def parse_boolean_setting(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    if value == "true":
        return True
    if value == "false":
        return False
    return None
