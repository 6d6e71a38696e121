"""
aureus.services.settings_service — Settings CRUD
=================================================

Typed read/write access to the ``settings`` table.  The synchronizer reads
its tuning knobs through :func:`load_sync_settings` at the start of every
pass, so an admin edit takes effect on the next pass without a restart.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from aureus.database.models import AdminActionType, AdminLog, Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed sync settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class SyncSettings:
    confirmations: int = 12
    batch_size: int = 500
    poll_interval_seconds: float = 5.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    lease_seconds: int = 300
    process_limit: int = 1000


def load_sync_settings(session: Session) -> SyncSettings:
    """Read every ``sync.*`` key, falling back to the dataclass defaults."""
    d = SyncSettings()
    return SyncSettings(
        confirmations=max(int(get_setting_value(session, "sync.confirmations", d.confirmations)), 0),
        batch_size=max(int(get_setting_value(session, "sync.batch_size", d.batch_size)), 1),
        poll_interval_seconds=float(
            get_setting_value(session, "sync.poll_interval_seconds", d.poll_interval_seconds)
        ),
        max_retries=max(int(get_setting_value(session, "sync.max_retries", d.max_retries)), 0),
        retry_delay_seconds=float(
            get_setting_value(session, "sync.retry_delay_seconds", d.retry_delay_seconds)
        ),
        max_backoff_seconds=float(
            get_setting_value(session, "sync.max_backoff_seconds", d.max_backoff_seconds)
        ),
        lease_seconds=max(int(get_setting_value(session, "sync.lease_seconds", d.lease_seconds)), 1),
        process_limit=max(int(get_setting_value(session, "sync.process_limit", d.process_limit)), 1),
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def _decode(value_json: str | None):
    """Parsed value; the raw string when the stored JSON is invalid."""
    if value_json is None:
        return None
    try:
        return json.loads(value_json)
    except json.JSONDecodeError:
        return value_json


def get_setting_value(session: Session, key: str, default=None):
    """Read a single setting's parsed value from an existing session.

    Returns *default* when the key does not exist.
    """
    row = session.get(Setting, key)
    if row is None:
        return default
    return _decode(row.value_json)


def get_all_settings(engine) -> list[dict]:
    """Every setting, ordered by category then key."""
    with Session(engine) as session:
        rows = session.scalars(
            select(Setting).order_by(Setting.category, Setting.key)
        ).all()
        return [_snapshot(r) for r in rows]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _snapshot(row: Setting) -> dict:
    return {
        "key": row.key,
        "value": _decode(row.value_json),
        "category": row.category,
        "description": row.description,
    }


def _apply(session: Session, item: dict) -> tuple[Setting, dict | None]:
    """Write one ``{key, value[, category, description]}`` item.

    Returns the row and its state before the write (``None`` if new).
    """
    row = session.get(Setting, item["key"])
    before = _snapshot(row) if row is not None else None
    if row is None:
        row = Setting(key=item["key"], category=item.get("category") or "general")
        session.add(row)
    elif item.get("category"):
        row.category = item["category"]
    if "description" in item:
        row.description = item["description"]
    row.value_json = json.dumps(item["value"])
    return row, before


def upsert_setting(
    engine,
    *,
    key: str,
    value: Any,
    category: str = "general",
    description: str | None = None,
) -> None:
    """Insert or update a single setting (no audit row)."""
    item: dict[str, Any] = {"key": key, "value": value, "category": category}
    if description is not None:
        item["description"] = description
    with Session(engine) as session:
        _apply(session, item)
        session.commit()


def bulk_upsert(engine, settings: list[dict], *, actor_id: str | None = None) -> int:
    """Upsert many settings in one transaction.

    Each dict needs ``key`` and ``value``; ``category`` and ``description``
    are optional.  With *actor_id*, every actual change is recorded in
    ``admin_log`` with before/after snapshots.

    Returns the number of rows touched.
    """
    with Session(engine) as session:
        for item in settings:
            row, before = _apply(session, item)
            if actor_id is None:
                continue
            after = _snapshot(row)
            if before == after:
                continue
            session.add(AdminLog(
                actor_id=str(actor_id),
                action_type=(AdminActionType.UPDATE if before else AdminActionType.CREATE).value,
                target_table="settings",
                target_id=row.key,
                before_snapshot=before,
                after_snapshot=after,
            ))
        session.commit()

    logger.info("Upserted %d setting(s)", len(settings))
    return len(settings)
