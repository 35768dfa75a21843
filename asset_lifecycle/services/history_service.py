"""Append-only asset history.

Rows are written one at a time, each inside its own SAVEPOINT of the caller's
transaction. A row that fails to insert is rolled back on its own, logged and
handed to the dropped-history hooks; the surrounding asset change is kept.
Nothing in this module updates or deletes a history row.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.asset_models import Asset, AssetHistory
from services.lifecycle_errors import UnauthenticatedActor

LOGGER = logging.getLogger("asset_lifecycle.history")

ACTION_MOVEMENT = "MOVEMENT"
ACTION_FIELD_CHANGE = "FIELD_CHANGE"
ACTION_REPLACEMENT = "REPLACEMENT"
ACTION_TYPES = (ACTION_MOVEMENT, ACTION_FIELD_CHANGE, ACTION_REPLACEMENT)

DroppedHistoryHook = Callable[[dict, Exception], None]

_HOOKS_LOCK = threading.Lock()
_DROPPED_HOOKS: list[DroppedHistoryHook] = []
_DROPPED_COUNT = 0


@dataclass(frozen=True)
class Actor:
    id: str
    display_name: str | None = None


def require_actor(actor: Actor | None) -> Actor:
    if actor is None:
        raise UnauthenticatedActor()
    if not str(getattr(actor, "id", "") or "").strip():
        raise UnauthenticatedActor()
    return actor


def register_dropped_history_hook(hook: DroppedHistoryHook) -> None:
    with _HOOKS_LOCK:
        _DROPPED_HOOKS.append(hook)


def unregister_dropped_history_hook(hook: DroppedHistoryHook) -> None:
    with _HOOKS_LOCK:
        if hook in _DROPPED_HOOKS:
            _DROPPED_HOOKS.remove(hook)


def dropped_history_count() -> int:
    return _DROPPED_COUNT


def _report_dropped(values: dict, exc: Exception) -> None:
    global _DROPPED_COUNT
    with _HOOKS_LOCK:
        _DROPPED_COUNT += 1
        hooks = list(_DROPPED_HOOKS)
    LOGGER.warning(
        "History write dropped asset_code=%s action=%s field=%s error=%s",
        values.get("asset_code"),
        values.get("action_type"),
        values.get("changed_field"),
        exc,
    )
    for hook in hooks:
        try:
            hook(dict(values), exc)
        except Exception:
            LOGGER.exception("Dropped-history hook failed")


def normalize_value(value: Any) -> str | None:
    """Stringify a field value for the ledger; blank and missing both become ``None``."""
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def snapshot(asset: Asset, fields: Iterable[str]) -> dict[str, Any]:
    return {field: getattr(asset, field) for field in fields}


def diff_fields(before: Mapping[str, Any], after: Mapping[str, Any]) -> list[tuple[str, str | None, str | None]]:
    changes: list[tuple[str, str | None, str | None]] = []
    for field, new_raw in after.items():
        old_value = normalize_value(before.get(field))
        new_value = normalize_value(new_raw)
        if old_value != new_value:
            changes.append((field, old_value, new_value))
    return changes


def record(
    db: Session,
    asset: Asset,
    action_type: str | None,
    actor: Actor,
    *,
    detail: str | None = None,
    changed_field: str | None = None,
    old_value: Any = None,
    new_value: Any = None,
    timestamp: datetime | None = None,
) -> AssetHistory | None:
    values = {
        "asset_id": asset.id,
        "asset_code": asset.asset_code,
        "action_type": action_type,
        "detail": detail,
        "changed_field": changed_field,
        "old_value": normalize_value(old_value),
        "new_value": normalize_value(new_value),
        "actor_id": str(actor.id),
        "actor_name": actor.display_name,
        "timestamp": timestamp or datetime.now(),
    }
    try:
        with db.begin_nested():
            event = AssetHistory(**values)
            db.add(event)
            db.flush()
    except SQLAlchemyError as exc:
        _report_dropped(values, exc)
        return None
    return event


def record_field_changes(
    db: Session,
    asset: Asset,
    actor: Actor,
    changes: Iterable[tuple[str, str | None, str | None]],
    *,
    detail: str | None = None,
    timestamp: datetime | None = None,
) -> int:
    written = 0
    for field, old_value, new_value in changes:
        event = record(
            db,
            asset,
            ACTION_FIELD_CHANGE,
            actor,
            detail=detail,
            changed_field=field,
            old_value=old_value,
            new_value=new_value,
            timestamp=timestamp,
        )
        if event is not None:
            written += 1
    return written


def timeline_by_code(db: Session, asset_code: str) -> list[AssetHistory]:
    stmt = (
        select(AssetHistory)
        .where(AssetHistory.asset_code == asset_code)
        .order_by(AssetHistory.timestamp, AssetHistory.id)
    )
    return list(db.execute(stmt).scalars().all())


def timeline_for_asset(db: Session, asset_id: int) -> list[AssetHistory]:
    stmt = (
        select(AssetHistory)
        .where(AssetHistory.asset_id == asset_id)
        .order_by(AssetHistory.timestamp, AssetHistory.id)
    )
    return list(db.execute(stmt).scalars().all())


def replay_timeline(events: Iterable[AssetHistory], initial: Mapping[str, str | None] | None = None) -> dict[str, str | None]:
    state: dict[str, str | None] = dict(initial or {})
    for event in events:
        if event.changed_field:
            state[event.changed_field] = event.new_value
    return state


def find_chain_breaks(events: Iterable[AssetHistory]) -> list[dict[str, Any]]:
    """Events whose ``old_value`` does not match the previous ``new_value`` of the same field."""
    last_seen: dict[str, str | None] = {}
    breaks: list[dict[str, Any]] = []
    for event in events:
        field = event.changed_field
        if not field:
            continue
        if field in last_seen and last_seen[field] != event.old_value:
            breaks.append(
                {
                    "historyID": event.id,
                    "field": field,
                    "expected": last_seen[field],
                    "found": event.old_value,
                }
            )
        last_seen[field] = event.new_value
    return breaks


def serialize_history_event(event: AssetHistory) -> dict:
    return {
        "historyID": event.id,
        "assetID": event.asset_id,
        "assetCode": event.asset_code,
        "actionType": event.action_type,
        "detail": event.detail,
        "changedField": event.changed_field,
        "oldValue": event.old_value,
        "newValue": event.new_value,
        "actorID": event.actor_id,
        "actorName": event.actor_name,
        "timestamp": event.timestamp,
    }
