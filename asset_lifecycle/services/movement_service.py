"""Single-asset state transitions.

``apply_transition`` is the public entry point and owns its transaction. The
post-inspection gate and the replacement chain compose ``move_locked_asset``
calls inside their own transaction instead.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterator, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.asset_models import Asset
from services.field_policy import (
    LocationType,
    build_row_values,
    is_transition_allowed,
    location_label,
    parse_location_type,
)
from services.history_service import (
    ACTION_MOVEMENT,
    Actor,
    diff_fields,
    record,
    record_field_changes,
    require_actor,
    snapshot,
)
from services.lifecycle_errors import (
    AssetNotFound,
    AwaitingInspectionDecisionRequired,
    ConcurrentModification,
    InvalidTransitionSource,
    LifecycleError,
)
from services.lifecycle_service import archive_current_cycle

LOGGER = logging.getLogger("asset_lifecycle.movement")

_CYCLE_STATES = (LocationType.RENTED, LocationType.MAINTENANCE)
_CYCLE_KEYS = {
    LocationType.RENTED: ("rental_company", "rental_work_site"),
    LocationType.MAINTENANCE: ("maintenance_company", "maintenance_work_site"),
}


@dataclass
class TransitionResult:
    asset: Asset
    from_state: LocationType
    to_state: LocationType
    changed_fields: list[str] = field(default_factory=list)
    history_written: int = 0

    def to_dict(self) -> dict:
        return {
            "assetID": self.asset.id,
            "assetCode": self.asset.asset_code,
            "fromState": self.from_state.value,
            "toState": self.to_state.value,
            "changedFields": list(self.changed_fields),
            "historyWritten": self.history_written,
            "version": self.asset.version,
        }


@contextmanager
def atomic(db: Session) -> Iterator[None]:
    try:
        yield
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModification("Asset was modified by another request; reload it and try again.") from exc
    except Exception:
        db.rollback()
        raise


def lock_asset(db: Session, asset_id: int) -> Asset:
    asset = db.execute(
        select(Asset)
        .where(Asset.id == asset_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not asset:
        raise AssetNotFound(asset_id)
    return asset


def check_expected_version(asset: Asset, expected_version: int | None) -> None:
    if expected_version is None:
        return
    if int(expected_version) != int(asset.version or 0):
        raise ConcurrentModification(
            f"Asset {asset.asset_code} changed since it was read "
            f"(expected version {expected_version}, found {asset.version})."
        )


def describe_transition(
    current: LocationType,
    target: LocationType,
    values: Mapping[str, Any],
    notes: str | None = None,
) -> str:
    if current == target:
        text = f"{location_label(target)} details updated on {date.today():%d/%m/%Y}"
    else:
        text = f"Moved from {location_label(current)} to {location_label(target)} on {date.today():%d/%m/%Y}"
    if target == LocationType.RENTED:
        text += f". Company: {values.get('rental_company')}, Work site: {values.get('rental_work_site')}"
    elif target == LocationType.MAINTENANCE:
        text += f". Company: {values.get('maintenance_company')}, Site: {values.get('maintenance_work_site')}"
        if values.get("maintenance_description"):
            text += f". Reason: {values.get('maintenance_description')}"
    if notes:
        text += f". Notes: {notes}"
    return text


def _closes_cycle(asset: Asset, current: LocationType, target: LocationType, values: Mapping[str, Any]) -> bool:
    if current not in _CYCLE_STATES:
        return False
    if current != target:
        return True
    return any(getattr(asset, key) != values.get(key) for key in _CYCLE_KEYS[current])


def move_locked_asset(
    db: Session,
    asset: Asset,
    target: LocationType,
    payload: Mapping[str, Any] | None,
    actor: Actor,
    *,
    via_gate: bool = False,
    summary: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Validate and apply one transition on an asset already locked by the caller.

    Does not commit. The asset row is flushed before any history is written so
    that a persistence or version failure surfaces here instead of inside a
    history savepoint.
    """
    current = parse_location_type(asset.location_type)
    if current == LocationType.AWAITING_REPORT and not via_gate:
        raise AwaitingInspectionDecisionRequired(asset.asset_code)
    if via_gate and current != LocationType.AWAITING_REPORT:
        raise InvalidTransitionSource(f"Asset {asset.asset_code} is not awaiting an inspection report.")
    if not via_gate and not is_transition_allowed(current, target):
        raise InvalidTransitionSource(
            f"Asset {asset.asset_code} cannot move from {location_label(current)} to {location_label(target)}."
        )

    now = now or datetime.now()
    values = build_row_values(target, payload, now=now, registered_on=asset.registered_on)
    before = snapshot(asset, values.keys())

    if _closes_cycle(asset, current, target, values):
        archive_current_cycle(db, asset, actor)

    for name, value in values.items():
        setattr(asset, name, value)
    asset.updated_at = now
    db.flush()

    changes = diff_fields(before, values)
    field_changes = [change for change in changes if change[0] != "location_type"]
    detail = summary or describe_transition(current, target, values, notes)

    written = 0
    if record(
        db,
        asset,
        ACTION_MOVEMENT,
        actor,
        detail=detail,
        changed_field="location_type",
        old_value=current.value,
        new_value=target.value,
        timestamp=now,
    ) is not None:
        written += 1
    written += record_field_changes(db, asset, actor, field_changes, detail=detail, timestamp=now)

    return TransitionResult(
        asset=asset,
        from_state=current,
        to_state=target,
        changed_fields=[name for name, _, _ in field_changes],
        history_written=written,
    )


def apply_transition(
    db: Session,
    asset_id: int,
    target_state: Any,
    payload: Mapping[str, Any] | None,
    actor: Actor | None,
    *,
    expected_version: int | None = None,
) -> TransitionResult:
    actor = require_actor(actor)
    target = parse_location_type(target_state)
    try:
        with atomic(db):
            asset = lock_asset(db, asset_id)
            check_expected_version(asset, expected_version)
            result = move_locked_asset(db, asset, target, payload, actor)
    except LifecycleError as exc:
        LOGGER.warning("Transition rejected asset_id=%s target=%s reason=%s", asset_id, target.value, exc)
        raise
    LOGGER.info(
        "Transition applied asset_code=%s from=%s to=%s fields=%s actor=%s",
        result.asset.asset_code,
        result.from_state.value,
        result.to_state.value,
        len(result.changed_fields),
        actor.id,
    )
    return result


def record_registration(db: Session, asset: Asset, actor: Actor) -> None:
    record(
        db,
        asset,
        ACTION_MOVEMENT,
        actor,
        detail=f"Registered in {location_label(asset.location_type)} on {date.today():%d/%m/%Y}",
        changed_field="location_type",
        old_value=None,
        new_value=asset.location_type,
        timestamp=asset.created_at,
    )
