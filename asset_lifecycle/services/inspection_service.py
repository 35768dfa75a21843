"""Post-inspection decisions for assets parked in AWAITING_REPORT."""

from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta
from typing import Any, Mapping, NamedTuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.asset_models import Asset
from services.field_policy import GATE_EXITS, LocationType, location_label, parse_location_type
from services.history_service import Actor, require_actor
from services.lifecycle_errors import InvalidFieldValue, InvalidTransitionSource, LifecycleError
from services.movement_service import TransitionResult, atomic, check_expected_version, lock_asset, move_locked_asset
from services.replacement_service import (
    ReplacementResult,
    lock_pair,
    replace_locked_pair,
    validate_reason,
)

LOGGER = logging.getLogger("asset_lifecycle.inspection")

DEFAULT_INSPECTION_DEADLINE_DAYS = 5

# A gated asset handed over to a replacement cannot stay gated.
GATE_REPLACEMENT_DESTINATIONS = frozenset({LocationType.WAREHOUSE, LocationType.MAINTENANCE})


class InspectionDeadline(NamedTuple):
    started_at: datetime | None
    days_waiting: int
    deadline_days: int
    due_on: date | None
    overdue: bool


def inspection_deadline_days() -> int:
    raw = (os.environ.get("INSPECTION_DEADLINE_DAYS") or "").strip()
    if not raw:
        return DEFAULT_INSPECTION_DEADLINE_DAYS
    try:
        return max(int(raw), 0)
    except ValueError:
        LOGGER.warning("Ignoring invalid INSPECTION_DEADLINE_DAYS=%r", raw)
        return DEFAULT_INSPECTION_DEADLINE_DAYS


def _require_gated(asset: Asset) -> None:
    if parse_location_type(asset.location_type) != LocationType.AWAITING_REPORT:
        raise InvalidTransitionSource(
            f"Asset {asset.asset_code} is in {location_label(asset.location_type)}, "
            "not awaiting an inspection report."
        )


def inspection_deadline_status(asset: Asset, today: date | None = None) -> InspectionDeadline:
    _require_gated(asset)
    today = today or date.today()
    deadline_days = inspection_deadline_days()
    started_at = asset.inspection_start_date or asset.updated_at
    if started_at is None:
        return InspectionDeadline(None, 0, deadline_days, None, False)
    started_on = started_at.date() if isinstance(started_at, datetime) else started_at
    days_waiting = max((today - started_on).days, 0)
    due_on = started_on + timedelta(days=deadline_days)
    return InspectionDeadline(started_at, days_waiting, deadline_days, due_on, days_waiting > deadline_days)


def list_awaiting_inspection(db: Session, today: date | None = None) -> list[tuple[Asset, InspectionDeadline]]:
    assets = db.execute(
        select(Asset)
        .where(Asset.location_type == LocationType.AWAITING_REPORT.value)
        .order_by(Asset.inspection_start_date, Asset.asset_code)
    ).scalars().all()
    return [(asset, inspection_deadline_status(asset, today)) for asset in assets]


def serialize_deadline(asset: Asset, status: InspectionDeadline) -> dict:
    return {
        "assetID": asset.id,
        "assetCode": asset.asset_code,
        "equipmentName": asset.equipment_name,
        "inspectionStartDate": status.started_at,
        "inspectionNotes": asset.inspection_notes,
        "daysWaiting": status.days_waiting,
        "deadlineDays": status.deadline_days,
        "dueOn": status.due_on,
        "overdue": status.overdue,
    }


def approve_inspection(
    db: Session,
    asset_id: int,
    actor: Actor | None,
    notes: str | None = None,
    target_state: Any = LocationType.WAREHOUSE,
    payload: Mapping[str, Any] | None = None,
    *,
    expected_version: int | None = None,
) -> TransitionResult:
    actor = require_actor(actor)
    target = parse_location_type(target_state)
    if target not in GATE_EXITS:
        raise InvalidFieldValue(
            "target_state",
            f"an inspected asset cannot be sent to {location_label(target)}",
        )
    notes = (notes or "").strip()
    decision = f"Inspection approved: {notes}" if notes else "Inspection approved"
    try:
        with atomic(db):
            asset = lock_asset(db, asset_id)
            check_expected_version(asset, expected_version)
            _require_gated(asset)
            result = move_locked_asset(db, asset, target, payload, actor, via_gate=True, notes=decision)
    except LifecycleError as exc:
        LOGGER.warning("Inspection approval rejected asset_id=%s reason=%s", asset_id, exc)
        raise
    LOGGER.info(
        "Inspection approved asset_code=%s to=%s actor=%s",
        result.asset.asset_code,
        result.to_state.value,
        actor.id,
    )
    return result


def replace_from_inspection(
    db: Session,
    asset_id: int,
    incoming_id: int,
    reason: str | None,
    actor: Actor | None,
    destination: Any = LocationType.WAREHOUSE,
    *,
    outgoing_payload: Mapping[str, Any] | None = None,
    rental_context: Mapping[str, Any] | None = None,
    substitution_date: Any = None,
    expected_version: int | None = None,
) -> ReplacementResult:
    actor = require_actor(actor)
    reason = validate_reason(reason)
    destination = parse_location_type(destination)
    if destination not in GATE_REPLACEMENT_DESTINATIONS:
        raise InvalidFieldValue(
            "destination",
            f"a replaced asset leaving inspection cannot be sent to {location_label(destination)}",
        )
    try:
        with atomic(db):
            outgoing, incoming = lock_pair(db, asset_id, incoming_id)
            check_expected_version(outgoing, expected_version)
            _require_gated(outgoing)
            result = replace_locked_pair(
                db,
                outgoing,
                incoming,
                reason,
                destination,
                actor,
                via_gate=True,
                outgoing_payload=outgoing_payload,
                rental_context=rental_context,
                substitution_date=substitution_date,
            )
    except LifecycleError as exc:
        LOGGER.warning("Inspection replacement rejected asset_id=%s reason=%s", asset_id, exc)
        raise
    LOGGER.info(
        "Inspection closed by replacement outgoing=%s incoming=%s actor=%s",
        result.outgoing.asset_code,
        result.incoming.asset_code,
        actor.id,
    )
    return result
