"""Replacement chain: an incoming unit takes over the position of an outgoing one.

Both legs run through the movement engine inside one transaction. The incoming
leg is applied first; the outgoing asset is only touched after the incoming
write succeeded.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.asset_models import Asset
from services.field_policy import (
    REPLACEMENT_DESTINATIONS,
    LocationType,
    coerce_field_value,
    location_label,
    parse_location_type,
)
from services.history_service import (
    ACTION_REPLACEMENT,
    Actor,
    diff_fields,
    record,
    record_field_changes,
    require_actor,
    snapshot,
)
from services.lifecycle_errors import (
    AlreadyReplaced,
    AwaitingInspectionDecisionRequired,
    IncomingAssetNotEligible,
    InvalidFieldValue,
    InvalidTransitionSource,
    LifecycleError,
    MinimumLengthViolation,
)
from services.lifecycle_service import latest_rental_cycle
from services.movement_service import (
    TransitionResult,
    atomic,
    check_expected_version,
    lock_asset,
    move_locked_asset,
)

LOGGER = logging.getLogger("asset_lifecycle.replacement")

DEFAULT_REASON_MIN_LENGTH = 10

# Position handed from the outgoing unit to the incoming one, per vacated state.
ROLE_FIELDS: dict[LocationType, tuple[str, ...]] = {
    LocationType.RENTED: ("rental_company", "rental_work_site", "rental_contract_number"),
    LocationType.MAINTENANCE: ("maintenance_company", "maintenance_work_site", "maintenance_description"),
}
# Dated by the substitution itself.
ROLE_START_FIELDS: dict[LocationType, str] = {
    LocationType.RENTED: "rental_start_date",
    LocationType.MAINTENANCE: "maintenance_arrival_date",
}
# Never inherited; only an explicit context value is used.
ROLE_CONTEXT_ONLY_FIELDS: dict[LocationType, tuple[str, ...]] = {
    LocationType.RENTED: ("rental_end_date",),
    LocationType.MAINTENANCE: ("maintenance_departure_date",),
}
OUTGOING_LINK_FIELDS = ("replaced_by", "replacement_reason", "was_replaced", "substitution_date")
INCOMING_LINK_FIELDS = ("is_new_equipment",)


@dataclass
class ReplacementResult:
    outgoing: Asset
    incoming: Asset
    incoming_leg: TransitionResult
    outgoing_leg: TransitionResult
    substitution_date: date
    history_written: int = 0

    def to_dict(self) -> dict:
        return {
            "outgoingAssetID": self.outgoing.id,
            "outgoingAssetCode": self.outgoing.asset_code,
            "outgoingState": self.outgoing.location_type,
            "incomingAssetID": self.incoming.id,
            "incomingAssetCode": self.incoming.asset_code,
            "incomingState": self.incoming.location_type,
            "substitutionDate": self.substitution_date,
            "historyWritten": self.history_written,
        }


def replacement_reason_min_length() -> int:
    raw = (os.environ.get("REPLACEMENT_REASON_MIN_LENGTH") or "").strip()
    if not raw:
        return DEFAULT_REASON_MIN_LENGTH
    try:
        return max(int(raw), 1)
    except ValueError:
        LOGGER.warning("Ignoring invalid REPLACEMENT_REASON_MIN_LENGTH=%r", raw)
        return DEFAULT_REASON_MIN_LENGTH


def validate_reason(reason: str | None) -> str:
    text = (reason or "").strip()
    minimum = replacement_reason_min_length()
    if len(text) < minimum:
        raise MinimumLengthViolation("replacement_reason", minimum)
    return text


def parse_destination(raw: Any) -> LocationType:
    destination = parse_location_type(raw)
    if destination not in REPLACEMENT_DESTINATIONS:
        raise InvalidFieldValue(
            "destination",
            f"a replaced asset cannot be sent to {location_label(destination)}",
        )
    return destination


def lock_pair(db: Session, outgoing_id: int, incoming_id: int) -> tuple[Asset, Asset]:
    """Lock both rows in ascending id order and return ``(outgoing, incoming)``."""
    if int(outgoing_id) == int(incoming_id):
        outgoing = lock_asset(db, outgoing_id)
        raise IncomingAssetNotEligible(f"Asset {outgoing.asset_code} cannot replace itself.")
    locked = {}
    for asset_id in sorted((int(outgoing_id), int(incoming_id))):
        locked[asset_id] = lock_asset(db, asset_id)
    return locked[int(outgoing_id)], locked[int(incoming_id)]


def vacated_role(
    db: Session,
    outgoing: Asset,
    rental_context: Mapping[str, Any] | None = None,
) -> tuple[LocationType, dict[str, Any]]:
    """Return the state the incoming unit steps into and the position it inherits.

    A RENTED or MAINTENANCE outgoing unit hands over its live position. A unit
    that already left RENTED (the inspection gate) hands over its most recent
    archived rental. Non-blank ``rental_context`` values for the vacated state
    override the inherited ones; planned end dates are only taken from there.
    """
    current = parse_location_type(outgoing.location_type)
    role: dict[str, Any] = {}
    if current in ROLE_FIELDS:
        state = current
        role = {name: getattr(outgoing, name) for name in ROLE_FIELDS[state]}
    else:
        state = LocationType.RENTED
        cycle = latest_rental_cycle(db, outgoing.id)
        if cycle is not None:
            role = {
                "rental_company": cycle.company,
                "rental_work_site": cycle.work_site,
                "rental_contract_number": cycle.contract_number,
            }
    accepted = ROLE_FIELDS[state] + ROLE_CONTEXT_ONLY_FIELDS[state]
    for name, value in (rental_context or {}).items():
        if name in accepted and coerce_field_value(name, value) is not None:
            role[name] = value
    return state, role


def parse_substitution_date(raw: Any, today: date | None = None) -> date:
    today = today or date.today()
    try:
        sub_date = coerce_field_value("rental_start_date", raw)
    except InvalidFieldValue as exc:
        raise InvalidFieldValue("substitution_date", f"'{raw}' is not a valid date (YYYY-MM-DD)") from exc
    if sub_date is None:
        return today
    if sub_date > today:
        raise InvalidFieldValue("substitution_date", f"cannot be in the future ({sub_date.isoformat()})")
    return sub_date


def _check_preconditions(outgoing: Asset, incoming: Asset, *, via_gate: bool) -> None:
    if outgoing.replaced_by is not None:
        raise AlreadyReplaced(f"Asset {outgoing.asset_code} has already been replaced.")
    current = parse_location_type(outgoing.location_type)
    if current == LocationType.AWAITING_REPORT and not via_gate:
        raise AwaitingInspectionDecisionRequired(outgoing.asset_code)
    if current == LocationType.WAREHOUSE:
        raise InvalidTransitionSource(
            f"Asset {outgoing.asset_code} is in {location_label(current)} and has no active role to hand over."
        )
    if incoming.id == outgoing.id:
        raise IncomingAssetNotEligible(f"Asset {outgoing.asset_code} cannot replace itself.")
    if parse_location_type(incoming.location_type) != LocationType.WAREHOUSE:
        raise IncomingAssetNotEligible(
            f"Asset {incoming.asset_code} must be in {location_label(LocationType.WAREHOUSE)} "
            f"to replace another unit (currently {location_label(incoming.location_type)})."
        )


def replace_locked_pair(
    db: Session,
    outgoing: Asset,
    incoming: Asset,
    reason: str | None,
    destination: Any,
    actor: Actor,
    *,
    via_gate: bool = False,
    outgoing_payload: Mapping[str, Any] | None = None,
    rental_context: Mapping[str, Any] | None = None,
    substitution_date: Any = None,
    now: datetime | None = None,
) -> ReplacementResult:
    """Run both legs and write the link fields. Does not commit."""
    _check_preconditions(outgoing, incoming, via_gate=via_gate)
    destination = parse_destination(destination)
    reason = validate_reason(reason)
    sub_date = parse_substitution_date(substitution_date)
    now = now or datetime.now()

    incoming_state, role = vacated_role(db, outgoing, rental_context)
    incoming_payload = dict(role)
    incoming_payload[ROLE_START_FIELDS[incoming_state]] = sub_date

    try:
        incoming_leg = move_locked_asset(
            db,
            incoming,
            incoming_state,
            incoming_payload,
            actor,
            notes=f"Replacing asset {outgoing.asset_code}",
            now=now,
        )
    except LifecycleError as exc:
        exc.with_asset_context(incoming.asset_code)
        raise

    try:
        outgoing_leg = move_locked_asset(
            db,
            outgoing,
            destination,
            outgoing_payload,
            actor,
            via_gate=via_gate,
            notes=f"Replaced by asset {incoming.asset_code}",
            now=now,
        )
    except LifecycleError as exc:
        exc.with_asset_context(outgoing.asset_code)
        raise

    outgoing_before = snapshot(outgoing, OUTGOING_LINK_FIELDS)
    incoming_before = snapshot(incoming, INCOMING_LINK_FIELDS)
    outgoing_links = {
        "replaced_by": incoming.id,
        "replacement_reason": reason,
        "was_replaced": True,
        "substitution_date": sub_date,
    }
    incoming_links = {"is_new_equipment": True}
    for name, value in outgoing_links.items():
        setattr(outgoing, name, value)
    for name, value in incoming_links.items():
        setattr(incoming, name, value)
    outgoing.updated_at = now
    incoming.updated_at = now
    db.flush()

    detail = (
        f"Asset {outgoing.asset_code} replaced by {incoming.asset_code} on {sub_date:%d/%m/%Y}. "
        f"Reason: {reason}"
    )
    written = incoming_leg.history_written + outgoing_leg.history_written
    written += record_field_changes(
        db, outgoing, actor, diff_fields(outgoing_before, outgoing_links), detail=detail, timestamp=now
    )
    written += record_field_changes(
        db, incoming, actor, diff_fields(incoming_before, incoming_links), detail=detail, timestamp=now
    )
    if record(
        db,
        outgoing,
        ACTION_REPLACEMENT,
        actor,
        detail=detail,
        old_value=outgoing.asset_code,
        new_value=incoming.asset_code,
        timestamp=now,
    ) is not None:
        written += 1

    return ReplacementResult(
        outgoing=outgoing,
        incoming=incoming,
        incoming_leg=incoming_leg,
        outgoing_leg=outgoing_leg,
        substitution_date=sub_date,
        history_written=written,
    )


def replace_asset(
    db: Session,
    outgoing_id: int,
    incoming_id: int,
    reason: str | None,
    destination_for_outgoing: Any,
    actor: Actor | None,
    outgoing_payload: Mapping[str, Any] | None = None,
    rental_context: Mapping[str, Any] | None = None,
    substitution_date: Any = None,
    *,
    expected_version: int | None = None,
) -> ReplacementResult:
    actor = require_actor(actor)
    try:
        with atomic(db):
            outgoing, incoming = lock_pair(db, outgoing_id, incoming_id)
            check_expected_version(outgoing, expected_version)
            result = replace_locked_pair(
                db,
                outgoing,
                incoming,
                reason,
                destination_for_outgoing,
                actor,
                outgoing_payload=outgoing_payload,
                rental_context=rental_context,
                substitution_date=substitution_date,
            )
    except LifecycleError as exc:
        LOGGER.warning(
            "Replacement rejected outgoing_id=%s incoming_id=%s reason=%s", outgoing_id, incoming_id, exc
        )
        raise
    LOGGER.info(
        "Replacement applied outgoing=%s incoming=%s destination=%s actor=%s",
        result.outgoing.asset_code,
        result.incoming.asset_code,
        result.outgoing.location_type,
        actor.id,
    )
    return result


def find_replacement_links(db: Session, asset_id: int) -> dict[str, Any]:
    """Both directions of the link: the unit that replaced ``asset_id`` and the units it replaced."""
    asset = db.get(Asset, asset_id)
    replaced_by = db.get(Asset, asset.replaced_by) if asset is not None and asset.replaced_by else None
    replaces = list(
        db.execute(select(Asset).where(Asset.replaced_by == asset_id).order_by(Asset.substitution_date, Asset.id))
        .scalars()
        .all()
    )
    return {"replaced_by": replaced_by, "replaces": replaces}
