from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.asset_models import Asset, LifecycleCycle
from services.field_policy import LocationType, parse_location_type
from services.history_service import Actor

CYCLE_RENTAL = "RENTAL"
CYCLE_MAINTENANCE = "MAINTENANCE"


def next_cycle_number(db: Session, asset_id: int) -> int:
    last = db.execute(
        select(func.max(LifecycleCycle.cycle_number)).where(LifecycleCycle.asset_id == asset_id)
    ).scalar()
    return int(last or 0) + 1


def _cycle_context(asset: Asset) -> dict | None:
    state = parse_location_type(asset.location_type)
    if state == LocationType.RENTED:
        if not (asset.rental_company or asset.rental_work_site):
            return None
        return {
            "cycle_kind": CYCLE_RENTAL,
            "company": asset.rental_company,
            "work_site": asset.rental_work_site,
            "contract_number": asset.rental_contract_number,
            "started_on": asset.rental_start_date,
            "reason": (
                f"Rental cycle closed. Client: {asset.rental_company or 'N/A'}, "
                f"Work site: {asset.rental_work_site or 'N/A'}, "
                f"Contract: {asset.rental_contract_number or 'N/A'}"
            ),
        }
    if state == LocationType.MAINTENANCE:
        if not (asset.maintenance_company or asset.maintenance_work_site):
            return None
        return {
            "cycle_kind": CYCLE_MAINTENANCE,
            "company": asset.maintenance_company,
            "work_site": asset.maintenance_work_site,
            "contract_number": None,
            "started_on": asset.maintenance_arrival_date,
            "reason": (
                f"Maintenance cycle closed. Company: {asset.maintenance_company or 'N/A'}, "
                f"Site: {asset.maintenance_work_site or 'N/A'}"
            ),
        }
    return None


def archive_current_cycle(db: Session, asset: Asset, actor: Actor) -> LifecycleCycle | None:
    """Archive the rental or maintenance context the asset is about to leave.

    Must be called before the row values are overwritten. Returns ``None``
    when the current state has no context worth keeping.
    """
    context = _cycle_context(asset)
    if context is None:
        return None
    cycle = LifecycleCycle(
        asset_id=asset.id,
        asset_code=asset.asset_code,
        cycle_number=next_cycle_number(db, asset.id),
        closed_at=datetime.now(),
        closed_by=str(actor.id),
        **context,
    )
    db.add(cycle)
    return cycle


def latest_rental_cycle(db: Session, asset_id: int) -> LifecycleCycle | None:
    return db.execute(
        select(LifecycleCycle)
        .where(LifecycleCycle.asset_id == asset_id)
        .where(LifecycleCycle.cycle_kind == CYCLE_RENTAL)
        .order_by(LifecycleCycle.cycle_number.desc())
    ).scalars().first()


def list_cycles(db: Session, asset_id: int) -> list[LifecycleCycle]:
    return list(
        db.execute(
            select(LifecycleCycle)
            .where(LifecycleCycle.asset_id == asset_id)
            .order_by(LifecycleCycle.cycle_number)
        ).scalars().all()
    )


def serialize_cycle(cycle: LifecycleCycle) -> dict:
    return {
        "cycleID": cycle.id,
        "assetID": cycle.asset_id,
        "assetCode": cycle.asset_code,
        "cycleNumber": cycle.cycle_number,
        "cycleKind": cycle.cycle_kind,
        "company": cycle.company,
        "workSite": cycle.work_site,
        "contractNumber": cycle.contract_number,
        "startedOn": cycle.started_on,
        "closedAt": cycle.closed_at,
        "closedBy": cycle.closed_by,
        "reason": cycle.reason,
    }
