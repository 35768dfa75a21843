from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.asset_models import Asset
from services.field_policy import LocationType, location_label, parse_location_type
from services.history_service import Actor, require_actor
from services.lifecycle_errors import AssetNotFound, InvalidFieldValue, RequiredFieldMissing
from services.movement_service import atomic, record_registration

LOGGER = logging.getLogger("asset_lifecycle.registration")

ASSET_CODE_DIGITS = 6

_NON_DIGITS = re.compile(r"\D")


def normalize_asset_code(raw: str | int | None) -> Optional[str]:
    digits = _NON_DIGITS.sub("", str(raw if raw is not None else ""))
    if not digits or len(digits) > ASSET_CODE_DIGITS:
        return None
    return digits.zfill(ASSET_CODE_DIGITS)


def require_asset_code(raw: str | int | None) -> str:
    code = normalize_asset_code(raw)
    if not code:
        raise InvalidFieldValue("asset_code", f"must be numeric with at most {ASSET_CODE_DIGITS} digits")
    return code


def generate_next_asset_code(db: Session) -> str:
    existing = db.execute(select(Asset.asset_code)).scalars().all()
    max_seq = 0
    for code in existing:
        if not code or not code.isdigit():
            continue
        seq = int(code)
        if seq > max_seq:
            max_seq = seq
    return f"{max_seq + 1:0{ASSET_CODE_DIGITS}d}"


def get_asset(db: Session, asset_id: int) -> Asset:
    asset = db.get(Asset, asset_id)
    if not asset:
        raise AssetNotFound(asset_id)
    return asset


def get_asset_by_code(db: Session, raw_code: str | int) -> Asset:
    code = normalize_asset_code(raw_code)
    asset = None
    if code:
        asset = db.execute(select(Asset).where(Asset.asset_code == code)).scalars().first()
    if not asset:
        raise AssetNotFound(raw_code)
    return asset


def list_assets(db: Session, location_type: str | None = None) -> list[Asset]:
    stmt = select(Asset).order_by(Asset.asset_code)
    if location_type:
        stmt = stmt.where(Asset.location_type == parse_location_type(location_type).value)
    return list(db.execute(stmt).scalars().all())


def register_asset(
    db: Session,
    actor: Actor,
    *,
    equipment_name: str,
    asset_code: str | None = None,
    manufacturer: str | None = None,
    model: str | None = None,
    serial_number: str | None = None,
    equipment_observations: str | None = None,
    registered_on: date | None = None,
) -> Asset:
    actor = require_actor(actor)
    name = (equipment_name or "").strip()
    if not name:
        raise RequiredFieldMissing("equipment_name")

    with atomic(db):
        code = require_asset_code(asset_code) if asset_code else generate_next_asset_code(db)
        duplicate = db.execute(select(Asset.id).where(Asset.asset_code == code)).first()
        if duplicate:
            raise InvalidFieldValue("asset_code", f"{code} is already registered")

        now = datetime.now()
        asset = Asset(
            asset_code=code,
            equipment_name=name,
            manufacturer=(manufacturer or "").strip().upper() or None,
            model=(model or "").strip().upper() or None,
            serial_number=(serial_number or "").strip().upper() or None,
            equipment_observations=(equipment_observations or "").strip() or None,
            location_type=LocationType.WAREHOUSE.value,
            registered_on=registered_on or date.today(),
            created_at=now,
            updated_at=now,
        )
        db.add(asset)
        db.flush()
        record_registration(db, asset, actor)
    LOGGER.info("Asset registered asset_code=%s actor=%s", asset.asset_code, actor.id)
    return asset


def serialize_asset(asset: Asset) -> dict:
    return {
        "assetID": asset.id,
        "assetCode": asset.asset_code,
        "equipmentName": asset.equipment_name,
        "manufacturer": asset.manufacturer,
        "model": asset.model,
        "serialNumber": asset.serial_number,
        "locationType": asset.location_type,
        "locationLabel": location_label(asset.location_type),
        "depositoDescription": asset.deposito_description,
        "maintenanceCompany": asset.maintenance_company,
        "maintenanceWorkSite": asset.maintenance_work_site,
        "maintenanceDescription": asset.maintenance_description,
        "maintenanceArrivalDate": asset.maintenance_arrival_date,
        "maintenanceDepartureDate": asset.maintenance_departure_date,
        "maltaCollaborator": asset.malta_collaborator,
        "rentalCompany": asset.rental_company,
        "rentalWorkSite": asset.rental_work_site,
        "rentalStartDate": asset.rental_start_date,
        "rentalEndDate": asset.rental_end_date,
        "rentalContractNumber": asset.rental_contract_number,
        "inspectionStartDate": asset.inspection_start_date,
        "inspectionNotes": asset.inspection_notes,
        "equipmentObservations": asset.equipment_observations,
        "replacedBy": asset.replaced_by,
        "replacementReason": asset.replacement_reason,
        "wasReplaced": bool(asset.was_replaced),
        "isNewEquipment": bool(asset.is_new_equipment),
        "substitutionDate": asset.substitution_date,
        "registeredOn": asset.registered_on,
        "createdAt": asset.created_at,
        "updatedAt": asset.updated_at,
        "version": asset.version,
    }
