from datetime import date, datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from db.base import Base


class Asset(Base):
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True)
    asset_code = Column(String(20), nullable=False, unique=True, index=True)
    equipment_name = Column(String(255), nullable=False)
    manufacturer = Column(String(255))
    model = Column(String(255))
    serial_number = Column(String(255))
    location_type = Column(String(30), nullable=False, default="deposito_malta", index=True)

    deposito_description = Column(String(1000))

    maintenance_company = Column(String(255))
    maintenance_work_site = Column(String(255))
    maintenance_description = Column(String(1000))
    maintenance_arrival_date = Column(Date)
    maintenance_departure_date = Column(Date)
    malta_collaborator = Column(String(255))

    rental_company = Column(String(255))
    rental_work_site = Column(String(255))
    rental_start_date = Column(Date)
    rental_end_date = Column(Date)
    rental_contract_number = Column(String(100))

    inspection_start_date = Column(DateTime)
    inspection_notes = Column(String(1000))

    equipment_observations = Column(String(2000))

    replaced_by = Column(Integer, ForeignKey("assets.id"), index=True)
    replacement_reason = Column(String(1000))
    was_replaced = Column(Boolean)
    is_new_equipment = Column(Boolean)
    substitution_date = Column(Date)

    registered_on = Column(Date, default=date.today)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now)
    version = Column(Integer, nullable=False, default=1)

    Successor = relationship("Asset", remote_side=[id], foreign_keys=[replaced_by])
    HistoryEvents = relationship("AssetHistory", back_populates="Asset", order_by="AssetHistory.id")
    Cycles = relationship("LifecycleCycle", back_populates="Asset", order_by="LifecycleCycle.cycle_number")

    __mapper_args__ = {"version_id_col": version}


class AssetHistory(Base):
    __tablename__ = "asset_history"

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=False, index=True)
    asset_code = Column(String(20), nullable=False, index=True)
    action_type = Column(String(20), nullable=False)
    detail = Column(Text)
    changed_field = Column(String(100))
    old_value = Column(Text)
    new_value = Column(Text)
    actor_id = Column(String(100), nullable=False)
    actor_name = Column(String(255))
    timestamp = Column(DateTime, nullable=False, default=datetime.now)

    Asset = relationship("Asset", back_populates="HistoryEvents")


class LifecycleCycle(Base):
    __tablename__ = "asset_lifecycle_cycles"

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=False, index=True)
    asset_code = Column(String(20), nullable=False)
    cycle_number = Column(Integer, nullable=False)
    cycle_kind = Column(String(20), nullable=False)
    company = Column(String(255))
    work_site = Column(String(255))
    contract_number = Column(String(100))
    started_on = Column(Date)
    closed_at = Column(DateTime, nullable=False, default=datetime.now)
    closed_by = Column(String(100))
    reason = Column(String(2000))

    Asset = relationship("Asset", back_populates="Cycles")
