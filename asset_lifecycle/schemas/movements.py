from datetime import date
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _MoveBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # request attribute -> asset column
    FIELD_MAP: ClassVar[Dict[str, str]] = {}

    expectedVersion: Optional[int] = None
    equipmentObservations: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {column: getattr(self, attr) for attr, column in self.FIELD_MAP.items()}
        if "equipmentObservations" in self.model_fields_set:
            payload["equipment_observations"] = self.equipmentObservations
        return payload


class WarehouseMove(_MoveBase):
    FIELD_MAP: ClassVar[Dict[str, str]] = {"depositoDescription": "deposito_description"}

    targetState: Literal["deposito_malta", "WAREHOUSE"]
    depositoDescription: Optional[str] = None


class MaintenanceMove(_MoveBase):
    FIELD_MAP: ClassVar[Dict[str, str]] = {
        "maintenanceCompany": "maintenance_company",
        "maintenanceWorkSite": "maintenance_work_site",
        "maintenanceDescription": "maintenance_description",
        "maintenanceArrivalDate": "maintenance_arrival_date",
        "maintenanceDepartureDate": "maintenance_departure_date",
        "maltaCollaborator": "malta_collaborator",
    }

    targetState: Literal["em_manutencao", "MAINTENANCE"]
    maintenanceCompany: Optional[str] = None
    maintenanceWorkSite: Optional[str] = None
    maintenanceDescription: Optional[str] = None
    maintenanceArrivalDate: Optional[date] = None
    maintenanceDepartureDate: Optional[date] = None
    maltaCollaborator: Optional[str] = None


class RentalMove(_MoveBase):
    FIELD_MAP: ClassVar[Dict[str, str]] = {
        "rentalCompany": "rental_company",
        "rentalWorkSite": "rental_work_site",
        "rentalStartDate": "rental_start_date",
        "rentalEndDate": "rental_end_date",
        "rentalContractNumber": "rental_contract_number",
    }

    targetState: Literal["locacao", "RENTED"]
    rentalCompany: Optional[str] = None
    rentalWorkSite: Optional[str] = None
    rentalStartDate: Optional[date] = None
    rentalEndDate: Optional[date] = None
    rentalContractNumber: Optional[str] = None


class AwaitingReportMove(_MoveBase):
    FIELD_MAP: ClassVar[Dict[str, str]] = {"inspectionNotes": "inspection_notes"}

    targetState: Literal["aguardando_laudo", "AWAITING_REPORT"]
    inspectionNotes: Optional[str] = None


MoveRequest = Annotated[
    Union[WarehouseMove, MaintenanceMove, RentalMove, AwaitingReportMove],
    Field(discriminator="targetState"),
]


class RentalContextDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalCompany: Optional[str] = None
    rentalWorkSite: Optional[str] = None
    rentalContractNumber: Optional[str] = None
    rentalEndDate: Optional[date] = None

    def to_context(self) -> Dict[str, Any]:
        return {
            "rental_company": self.rentalCompany,
            "rental_work_site": self.rentalWorkSite,
            "rental_contract_number": self.rentalContractNumber,
            "rental_end_date": self.rentalEndDate,
        }


class InspectionApproveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None
    destination: Optional[MoveRequest] = None
    expectedVersion: Optional[int] = None


class ReplacementRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    incomingAssetID: int
    reason: str
    outgoing: Optional[MoveRequest] = None
    rentalContext: Optional[RentalContextDto] = None
    substitutionDate: Optional[date] = None
    expectedVersion: Optional[int] = None
