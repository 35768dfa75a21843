from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class AssetRegistrationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentName: str
    assetCode: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serialNumber: Optional[str] = None
    equipmentObservations: Optional[str] = None
    registeredOn: Optional[date] = None
