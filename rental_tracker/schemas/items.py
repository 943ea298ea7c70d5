from typing import Optional

from pydantic import BaseModel, ConfigDict


class ItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    category: str
    name: str
    model: Optional[str] = None
    serialNumber: Optional[str] = None
    status: Optional[str] = None
    note: Optional[str] = None


class ItemUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    category: Optional[str] = None
    name: Optional[str] = None
    model: Optional[str] = None
    serialNumber: Optional[str] = None
    status: Optional[str] = None
    note: Optional[str] = None
