from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemId: int
    userId: Optional[str] = None
    expectedReturnDate: date


class ExtensionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newExpectedReturnDate: date


class ApprovalDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    note: Optional[str] = None
