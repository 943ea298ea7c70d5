from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class EmailPreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    userName: str = ""
    itemName: str = ""
    expectedReturnDate: Optional[date] = None
    reason: Optional[str] = None
    daysLeft: int = 0
    daysOverdue: int = 0


class ReminderSendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalIds: List[int] = []
