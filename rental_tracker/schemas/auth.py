from typing import Optional

from pydantic import BaseModel, ConfigDict


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    userId: str
    name: str
    department: str
    email: Optional[str] = None
    password: Optional[str] = None
