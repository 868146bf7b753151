from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    super_admin = "super_admin"
    admin = "admin"
    account = "account"
    reservation = "reservation"
    user = "user"


class RoleInfo(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    role: Role
    display_name: str
    description: str
    level: int
