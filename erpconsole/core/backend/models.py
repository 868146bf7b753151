from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from erpconsole.core.capabilities import Role, normalize_role

# python field name -> wire name
_WIRE_NAMES = {
    "id": "_id",
    "display_name": "displayName",
    "branch_id": "branchId",
    "photo_url": "photoURL",
}
_PY_NAMES = {v: k for k, v in _WIRE_NAMES.items()}

# only the backend assigns these
SERVER_OWNED_FIELDS = frozenset({"id", "email", "role", "branch_id"})


class Profile(BaseModel):
    """
    Backend user record. Unknown fields are kept and round-trip on update.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("_id", "id"), serialization_alias="_id")
    email: str = ""
    display_name: str = Field(default="", validation_alias=AliasChoices("displayName", "display_name", "name"), serialization_alias="displayName")
    role: Optional[str] = None
    phone: Optional[str] = None
    branch_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("branchId", "branch_id"), serialization_alias="branchId")
    photo_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("photoURL", "photo_url"), serialization_alias="photoURL")

    @property
    def effective_role(self) -> Role:
        return normalize_role(self.role)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def merged(self, partial: Mapping[str, Any]) -> "Profile":
        wire = self.to_wire()
        for k, v in partial.items():
            wire[_WIRE_NAMES.get(k, k)] = v
        return Profile.model_validate(wire)


def wire_partial(partial: Mapping[str, Any]) -> Dict[str, Any]:
    return {_WIRE_NAMES.get(k, k): v for k, v in partial.items()}


def server_owned_fields(partial: Mapping[str, Any]) -> List[str]:
    return sorted(k for k in partial if _PY_NAMES.get(k, k) in SERVER_OWNED_FIELDS)


class _Response(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TokenResponse(_Response):
    token: str = Field(min_length=1)


class LoginResponse(_Response):
    token: str = Field(min_length=1)
    user: Optional[Profile] = None


class SendOtpResponse(_Response):
    success: bool = True
    message: str = ""


class VerifyOtpResponse(_Response):
    success: bool = False
    token: Optional[str] = None
    user: Optional[Profile] = None
    attempts_left: Optional[int] = Field(default=None, validation_alias=AliasChoices("attemptsLeft", "attempts_left"))
    message: Optional[str] = None
