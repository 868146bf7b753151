from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SignInRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=512)
    branch_id: Optional[str] = Field(default=None, max_length=128)


class SignUpRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=512)
    display_name: str = Field(min_length=1, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=32)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    email: str = Field(min_length=3, max_length=320)


class OtpSendRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    phone: str = Field(min_length=1, max_length=32)


class OtpVerifyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    code: str = Field(min_length=1, max_length=16)


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    updates: Dict[str, Any] = Field(min_length=1)


class AuthResponse(BaseModel):
    ok: bool
    message: str = ""
    session: Dict[str, Any]


class OtpStatusResponse(BaseModel):
    step: str
    phone: str
    remaining_seconds: int
    countdown: str
    can_verify: bool
    attempts_left: Optional[int] = None
    message: str = ""


class RoleResponse(BaseModel):
    role: str
    display_name: str
    description: str
    level: int


class CapabilitiesResponse(BaseModel):
    role: Optional[str]
    capabilities: Dict[str, bool]
    granted: List[str]
