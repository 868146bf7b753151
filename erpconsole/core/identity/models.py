from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from erpconsole.core.errors import ProviderError


class _IdentityBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    email: str = ""
    phone: Optional[str] = None
    display_name: str = Field(default="", max_length=200)
    verified: bool = False


class ProviderIdentity(_IdentityBase):
    """Identity issued by the password/email identity provider."""

    kind: Literal["password"] = "password"


class OTPIdentity(_IdentityBase):
    """Pseudo-identity synthesized from a successful backend OTP verification."""

    kind: Literal["otp"] = "otp"
    verified: bool = True


Identity = Annotated[Union[ProviderIdentity, OTPIdentity], Field(discriminator="kind")]


class IdentityEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    identity: Optional[Identity] = None
    # first delivery after start(); before it the real state is unknown
    initial: bool = False
    ts: float = Field(default_factory=lambda: time.time())


@dataclass
class ProviderResult:
    ok: bool
    identity: Optional[Union[ProviderIdentity, OTPIdentity]] = None
    error: Optional[ProviderError] = None

    @classmethod
    def success(cls, identity: Optional[Union[ProviderIdentity, OTPIdentity]] = None) -> "ProviderResult":
        return cls(ok=True, identity=identity)

    @classmethod
    def failure(cls, error: ProviderError) -> "ProviderResult":
        return cls(ok=False, error=error)

    @property
    def message(self) -> str:
        return self.error.user_message if self.error is not None else ""
