from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field

from erpconsole.core.backend.models import Profile
from erpconsole.core.capabilities import Role
from erpconsole.core.errors import ConsoleError
from erpconsole.core.identity.models import Identity


class SessionState(str, Enum):
    INITIALIZING = "INITIALIZING"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    EXCHANGING_SESSION = "EXCHANGING_SESSION"
    AUTHENTICATED = "AUTHENTICATED"


ALLOWED_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.INITIALIZING: {SessionState.UNAUTHENTICATED, SessionState.EXCHANGING_SESSION},
    SessionState.UNAUTHENTICATED: {SessionState.EXCHANGING_SESSION},
    # a newer flow may restart the exchange
    SessionState.EXCHANGING_SESSION: {SessionState.AUTHENTICATED, SessionState.UNAUTHENTICATED, SessionState.EXCHANGING_SESSION},
    SessionState.AUTHENTICATED: {SessionState.UNAUTHENTICATED},
}


@dataclass
class AuthResult:
    """Outcome of a SessionManager operation. Failures are returned, not raised."""

    ok: bool
    profile: Optional[Profile] = None
    error: Optional[ConsoleError] = None
    advisory: str = ""
    attempts_left: Optional[int] = None

    @classmethod
    def succeeded(cls, profile: Optional[Profile] = None, *, advisory: str = "") -> "AuthResult":
        return cls(ok=True, profile=profile, advisory=advisory)

    @classmethod
    def failed(cls, error: ConsoleError, *, advisory: str = "", attempts_left: Optional[int] = None, profile: Optional[Profile] = None) -> "AuthResult":
        return cls(ok=False, error=error, advisory=advisory, attempts_left=attempts_left, profile=profile)

    @property
    def message(self) -> str:
        if self.advisory:
            return self.advisory
        return self.error.user_message if self.error is not None else ""


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    state: SessionState
    identity: Optional[Identity] = None
    profile: Optional[Profile] = None
    has_token: bool = False
    is_authenticated: bool = False
    role: Optional[Role] = None
    issued_at: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    ts: float = Field(default_factory=lambda: time.time())

    def to_public(self) -> Dict[str, Union[str, bool, float, None, dict]]:
        return {
            "state": self.state.value,
            "is_authenticated": self.is_authenticated,
            "role": self.role.value if self.role is not None else None,
            "identity": self.identity.model_dump() if self.identity is not None else None,
            "profile": self.profile.to_wire() if self.profile is not None else None,
            "error": {"code": self.error_code, "message": self.error_message} if self.error_code else None,
        }
