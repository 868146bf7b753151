from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from erpconsole.core.events import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class ConsoleError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Identity provider ----
PROVIDER_MESSAGES: Dict[str, str] = {
    "invalid_credential": "Invalid email or password.",
    "email_unverified": "Please verify your email first.",
    "weak_password": "Password must be at least 6 characters long.",
    "email_in_use": "An account with this email already exists.",
    "invalid_email": "Please enter a valid email address.",
    "invalid_name": "Name is required.",
    "invalid_phone": "Please enter a valid phone number.",
    "invalid_otp": "The verification code is invalid.",
    "otp_expired": "The verification code has expired.",
    "user_disabled": "This account has been disabled.",
    "too_many_attempts": "Too many attempts. Please try again later.",
    "not_signed_in": "No signed-in user.",
    "already_verified": "User not found or already verified.",
    "network": "Could not reach the sign-in service.",
    "unknown": "Sign-in service error.",
}


class ProviderError(ConsoleError):
    def __init__(self, reason: str = "unknown", user_message: Optional[str] = None, **ctx: Any):
        super().__init__(reason, user_message or PROVIDER_MESSAGES.get(reason, PROVIDER_MESSAGES["unknown"]), severity=Severity.WARN, recoverable=True, context=ctx)


# ---- Session exchange ----
EXCHANGE_MESSAGES: Dict[str, str] = {
    "network": "Network error during login.",
    "server": "Login failed. Please try again.",
    "unauthorized": "The server rejected the session.",
    "bad_response": "Unexpected response from the server.",
    "rejected": "Login failed.",
    "not_ready": "Session is still initializing.",
    "no_identity": "Sign in first.",
    "identity_mismatch": "The signed-in identity does not match.",
    "superseded": "A newer sign-in replaced this one.",
    "storage": "Could not save the session on this device.",
}


class ExchangeError(ConsoleError):
    def __init__(self, reason: str = "server", user_message: Optional[str] = None, **ctx: Any):
        super().__init__(reason, user_message or EXCHANGE_MESSAGES.get(reason, EXCHANGE_MESSAGES["server"]), severity=Severity.ERROR, recoverable=True, context=ctx)


# ---- Profile ----
PROFILE_MESSAGES: Dict[str, str] = {
    "no_session": "No authentication token",
    "no_profile": "No user profile available",
    "rejected": "Failed to update profile",
    "network": "Network error",
    "bad_response": "Unexpected response from the server.",
}


class ProfileError(ConsoleError):
    def __init__(self, reason: str = "rejected", user_message: Optional[str] = None, **ctx: Any):
        super().__init__(reason, user_message or PROFILE_MESSAGES.get(reason, PROFILE_MESSAGES["rejected"]), severity=Severity.WARN, recoverable=True, context=ctx)


# ---- OTP ----
OTP_MESSAGES: Dict[str, str] = {
    "invalid_phone": "Enter an 11 digit mobile number (01XXXXXXXXX).",
    "invalid_code": "OTP verification failed",
    "expired": "The code has expired. Request a new one.",
    "rate_limited": "Too many attempts. Please wait and try again.",
    "send_failed": "Could not send the OTP.",
    "network": "Network error during OTP verification",
    "busy": "Please wait for the current request to finish.",
    "bad_response": "Unexpected response from the server.",
}


class OTPError(ConsoleError):
    def __init__(self, reason: str = "invalid_code", user_message: Optional[str] = None, **ctx: Any):
        super().__init__(reason, user_message or OTP_MESSAGES.get(reason, OTP_MESSAGES["invalid_code"]), severity=Severity.WARN, recoverable=True, context=ctx)


# ---- Internal ----
class ConfigError(ConsoleError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class StateTransitionError(ConsoleError):
    def __init__(self, user_message: str = "Internal state error.", **ctx: Any):
        super().__init__("state_transition_error", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)
