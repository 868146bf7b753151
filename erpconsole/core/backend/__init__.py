from erpconsole.core.backend.client import DEFAULT_BASE_URL, ApiResult, BackendClient, classify_status
from erpconsole.core.backend.models import SERVER_OWNED_FIELDS, LoginResponse, Profile, SendOtpResponse, TokenResponse, VerifyOtpResponse, server_owned_fields

__all__ = [
    "DEFAULT_BASE_URL",
    "ApiResult",
    "BackendClient",
    "LoginResponse",
    "Profile",
    "SendOtpResponse",
    "TokenResponse",
    "SERVER_OWNED_FIELDS",
    "VerifyOtpResponse",
    "classify_status",
    "server_owned_fields",
]
