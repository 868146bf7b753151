from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from erpconsole.core.backend.client import DEFAULT_BASE_URL
from erpconsole.core.identity.firebase import IDENTITY_URL, TOKEN_URL


class ApiConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = Field(default=15.0, gt=0, le=300)

    @field_validator("base_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v


class IdentityConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    provider: str = "firebase"
    api_key: str = ""
    identity_url: str = IDENTITY_URL
    token_url: str = TOKEN_URL
    persist_session: bool = True
    phone_country_prefix: str = "+88"


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    store_path: str = "secure/session_store.enc"
    key_path: str = "secure/session_store.key"


class OTPConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    countdown_seconds: int = Field(default=300, ge=10, le=3600)
    code_length: int = Field(default=6, ge=4, le=10)


class WebConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    bind_host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    login_path: str = "/login"
    retry_after_seconds: int = Field(default=1, ge=1, le=60)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    log_dir: str = "logs"
    audit_path: str = "logs/audit.jsonl"
    level: str = "INFO"


class ConsoleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    api: ApiConfig = Field(default_factory=ApiConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    otp: OTPConfig = Field(default_factory=OTPConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
