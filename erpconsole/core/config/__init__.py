from erpconsole.core.config.manager import ENV_OVERRIDES, ConfigManager
from erpconsole.core.config.models import ApiConfig, ConsoleConfig, IdentityConfig, LoggingConfig, OTPConfig, StorageConfig, WebConfig
from erpconsole.core.config.paths import ConfigFsPaths

__all__ = [
    "ENV_OVERRIDES",
    "ApiConfig",
    "ConfigFsPaths",
    "ConfigManager",
    "ConsoleConfig",
    "IdentityConfig",
    "LoggingConfig",
    "OTPConfig",
    "StorageConfig",
    "WebConfig",
]
