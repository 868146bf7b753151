from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from erpconsole.core.config.io import atomic_write_json, read_json_file, recover_from_corrupt, snapshot_last_known_good
from erpconsole.core.config.models import ConsoleConfig
from erpconsole.core.config.paths import ConfigFsPaths
from erpconsole.core.errors import ConfigError

# env var -> (section, field)
ENV_OVERRIDES: Dict[str, tuple[str, str]] = {
    "ERP_API_BASE_URL": ("api", "base_url"),
    "ERP_IDENTITY_API_KEY": ("identity", "api_key"),
}


class ConfigManager:
    """
    Loads config/console.json.

    - missing file: defaults are written atomically
    - corrupt file: moved to backups, last-known-good restored, else defaults
    - a valid load is snapshotted as last-known-good
    - environment overrides are applied in memory only, never written back
    """

    def __init__(
        self,
        *,
        fs: Optional[ConfigFsPaths] = None,
        logger: Optional[logging.Logger] = None,
        read_only: bool = False,
        environ: Optional[Mapping[str, str]] = None,
        max_backups: int = 10,
    ):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger or logging.getLogger("erpconsole.config")
        self.read_only = read_only
        self.environ = os.environ if environ is None else environ
        self.max_backups = int(max_backups)
        self._cfg: Optional[ConsoleConfig] = None
        self.recovered = False

    def load(self) -> ConsoleConfig:
        raw = self._load_raw()
        try:
            file_cfg = ConsoleConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"console.json invalid: {e.error_count()} error(s)", errors=e.error_count()) from e

        if not self.read_only and os.path.exists(self.fs.console):
            snapshot_last_known_good(self.fs.console, self.fs.last_known_good_dir)

        self._cfg = self._apply_env(file_cfg)
        return self._cfg

    def get(self) -> ConsoleConfig:
        if self._cfg is None:
            raise ConfigError("Config not loaded.")
        return self._cfg

    def save(self, cfg: ConsoleConfig) -> None:
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        atomic_write_json(self.fs.console, cfg.model_dump(mode="json"), self.fs.backups_dir, max_backups=self.max_backups)
        self._cfg = self._apply_env(cfg)

    def public_view(self) -> Dict[str, Any]:
        """Effective config with the identity api key masked."""
        data = self.get().model_dump(mode="json")
        if data["identity"].get("api_key"):
            data["identity"]["api_key"] = "***"
        return data

    # ---------- internals ----------
    def _load_raw(self) -> Dict[str, Any]:
        path = self.fs.console
        rr = read_json_file(path)
        if rr.ok:
            return rr.data
        if rr.error == "missing":
            defaults = ConsoleConfig().model_dump(mode="json")
            if not self.read_only:
                self.logger.warning("Missing config console.json; creating defaults.")
                atomic_write_json(path, defaults, self.fs.backups_dir, max_backups=self.max_backups)
            return defaults
        if rr.is_corrupt:
            if self.read_only:
                raise ConfigError(f"console.json unreadable: {rr.error}")
            data, recovered = recover_from_corrupt(path, self.fs.backups_dir, self.fs.last_known_good_dir, max_backups=self.max_backups)
            self.recovered = True
            self.logger.warning("Corrupt config console.json -> recovered=%s", recovered)
            if recovered:
                return data
            defaults = ConsoleConfig().model_dump(mode="json")
            atomic_write_json(path, defaults, self.fs.backups_dir, max_backups=self.max_backups)
            return defaults
        raise ConfigError(f"console.json unreadable: {rr.error}")

    def _apply_env(self, cfg: ConsoleConfig) -> ConsoleConfig:
        updates: Dict[str, Dict[str, Any]] = {}
        for var, (section, field) in ENV_OVERRIDES.items():
            value = self.environ.get(var)
            if value:
                updates.setdefault(section, {})[field] = value
        if not updates:
            return cfg
        data = cfg.model_dump(mode="json")
        for section, fields in updates.items():
            data[section].update(fields)
        try:
            return ConsoleConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"environment override invalid: {', '.join(sorted(ENV_OVERRIDES))}", errors=e.error_count()) from e
