from __future__ import annotations

import logging
from typing import Optional

import httpx

from erpconsole.core.backend import BackendClient
from erpconsole.core.config import ConfigFsPaths, ConsoleConfig
from erpconsole.core.crypto import SecureStore
from erpconsole.core.errors import ConfigError
from erpconsole.core.events import EventLogger
from erpconsole.core.identity import IdentityProvider
from erpconsole.core.identity.firebase import FirebaseIdentityProvider
from erpconsole.core.session import OTPFlow, RouteGuard, SessionManager


class ConsoleContext:
    """
    Owns one instance of every session component for a process.

    Use as `async with ConsoleContext(cfg) as ctx:` or call init()/teardown().
    `provider` and `http` can be injected (tests pass fakes / MockTransport).
    """

    def __init__(
        self,
        cfg: ConsoleConfig,
        *,
        fs: Optional[ConfigFsPaths] = None,
        provider: Optional[IdentityProvider] = None,
        http: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.cfg = cfg
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger or logging.getLogger("erpconsole")

        self.store = SecureStore(key_path=self.fs.resolve(cfg.storage.key_path), store_path=self.fs.resolve(cfg.storage.store_path))
        self.event_logger = EventLogger(self.fs.resolve(cfg.logging.audit_path))
        self.backend = BackendClient(
            cfg.api.base_url,
            timeout_seconds=cfg.api.timeout_seconds,
            client=http,
            logger=self.logger.getChild("backend"),
        )
        self.provider = provider or self._build_provider(http)
        self.session = SessionManager(
            provider=self.provider,
            backend=self.backend,
            store=self.store,
            otp_code_length=cfg.otp.code_length,
            event_logger=self.event_logger,
            logger=self.logger.getChild("session"),
        )
        self.backend.token_provider = lambda: self.session.token
        self._initialized = False

    def _build_provider(self, http: Optional[httpx.AsyncClient]) -> IdentityProvider:
        ic = self.cfg.identity
        if ic.provider != "firebase":
            raise ConfigError(f"Unknown identity provider: {ic.provider}")
        if not ic.api_key:
            raise ConfigError("identity.api_key is not set (config/console.json or ERP_IDENTITY_API_KEY).")
        return FirebaseIdentityProvider(
            api_key=ic.api_key,
            identity_url=ic.identity_url,
            token_url=ic.token_url,
            store=self.store,
            persist_session=ic.persist_session,
            timeout_seconds=self.cfg.api.timeout_seconds,
            phone_country_prefix=ic.phone_country_prefix,
            client=http,
            logger=self.logger.getChild("identity"),
        )

    def guard(self, *, required_capability: Optional[str] = None, **kwargs) -> RouteGuard:  # noqa: ANN003
        return RouteGuard(self.session, login_path=self.cfg.web.login_path, required_capability=required_capability, **kwargs)

    def otp_flow(self, **kwargs) -> OTPFlow:  # noqa: ANN003
        kwargs.setdefault("countdown_seconds", self.cfg.otp.countdown_seconds)
        kwargs.setdefault("code_length", self.cfg.otp.code_length)
        return OTPFlow(self.session, self.backend, logger=self.logger.getChild("otp"), **kwargs)

    async def init(self) -> "ConsoleContext":
        if not self._initialized:
            await self.session.init()
            await self.session.settle()
            self._initialized = True
        return self

    async def teardown(self) -> None:
        await self.session.teardown()
        await self.provider.close()
        await self.backend.aclose()
        self._initialized = False

    async def __aenter__(self) -> "ConsoleContext":
        return await self.init()

    async def __aexit__(self, *exc) -> None:  # noqa: ANN002
        await self.teardown()
