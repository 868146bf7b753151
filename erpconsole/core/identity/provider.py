from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional, Union

from erpconsole.core.events import Observable, Subscription
from erpconsole.core.events.observer import Handler
from erpconsole.core.identity.models import IdentityEvent, OTPIdentity, ProviderIdentity, ProviderResult

AnyIdentity = Union[ProviderIdentity, OTPIdentity]


class IdentityProvider(ABC):
    """
    Adapter over an external identity service.

    Subclasses implement the network operations and call `_set_identity()`
    whenever the signed-in identity changes; this base owns event delivery.
    """

    name: str = "identity"

    def __init__(self, *, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(f"erpconsole.identity.{self.name}")
        self._events: Observable[IdentityEvent] = Observable(name=f"identity.{self.name}", logger=self.logger)
        self._current: Optional[AnyIdentity] = None
        self._started = False

    # ---- events ----
    def subscribe(self, on_change: Handler) -> Subscription[IdentityEvent]:
        """
        Deliveries are asynchronous and in provider order. A subscriber added
        after start() first receives the current state as an initial event.
        """
        sub = self._events.subscribe(on_change)
        if self._started:
            sub.deliver(IdentityEvent(identity=self._current, initial=True))
        return sub

    @property
    def current_identity(self) -> Optional[AnyIdentity]:
        return self._current

    @property
    def started(self) -> bool:
        return self._started

    @property
    def listener_count(self) -> int:
        return self._events.listener_count

    async def start(self) -> None:
        if self._started:
            return
        identity = await self._restore()
        self._current = identity
        self._started = True
        self._events.emit(IdentityEvent(identity=identity, initial=True))

    async def close(self) -> None:
        self._events.close()

    def _set_identity(self, identity: Optional[AnyIdentity]) -> None:
        old = self._current
        self._current = identity
        if not self._started:
            return
        if _same_state(old, identity):
            return
        self._events.emit(IdentityEvent(identity=identity))

    # ---- operations ----
    async def _restore(self) -> Optional[AnyIdentity]:
        return None

    @abstractmethod
    async def sign_up(self, email: str, password: str, display_name: str, phone: Optional[str] = None) -> ProviderResult: ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> ProviderResult: ...

    @abstractmethod
    async def send_otp(self, phone: str) -> ProviderResult: ...

    @abstractmethod
    async def verify_otp(self, phone: str, code: str) -> ProviderResult: ...

    @abstractmethod
    async def reset_password(self, email: str) -> ProviderResult: ...

    @abstractmethod
    async def send_verification_email(self) -> ProviderResult: ...

    @abstractmethod
    async def sign_out(self) -> ProviderResult: ...


def _same_state(a: Optional[AnyIdentity], b: Optional[AnyIdentity]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.id == b.id and a.verified == b.verified
