from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from erpconsole.core.capabilities import can
from erpconsole.core.events import Subscription
from erpconsole.core.session.manager import SessionManager
from erpconsole.core.session.models import SessionSnapshot, SessionState


class GuardDecision(str, Enum):
    LOADING = "LOADING"
    REDIRECT = "REDIRECT"
    RENDER = "RENDER"
    DENIED = "DENIED"


@dataclass(frozen=True)
class GuardView:
    decision: GuardDecision
    redirect_to: Optional[str] = None
    content: Any = None
    reason: str = ""


class RouteGuard:
    """
    Gate in front of one protected view.

    While the session is initializing (or exchanging) the guard shows a
    loading placeholder and never redirects, so a signed-in user is not
    bounced to the login page before the real state is known.
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        login_path: str = "/login",
        required_capability: Optional[str] = None,
        render: Optional[Callable[[SessionSnapshot], Any]] = None,
        on_change: Optional[Callable[[GuardView], Any]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.login_path = login_path
        self.required_capability = required_capability
        self.render = render
        self.on_change = on_change
        self.logger = logger or logging.getLogger("erpconsole.guard")
        self._subscription: Optional[Subscription[SessionSnapshot]] = None
        self._view: GuardView = GuardView(GuardDecision.LOADING, reason="not_mounted")

    @staticmethod
    def evaluate(snapshot: SessionSnapshot, *, login_path: str = "/login", required_capability: Optional[str] = None) -> GuardView:
        state = snapshot.state
        if state in (SessionState.INITIALIZING, SessionState.EXCHANGING_SESSION):
            return GuardView(GuardDecision.LOADING, reason=state.value.lower())
        if state == SessionState.UNAUTHENTICATED or not snapshot.is_authenticated:
            return GuardView(GuardDecision.REDIRECT, redirect_to=login_path, reason="unauthenticated")
        if required_capability is not None and not can(snapshot.role, required_capability):
            return GuardView(GuardDecision.DENIED, reason=f"missing capability: {required_capability}")
        return GuardView(GuardDecision.RENDER, reason="authenticated")

    @property
    def mounted(self) -> bool:
        return self._subscription is not None

    @property
    def view(self) -> GuardView:
        return self._view

    def mount(self) -> GuardView:
        """Idempotent. Computes the current view and follows later session changes."""
        if self._subscription is None:
            self._subscription = self.session.subscribe(self._on_snapshot)
        return self._apply(self.session.snapshot())

    def unmount(self) -> None:
        """Idempotent; detaches from the session so no listener is left behind."""
        sub, self._subscription = self._subscription, None
        if sub is not None:
            sub.unsubscribe()

    async def settle(self) -> None:
        """Wait until every session change published so far has been applied."""
        if self._subscription is not None:
            await self._subscription.join()

    def _on_snapshot(self, snapshot: SessionSnapshot) -> None:
        if self._subscription is None:
            return
        self._apply(snapshot)

    def _apply(self, snapshot: SessionSnapshot) -> GuardView:
        view = self.evaluate(snapshot, login_path=self.login_path, required_capability=self.required_capability)
        if view.decision == GuardDecision.RENDER and self.render is not None:
            view = GuardView(GuardDecision.RENDER, content=self.render(snapshot), reason=view.reason)
        changed = view.decision != self._view.decision
        self._view = view
        if changed:
            self.logger.debug("guard -> %s (%s)", view.decision.value, view.reason)
            if self.on_change is not None:
                self.on_change(view)
        return view
