from __future__ import annotations

from typing import Callable, Optional

from fastapi import HTTPException, Request

from erpconsole.core.events import EventLogger
from erpconsole.core.session import GuardDecision, RouteGuard, SessionManager, SessionSnapshot


def build_session_guard(
    session: SessionManager,
    *,
    login_path: str = "/login",
    required_capability: Optional[str] = None,
    retry_after_seconds: int = 1,
    event_logger: Optional[EventLogger] = None,
) -> Callable[..., object]:
    """
    FastAPI dependency evaluating RouteGuard for each request.

    LOADING -> 503 with Retry-After, REDIRECT -> 307 to the login path,
    DENIED -> 403; otherwise the current SessionSnapshot is returned.
    """

    async def dep(request: Request) -> SessionSnapshot:
        trace_id = getattr(getattr(request, "state", None), "trace_id", "web")
        snapshot = session.snapshot()
        view = RouteGuard.evaluate(snapshot, login_path=login_path, required_capability=required_capability)
        if view.decision == GuardDecision.LOADING:
            raise HTTPException(status_code=503, detail="Session is loading.", headers={"Retry-After": str(retry_after_seconds)})
        if view.decision == GuardDecision.REDIRECT:
            if event_logger is not None:
                event_logger.log(trace_id, "web.guard.redirect", {"path": str(request.url.path)})
            raise HTTPException(status_code=307, detail="Sign in required.", headers={"Location": view.redirect_to or login_path})
        if view.decision == GuardDecision.DENIED:
            if event_logger is not None:
                event_logger.log(trace_id, "web.guard.denied", {"path": str(request.url.path), "capability": required_capability})
            raise HTTPException(status_code=403, detail="Not permitted for your role.")
        return snapshot

    return dep
