from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from erpconsole import __version__
from erpconsole.core.capabilities import available_roles
from erpconsole.core.context import ConsoleContext
from erpconsole.core.errors import ConsoleError, ExchangeError
from erpconsole.core.session import AuthResult, SessionSnapshot
from erpconsole.web.auth import build_session_guard
from erpconsole.web.models import (
    AuthResponse,
    CapabilitiesResponse,
    OtpSendRequest,
    OtpStatusResponse,
    OtpVerifyRequest,
    ProfileUpdateRequest,
    ResetPasswordRequest,
    RoleResponse,
    SignInRequest,
    SignUpRequest,
)

# error code -> HTTP status
STATUS_BY_CODE: Dict[str, int] = {
    "invalid_credential": 401,
    "unauthorized": 401,
    "no_identity": 401,
    "no_session": 401,
    "not_signed_in": 401,
    "email_unverified": 403,
    "user_disabled": 403,
    "identity_mismatch": 403,
    "email_in_use": 409,
    "superseded": 409,
    "already_verified": 409,
    "invalid_email": 400,
    "invalid_name": 400,
    "invalid_phone": 400,
    "weak_password": 400,
    "invalid_otp": 400,
    "invalid_code": 400,
    "expired": 400,
    "otp_expired": 400,
    "busy": 409,
    "rejected": 400,
    "no_profile": 404,
    "too_many_attempts": 429,
    "rate_limited": 429,
    "network": 502,
    "server": 502,
    "bad_response": 502,
    "send_failed": 502,
    "not_ready": 503,
    "validation_error": 400,
}


def create_app(ctx: ConsoleContext, *, logger: Optional[logging.Logger] = None, manage_lifecycle: bool = True) -> FastAPI:
    log = logger or logging.getLogger("erpconsole.web")
    session = ctx.session
    web_cfg = ctx.cfg.web
    otp = {"flow": None}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await ctx.init()
        otp["flow"] = ctx.otp_flow()
        try:
            yield
        finally:
            otp["flow"].close()
            if manage_lifecycle:
                await ctx.teardown()

    app = FastAPI(title="ERP Console", version=__version__, lifespan=lifespan)

    signed_in = build_session_guard(session, login_path=web_cfg.login_path, retry_after_seconds=web_cfg.retry_after_seconds, event_logger=ctx.event_logger)
    may_edit_profile = build_session_guard(
        session,
        login_path=web_cfg.login_path,
        required_capability="manage_profile",
        retry_after_seconds=web_cfg.retry_after_seconds,
        event_logger=ctx.event_logger,
    )

    @app.middleware("http")
    async def trace_ids(request: Request, call_next):
        request.state.trace_id = uuid.uuid4().hex
        return await call_next(request)

    @app.exception_handler(ConsoleError)
    async def console_error_handler(request: Request, exc: ConsoleError):
        trace_id = getattr(getattr(request, "state", None), "trace_id", "web")
        status = STATUS_BY_CODE.get(exc.code, 500)
        log.info("%s %s -> %s (%s)", request.method, request.url.path, status, exc.code)
        ctx.event_logger.log(trace_id, "web.error", {"path": str(request.url.path), **exc.to_dict()})
        headers = {"Retry-After": str(web_cfg.retry_after_seconds)} if status == 503 else None
        return JSONResponse(status_code=status, content={"detail": exc.user_message, "code": exc.code}, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Invalid request.", "code": "validation_error"})

    def _respond(res: AuthResult) -> AuthResponse:
        if not res.ok:
            raise res.error or ExchangeError("server")
        return AuthResponse(ok=True, message=res.message, session=session.snapshot().to_public())

    def _otp_status(message: str = "") -> OtpStatusResponse:
        flow = otp["flow"]
        return OtpStatusResponse(
            step=flow.step.value,
            phone=flow.phone,
            remaining_seconds=flow.remaining,
            countdown=flow.countdown_text,
            can_verify=flow.step.value == "AWAITING_CODE" and flow.remaining > 0 and not flow.pending,
            attempts_left=flow.attempts_left,
            message=message,
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "state": session.state.value}

    @app.get("/login")
    async def login_entry():
        return {"detail": "Sign in required.", "sign_in": "/v1/auth/sign-in", "otp": "/v1/auth/otp/send"}

    @app.get("/v1/session")
    async def get_session() -> Dict[str, Any]:
        return session.snapshot().to_public()

    @app.post("/v1/auth/sign-in", response_model=AuthResponse)
    async def sign_in(req: SignInRequest):
        res = await session.sign_in(req.email, req.password, branch_id=req.branch_id)
        if not res.ok and res.advisory:
            # unverified email: surface the advisory, not a bare failure
            return JSONResponse(status_code=403, content={"detail": res.advisory, "code": res.error.code if res.error else "email_unverified"})
        return _respond(res)

    @app.post("/v1/auth/sign-up", response_model=AuthResponse)
    async def sign_up(req: SignUpRequest):
        return _respond(await session.sign_up(req.email, req.password, req.display_name, req.phone))

    @app.post("/v1/auth/reset-password", response_model=AuthResponse)
    async def reset_password(req: ResetPasswordRequest):
        return _respond(await session.reset_password(req.email))

    @app.post("/v1/auth/otp/send", response_model=OtpStatusResponse)
    async def otp_send(req: OtpSendRequest):
        flow = otp["flow"]
        if flow.step.value == "AWAITING_CODE" and flow.phone == req.phone.strip():
            res = await flow.resend_otp()
        else:
            flow.change_phone()
            res = await flow.send_otp(req.phone)
        if not res.ok:
            raise res.error
        return _otp_status(res.message)

    @app.get("/v1/auth/otp", response_model=OtpStatusResponse)
    async def otp_status():
        return _otp_status()

    @app.post("/v1/auth/otp/verify", response_model=AuthResponse)
    async def otp_verify(req: OtpVerifyRequest):
        flow = otp["flow"]
        flow.enter_code(req.code)
        return _respond(await flow.verify())

    @app.post("/v1/auth/refresh", response_model=AuthResponse)
    async def refresh():
        return _respond(await session.refresh_token())

    @app.post("/v1/auth/sign-out", response_model=AuthResponse)
    async def sign_out():
        return _respond(await session.sign_out())

    @app.get("/v1/profile")
    async def get_profile(snapshot: SessionSnapshot = Depends(signed_in)):
        return snapshot.profile.to_wire() if snapshot.profile is not None else {}

    @app.patch("/v1/profile", response_model=AuthResponse)
    async def update_profile(req: ProfileUpdateRequest, _: SessionSnapshot = Depends(may_edit_profile)):
        return _respond(await session.update_profile(req.updates))

    @app.get("/v1/capabilities", response_model=CapabilitiesResponse)
    async def get_capabilities(snapshot: SessionSnapshot = Depends(signed_in)):
        caps = dict(session.capabilities)
        return CapabilitiesResponse(
            role=snapshot.role.value if snapshot.role is not None else None,
            capabilities=caps,
            granted=sorted(k for k, v in caps.items() if v),
        )

    @app.get("/v1/roles", response_model=list[RoleResponse])
    async def list_roles():
        return [RoleResponse(role=i.role.value, display_name=i.display_name, description=i.description, level=i.level) for i in available_roles()]

    return app
