from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Type
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from erpconsole.core.backend.models import LoginResponse, Profile, SendOtpResponse, TokenResponse, VerifyOtpResponse, wire_partial

DEFAULT_BASE_URL = "http://localhost:3000"


@dataclass
class ApiResult:
    """Outcome of one backend call. Never raised; callers branch on `ok`."""

    ok: bool
    status_code: int = 0
    data: Any = None
    body: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    message: str = ""
    elapsed_ms: float = 0.0

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


def classify_status(status_code: int) -> str:
    if status_code in (401, 403):
        return "unauthorized"
    if status_code == 429:
        return "rate_limited"
    if 400 <= status_code < 500:
        return "rejected"
    return "server"


class BackendClient:
    """
    Async client for the ERP backend REST API.

    Requests carry `Authorization: Bearer <token>` when a token is passed
    explicitly or `token_provider` returns one.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout_seconds: float = 15.0,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.logger = logger or logging.getLogger("erpconsole.backend")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        model: Optional[Type[BaseModel]] = None,
        token: Optional[str] = None,
        auth: bool = True,
    ) -> ApiResult:
        headers: Dict[str, str] = {}
        if auth:
            bearer = token if token is not None else (self.token_provider() if self.token_provider else None)
            if bearer:
                headers["Authorization"] = f"Bearer {bearer}"

        t0 = time.time()
        try:
            r = await self._client.request(method, f"{self.base_url}{path}", json=json, headers=headers)
        except httpx.HTTPError as e:
            self.logger.warning("%s %s failed: %s", method, path, type(e).__name__)
            return ApiResult(ok=False, error="network", message=type(e).__name__, elapsed_ms=(time.time() - t0) * 1000.0)
        elapsed_ms = (time.time() - t0) * 1000.0

        try:
            body = r.json()
        except ValueError:
            body = None
        body_dict = body if isinstance(body, dict) else None
        message = ""
        if body_dict is not None:
            for k in ("message", "error"):
                if isinstance(body_dict.get(k), str):
                    message = body_dict[k]
                    break

        if r.status_code >= 400:
            reason = classify_status(r.status_code)
            self.logger.info("%s %s -> %s (%s)", method, path, r.status_code, reason)
            return ApiResult(ok=False, status_code=r.status_code, body=body_dict, error=reason, message=message, elapsed_ms=elapsed_ms)

        if model is None:
            return ApiResult(ok=True, status_code=r.status_code, data=body, body=body_dict, message=message, elapsed_ms=elapsed_ms)
        if body_dict is None:
            return ApiResult(ok=False, status_code=r.status_code, error="bad_response", message="expected a JSON object", elapsed_ms=elapsed_ms)
        try:
            data = model.model_validate(body_dict)
        except ValidationError as e:
            self.logger.warning("%s %s: unexpected response shape (%d errors)", method, path, e.error_count())
            return ApiResult(ok=False, status_code=r.status_code, body=body_dict, error="bad_response", message=message, elapsed_ms=elapsed_ms)
        return ApiResult(ok=True, status_code=r.status_code, data=data, body=body_dict, message=message, elapsed_ms=elapsed_ms)

    # ---- session ----
    async def issue_token(self, email: str) -> ApiResult:
        return await self._request("POST", "/jwt", json={"email": email}, model=TokenResponse, auth=False)

    async def login(self, email: str, firebase_uid: str, display_name: str = "", branch_id: Optional[str] = None) -> ApiResult:
        payload = {"email": email, "firebaseUid": firebase_uid, "displayName": display_name, "branchId": branch_id}
        return await self._request("POST", "/api/auth/login", json=payload, model=LoginResponse, auth=False)

    # ---- otp ----
    async def send_otp(self, phone: str) -> ApiResult:
        return await self._request("POST", "/api/auth/send-otp", json={"phone": phone}, model=SendOtpResponse, auth=False)

    async def verify_otp(self, phone: str, otp: str) -> ApiResult:
        res = await self._request("POST", "/api/auth/verify-otp", json={"phone": phone, "otp": otp}, model=VerifyOtpResponse, auth=False)
        if res.ok and not res.data.success:
            res.ok = False
            res.error = "rejected"
            res.message = res.data.message or res.message
        return res

    # ---- profile ----
    async def get_profile(self, email: str, *, token: Optional[str] = None) -> ApiResult:
        res = await self._request("GET", f"/users/profile/{quote(email, safe='@')}", token=token)
        return _as_profile(res, self.logger)

    async def update_profile(self, email: str, partial: Mapping[str, Any], *, token: Optional[str] = None) -> ApiResult:
        res = await self._request("PATCH", f"/users/profile/{quote(email, safe='@')}", json=wire_partial(partial), token=token)
        if res.ok and res.body is not None and res.body.get("success") is False:
            res.ok, res.error = False, "rejected"
        return res


def _as_profile(res: ApiResult, logger: logging.Logger) -> ApiResult:
    if not res.ok:
        return res
    body = res.body
    # some deployments wrap the record as {"user": {...}}
    if body is not None and isinstance(body.get("user"), dict):
        body = body["user"]
    if body is None:
        res.ok, res.error, res.data = False, "bad_response", None
        return res
    try:
        res.data = Profile.model_validate(body)
    except ValidationError as e:
        logger.warning("profile response rejected (%d errors)", e.error_count())
        res.ok, res.error, res.data = False, "bad_response", None
    return res
