"""
Firebase Authentication over its REST API.

Firebase has no server push for auth state; this adapter derives identity
changes from its own operations (sign-in, sign-out, session restore) and
publishes them through the IdentityProvider event lane.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from erpconsole.core.crypto import SecureStore, SecureStoreCorruptError, StoreKeyError
from erpconsole.core.errors import ProviderError
from erpconsole.core.identity.models import OTPIdentity, ProviderIdentity, ProviderResult
from erpconsole.core.identity.provider import AnyIdentity, IdentityProvider
from erpconsole.core.validation import is_valid_email, is_valid_phone, normalize_email, password_problem

IDENTITY_URL = "https://identitytoolkit.googleapis.com/v1"
TOKEN_URL = "https://securetoken.googleapis.com/v1"

REFRESH_TOKEN_KEY = "identity.refresh_token"

# Firebase error message prefix -> provider reason
FIREBASE_ERRORS: Dict[str, str] = {
    "EMAIL_EXISTS": "email_in_use",
    "EMAIL_NOT_FOUND": "invalid_credential",
    "INVALID_PASSWORD": "invalid_credential",
    "INVALID_LOGIN_CREDENTIALS": "invalid_credential",
    "INVALID_EMAIL": "invalid_email",
    "MISSING_EMAIL": "invalid_email",
    "MISSING_PASSWORD": "invalid_credential",
    "USER_DISABLED": "user_disabled",
    "WEAK_PASSWORD": "weak_password",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "too_many_attempts",
    "QUOTA_EXCEEDED": "too_many_attempts",
    "INVALID_CODE": "invalid_otp",
    "INVALID_VERIFICATION_CODE": "invalid_otp",
    "MISSING_CODE": "invalid_otp",
    "CODE_EXPIRED": "otp_expired",
    "SESSION_EXPIRED": "otp_expired",
    "INVALID_SESSION_INFO": "otp_expired",
    "INVALID_PHONE_NUMBER": "invalid_phone",
    "MISSING_PHONE_NUMBER": "invalid_phone",
    "INVALID_ID_TOKEN": "not_signed_in",
    "TOKEN_EXPIRED": "not_signed_in",
    "USER_NOT_FOUND": "not_signed_in",
    "INVALID_REFRESH_TOKEN": "not_signed_in",
}


def map_firebase_error(body: Any) -> ProviderError:
    message = ""
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = str(body["error"].get("message") or "")
    # e.g. "WEAK_PASSWORD : Password should be at least 6 characters"
    head = message.split(":", 1)[0].strip()
    reason = FIREBASE_ERRORS.get(head, "unknown")
    return ProviderError(reason, firebase_code=head or None)


@dataclass
class _ProviderSession:
    id_token: str
    refresh_token: str
    local_id: str


class FirebaseIdentityProvider(IdentityProvider):
    name = "firebase"

    def __init__(
        self,
        *,
        api_key: str,
        identity_url: str = IDENTITY_URL,
        token_url: str = TOKEN_URL,
        store: Optional[SecureStore] = None,
        persist_session: bool = True,
        timeout_seconds: float = 15.0,
        phone_country_prefix: str = "+88",
        recaptcha_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger=logger)
        self.api_key = api_key
        self.identity_url = identity_url.rstrip("/")
        self.token_url = token_url.rstrip("/")
        self.store = store
        self.persist_session = bool(persist_session)
        self.phone_country_prefix = phone_country_prefix
        self.recaptcha_token = recaptcha_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._session: Optional[_ProviderSession] = None
        # phone -> sessionInfo from accounts:sendVerificationCode
        self._phone_sessions: Dict[str, str] = {}

    # ---- transport ----
    async def _call(self, url: str, *, json: Optional[Dict[str, Any]] = None, form: Optional[Dict[str, str]] = None) -> Tuple[Optional[Dict[str, Any]], Optional[ProviderError]]:
        try:
            r = await self._client.post(url, params={"key": self.api_key}, json=json, data=form)
        except httpx.HTTPError as e:
            self.logger.warning("identity request failed: %s (%s)", url.rsplit("/", 1)[-1], type(e).__name__)
            return None, ProviderError("network", detail=type(e).__name__)
        try:
            body = r.json()
        except ValueError:
            body = None
        if r.status_code >= 400 or not isinstance(body, dict):
            err = map_firebase_error(body)
            self.logger.info("identity request rejected: %s -> %s", url.rsplit("/", 1)[-1], err.code)
            return None, err
        return body, None

    async def _accounts(self, op: str, payload: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[ProviderError]]:
        return await self._call(f"{self.identity_url}/accounts:{op}", json=payload)

    def _e164(self, phone: str) -> str:
        phone = phone.strip()
        if phone.startswith("+"):
            return phone
        return f"{self.phone_country_prefix}{phone}"

    # ---- provider session ----
    def _adopt_session(self, id_token: Any, refresh_token: Any, local_id: Any) -> bool:
        if not id_token or not refresh_token or not local_id:
            return False
        self._session = _ProviderSession(id_token=str(id_token), refresh_token=str(refresh_token), local_id=str(local_id))
        if self.store is not None and self.persist_session:
            try:
                self.store.replace(REFRESH_TOKEN_KEY, self._session.refresh_token)
            except (OSError, StoreKeyError, SecureStoreCorruptError) as e:
                self.logger.warning("could not persist provider session: %s", type(e).__name__)
        return True

    def _forget_session(self) -> None:
        self._session = None
        if self.store is None:
            return
        try:
            self.store.delete(REFRESH_TOKEN_KEY)
        except (OSError, StoreKeyError, SecureStoreCorruptError) as e:
            self.logger.warning("could not clear provider session: %s", type(e).__name__)

    async def _lookup(self) -> Optional[ProviderIdentity]:
        if self._session is None:
            return None
        data, err = await self._accounts("lookup", {"idToken": self._session.id_token})
        if err is not None or data is None:
            return None
        users = data.get("users")
        if not isinstance(users, list) or not users or not isinstance(users[0], dict):
            return None
        u = users[0]
        return ProviderIdentity(
            id=str(u.get("localId") or self._session.local_id),
            email=normalize_email(u.get("email")),
            phone=u.get("phoneNumber"),
            display_name=str(u.get("displayName") or ""),
            verified=bool(u.get("emailVerified", False)),
        )

    async def _restore(self) -> Optional[AnyIdentity]:
        if self.store is None or not self.persist_session:
            return None
        try:
            refresh_token = self.store.get(REFRESH_TOKEN_KEY)
        except (OSError, StoreKeyError, SecureStoreCorruptError) as e:
            self.logger.warning("provider session unreadable: %s", type(e).__name__)
            return None
        if not refresh_token:
            return None
        data, err = await self._call(f"{self.token_url}/token", form={"grant_type": "refresh_token", "refresh_token": str(refresh_token)})
        if err is not None or data is None or not self._adopt_session(data.get("id_token"), data.get("refresh_token"), data.get("user_id")):
            self.logger.info("stored provider session could not be restored")
            self._forget_session()
            return None
        return await self._lookup()

    # ---- operations ----
    async def sign_up(self, email: str, password: str, display_name: str, phone: Optional[str] = None) -> ProviderResult:
        email = normalize_email(email)
        display_name = str(display_name or "").strip()
        if not display_name:
            return ProviderResult.failure(ProviderError("invalid_name"))
        if not is_valid_email(email):
            return ProviderResult.failure(ProviderError("invalid_email"))
        problem = password_problem(password)
        if problem:
            return ProviderResult.failure(ProviderError(problem))
        if phone and not is_valid_phone(phone):
            return ProviderResult.failure(ProviderError("invalid_phone"))

        data, err = await self._accounts("signUp", {"email": email, "password": password, "returnSecureToken": True})
        if err is not None or data is None:
            return ProviderResult.failure(err or ProviderError("unknown"))
        if not self._adopt_session(data.get("idToken"), data.get("refreshToken"), data.get("localId")):
            return ProviderResult.failure(ProviderError("unknown", detail="bad_response"))

        _, err = await self._accounts("update", {"idToken": self._session.id_token, "displayName": display_name, "returnSecureToken": False})
        if err is not None:
            self.logger.warning("display name not saved for new account: %s", err.code)
        _, err = await self._accounts("sendOobCode", {"requestType": "VERIFY_EMAIL", "idToken": self._session.id_token})
        if err is not None:
            self.logger.warning("verification email not sent for new account: %s", err.code)

        # The provider does not store an unverified phone; it is kept on the
        # identity for the sign-up caller only.
        identity = ProviderIdentity(id=str(data["localId"]), email=email, phone=phone, display_name=display_name, verified=False)
        self._set_identity(identity)
        return ProviderResult.success(identity)

    async def sign_in(self, email: str, password: str) -> ProviderResult:
        email = normalize_email(email)
        if not is_valid_email(email):
            return ProviderResult.failure(ProviderError("invalid_email"))
        if not password:
            return ProviderResult.failure(ProviderError("invalid_credential"))
        data, err = await self._accounts("signInWithPassword", {"email": email, "password": password, "returnSecureToken": True})
        if err is not None or data is None:
            return ProviderResult.failure(err or ProviderError("unknown"))
        if not self._adopt_session(data.get("idToken"), data.get("refreshToken"), data.get("localId")):
            return ProviderResult.failure(ProviderError("unknown", detail="bad_response"))
        identity = await self._lookup()
        if identity is None:
            return ProviderResult.failure(ProviderError("unknown", detail="lookup_failed"))
        self._set_identity(identity)
        return ProviderResult.success(identity)

    async def send_verification_email(self) -> ProviderResult:
        current = self._current
        if self._session is None or current is None:
            return ProviderResult.failure(ProviderError("not_signed_in"))
        if current.verified:
            return ProviderResult.failure(ProviderError("already_verified"))
        _, err = await self._accounts("sendOobCode", {"requestType": "VERIFY_EMAIL", "idToken": self._session.id_token})
        if err is not None:
            return ProviderResult.failure(err)
        return ProviderResult.success(current)

    async def reset_password(self, email: str) -> ProviderResult:
        email = normalize_email(email)
        if not is_valid_email(email):
            return ProviderResult.failure(ProviderError("invalid_email"))
        _, err = await self._accounts("sendOobCode", {"requestType": "PASSWORD_RESET", "email": email})
        if err is not None:
            return ProviderResult.failure(err)
        return ProviderResult.success()

    async def send_otp(self, phone: str) -> ProviderResult:
        if not is_valid_phone(phone):
            return ProviderResult.failure(ProviderError("invalid_phone"))
        payload: Dict[str, Any] = {"phoneNumber": self._e164(phone)}
        if self.recaptcha_token:
            payload["recaptchaToken"] = self.recaptcha_token
        data, err = await self._accounts("sendVerificationCode", payload)
        if err is not None or data is None:
            return ProviderResult.failure(err or ProviderError("unknown"))
        session_info = data.get("sessionInfo")
        if not session_info:
            return ProviderResult.failure(ProviderError("unknown", detail="bad_response"))
        self._phone_sessions[phone.strip()] = str(session_info)
        return ProviderResult.success()

    async def verify_otp(self, phone: str, code: str) -> ProviderResult:
        session_info = self._phone_sessions.get(str(phone or "").strip())
        if not session_info:
            return ProviderResult.failure(ProviderError("otp_expired"))
        data, err = await self._accounts("signInWithPhoneNumber", {"sessionInfo": session_info, "code": str(code or "")})
        if err is not None or data is None:
            return ProviderResult.failure(err or ProviderError("unknown"))
        if not self._adopt_session(data.get("idToken"), data.get("refreshToken"), data.get("localId")):
            return ProviderResult.failure(ProviderError("unknown", detail="bad_response"))
        self._phone_sessions.pop(phone.strip(), None)
        looked_up = await self._lookup()
        email = looked_up.email if looked_up is not None and looked_up.email else f"{phone.strip()}@otp.login"
        identity = OTPIdentity(
            id=str(data["localId"]),
            email=email,
            phone=str(data.get("phoneNumber") or self._e164(phone)),
            display_name=looked_up.display_name if looked_up is not None else "",
        )
        self._set_identity(identity)
        return ProviderResult.success(identity)

    async def sign_out(self) -> ProviderResult:
        self._forget_session()
        self._phone_sessions.clear()
        self._set_identity(None)
        return ProviderResult.success()

    async def close(self) -> None:
        await super().close()
        if self._owns_client:
            await self._client.aclose()
