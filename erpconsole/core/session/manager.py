from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from erpconsole.core.backend import ApiResult, BackendClient, Profile, server_owned_fields
from erpconsole.core.capabilities import CapabilitySet, Role, RoleInfo, can, capabilities, has_permission, no_capabilities, normalize_role, role_info
from erpconsole.core.crypto import SecureStore, SecureStoreCorruptError, StoreKeyError
from erpconsole.core.errors import ConsoleError, ExchangeError, OTPError, ProfileError, ProviderError, StateTransitionError
from erpconsole.core.events import EventLogger, Observable, Subscription
from erpconsole.core.events.observer import Handler
from erpconsole.core.identity import IdentityEvent, IdentityProvider, OTPIdentity, ProviderIdentity
from erpconsole.core.session.models import ALLOWED_TRANSITIONS, AuthResult, SessionSnapshot, SessionState
from erpconsole.core.validation import is_valid_otp_code, is_valid_phone, normalize_email

SESSION_TOKEN_KEY = "erp_token"

UNVERIFIED_RESENT = "Please verify your email first. A new verification email has been sent."
UNVERIFIED_CHECK_INBOX = "Please verify your email first. Check your inbox for verification link."
SIGN_UP_ADVISORY = "Account created! Please check your email to verify your account."
RESET_ADVISORY = "Password reset email sent. Check your inbox."

AnyIdentity = Union[ProviderIdentity, OTPIdentity]
_Obtained = Tuple[Optional[str], Optional[Profile], Optional[ExchangeError]]


def _exchange_error(res: ApiResult) -> ExchangeError:
    reason = {
        "network": "network",
        "unauthorized": "unauthorized",
        "bad_response": "bad_response",
        "rejected": "rejected",
        "rate_limited": "rejected",
    }.get(res.error or "", "server")
    return ExchangeError(reason, status_code=res.status_code or None)


def _otp_error(res: ApiResult) -> OTPError:
    if res.error in ("network", "rate_limited", "bad_response"):
        return OTPError(res.error, status_code=res.status_code or None)
    message = res.message or ""
    reason = "expired" if "expire" in message.lower() else "invalid_code"
    return OTPError(reason, message or None, status_code=res.status_code or None)


def _attempts_left(res: ApiResult) -> Optional[int]:
    data = getattr(res.data, "attempts_left", None)
    if data is not None:
        return int(data)
    raw = (res.body or {}).get("attemptsLeft")
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    return None


class SessionManager:
    """
    Owns the client's session: identity, backend token and Profile.

    Identity events from the provider are handled one at a time by a single
    subscription task. Every flow that may replace the session takes a new
    epoch; results of a flow whose epoch is no longer current are discarded.
    The durable token slot is written only here and always replaced whole.
    """

    def __init__(
        self,
        *,
        provider: IdentityProvider,
        backend: BackendClient,
        store: SecureStore,
        otp_code_length: int = 6,
        event_logger: Optional[EventLogger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.provider = provider
        self.backend = backend
        self.store = store
        self.otp_code_length = int(otp_code_length)
        self.event_logger = event_logger
        self.logger = logger or logging.getLogger("erpconsole.session")

        self._state = SessionState.INITIALIZING
        self._identity: Optional[AnyIdentity] = None
        self._identity_from_provider = False
        self._profile: Optional[Profile] = None
        self._token: Optional[str] = None
        self._issued_at: Optional[float] = None
        self._last_error: Optional[ConsoleError] = None

        self._epoch = 0
        self._exchanging_id: Optional[str] = None
        self._lock = asyncio.Lock()
        self._refresh_task: Optional["asyncio.Task[AuthResult]"] = None
        self._branch_hints: Dict[str, str] = {}

        self._changes: Observable[SessionSnapshot] = Observable(name="session", logger=self.logger)
        self._subscription: Optional[Subscription[IdentityEvent]] = None

    # ---------- lifecycle ----------
    async def init(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self.provider.subscribe(self._on_identity_event)
        await self.provider.start()

    async def settle(self) -> None:
        """Wait until every identity event delivered so far has been handled."""
        if self._subscription is not None:
            await self._subscription.join()

    async def teardown(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
        self._refresh_task = None
        self._changes.close()

    # ---------- read side ----------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> Optional[AnyIdentity]:
        return self._identity

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def issued_at(self) -> Optional[float]:
        return self._issued_at

    @property
    def last_error(self) -> Optional[ConsoleError]:
        return self._last_error

    @property
    def is_authenticated(self) -> bool:
        return (
            self._state == SessionState.AUTHENTICATED
            and self._identity is not None
            and self._identity.verified
            and self._profile is not None
            and bool(self._token)
        )

    @property
    def role(self) -> Optional[Role]:
        if not self.is_authenticated:
            return None
        return normalize_role(self._profile.role if self._profile is not None else None)

    @property
    def role_info(self) -> Optional[RoleInfo]:
        r = self.role
        return role_info(r) if r is not None else None

    @property
    def capabilities(self) -> CapabilitySet:
        r = self.role
        return capabilities(r) if r is not None else no_capabilities()

    def can(self, capability: str) -> bool:
        r = self.role
        return r is not None and can(r, capability)

    def has_permission(self, required: Any) -> bool:
        r = self.role
        return r is not None and has_permission(r, required)

    def snapshot(self) -> SessionSnapshot:
        err = self._last_error
        return SessionSnapshot(
            state=self._state,
            identity=self._identity,
            profile=self._profile,
            has_token=bool(self._token),
            is_authenticated=self.is_authenticated,
            role=self.role,
            issued_at=self._issued_at,
            error_code=err.code if err is not None else None,
            error_message=err.user_message if err is not None else None,
        )

    def subscribe(self, handler: Handler) -> Subscription[SessionSnapshot]:
        """`handler` receives a SessionSnapshot after every change."""
        return self._changes.subscribe(handler)

    @property
    def listener_count(self) -> int:
        return self._changes.listener_count

    # ---------- identity events ----------
    async def _on_identity_event(self, event: IdentityEvent) -> None:
        identity = event.identity
        if identity is not None and identity.verified:
            await self._adopt_verified(identity)
            return

        if identity is None and not event.initial and self._identity is not None and not self._identity_from_provider:
            # the provider signing out does not end a session established through OTP
            return
        if identity is None and not event.initial and self._identity is None and self._token is None:
            return

        self._epoch += 1
        self._exchanging_id = None
        self._identity = identity
        self._identity_from_provider = identity is not None
        self._clear_session()
        self._transition(SessionState.UNAUTHENTICATED, reason="identity_cleared" if identity is None else "identity_unverified")
        self._notify()

    async def _adopt_verified(self, identity: AnyIdentity) -> None:
        current = self._identity
        if current is not None and current.id == identity.id:
            if self._state == SessionState.AUTHENTICATED and self._token:
                self._identity = identity
                return
            if self._exchanging_id == identity.id:
                return
        if self._state == SessionState.AUTHENTICATED:
            # different identity: clear, then exchange for the new one
            self._clear_session()
            self._transition(SessionState.UNAUTHENTICATED, reason="identity_switched")
            self._notify()
        self._identity = identity
        self._identity_from_provider = True

        email = normalize_email(identity.email)
        branch_id = self._branch_hints.pop(email, None)
        if branch_id is not None:
            await self._backend_login_flow(identity, email, identity.display_name, branch_id)
        else:
            await self._exchange_flow(identity, email, reuse_stored=True)

    # ---------- exchange ----------
    async def exchange_for_session(self, email: str) -> AuthResult:
        if self._state == SessionState.INITIALIZING:
            return AuthResult.failed(ExchangeError("not_ready"))
        identity = self._identity
        if identity is None or not identity.verified:
            return AuthResult.failed(ExchangeError("no_identity"))
        return await self._exchange_flow(identity, normalize_email(email), reuse_stored=True)

    async def refresh_token(self) -> AuthResult:
        """Forces a new token for the current identity. Concurrent callers share one exchange."""
        if self._state == SessionState.INITIALIZING:
            return AuthResult.failed(ExchangeError("not_ready"))
        identity = self._identity
        if identity is None or not identity.verified:
            return AuthResult.failed(ExchangeError("no_identity"))
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._exchange_flow(identity, normalize_email(identity.email), reuse_stored=False),
                name="session-refresh",
            )
            self._refresh_task = task
        return await asyncio.shield(task)

    async def login_with_backend(self, email: str, identity_id: str, display_name: str = "", branch_id: Optional[str] = None) -> AuthResult:
        if self._state == SessionState.INITIALIZING:
            return AuthResult.failed(ExchangeError("not_ready"))
        identity = self._identity
        if identity is None:
            return AuthResult.failed(ExchangeError("no_identity"))
        if identity.id != identity_id or not identity.verified:
            return AuthResult.failed(ExchangeError("identity_mismatch"))
        return await self._backend_login_flow(identity, normalize_email(email), display_name, branch_id)

    def _begin_flow(self, identity: AnyIdentity) -> int:
        self._epoch += 1
        self._exchanging_id = identity.id
        if self._state != SessionState.AUTHENTICATED:
            self._transition(SessionState.EXCHANGING_SESSION, reason="exchange", identity_id=identity.id)
            self._notify()
        return self._epoch

    def _is_current(self, epoch: int) -> bool:
        return self._epoch == epoch

    async def _exchange_flow(self, identity: AnyIdentity, email: str, *, reuse_stored: bool) -> AuthResult:
        epoch = self._begin_flow(identity)
        async with self._lock:
            obtained = await self._obtain_session(email, epoch, reuse_stored=reuse_stored)
        return self._finish_flow(epoch, identity, obtained, kind="exchange")

    async def _backend_login_flow(self, identity: AnyIdentity, email: str, display_name: str, branch_id: Optional[str]) -> AuthResult:
        epoch = self._begin_flow(identity)
        async with self._lock:
            obtained = await self._obtain_via_login(identity, email, display_name, branch_id, epoch)
        return self._finish_flow(epoch, identity, obtained, kind="backend_login")

    async def _obtain_session(self, email: str, epoch: int, *, reuse_stored: bool) -> _Obtained:
        if not self._is_current(epoch):
            return None, None, ExchangeError("superseded")
        token = self._read_slot() if reuse_stored else None
        if token:
            res = await self.backend.get_profile(email, token=token)
            if not self._is_current(epoch):
                return None, None, ExchangeError("superseded")
            if res.ok:
                return token, res.data, None
            if not res.is_auth_error:
                return None, None, _exchange_error(res)
            self.logger.info("stored session rejected (%s); requesting a new token", res.status_code)

        issued = await self.backend.issue_token(email)
        if not self._is_current(epoch):
            return None, None, ExchangeError("superseded")
        if not issued.ok:
            return None, None, _exchange_error(issued)
        token = issued.data.token
        err = self._write_slot(token)
        if err is not None:
            return None, None, err

        res = await self.backend.get_profile(email, token=token)
        if not self._is_current(epoch):
            return None, None, ExchangeError("superseded")
        if not res.ok:
            return None, None, _exchange_error(res)
        return token, res.data, None

    async def _obtain_via_login(self, identity: AnyIdentity, email: str, display_name: str, branch_id: Optional[str], epoch: int) -> _Obtained:
        if not self._is_current(epoch):
            return None, None, ExchangeError("superseded")
        res = await self.backend.login(email, identity.id, display_name or identity.display_name, branch_id)
        if not self._is_current(epoch):
            return None, None, ExchangeError("superseded")
        if not res.ok:
            return None, None, _exchange_error(res)
        token = res.data.token
        err = self._write_slot(token)
        if err is not None:
            return None, None, err
        if res.data.user is not None:
            return token, res.data.user, None

        fetched = await self.backend.get_profile(email, token=token)
        if not self._is_current(epoch):
            return None, None, ExchangeError("superseded")
        if not fetched.ok:
            return None, None, _exchange_error(fetched)
        return token, fetched.data, None

    def _finish_flow(self, epoch: int, identity: AnyIdentity, obtained: _Obtained, *, kind: str) -> AuthResult:
        token, profile, err = obtained
        trace_id = uuid.uuid4().hex
        if not self._is_current(epoch):
            # a newer flow owns the session now
            self.logger.info("%s for %s discarded: superseded", kind, identity.id)
            return AuthResult.failed(err if err is not None and err.code == "superseded" else ExchangeError("superseded"))

        self._exchanging_id = None
        if err is not None or token is None or profile is None:
            err = err or ExchangeError("bad_response")
            self._last_error = err
            self._clear_session()
            self._transition(SessionState.UNAUTHENTICATED, reason=f"{kind}_failed", error=err.code)
            self._notify()
            self._audit(trace_id, f"session.{kind}.failed", {"identity_id": identity.id, "error": err.code})
            return AuthResult.failed(err)

        self._token = token
        self._profile = profile
        self._issued_at = time.time()
        self._last_error = None
        self._transition(SessionState.AUTHENTICATED, reason=kind, identity_id=identity.id)
        self._notify()
        self._audit(trace_id, f"session.{kind}.ok", {"identity_id": identity.id, "role": normalize_role(profile.role).value})
        return AuthResult.succeeded(profile)

    # ---------- OTP ----------
    async def login_with_otp(self, phone: str, code: str) -> AuthResult:
        if self._state == SessionState.INITIALIZING:
            return AuthResult.failed(ExchangeError("not_ready"))
        phone = str(phone or "").strip()
        code = str(code or "").strip()
        if not is_valid_phone(phone):
            return AuthResult.failed(OTPError("invalid_phone"))
        if not is_valid_otp_code(code, self.otp_code_length):
            return AuthResult.failed(OTPError("invalid_code"))

        epoch = self._epoch
        trace_id = uuid.uuid4().hex
        res = await self.backend.verify_otp(phone, code)
        if not self._is_current(epoch):
            self.logger.info("OTP verification result discarded: a newer flow started")
            return AuthResult.failed(ExchangeError("superseded"))

        if not res.ok:
            err = _otp_error(res)
            attempts = _attempts_left(res)
            self._last_error = err
            self._notify()
            self._audit(trace_id, "session.otp.failed", {"phone": phone, "error": err.code, "attempts_left": attempts})
            return AuthResult.failed(err, attempts_left=attempts)

        data = res.data
        if not data.token or data.user is None:
            err = OTPError("bad_response")
            self._last_error = err
            self._notify()
            return AuthResult.failed(err)

        user: Profile = data.user
        identity = OTPIdentity(
            id=str(user.id or phone),
            email=user.email or f"{phone}@otp.login",
            phone=phone,
            display_name=user.display_name,
        )
        profile = user if user.email else user.merged({"email": identity.email})

        self._epoch += 1
        self._exchanging_id = None
        if self._state == SessionState.AUTHENTICATED:
            self._clear_session()
            self._transition(SessionState.UNAUTHENTICATED, reason="identity_switched")
        self._identity = identity
        self._identity_from_provider = False
        self._transition(SessionState.EXCHANGING_SESSION, reason="otp", identity_id=identity.id)
        self._notify()
        write_err = self._write_slot(data.token)
        if write_err is not None:
            self._last_error = write_err
            self._identity = None
            self._clear_session()
            self._transition(SessionState.UNAUTHENTICATED, reason="otp_failed", error=write_err.code)
            self._notify()
            return AuthResult.failed(write_err)

        self._token = data.token
        self._profile = profile
        self._issued_at = time.time()
        self._last_error = None
        self._transition(SessionState.AUTHENTICATED, reason="otp", identity_id=identity.id)
        self._notify()
        self._audit(trace_id, "session.otp.ok", {"phone": phone, "identity_id": identity.id, "role": normalize_role(profile.role).value})
        return AuthResult.succeeded(profile)

    # ---------- profile ----------
    async def update_profile(self, partial: Mapping[str, Any]) -> AuthResult:
        """
        Applies `partial` locally first, then PATCHes the backend. A failed
        PATCH is reported but the local change is kept.
        """
        token, profile = self._token, self._profile
        if not token:
            return AuthResult.failed(ProfileError("no_session"))
        if profile is None:
            return AuthResult.failed(ProfileError("no_profile"))
        owned = server_owned_fields(partial)
        if owned:
            self._audit(uuid.uuid4().hex, "session.profile.update_refused", {"fields": owned})
            return AuthResult.failed(ProfileError("rejected", "These profile fields cannot be changed.", fields=owned), profile=profile)
        try:
            merged = profile.merged(partial)
        except ValidationError as e:
            return AuthResult.failed(ProfileError("rejected", errors=e.error_count()), profile=profile)

        epoch = self._epoch
        self._profile = merged
        self._notify()

        res = await self.backend.update_profile(profile.email, partial, token=token)
        if res.ok and not self._is_current(epoch):
            return AuthResult.succeeded(merged)
        if not res.ok:
            reason = res.error if res.error in ("network", "bad_response") else "rejected"
            err = ProfileError(reason, res.message or None, status_code=res.status_code or None)
            if not self._is_current(epoch):
                return AuthResult.failed(err, profile=merged)
            self._last_error = err
            self._notify()
            self._audit(uuid.uuid4().hex, "session.profile.update_failed", {"fields": sorted(partial.keys()), "error": err.code})
            return AuthResult.failed(err, profile=self._profile)

        server_user = (res.body or {}).get("user")
        if isinstance(server_user, dict):
            try:
                self._profile = Profile.model_validate(server_user)
            except ValidationError:
                self.logger.warning("profile update response ignored: unexpected shape")
            self._notify()
        self._audit(uuid.uuid4().hex, "session.profile.updated", {"fields": sorted(partial.keys())})
        return AuthResult.succeeded(self._profile)

    # ---------- provider pass-throughs ----------
    async def sign_in(self, email: str, password: str, branch_id: Optional[str] = None) -> AuthResult:
        if self._state == SessionState.INITIALIZING:
            return AuthResult.failed(ExchangeError("not_ready"))
        email = normalize_email(email)
        if branch_id:
            self._branch_hints[email] = branch_id
        res = await self.provider.sign_in(email, password)
        trace_id = uuid.uuid4().hex
        if not res.ok or res.identity is None:
            self._branch_hints.pop(email, None)
            err = res.error or ProviderError("unknown")
            self._last_error = err
            self._notify()
            self._audit(trace_id, "session.sign_in.failed", {"email": email, "error": err.code})
            return AuthResult.failed(err)

        await self.settle()
        identity = res.identity
        if not identity.verified:
            self._branch_hints.pop(email, None)
            resend = await self.provider.send_verification_email()
            advisory = UNVERIFIED_RESENT if resend.ok else UNVERIFIED_CHECK_INBOX
            err = ProviderError("email_unverified", advisory)
            self._last_error = err
            self._notify()
            self._audit(trace_id, "session.sign_in.unverified", {"email": email, "resent": resend.ok})
            return AuthResult.failed(err, advisory=advisory)

        pending_branch = self._branch_hints.pop(email, None)
        if pending_branch is not None and self._identity is not None and self._identity.id == identity.id:
            # already signed in as this identity, so no event carried the branch
            return await self.login_with_backend(email, identity.id, identity.display_name, pending_branch)

        if self.is_authenticated and self._identity is not None and self._identity.id == identity.id:
            self._audit(trace_id, "session.sign_in.ok", {"email": email, "identity_id": identity.id})
            return AuthResult.succeeded(self._profile)
        return AuthResult.failed(self._last_error or ExchangeError("server"))

    async def sign_up(self, email: str, password: str, display_name: str, phone: Optional[str] = None) -> AuthResult:
        res = await self.provider.sign_up(email, password, display_name, phone)
        if not res.ok:
            err = res.error or ProviderError("unknown")
            self._last_error = err
            self._notify()
            return AuthResult.failed(err)
        await self.settle()
        self._audit(uuid.uuid4().hex, "session.sign_up", {"email": normalize_email(email)})
        return AuthResult.succeeded(advisory=SIGN_UP_ADVISORY)

    async def reset_password(self, email: str) -> AuthResult:
        res = await self.provider.reset_password(email)
        if not res.ok:
            return AuthResult.failed(res.error or ProviderError("unknown"))
        return AuthResult.succeeded(advisory=RESET_ADVISORY)

    async def sign_out(self) -> AuthResult:
        """Local state is cleared first and unconditionally; provider sign-out is best-effort."""
        self._epoch += 1
        self._exchanging_id = None
        self._branch_hints.clear()
        previous = self._identity
        self._identity = None
        self._identity_from_provider = False
        self._last_error = None
        self._clear_session()
        if self._state != SessionState.INITIALIZING:
            self._transition(SessionState.UNAUTHENTICATED, reason="sign_out")
        self._notify()
        self._audit(uuid.uuid4().hex, "session.sign_out", {"identity_id": previous.id if previous is not None else None})

        try:
            res = await self.provider.sign_out()
        except Exception as e:  # noqa: BLE001
            self.logger.warning("provider sign-out failed: %s", type(e).__name__)
            return AuthResult.succeeded()
        if not res.ok:
            self.logger.warning("provider sign-out failed: %s", res.error.code if res.error else "unknown")
        return AuthResult.succeeded()

    # ---------- internals ----------
    def _transition(self, new_state: SessionState, *, reason: str, **details: Any) -> None:
        old = self._state
        if new_state == old:
            return
        if new_state not in ALLOWED_TRANSITIONS.get(old, set()):
            raise StateTransitionError(f"Invalid transition {old.value} -> {new_state.value}", reason=reason)
        self._state = new_state
        self.logger.info("session %s -> %s (%s)", old.value, new_state.value, reason)
        self._audit("sm", "session.state", {"from": old.value, "to": new_state.value, "reason": reason, **details})

    def _notify(self) -> None:
        self._changes.emit(self.snapshot())

    def _clear_session(self) -> None:
        self._profile = None
        self._token = None
        self._issued_at = None
        self._clear_slot()

    def _read_slot(self) -> Optional[str]:
        try:
            value = self.store.get(SESSION_TOKEN_KEY)
        except SecureStoreCorruptError:
            self.logger.warning("session store unreadable; discarding it")
            self.store.reset()
            return None
        except (OSError, StoreKeyError) as e:
            self.logger.warning("session store unavailable: %s", type(e).__name__)
            return None
        return str(value) if value else None

    def _write_slot(self, token: str) -> Optional[ExchangeError]:
        try:
            self.store.replace(SESSION_TOKEN_KEY, token)
        except SecureStoreCorruptError:
            self.logger.warning("session store unreadable; recreating it")
            self.store.reset()
            try:
                self.store.set(SESSION_TOKEN_KEY, token)
            except (OSError, StoreKeyError) as e:
                return ExchangeError("storage", detail=type(e).__name__)
        except (OSError, StoreKeyError) as e:
            self.logger.error("could not persist session token: %s", type(e).__name__)
            return ExchangeError("storage", detail=type(e).__name__)
        return None

    def _clear_slot(self) -> None:
        try:
            self.store.delete(SESSION_TOKEN_KEY)
        except SecureStoreCorruptError:
            self.store.reset()
        except (OSError, StoreKeyError) as e:
            self.logger.error("could not clear session token: %s", type(e).__name__)

    def _audit(self, trace_id: str, event_type: str, details: Dict[str, Any]) -> None:
        if self.event_logger is None:
            return
        try:
            self.event_logger.log(trace_id, event_type, details)
        except OSError as e:
            self.logger.warning("audit log write failed: %s", type(e).__name__)
