from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from erpconsole.core.backend import BackendClient
from erpconsole.core.errors import ConsoleError, OTPError
from erpconsole.core.session.manager import SessionManager
from erpconsole.core.session.models import AuthResult
from erpconsole.core.validation import is_valid_otp_code, is_valid_phone

DEFAULT_COUNTDOWN_SECONDS = 300


class OTPStep(str, Enum):
    PHONE_ENTRY = "PHONE_ENTRY"
    AWAITING_CODE = "AWAITING_CODE"


@dataclass
class OTPChallenge:
    phone: str
    issued_at: float
    countdown_seconds: int = DEFAULT_COUNTDOWN_SECONDS
    # reported by the server; never enforced locally
    attempts_left: Optional[int] = None


class OTPFlow:
    """
    Phone -> code -> session entry path.

    The countdown runs on its own task, one tick per second, regardless of
    any request in flight. At zero, verification stays disabled until a
    resend.
    """

    def __init__(
        self,
        session: SessionManager,
        backend: BackendClient,
        *,
        countdown_seconds: int = DEFAULT_COUNTDOWN_SECONDS,
        code_length: int = 6,
        auto_tick: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.backend = backend
        self.countdown_seconds = int(countdown_seconds)
        self.code_length = int(code_length)
        self.auto_tick = bool(auto_tick)
        self._sleep = sleep
        self.logger = logger or logging.getLogger("erpconsole.otp")

        self.step = OTPStep.PHONE_ENTRY
        self.phone = ""
        self.code = ""
        self.remaining = self.countdown_seconds
        self.pending = False
        self.error: Optional[ConsoleError] = None
        self.challenge: Optional[OTPChallenge] = None
        self._ticker: Optional["asyncio.Task[None]"] = None

    # ---- inputs ----
    def set_phone(self, phone: str) -> None:
        self.phone = str(phone or "").strip()
        self.error = None

    def enter_code(self, code: str) -> None:
        digits = "".join(ch for ch in str(code or "") if ch.isascii() and ch.isdigit())
        self.code = digits[: self.code_length]
        self.error = None

    # ---- derived ----
    @property
    def attempts_left(self) -> Optional[int]:
        return self.challenge.attempts_left if self.challenge is not None else None

    @property
    def expired(self) -> bool:
        return self.step == OTPStep.AWAITING_CODE and self.remaining <= 0

    @property
    def countdown_text(self) -> str:
        m, s = divmod(max(0, self.remaining), 60)
        return f"{m}:{s:02d}"

    @property
    def can_send(self) -> bool:
        return not self.pending and is_valid_phone(self.phone)

    @property
    def can_verify(self) -> bool:
        return (
            self.step == OTPStep.AWAITING_CODE
            and self.challenge is not None
            and not self.pending
            and self.remaining > 0
            and is_valid_otp_code(self.code, self.code_length)
        )

    # ---- operations ----
    async def send_otp(self, phone: Optional[str] = None) -> AuthResult:
        if phone is not None:
            self.set_phone(phone)
        return await self._send(restart_first=False)

    async def resend_otp(self) -> AuthResult:
        """Clears the entered code and restarts the countdown before calling the server."""
        return await self._send(restart_first=True)

    async def _send(self, *, restart_first: bool) -> AuthResult:
        if self.pending:
            return AuthResult.failed(OTPError("busy"))
        if not is_valid_phone(self.phone):
            self.error = OTPError("invalid_phone")
            return AuthResult.failed(self.error)

        self.code = ""
        self.error = None
        if restart_first:
            self._restart_countdown()

        self.pending = True
        try:
            res = await self.backend.send_otp(self.phone)
        finally:
            self.pending = False

        if not res.ok:
            reason = res.error if res.error in ("network", "rate_limited") else "send_failed"
            self.error = OTPError(reason, res.message or None, status_code=res.status_code or None)
            self.logger.info("OTP send failed: %s", self.error.code)
            return AuthResult.failed(self.error)

        self.challenge = OTPChallenge(phone=self.phone, issued_at=time.time(), countdown_seconds=self.countdown_seconds)
        self.step = OTPStep.AWAITING_CODE
        if not restart_first:
            self._restart_countdown()
        self.logger.info("OTP sent")
        return AuthResult.succeeded(advisory=res.message or "OTP sent.")

    async def verify(self) -> AuthResult:
        if self.pending:
            return AuthResult.failed(OTPError("busy"))
        if self.step != OTPStep.AWAITING_CODE or self.challenge is None or self.remaining <= 0:
            self.error = OTPError("expired")
            return AuthResult.failed(self.error)
        if not is_valid_otp_code(self.code, self.code_length):
            self.error = OTPError("invalid_code")
            return AuthResult.failed(self.error)

        challenge = self.challenge
        self.pending = True
        try:
            res = await self.session.login_with_otp(self.phone, self.code)
        finally:
            self.pending = False

        if res.ok:
            self._stop_countdown()
            self.challenge = None
            self.code = ""
            self.error = None
            self.step = OTPStep.PHONE_ENTRY
            self.remaining = self.countdown_seconds
            return res

        if res.attempts_left is not None and self.challenge is challenge:
            challenge.attempts_left = res.attempts_left
        self.code = ""
        self.error = res.error
        return res

    def change_phone(self) -> None:
        self._stop_countdown()
        self.step = OTPStep.PHONE_ENTRY
        self.challenge = None
        self.code = ""
        self.error = None
        self.remaining = self.countdown_seconds

    def tick(self) -> int:
        if self.remaining > 0:
            self.remaining -= 1
            if self.remaining == 0:
                self.logger.info("OTP code expired")
        return self.remaining

    def close(self) -> None:
        self._stop_countdown()

    # ---- countdown ----
    def _restart_countdown(self) -> None:
        self._stop_countdown()
        self.remaining = self.countdown_seconds
        if self.auto_tick:
            self._ticker = asyncio.get_running_loop().create_task(self._run_countdown(), name="otp-countdown")

    def _stop_countdown(self) -> None:
        task, self._ticker = self._ticker, None
        if task is not None and not task.done():
            task.cancel()

    async def _run_countdown(self) -> None:
        while self.remaining > 0:
            await self._sleep(1.0)
            self.tick()
