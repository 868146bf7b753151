from erpconsole.core.session.guard import GuardDecision, GuardView, RouteGuard
from erpconsole.core.session.manager import SESSION_TOKEN_KEY, SessionManager
from erpconsole.core.session.models import ALLOWED_TRANSITIONS, AuthResult, SessionSnapshot, SessionState
from erpconsole.core.session.otp import OTPChallenge, OTPFlow, OTPStep

__all__ = [
    "ALLOWED_TRANSITIONS",
    "SESSION_TOKEN_KEY",
    "AuthResult",
    "GuardDecision",
    "GuardView",
    "OTPChallenge",
    "OTPFlow",
    "OTPStep",
    "RouteGuard",
    "SessionManager",
    "SessionSnapshot",
    "SessionState",
]
