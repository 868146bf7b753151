from __future__ import annotations

from erpconsole.core.errors import ConfigError, ExchangeError, OTPError, ProfileError, ProviderError, Severity, StateTransitionError
from erpconsole.core.session import AuthResult


def test_reason_becomes_code_with_default_message():
    err = ExchangeError("network")
    assert err.code == "network"
    assert err.user_message == "Network error during login."
    assert err.recoverable is True


def test_unknown_reason_falls_back_to_generic_message():
    assert ProviderError("nope").user_message == "Sign-in service error."
    assert OTPError("nope").user_message == "OTP verification failed"


def test_explicit_message_wins():
    assert OTPError("invalid_code", "Invalid OTP").user_message == "Invalid OTP"


def test_to_dict_redacts_context():
    d = ProfileError("rejected", status_code=500, token="abc").to_dict()
    assert d["code"] == "rejected"
    assert d["severity"] == "WARN"
    assert d["context"]["status_code"] == 500
    assert d["context"]["token"] == "***REDACTED***"


def test_internal_errors_are_not_recoverable():
    assert ConfigError("bad").recoverable is False
    assert ConfigError("bad").severity == Severity.CRITICAL
    assert StateTransitionError().code == "state_transition_error"


def test_auth_result_message_prefers_advisory():
    res = AuthResult.failed(ProviderError("email_unverified"), advisory="Check your inbox.")
    assert res.message == "Check your inbox."
    assert AuthResult.failed(ProviderError("invalid_credential")).message == "Invalid email or password."
    assert AuthResult.succeeded().message == ""
