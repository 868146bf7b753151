from __future__ import annotations

import asyncio
import json

import pytest

from erpconsole.core.capabilities import Role
from erpconsole.core.session import SESSION_TOKEN_KEY, SessionState
from erpconsole.core.session.manager import UNVERIFIED_CHECK_INBOX, UNVERIFIED_RESENT
from erpconsole.core.events import EventLogger

from tests.helpers.harness import StateRecorder, running_session

EMAIL = "ayesha@example.com"

A = SessionState.AUTHENTICATED
U = SessionState.UNAUTHENTICATED
X = SessionState.EXCHANGING_SESSION


@pytest.mark.asyncio
async def test_starts_initializing_and_first_event_without_identity_unauthenticates(provider, server, store):
    async with running_session(provider, server, store, init=False) as session:
        assert session.state == SessionState.INITIALIZING
        await session.init()
        await session.settle()
        assert session.state == U
        assert session.is_authenticated is False


@pytest.mark.asyncio
async def test_operations_before_first_event_are_not_ready(provider, server, store):
    async with running_session(provider, server, store, init=False) as session:
        for res in (await session.refresh_token(), await session.exchange_for_session(EMAIL), await session.sign_in(EMAIL, "secret1")):
            assert res.ok is False
            assert res.error.code == "not_ready"
        assert session.state == SessionState.INITIALIZING


@pytest.mark.asyncio
async def test_sign_in_exchanges_and_authenticates(provider, server, store):
    rec = StateRecorder()
    async with running_session(provider, server, store, recorder=rec) as session:
        res = await session.sign_in(EMAIL, "secret1")
        await rec.flush()

        assert res.ok is True
        assert session.state == A
        assert session.is_authenticated is True
        assert session.profile.email == EMAIL
        assert session.role.value == "account"
        assert session.token == "T1"
        assert store.get(SESSION_TOKEN_KEY) == "T1"
        assert server.count("POST", "/jwt") == 1
        assert rec.states == [U, X, A]


@pytest.mark.asyncio
async def test_never_goes_straight_from_unauthenticated_to_authenticated(provider, server, store):
    rec = StateRecorder()
    server.verify_otp_body = {"success": True, "token": "OTP1", "user": {"role": "user", "email": "x@otp.login"}}
    async with running_session(provider, server, store, recorder=rec) as session:
        await session.sign_in(EMAIL, "secret1")
        await session.sign_out()
        await session.login_with_otp("01712345678", "123456")
        await session.sign_out()
        await rec.flush()
    assert (U, A) not in rec.transitions()
    assert rec.states.count(A) == 2


@pytest.mark.asyncio
async def test_unverified_sign_in_resends_verification_once(provider, server, store):
    provider.add_account("new@example.com", verified=False)
    async with running_session(provider, server, store) as session:
        res = await session.sign_in("new@example.com", "secret1")

        assert res.ok is False
        assert res.advisory == UNVERIFIED_RESENT
        assert res.error.code == "email_unverified"
        assert provider.verification_emails == 1
        assert session.state == U
        assert session.identity is not None and session.identity.verified is False
        assert server.count("POST", "/jwt") == 0


@pytest.mark.asyncio
async def test_unverified_sign_in_when_resend_fails_points_to_inbox(provider, server, store):
    provider.add_account("new@example.com", verified=False)
    provider.fail_verification_email = True
    async with running_session(provider, server, store) as session:
        res = await session.sign_in("new@example.com", "secret1")
        assert res.advisory == UNVERIFIED_CHECK_INBOX
        assert provider.verification_emails == 1


@pytest.mark.asyncio
async def test_wrong_password_is_a_provider_error(provider, server, store):
    async with running_session(provider, server, store) as session:
        res = await session.sign_in(EMAIL, "nope")
        assert res.ok is False
        assert res.error.code == "invalid_credential"
        assert session.state == U
        assert session.last_error.code == "invalid_credential"


@pytest.mark.asyncio
async def test_overlapping_sign_ins_yield_one_session(provider, server, store):
    async with running_session(provider, server, store) as session:
        first, second = await asyncio.gather(session.sign_in(EMAIL, "secret1"), session.sign_in(EMAIL, "secret1"))
        assert first.ok and second.ok
        assert server.count("POST", "/jwt") == 1
        assert session.token == "T1"


@pytest.mark.asyncio
async def test_stored_token_is_reused_when_profile_fetch_succeeds(provider, server, store):
    server.valid_tokens["OLD"] = EMAIL
    async with running_session(provider, server, store) as session:
        store.set(SESSION_TOKEN_KEY, "OLD")
        res = await session.sign_in(EMAIL, "secret1")
        assert res.ok
        assert session.token == "OLD"
        assert server.count("POST", "/jwt") == 0


@pytest.mark.asyncio
async def test_rejected_stored_token_is_replaced(provider, server, store):
    store.set(SESSION_TOKEN_KEY, "STALE")
    async with running_session(provider, server, store) as session:
        # initial event has no identity, so the slot is cleared on start
        assert store.get(SESSION_TOKEN_KEY) is None
        store.set(SESSION_TOKEN_KEY, "STALE")
        res = await session.sign_in(EMAIL, "secret1")
        assert res.ok
        assert server.count("POST", "/jwt") == 1
        assert store.get(SESSION_TOKEN_KEY) == "T1"


@pytest.mark.asyncio
async def test_restored_identity_exchanges_on_start(provider, server, store):
    provider.restore_identity = provider.identity_for(EMAIL)
    rec = StateRecorder()
    async with running_session(provider, server, store, recorder=rec) as session:
        await rec.flush()
        assert session.state == A
        assert rec.states == [X, A]


@pytest.mark.asyncio
async def test_exchange_failure_surfaces_error_and_clears_slot(provider, server, store):
    server.jwt_status = 500
    async with running_session(provider, server, store) as session:
        res = await session.sign_in(EMAIL, "secret1")
        assert res.ok is False
        assert res.error.code == "server"
        assert session.state == U
        assert store.get(SESSION_TOKEN_KEY) is None

        # explicit retry once the backend recovers
        server.jwt_status = 200
        retry = await session.refresh_token()
        assert retry.ok
        assert session.state == A


@pytest.mark.asyncio
async def test_refresh_forces_new_token_and_stays_authenticated(provider, server, store):
    rec = StateRecorder()
    async with running_session(provider, server, store, recorder=rec) as session:
        await session.sign_in(EMAIL, "secret1")
        res = await session.refresh_token()
        await rec.flush()
        assert res.ok
        assert session.token == "T2"
        assert store.get(SESSION_TOKEN_KEY) == "T2"
        assert rec.states == [U, X, A]


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_exchange(provider, server, store):
    async with running_session(provider, server, store) as session:
        await session.sign_in(EMAIL, "secret1")
        a, b = await asyncio.gather(session.refresh_token(), session.refresh_token())
        assert a.ok and b.ok
        assert server.count("POST", "/jwt") == 2


@pytest.mark.asyncio
async def test_failed_refresh_unauthenticates(provider, server, store):
    async with running_session(provider, server, store) as session:
        await session.sign_in(EMAIL, "secret1")
        server.jwt_status = 503
        res = await session.refresh_token()
        assert res.ok is False
        assert session.state == U
        assert session.token is None
        assert store.get(SESSION_TOKEN_KEY) is None


@pytest.mark.asyncio
async def test_login_with_otp_synthesizes_session(provider, server, store):
    server.verify_otp_body = {"success": True, "token": "T", "user": {"role": "user", "email": "x@otp.login"}}
    async with running_session(provider, server, store) as session:
        res = await session.login_with_otp("01712345678", "123456")

        assert res.ok
        assert session.state == A
        assert session.profile.role == "user"
        assert store.get(SESSION_TOKEN_KEY) == "T"
        assert session.identity.kind == "otp"
        assert session.identity.verified is True
        assert session.identity.phone == "01712345678"
        assert server.calls[-1][2] == {"phone": "01712345678", "otp": "123456"}


@pytest.mark.asyncio
async def test_otp_identity_falls_back_to_phone_address(provider, server, store):
    server.verify_otp_body = {"success": True, "token": "T", "user": {"role": "reservation", "name": "Karim"}}
    async with running_session(provider, server, store) as session:
        await session.login_with_otp("01812345678", "123456")
        assert session.identity.email == "01812345678@otp.login"
        assert session.identity.id == "01812345678"
        assert session.identity.display_name == "Karim"
        assert session.role.value == "reservation"


@pytest.mark.asyncio
async def test_failed_otp_reports_attempts_left_and_keeps_state(provider, server, store):
    server.verify_otp_status = 400
    server.verify_otp_body = {"success": False, "message": "Invalid OTP", "attemptsLeft": 2}
    async with running_session(provider, server, store) as session:
        res = await session.login_with_otp("01712345678", "000000")
        assert res.ok is False
        assert res.error.code == "invalid_code"
        assert res.error.user_message == "Invalid OTP"
        assert res.attempts_left == 2
        assert session.state == U


@pytest.mark.asyncio
async def test_malformed_otp_input_is_rejected_locally(provider, server, store):
    async with running_session(provider, server, store) as session:
        assert (await session.login_with_otp("12345", "123456")).error.code == "invalid_phone"
        assert (await session.login_with_otp("01712345678", "12a")).error.code == "invalid_code"
        assert server.count("POST", "/api/auth/verify-otp") == 0


@pytest.mark.asyncio
async def test_otp_result_is_discarded_after_newer_sign_in(provider, server, store):
    server.verify_otp_body = {"success": True, "token": "OTP", "user": {"role": "user", "email": "x@otp.login"}}
    gate = server.gate("/api/auth/verify-otp")
    async with running_session(provider, server, store) as session:
        otp_task = asyncio.create_task(session.login_with_otp("01712345678", "123456"))
        await asyncio.sleep(0)
        await session.sign_in(EMAIL, "secret1")
        gate.set()
        res = await otp_task

        assert res.ok is False
        assert res.error.code == "superseded"
        assert session.identity.kind == "password"
        assert store.get(SESSION_TOKEN_KEY) == "T1"


@pytest.mark.asyncio
async def test_provider_sign_out_event_does_not_end_otp_session(provider, server, store):
    server.verify_otp_body = {"success": True, "token": "OTP", "user": {"role": "user", "email": "x@otp.login"}}
    async with running_session(provider, server, store) as session:
        await session.sign_in(EMAIL, "secret1")
        await session.login_with_otp("01712345678", "123456")
        assert session.identity.kind == "otp"

        provider._set_identity(None)
        await session.settle()
        assert session.state == A
        assert session.token == "OTP"


@pytest.mark.asyncio
async def test_switching_identity_clears_before_writing(provider, server, store):
    provider.add_account("rafiq@example.com")
    server.add_user("rafiq@example.com", role="admin")
    rec = StateRecorder()
    async with running_session(provider, server, store, recorder=rec) as session:
        await session.sign_in(EMAIL, "secret1")
        await session.sign_in("rafiq@example.com", "secret1")
        await rec.flush()
        assert session.profile.email == "rafiq@example.com"
        assert store.get(SESSION_TOKEN_KEY) == "T2"
        assert rec.states == [U, X, A, U, X, A]


@pytest.mark.asyncio
@pytest.mark.parametrize("prior", ["unauthenticated", "authenticated", "exchanging"])
async def test_sign_out_clears_everything_from_any_state(provider, server, store, prior):
    async with running_session(provider, server, store) as session:
        pending = None
        if prior == "authenticated":
            await session.sign_in(EMAIL, "secret1")
        elif prior == "exchanging":
            server.gate("/jwt")
            pending = asyncio.create_task(session.sign_in(EMAIL, "secret1"))
            while session.state != X:
                await asyncio.sleep(0)

        await session.sign_out()
        assert session.is_authenticated is False
        assert session.state == U
        assert store.get(SESSION_TOKEN_KEY) is None

        if pending is not None:
            server.gates["/jwt"].set()
            await pending
            await session.settle()
            assert session.state == U
            assert session.token is None
            assert store.get(SESSION_TOKEN_KEY) is None


@pytest.mark.asyncio
async def test_sign_out_survives_provider_failure(provider, server, store):
    provider.fail_sign_out = True
    async with running_session(provider, server, store) as session:
        await session.sign_in(EMAIL, "secret1")
        res = await session.sign_out()
        assert res.ok
        assert provider.sign_out_calls == 1
        assert session.identity is None
        assert store.get(SESSION_TOKEN_KEY) is None


@pytest.mark.asyncio
async def test_sign_out_while_initializing_keeps_initializing(provider, server, store):
    store.set(SESSION_TOKEN_KEY, "LEFTOVER")
    async with running_session(provider, server, store, init=False) as session:
        await session.sign_out()
        assert session.state == SessionState.INITIALIZING
        assert store.get(SESSION_TOKEN_KEY) is None


@pytest.mark.asyncio
async def test_update_profile_is_optimistic_and_not_rolled_back(provider, server, store):
    async with running_session(provider, server, store) as session:
        await session.sign_in(EMAIL, "secret1")

        ok = await session.update_profile({"display_name": "Ayesha K"})
        assert ok.ok
        assert server.profiles[EMAIL]["displayName"] == "Ayesha K"

        server.patch_status = 500
        failed = await session.update_profile({"displayName": "Not Saved"})
        assert failed.ok is False
        assert failed.error.code == "rejected"
        assert session.profile.display_name == "Not Saved"
        assert server.profiles[EMAIL]["displayName"] == "Ayesha K"


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["role", "email", "_id", "id", "branchId", "branch_id"])
async def test_update_profile_refuses_server_owned_fields(provider, server, store, field):
    async with running_session(provider, server, store) as session:
        await session.sign_in(EMAIL, "secret1")
        server.patch_status = 403
        before = session.profile

        res = await session.update_profile({field: "super_admin", "displayName": "Boss"})
        assert res.ok is False
        assert res.error.code == "rejected"
        assert res.error.context["fields"] == [field]
        assert session.profile == before
        assert session.role == Role.account
        assert session.can("manage_users") is False
        assert server.count("PATCH", f"/users/profile/{EMAIL}") == 0


@pytest.mark.asyncio
async def test_update_profile_superseded_still_reports_error(provider, server, store):
    async with running_session(provider, server, store) as session:
        await session.sign_in(EMAIL, "secret1")
        server.patch_status = 500
        gate = server.gate(f"/users/profile/{EMAIL}")

        update = asyncio.create_task(session.update_profile({"displayName": "Late"}))
        while server.count("PATCH", f"/users/profile/{EMAIL}") < 1:
            await asyncio.sleep(0)
        refresh = asyncio.create_task(session.refresh_token())
        while server.count("POST", "/jwt") < 2:
            await asyncio.sleep(0)
        gate.set()

        res = await update
        assert res.ok is False
        assert res.error is not None
        assert res.error.code == "rejected"
        assert (await refresh).ok


@pytest.mark.asyncio
async def test_update_profile_without_session(provider, server, store):
    async with running_session(provider, server, store) as session:
        res = await session.update_profile({"displayName": "x"})
        assert res.error.code == "no_session"
        assert res.error.user_message == "No authentication token"


@pytest.mark.asyncio
async def test_sign_in_with_branch_registers_through_backend_login(provider, server, store):
    async with running_session(provider, server, store) as session:
        res = await session.sign_in(EMAIL, "secret1", branch_id="dhaka-1")
        assert res.ok
        assert server.count("POST", "/api/auth/login") == 1
        assert server.count("POST", "/jwt") == 0
        body = [b for m, p, b in server.calls if p == "/api/auth/login"][0]
        assert body["firebaseUid"] == provider.accounts[EMAIL].uid
        assert body["branchId"] == "dhaka-1"
        assert session.profile.branch_id == "dhaka-1"


@pytest.mark.asyncio
async def test_login_with_backend_requires_matching_identity(provider, server, store):
    async with running_session(provider, server, store) as session:
        assert (await session.login_with_backend(EMAIL, "uid-1")).error.code == "no_identity"
        await session.sign_in(EMAIL, "secret1")
        res = await session.login_with_backend(EMAIL, "someone-else", branch_id="b")
        assert res.error.code == "identity_mismatch"


@pytest.mark.asyncio
async def test_capabilities_follow_profile_role(provider, server, store):
    async with running_session(provider, server, store) as session:
        assert session.can("dashboard") is False
        await session.sign_in(EMAIL, "secret1")
        assert session.can("manage_accounts") is True
        assert session.can("manage_users") is False
        assert session.has_permission("reservation") is True
        assert session.has_permission("admin") is False
        assert session.role_info.display_name == "Account"


@pytest.mark.asyncio
async def test_teardown_leaves_no_listeners(provider, server, store):
    async with running_session(provider, server, store) as session:
        assert provider.listener_count == 1
    assert provider.listener_count == 0
    assert session.listener_count == 0


@pytest.mark.asyncio
async def test_audit_log_never_contains_tokens(provider, server, store, tmp_path):
    ev = EventLogger(str(tmp_path / "audit.jsonl"))
    async with running_session(provider, server, store, event_logger=ev) as session:
        await session.sign_in(EMAIL, "secret1")
        await session.sign_out()
    lines = [json.loads(x) for x in (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()]
    events = [x["event"] for x in lines]
    assert "session.exchange.ok" in events
    assert "session.sign_out" in events
    for row in lines:
        assert "T1" not in json.dumps(row["details"])
