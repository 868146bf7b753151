from __future__ import annotations

import pytest

from erpconsole.core.backend import Profile
from erpconsole.core.capabilities import Role
from erpconsole.core.config import ConsoleConfig, WebConfig
from erpconsole.core.context import ConsoleContext
from erpconsole.core.identity import ProviderIdentity
from erpconsole.core.session import GuardDecision, RouteGuard, SessionSnapshot, SessionState

from tests.helpers.harness import running_session

EMAIL = "ayesha@example.com"


def _authenticated(role: Role) -> SessionSnapshot:
    return SessionSnapshot(
        state=SessionState.AUTHENTICATED,
        identity=ProviderIdentity(id="uid-1", email=EMAIL, verified=True),
        profile=Profile(email=EMAIL, role=role.value),
        has_token=True,
        is_authenticated=True,
        role=role,
    )


def test_evaluate_loading_while_state_unknown():
    for state in (SessionState.INITIALIZING, SessionState.EXCHANGING_SESSION):
        view = RouteGuard.evaluate(SessionSnapshot(state=state))
        assert view.decision == GuardDecision.LOADING
        assert view.redirect_to is None


def test_evaluate_redirects_when_unauthenticated():
    view = RouteGuard.evaluate(SessionSnapshot(state=SessionState.UNAUTHENTICATED), login_path="/signin")
    assert view.decision == GuardDecision.REDIRECT
    assert view.redirect_to == "/signin"


def test_evaluate_checks_capability():
    assert RouteGuard.evaluate(_authenticated(Role.user), required_capability="manage_users").decision == GuardDecision.DENIED
    assert RouteGuard.evaluate(_authenticated(Role.admin), required_capability="manage_users").decision == GuardDecision.RENDER
    assert RouteGuard.evaluate(_authenticated(Role.user)).decision == GuardDecision.RENDER


@pytest.mark.asyncio
async def test_restored_session_never_redirects(provider, server, store):
    provider.restore_identity = provider.identity_for(EMAIL)
    seen = []
    async with running_session(provider, server, store, init=False) as session:
        guard = RouteGuard(session, on_change=lambda v: seen.append(v.decision))
        assert guard.mount().decision == GuardDecision.LOADING

        await session.init()
        await session.settle()
        await guard.settle()

        assert guard.view.decision == GuardDecision.RENDER
        assert GuardDecision.REDIRECT not in seen
        guard.unmount()


@pytest.mark.asyncio
async def test_guard_follows_sign_in_and_sign_out(provider, server, store):
    seen = []
    async with running_session(provider, server, store, init=False) as session:
        guard = RouteGuard(session, render=lambda snap: f"hello {snap.profile.display_name}", on_change=lambda v: seen.append(v.decision))
        guard.mount()
        await session.init()
        await session.settle()
        await guard.settle()
        assert guard.view.decision == GuardDecision.REDIRECT
        assert guard.view.redirect_to == "/login"

        await session.sign_in(EMAIL, "secret1")
        await guard.settle()
        assert guard.view.decision == GuardDecision.RENDER
        assert guard.view.content == "hello Ayesha"

        await session.sign_out()
        await guard.settle()
        assert guard.view.decision == GuardDecision.REDIRECT
        assert seen == [GuardDecision.REDIRECT, GuardDecision.LOADING, GuardDecision.RENDER, GuardDecision.REDIRECT]
        guard.unmount()


@pytest.mark.asyncio
async def test_guard_denies_missing_capability(provider, server, store):
    async with running_session(provider, server, store) as session:
        guard = RouteGuard(session, required_capability="manage_users")
        guard.mount()
        await session.sign_in(EMAIL, "secret1")
        await guard.settle()
        assert guard.view.decision == GuardDecision.DENIED
        assert "manage_users" in guard.view.reason
        guard.unmount()


@pytest.mark.asyncio
async def test_repeated_mount_and_unmount_leave_no_listeners(provider, server, store):
    async with running_session(provider, server, store) as session:
        before = session.listener_count
        guard = RouteGuard(session)
        for _ in range(5):
            guard.mount()
            guard.mount()
            assert session.listener_count == before + 1
            guard.unmount()
            guard.unmount()
            assert session.listener_count == before
        assert guard.mounted is False


@pytest.mark.asyncio
async def test_context_guard_uses_configured_login_path(tmp_config_root, provider, server):
    cfg = ConsoleConfig(web=WebConfig(login_path="/auth/login"))
    async with ConsoleContext(cfg, fs=tmp_config_root, provider=provider, http=server.client()) as ctx:
        guard = ctx.guard(required_capability="dashboard")
        view = guard.mount()
        assert view.decision == GuardDecision.REDIRECT
        assert view.redirect_to == "/auth/login"
        guard.unmount()
