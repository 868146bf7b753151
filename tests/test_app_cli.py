from __future__ import annotations

import argparse
import json

import pytest

import app
from erpconsole.core.config import ConsoleConfig
from erpconsole.core.context import ConsoleContext


@pytest.fixture(autouse=True)
def _no_env_key(monkeypatch):
    monkeypatch.delenv("ERP_IDENTITY_API_KEY", raising=False)
    monkeypatch.delenv("ERP_API_BASE_URL", raising=False)


def test_roles_listing(capsys):
    assert app.main(["roles"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 5
    assert lines[0].startswith("5 | super_admin")


def test_roles_with_capability(capsys):
    assert app.main(["roles", "--capability", "manage_users"]) == 0
    assert capsys.readouterr().out.strip() == "super_admin, admin"
    assert app.main(["roles", "--capability", "launch_rockets"]) == 1


def test_config_masks_api_key(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("ERP_IDENTITY_API_KEY", "AIza-secret")
    assert app.main(["--root", str(tmp_path), "config"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["identity"]["api_key"] == "***"
    assert (tmp_path / "config" / "console.json").exists()


def test_missing_api_key_is_a_config_error(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(app.getpass, "getpass", lambda prompt="": "secret1")
    assert app.main(["--root", str(tmp_path), "sign-in", "--email", "a@example.com"]) == 2
    assert "api_key" in capsys.readouterr().err


def test_parse_updates():
    assert app._parse_updates(["displayName=Rahim", "branchId=b=2"]) == {"displayName": "Rahim", "branchId": "b=2"}
    with pytest.raises(ValueError):
        app._parse_updates(["novalue"])


@pytest.mark.asyncio
async def test_sign_in_and_whoami_commands(tmp_config_root, provider, server, capsys):
    async with ConsoleContext(ConsoleConfig(), fs=tmp_config_root, provider=provider, http=server.client()) as ctx:
        assert await app.cmd_whoami(ctx, argparse.Namespace()) == 1
        capsys.readouterr()

        code = await app.cmd_sign_in(ctx, argparse.Namespace(email="ayesha@example.com", password="secret1", branch=None))
        out = capsys.readouterr().out
        assert code == 0
        assert out.startswith("Signed in.")
        described = json.loads(out.split("\n", 1)[1])
        assert described["role_name"] == "Account"
        assert "manage_accounts" in described["capabilities"]

        assert await app.cmd_update_profile(ctx, argparse.Namespace(set=["displayName=Ayesha K"])) == 0
        assert server.profiles["ayesha@example.com"]["displayName"] == "Ayesha K"
        assert await app.cmd_update_profile(ctx, argparse.Namespace(set=["oops"])) == 2

        assert await app.cmd_sign_out(ctx, argparse.Namespace()) == 0
        assert ctx.session.is_authenticated is False


@pytest.mark.asyncio
async def test_sign_in_failure_goes_to_stderr(tmp_config_root, provider, server, capsys):
    async with ConsoleContext(ConsoleConfig(), fs=tmp_config_root, provider=provider, http=server.client()) as ctx:
        code = await app.cmd_sign_in(ctx, argparse.Namespace(email="ayesha@example.com", password="bad", branch=None))
        captured = capsys.readouterr()
        assert code == 1
        assert "Invalid email or password." in captured.err
