from __future__ import annotations

import os

import pytest

from erpconsole.core.config import ConfigFsPaths
from erpconsole.core.crypto import SecureStore

from tests.helpers.fakes import FakeBackend, FakeIdentityProvider


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated root with config/ and secure/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    os.makedirs(os.path.join(str(tmp_path), "secure"), exist_ok=True)
    return fs


@pytest.fixture
def store(tmp_path):
    return SecureStore(key_path=str(tmp_path / "secure" / "store.key"), store_path=str(tmp_path / "secure" / "store.enc"))


@pytest.fixture
def provider():
    p = FakeIdentityProvider()
    p.add_account("ayesha@example.com", display_name="Ayesha")
    return p


@pytest.fixture
def server():
    s = FakeBackend()
    s.add_user("ayesha@example.com", role="account", displayName="Ayesha")
    return s
