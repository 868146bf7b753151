from __future__ import annotations

import json

import pytest

from erpconsole.core.crypto import (
    SecureStore,
    SecureStoreCorruptError,
    StoreKeyError,
    aesgcm_decrypt,
    aesgcm_encrypt,
    generate_store_key_bytes,
    write_store_key,
)


def test_aesgcm_round_trip():
    key = generate_store_key_bytes()
    blob = aesgcm_encrypt(key, b"erp token", aad=b"test")
    assert aesgcm_decrypt(key, blob, aad=b"test") == b"erp token"


def test_store_creates_key_on_first_write(tmp_path):
    store = SecureStore(key_path=str(tmp_path / "k.key"), store_path=str(tmp_path / "s.enc"))
    assert store.get("erp_token") is None
    assert store.is_unlocked() is False
    store.set("erp_token", "abc")
    assert store.is_unlocked() is True
    assert store.get("erp_token") == "abc"


def test_store_without_key_creation_refuses_write(tmp_path):
    store = SecureStore(key_path=str(tmp_path / "missing.key"), store_path=str(tmp_path / "s.enc"), create_key=False)
    with pytest.raises(StoreKeyError):
        store.set("x", "y")


def test_ciphertext_does_not_contain_value(tmp_path):
    store = SecureStore(key_path=str(tmp_path / "k.key"), store_path=str(tmp_path / "s.enc"))
    store.set("erp_token", "very-secret-token")
    raw = (tmp_path / "s.enc").read_text(encoding="utf-8")
    assert "very-secret-token" not in raw
    assert json.loads(raw)["v"] == 1


def test_replace_and_delete(tmp_path):
    store = SecureStore(key_path=str(tmp_path / "k.key"), store_path=str(tmp_path / "s.enc"))
    store.set("erp_token", "one")
    store.set("other", "keep")
    store.replace("erp_token", "two")
    assert store.get("erp_token") == "two"
    store.delete("erp_token")
    store.delete("erp_token")
    assert store.get("erp_token") is None
    assert store.get("other") == "keep"


def test_wrong_key_reads_as_corrupt(tmp_path):
    store = SecureStore(key_path=str(tmp_path / "k.key"), store_path=str(tmp_path / "s.enc"))
    store.set("erp_token", "abc")
    write_store_key(str(tmp_path / "k.key"), generate_store_key_bytes())
    with pytest.raises(SecureStoreCorruptError):
        store.get("erp_token")
    store.reset()
    assert store.get("erp_token") is None


def test_garbage_file_is_corrupt(tmp_path):
    (tmp_path / "s.enc").write_text("{not json", encoding="utf-8")
    store = SecureStore(key_path=str(tmp_path / "k.key"), store_path=str(tmp_path / "s.enc"))
    with pytest.raises(SecureStoreCorruptError):
        store.get("erp_token")
