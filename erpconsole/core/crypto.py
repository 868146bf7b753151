from __future__ import annotations

import base64
import json
import os
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


class StoreKeyError(RuntimeError):
    pass


class SecureStoreCorruptError(RuntimeError):
    pass


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


def generate_store_key_bytes() -> bytes:
    # AES-256 key
    return secrets.token_bytes(32)


def write_store_key(path: str, key_bytes: bytes) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(key_bytes)
    best_effort_restrict_permissions(path)


def read_store_key(path: str) -> bytes:
    if not os.path.exists(path):
        raise StoreKeyError(f"Store key not found at {path!r}")
    with open(path, "rb") as f:
        b = f.read()
    if len(b) != 32:
        raise StoreKeyError("Store key must be 32 bytes (AES-256).")
    return b


def best_effort_restrict_permissions(path: str) -> None:
    """
    Best-effort permissions tightening.
    On Windows this is limited; on POSIX it sets 0o600.
    """
    try:
        if os.name != "nt":
            os.chmod(path, 0o600)
    except OSError:
        return


def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: bytes = b"") -> Dict[str, Any]:
    aes = AESGCM(key)
    nonce = secrets.token_bytes(12)
    ct = aes.encrypt(nonce, plaintext, aad or None)
    return {"v": 1, "nonce": _b64e(nonce), "ciphertext": _b64e(ct)}


def aesgcm_decrypt(key: bytes, blob: Dict[str, Any], aad: bytes = b"") -> bytes:
    if blob.get("v") != 1:
        raise ValueError("Unsupported encrypted blob version.")
    aes = AESGCM(key)
    nonce = _b64d(blob["nonce"])
    ct = _b64d(blob["ciphertext"])
    return aes.decrypt(nonce, ct, aad or None)


@dataclass
class SecureStore:
    """
    Encrypted JSON key/value store backed by AES-GCM and a local key file.

    - The key file is created on first write when `create_key` is set.
    - Every write replaces the whole file atomically (tmp + os.replace).
    - File format: JSON with AES-GCM nonce+ciphertext.
    """

    key_path: str
    store_path: str
    aad: bytes = b"erpconsole.secure_store.v1"
    create_key: bool = True

    def _get_key(self, *, for_write: bool) -> bytes:
        if for_write and self.create_key and not os.path.exists(self.key_path):
            write_store_key(self.key_path, generate_store_key_bytes())
        return read_store_key(self.key_path)

    def _load_plain(self) -> Dict[str, Any]:
        if not os.path.exists(self.store_path):
            return {}
        try:
            with open(self.store_path, "r", encoding="utf-8") as f:
                blob = json.load(f)
            pt = aesgcm_decrypt(self._get_key(for_write=False), blob, aad=self.aad)
        except (json.JSONDecodeError, KeyError, ValueError, InvalidTag) as e:
            raise SecureStoreCorruptError(f"Secure store unreadable: {type(e).__name__}") from e
        data = json.loads(pt.decode("utf-8"))
        return data if isinstance(data, dict) else {}

    def _save_plain(self, data: Dict[str, Any]) -> None:
        os.makedirs(os.path.dirname(self.store_path) or ".", exist_ok=True)
        key = self._get_key(for_write=True)
        pt = json.dumps(data, ensure_ascii=False, sort_keys=True).encode("utf-8")
        blob = aesgcm_encrypt(key, pt, aad=self.aad)
        tmp = self.store_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(blob, f, indent=2, ensure_ascii=False, sort_keys=True)
            f.write("\n")
        os.replace(tmp, self.store_path)
        best_effort_restrict_permissions(self.store_path)

    def is_unlocked(self) -> bool:
        try:
            _ = self._get_key(for_write=False)
            return True
        except StoreKeyError:
            return False

    def get(self, key: str) -> Optional[Any]:
        if not os.path.exists(self.store_path):
            return None
        return self._load_plain().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._load_plain()
        data[key] = value
        self._save_plain(data)

    def delete(self, key: str) -> None:
        if not os.path.exists(self.store_path):
            return
        data = self._load_plain()
        if key in data:
            del data[key]
            self._save_plain(data)

    def replace(self, key: str, value: Any) -> None:
        """Clear the slot, then write the new value. Never merges with the old value."""
        self.delete(key)
        self.set(key, value)

    def reset(self) -> None:
        """Discard an unreadable store file."""
        try:
            os.remove(self.store_path)
        except FileNotFoundError:
            return
