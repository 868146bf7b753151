from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class ReadResult:
    ok: bool
    data: Dict[str, Any]
    # "missing" | "not_object" | "corrupt_json:<detail>" | "io:<detail>"
    error: Optional[str] = None

    @property
    def is_corrupt(self) -> bool:
        return bool(self.error) and (self.error.startswith("corrupt_json") or self.error == "not_object")


def _ts() -> str:
    return time.strftime("%Y%m%d_%H%M%S", time.gmtime())


def read_json_file(path: str) -> ReadResult:
    if not os.path.exists(path):
        return ReadResult(ok=False, data={}, error="missing")
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except json.JSONDecodeError as e:
        return ReadResult(ok=False, data={}, error=f"corrupt_json:{e.msg}")
    except (OSError, UnicodeDecodeError) as e:
        return ReadResult(ok=False, data={}, error=f"io:{type(e).__name__}")
    if not isinstance(obj, dict):
        return ReadResult(ok=False, data={}, error="not_object")
    return ReadResult(ok=True, data=obj)


def _prune(backups_dir: str, prefix: str, keep: int) -> None:
    items = [os.path.join(backups_dir, f) for f in os.listdir(backups_dir) if f.startswith(prefix)]
    items = [p for p in items if os.path.isfile(p)]
    items.sort(key=os.path.getmtime, reverse=True)
    for p in items[keep:]:
        try:
            os.remove(p)
        except OSError:
            continue


def backup_file(path: str, backups_dir: str, *, reason: str, max_backups: int = 10) -> Optional[str]:
    if not os.path.exists(path):
        return None
    os.makedirs(backups_dir, exist_ok=True)
    base = os.path.basename(path)
    out = os.path.join(backups_dir, f"{base}.{_ts()}.{reason}.json")
    shutil.copy2(path, out)
    _prune(backups_dir, f"{base}.", max_backups)
    return out


def atomic_write_json(path: str, data: Dict[str, Any], backups_dir: str, *, max_backups: int = 10) -> None:
    """Backs up the current file, then replaces it via tmp file + os.replace."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    backup_file(path, backups_dir, reason="prewrite", max_backups=max_backups)
    fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, sort_keys=True)
            f.write("\n")
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def recover_from_corrupt(path: str, backups_dir: str, last_known_good_dir: str, *, max_backups: int = 10) -> Tuple[Dict[str, Any], bool]:
    """
    Moves the unreadable file to backups/<name>.<ts>.corrupt.json and restores
    last_known_good/<name> in its place when that copy is readable.
    Returns (data, recovered); data is {} when nothing could be restored.
    """
    os.makedirs(backups_dir, exist_ok=True)
    if os.path.exists(path):
        shutil.move(path, os.path.join(backups_dir, f"{os.path.basename(path)}.{_ts()}.corrupt.json"))
    rr = read_json_file(os.path.join(last_known_good_dir, os.path.basename(path)))
    if not rr.ok:
        return {}, False
    atomic_write_json(path, rr.data, backups_dir, max_backups=max_backups)
    return rr.data, True


def snapshot_last_known_good(path: str, last_known_good_dir: str) -> str:
    os.makedirs(last_known_good_dir, exist_ok=True)
    dst = os.path.join(last_known_good_dir, os.path.basename(path))
    shutil.copy2(path, dst)
    return dst
