from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "secret",
        "authorization",
        "api_key",
        "key",
        "otp",
        "session_info",
        "sessioninfo",
    }
)
# erp_token, id_token, refreshToken, ...
SENSITIVE_SUFFIXES = ("token", "password", "secret")


def is_sensitive_key(key: Any) -> bool:
    k = str(key).lower().replace("-", "_")
    return k in SENSITIVE_KEYS or k.endswith(SENSITIVE_SUFFIXES)


def redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: (REDACTED if is_sensitive_key(k) else redact(v)) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact(x) for x in obj]
    return obj


@dataclass(frozen=True)
class EventLogger:
    """
    Append-only JSONL audit trail for authentication outcomes.

    One line per event: {"ts", "trace_id", "event", "details"}; details are
    redacted before they are written.
    """

    path: str

    def log(self, trace_id: str, event_type: str, details: Optional[Dict[str, Any]] = None) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        entry = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "trace_id": trace_id,
            "event": event_type,
            "details": redact(details or {}),
        }
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def tail(self, n: int = 50) -> List[Dict[str, Any]]:
        """Last `n` readable entries; a torn last line is skipped."""
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            lines = f.readlines()[-max(1, int(n)):]
        out: List[Dict[str, Any]] = []
        for line in lines:
            try:
                out.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return out
