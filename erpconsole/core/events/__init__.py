"""
In-order async observer + redacted JSONL audit logger.
"""

from erpconsole.core.events.audit import EventLogger, redact
from erpconsole.core.events.observer import Observable, Subscription

__all__ = [
    "EventLogger",
    "redact",
    "Observable",
    "Subscription",
]
