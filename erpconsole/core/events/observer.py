from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")

Handler = Callable[[T], Union[None, Awaitable[None]]]


class Subscription(Generic[T]):
    """
    One subscriber's delivery lane.

    Values are queued and handed to the handler one at a time by a dedicated
    task: the next value is not delivered until the handler (sync or async)
    has returned. Must be created while an event loop is running.
    """

    def __init__(self, owner: "Observable[T]", handler: Handler, name: str):
        self._owner = owner
        self.handler = handler
        self.name = name
        self._active = True
        self._queue: "asyncio.Queue[T]" = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=name)

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, value: T) -> bool:
        if not self._active:
            return False
        self._queue.put_nowait(value)
        return True

    async def join(self) -> None:
        """Wait until every value delivered so far has been handled."""
        if not self._active:
            return
        await self._queue.join()

    def unsubscribe(self) -> bool:
        """Idempotent; returns True only for the call that actually detached."""
        if not self._active:
            return False
        self._active = False
        self._owner._remove(self)
        # undelivered values are dropped; release join() waiters
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
        if self._task is not asyncio.current_task():
            self._task.cancel()
        return True

    async def _run(self) -> None:
        while self._active:
            value = await self._queue.get()
            try:
                await self._owner._dispatch(self, value)
            finally:
                self._queue.task_done()


class Observable(Generic[T]):
    """
    In-process observer with per-subscriber ordered delivery.

    - emit is non-blocking
    - ordering guarantee: each subscriber handles values in emit order
    - handler failures are isolated (logged, counted) and never reach emit()
    """

    def __init__(self, name: str = "observable", *, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(f"erpconsole.events.{name}")
        self._subs: List[Subscription[T]] = []
        self._seq = 0
        self.emitted_total = 0
        self.handler_errors_total = 0

    def subscribe(self, handler: Handler) -> Subscription[T]:
        if not callable(handler):
            raise ValueError("handler must be callable")
        self._seq += 1
        sub: Subscription[T] = Subscription(self, handler, name=f"{self.name}-sub-{self._seq}")
        self._subs.append(sub)
        return sub

    def emit(self, value: T) -> int:
        self.emitted_total += 1
        delivered = 0
        for sub in list(self._subs):
            if sub.deliver(value):
                delivered += 1
        return delivered

    @property
    def listener_count(self) -> int:
        return len(self._subs)

    async def join(self) -> None:
        await asyncio.gather(*(s.join() for s in list(self._subs)))

    def close(self) -> None:
        for sub in list(self._subs):
            sub.unsubscribe()

    # ---- internals ----
    def _remove(self, sub: Subscription[T]) -> None:
        self._subs = [s for s in self._subs if s is not sub]

    async def _dispatch(self, sub: Subscription[T], value: Any) -> None:
        try:
            out = sub.handler(value)
            if inspect.isawaitable(out):
                await out
        except Exception:  # noqa: BLE001
            self.handler_errors_total += 1
            self.logger.exception("%s: handler %s failed", self.name, sub.name)
