"""
Keyed table of live sessions.

Each logical subscription (a pod watch, a log tail) is identified by a hashable
key and owns exactly one running task. Starting a session under a key that is
already taken cancels the previous occupant, waits for it to exit, and only then
spawns the replacement, so two producers never emit under one key at the same time.

The table lock only guards dict mutation; cancellation waits and task creation
happen outside it.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

SessionKey = Hashable


class SessionHandle:
    """Cancel handle for one running session task."""

    def __init__(self, key: SessionKey, task: asyncio.Task[Any], *, cluster_id: str | None = None, event_name: str = "") -> None:
        self.key = key
        self.task = task
        self.cluster_id = cluster_id
        self.event_name = event_name
        self.started_at = time.time()
        # Checked by the session's reader thread
        self.stop_event = threading.Event()

    @property
    def done(self) -> bool:
        return self.task.done()

    def signal_cancel(self) -> None:
        self.stop_event.set()
        self.task.cancel()

    async def wait_stopped(self) -> None:
        """Wait until the task has exited, without propagating its outcome."""
        if self.task.done():
            return
        await asyncio.wait({self.task})

    def __repr__(self) -> str:
        return f"SessionHandle(key={self.key!r}, done={self.done})"


HandleFactory = Callable[[], SessionHandle]


class SessionTable:
    """Single source of truth for which subscriptions are currently running."""

    def __init__(self) -> None:
        self._handles: dict[SessionKey, SessionHandle] = {}
        self._lock = threading.Lock()

    async def replace(self, key: SessionKey, factory: HandleFactory) -> SessionHandle:
        """Cancel whatever runs under ``key``, wait for it to exit, then start ``factory()``.

        Loops until the slot is observed empty, which covers a concurrent
        ``replace`` for the same key filling it while this one was waiting.
        """
        while True:
            with self._lock:
                previous = self._handles.pop(key, None)
                if previous is not None:
                    previous.signal_cancel()
            if previous is None:
                break
            logger.debug("sessions.cancelling_previous", key=key)
            await previous.wait_stopped()

        # No await between the empty check above and the insert below.
        handle = factory()
        with self._lock:
            self._handles[key] = handle
        logger.debug("sessions.started", key=key)
        return handle

    def remove(self, key: SessionKey, expected: SessionHandle | None = None) -> SessionHandle | None:
        """Pop the handle under ``key``.

        With ``expected`` set, the entry is removed only if it is that very handle,
        so a finishing session cannot evict its replacement.
        """
        with self._lock:
            current = self._handles.get(key)
            if current is None:
                return None
            if expected is not None and current is not expected:
                return None
            return self._handles.pop(key)

    async def stop(self, key: SessionKey) -> bool:
        handle = self.remove(key)
        if handle is None:
            return False
        handle.signal_cancel()
        await handle.wait_stopped()
        return True

    async def stop_where(self, predicate: Callable[[SessionHandle], bool]) -> int:
        with self._lock:
            keys = [key for key, handle in self._handles.items() if predicate(handle)]
            handles = [self._handles.pop(key) for key in keys]
        for handle in handles:
            handle.signal_cancel()
        for handle in handles:
            await handle.wait_stopped()
        return len(handles)

    async def stop_all(self) -> int:
        return await self.stop_where(lambda _handle: True)

    def get(self, key: SessionKey) -> SessionHandle | None:
        with self._lock:
            return self._handles.get(key)

    def snapshot(self) -> list[SessionHandle]:
        with self._lock:
            return list(self._handles.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._handles


def spawn_session(
    table: SessionTable,
    key: SessionKey,
    run: Callable[[SessionHandle], Awaitable[None]],
    *,
    cluster_id: str | None = None,
    event_name: str = "",
    on_exit: Callable[[], None] | None = None,
) -> HandleFactory:
    """Build a factory whose task runs ``run(handle)``.

    When the task finishes, fails, or is cancelled (even before its first step),
    ``on_exit`` runs and the handle deregisters itself, in that order.
    """

    def factory() -> SessionHandle:
        holder: dict[str, SessionHandle] = {}

        async def _runner() -> None:
            await run(holder["handle"])

        task = asyncio.create_task(_runner(), name=f"session:{key}")
        handle = SessionHandle(key, task, cluster_id=cluster_id, event_name=event_name)
        holder["handle"] = handle

        def _finished(_task: asyncio.Task[Any]) -> None:
            try:
                if on_exit is not None:
                    on_exit()
            finally:
                table.remove(key, expected=handle)

        task.add_done_callback(_finished)
        return handle

    return factory
