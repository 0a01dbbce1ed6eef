"""Timer abstraction used by the lifecycle poller."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

TickCallback = Callable[[], Awaitable[None]]


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: TickCallback) -> Any:
        """Run `callback` after `delay` seconds; returns a handle for `cancel`."""
        ...

    def cancel(self, handle: Any) -> None: ...


class AsyncioScheduler:
    """Scheduler backed by the running event loop's timers."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def call_later(self, delay: float, callback: TickCallback) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), self._spawn, callback)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        # In-flight ticks are not cancelled; the poller discards their results.
        handle.cancel()

    def _spawn(self, callback: TickCallback) -> None:
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for ticks that already fired."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
