"""Cancellable scheduled work grouped by owner key."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, Hashable, Optional, Set, Union

logger = logging.getLogger(__name__)

Scheduled = Union[asyncio.Task, asyncio.TimerHandle]


class TaskScheduler:
    """
    Tracks tasks and timers under a key (e.g. a conversation id) so a whole
    group can be cancelled at once.

    Finished tasks remove themselves from the registry. Exceptions escaping a
    task are logged rather than left unretrieved.

    Usage:
        scheduler = TaskScheduler()
        scheduler.spawn("conv-1", poll_loop())
        scheduler.call_later("conv-1", 7.0, watchdog)
        scheduler.cancel("conv-1")
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._scheduled: Dict[Hashable, Set[Scheduled]] = {}

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def spawn(self, key: Hashable, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task:
        """Run ``coro`` as a task owned by ``key``."""
        task = self.loop.create_task(coro, name=name)
        self._scheduled.setdefault(key, set()).add(task)
        task.add_done_callback(lambda t: self._on_task_done(key, t))
        return task

    def call_later(self, key: Hashable, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        """Invoke ``callback(*args)`` after ``delay`` seconds unless ``key`` is cancelled first."""
        handle: Optional[asyncio.TimerHandle] = None

        def _fire() -> None:
            self._discard(key, handle)
            callback(*args)

        handle = self.loop.call_later(delay, _fire)
        self._scheduled.setdefault(key, set()).add(handle)
        return handle

    def cancel(self, key: Hashable) -> int:
        """Cancel everything owned by ``key``; returns how many items were cancelled."""
        items = self._scheduled.pop(key, set())
        current = _current_task()
        cancelled = 0
        for item in items:
            # Never cancel the task doing the cancelling; it unwinds on its own.
            if item is current:
                continue
            item.cancel()
            cancelled += 1
        if cancelled:
            logger.debug("Cancelled %d scheduled item(s) for %r", cancelled, key)
        return cancelled

    def cancel_all(self) -> int:
        return sum(self.cancel(key) for key in list(self._scheduled))

    def pending(self, key: Hashable) -> int:
        return len(self._scheduled.get(key, ()))

    def _discard(self, key: Hashable, item: Optional[Scheduled]) -> None:
        group = self._scheduled.get(key)
        if group is None or item is None:
            return
        group.discard(item)
        if not group:
            del self._scheduled[key]

    def _on_task_done(self, key: Hashable, task: asyncio.Task) -> None:
        self._discard(key, task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled task %s failed: %s", task.get_name(), exc, exc_info=exc)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
