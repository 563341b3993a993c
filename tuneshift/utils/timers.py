"""
Cancelable timers keyed by purpose.

Every piece of scheduled work (reconnect backoff, keepalive watchdog,
subscription-sync deadline, effect apply/revert, reward refresh, log flush)
runs through a TimerTable so that sign-out can cancel all of it in one call.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

from tuneshift.utils.logging import get_logger

logger = get_logger(__name__, category="system")


class CancelableTimer:
    """One-shot loop timer. Cancel is a no-op once fired or already canceled."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Any],
        name: str = "",
        on_task: Optional[Callable[[asyncio.Task], None]] = None,
    ):
        self.delay = max(0.0, float(delay))
        self.callback = callback
        self.name = name
        self.fired = False
        self.cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._on_task = on_task

    @property
    def pending(self) -> bool:
        return self._handle is not None and not self.fired and not self.cancelled

    def start(self) -> "CancelableTimer":
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)
        return self

    def cancel(self) -> None:
        if self.fired or self.cancelled:
            return
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        if self.cancelled:
            return
        self.fired = True
        self._handle = None
        try:
            result = self.callback()
        except Exception as e:
            logger.error(f"Timer {self.name or '<anonymous>'} callback failed: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            if self._on_task:
                self._on_task(task)


class TimerTable:
    """Timers held in a table keyed by purpose (e.g. "keepalive", "effect:<id>:apply")."""

    def __init__(self):
        self._timers: Dict[str, CancelableTimer] = {}
        self._tasks: Set[asyncio.Task] = set()

    def start(self, key: str, delay: float, callback: Callable[[], Any]) -> CancelableTimer:
        """Arm a timer under `key`, replacing (and canceling) any timer already there."""
        self.cancel(key)
        timer = CancelableTimer(delay, callback, name=key, on_task=self._track_task)

        def fire() -> Any:
            # Drop the entry before running so the callback may re-arm the same key
            if self._timers.get(key) is timer:
                del self._timers[key]
            return callback()

        timer.callback = fire
        self._timers[key] = timer
        return timer.start()

    def cancel(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def cancel_prefix(self, prefix: str) -> int:
        keys = [key for key in self._timers if key.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def cancel_all(self) -> int:
        return self.cancel_prefix("")

    def is_pending(self, key: str) -> bool:
        timer = self._timers.get(key)
        return timer is not None and timer.pending

    def keys(self) -> List[str]:
        return list(self._timers)

    def __len__(self) -> int:
        return len(self._timers)

    async def drain(self) -> None:
        """Wait for coroutine callbacks that already fired."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _track_task(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Timer task failed: {exc}", exc_info=exc)
