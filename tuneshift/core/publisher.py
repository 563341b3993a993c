"""
Publisher - observer fan-out for the downstream consumers

Topics:
    state           controller state (bindings, rewards, login)
    diagnostics     DiagnosticsSnapshot
    event_log       activity log entries, newest first
    effect_totals   aggregate {semitone_offset, speed_percent}
    effect_command  per-effect apply/revert commands for the audio engine

Publishing never blocks the caller: async handlers run as tasks.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

from tuneshift.utils.logging import get_logger

logger = get_logger(__name__, category="system")

ALL_TOPICS = "*"


class Publisher:
    """Simple in-process pub/sub; handlers receive (topic, data)."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[str, Any], Any]]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.last: Dict[str, Any] = {}

    def subscribe(self, topic: str, handler: Callable[[str, Any], Any]) -> Callable[[], None]:
        """Register a handler for `topic` (or "*" for every topic). Returns an unsubscribe function."""
        self._subscribers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, topic: str, data: Any) -> None:
        self.last[topic] = data
        handlers = self._subscribers.get(topic, []) + self._subscribers.get(ALL_TOPICS, [])
        for handler in list(handlers):
            try:
                result = handler(topic, data)
            except Exception as e:
                logger.error(f"Publisher handler failed on topic {topic}: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._safe_await(result, topic))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def latest(self, topic: str) -> Optional[Any]:
        return self.last.get(topic)

    async def _safe_await(self, awaitable: Any, topic: str) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error(f"Async publisher handler failed on topic {topic}: {e}", exc_info=True)

    async def wait_all(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
