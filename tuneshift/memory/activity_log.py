"""
Activity Log

Bounded record of every routed event and its outcome. Newest entries first,
capped at EVENT_LOG_LIMIT; the oldest entry is evicted when full. Writes are
coalesced over a short throttle window and skipped entirely when the
serialized log has not changed since the last write.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, List, Optional

from tuneshift.config import Settings, settings as default_settings
from tuneshift.core.publisher import Publisher
from tuneshift.memory.store import KeyValueStore
from tuneshift.schemas.events import ChannelPointsEvent, CheerEvent, NormalizedEvent, SubEvent
from tuneshift.schemas.state import ActivityLogEntry, EffectSource, RewardRef
from tuneshift.utils.logging import get_logger
from tuneshift.utils.timers import TimerTable

logger = get_logger(__name__, category="activity")

EVENT_LOG_STORAGE_KEY = "eventLog"
EVENT_LOG_UPDATED_AT_KEY = "eventLogUpdatedAt"
EVENT_LOG_TOPIC = "event_log"
FLUSH_TIMER_KEY = "event-log-flush"


def new_entry_id() -> str:
    return uuid.uuid4().hex


def entry_for_event(event: NormalizedEvent, source: EffectSource, event_type: str, **fields: Any) -> ActivityLogEntry:
    """Log entry carrying the kind-specific detail of `event`."""
    detail: dict = {"user_display": event.user_display or None}
    if isinstance(event, ChannelPointsEvent):
        detail["reward"] = RewardRef(id=event.reward_id, title=event.reward_title, cost=event.reward_cost)
    elif isinstance(event, CheerEvent):
        detail["bits_amount"] = event.bits
    elif isinstance(event, SubEvent):
        detail["sub_tier"] = event.tier
        detail["gift_amount"] = event.gift_count
    detail.update(fields)
    return ActivityLogEntry(id=new_entry_id(), source=source, event_type=event_type, **detail)


class ActivityLog:
    """Append-only ring buffer of ActivityLogEntry, persisted with throttling."""

    def __init__(
        self,
        store: KeyValueStore,
        publisher: Publisher,
        timers: TimerTable,
        config: Settings = default_settings,
    ):
        self.store = store
        self.publisher = publisher
        self.timers = timers
        self.limit = config.event_log_limit
        self.flush_delay = config.event_log_flush_seconds
        self.entries: List[ActivityLogEntry] = []
        self._last_serialized: Optional[str] = None
        self.write_count = 0

    async def load(self) -> None:
        raw = await self.store.get(EVENT_LOG_STORAGE_KEY, [])
        entries: List[ActivityLogEntry] = []
        for item in raw or []:
            try:
                entries.append(ActivityLogEntry.model_validate(item))
            except ValueError as e:
                logger.warning(f"Dropping unreadable activity log entry: {e}")
        self.entries = entries[: self.limit]
        self._last_serialized = self._serialize()
        logger.info(f"Loaded {len(self.entries)} activity log entries")

    def get(self, entry_id: str) -> Optional[ActivityLogEntry]:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def append(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        self.entries.insert(0, entry)
        if len(self.entries) > self.limit:
            del self.entries[self.limit:]
        logger.debug(
            f"Activity log append: id={entry.id}, type={entry.event_type}, status={entry.status}"
        )
        self._changed()
        return entry

    def update(self, entry_id: str, **changes: Any) -> Optional[ActivityLogEntry]:
        """Patch fields of an entry still in the buffer; evicted entries are ignored."""
        entry = self.get(entry_id)
        if entry is None:
            return None
        for field, value in changes.items():
            setattr(entry, field, value)
        self._changed()
        return entry

    def patch_action(self, entry_id: str, index: int, **changes: Any) -> Optional[ActivityLogEntry]:
        entry = self.get(entry_id)
        if entry is None or index >= len(entry.actions):
            return None
        action = entry.actions[index]
        for field, value in changes.items():
            setattr(action, field, value)
        self._changed()
        return entry

    def snapshot(self) -> List[dict]:
        return [entry.model_dump(mode="json") for entry in self.entries]

    def _serialize(self) -> str:
        return json.dumps(self.snapshot(), sort_keys=True)

    def _changed(self) -> None:
        self.publisher.publish(EVENT_LOG_TOPIC, self.snapshot())
        if not self.timers.is_pending(FLUSH_TIMER_KEY):
            self.timers.start(FLUSH_TIMER_KEY, self.flush_delay, self.flush)

    async def flush(self) -> bool:
        """Persist the log if it changed since the last write. Returns True if written."""
        self.timers.cancel(FLUSH_TIMER_KEY)
        serialized = self._serialize()
        if serialized == self._last_serialized:
            return False
        self._last_serialized = serialized
        await self.store.set(EVENT_LOG_STORAGE_KEY, json.loads(serialized))
        await self.store.set(EVENT_LOG_UPDATED_AT_KEY, time.time())
        self.write_count += 1
        return True
