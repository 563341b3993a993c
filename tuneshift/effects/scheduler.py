"""
Effect Scheduler

Turns schedule requests into timed, revertible effects:

    queue()   -> "queued" log entry, apply timer armed for delay seconds
    apply()   -> apply command published, totals recomputed, revert timer
                 armed for duration seconds (never, if duration is None)
    revert()  -> revert command published (if applied), totals recomputed,
                 log entry moved to its terminal status

Aggregate totals per axis are the sum of every applied "add" operation plus
the value of the most recently applied "set" operation, if any. With two
concurrent "set" effects on one axis the later apply wins.

Chat operations are sent at apply time on their own task; the outcome is
patched into the log entry and never changes the effect's status.
"""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx

from tuneshift.core.publisher import Publisher
from tuneshift.errors import ChatSendFailed, TuneshiftError
from tuneshift.memory.activity_log import ActivityLog, entry_for_event
from tuneshift.rules.matcher import log_event_type
from tuneshift.rules.templates import render_template
from tuneshift.schemas.bindings import Binding
from tuneshift.schemas.events import NormalizedEvent
from tuneshift.schemas.state import (
    BindingRef,
    ChatOperation,
    EffectOperation,
    EffectSource,
    EffectTotals,
    PitchOperation,
    SpeedOperation,
)
from tuneshift.utils.logging import get_logger
from tuneshift.utils.sanitize import sanitize_error
from tuneshift.utils.timers import TimerTable

logger = get_logger(__name__, category="effects")

EFFECT_TOTALS_TOPIC = "effect_totals"
EFFECT_COMMAND_TOPIC = "effect_command"

ChatSender = Callable[[str], Awaitable[str]]


def apply_timer_key(effect_id: str) -> str:
    return f"effect:{effect_id}:apply"


def revert_timer_key(effect_id: str) -> str:
    return f"effect:{effect_id}:revert"


@dataclass
class ScheduledEffect:
    id: str
    binding_id: str
    binding_label: str
    operations: List[EffectOperation]
    delay_seconds: float
    duration_seconds: Optional[float]
    event: NormalizedEvent
    source: EffectSource
    log_entry_id: str
    applied: bool = False
    applied_at: Optional[float] = None
    apply_order: int = 0

    @property
    def audio_operations(self) -> List[EffectOperation]:
        return [op for op in self.operations if not isinstance(op, ChatOperation)]


def compute_totals(effects: List[ScheduledEffect]) -> EffectTotals:
    pitch_set: Optional[float] = None
    speed_set: Optional[float] = None
    pitch_add = 0.0
    speed_add = 0.0
    applied = sorted((effect for effect in effects if effect.applied), key=lambda e: e.apply_order)
    for effect in applied:
        for op in effect.operations:
            if isinstance(op, PitchOperation):
                if op.op == "set":
                    pitch_set = op.semitones
                else:
                    pitch_add += op.semitones
            elif isinstance(op, SpeedOperation):
                if op.op == "set":
                    speed_set = op.percent
                else:
                    speed_add += op.percent
    return EffectTotals(
        semitone_offset=(pitch_set or 0) + pitch_add,
        speed_percent=(speed_set or 0) + speed_add,
    )


class EffectScheduler:
    def __init__(
        self,
        log: ActivityLog,
        publisher: Publisher,
        timers: TimerTable,
        chat_sender: Optional[ChatSender] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.log = log
        self.publisher = publisher
        self.timers = timers
        self.chat_sender = chat_sender
        self.clock = clock
        self.active: Dict[str, ScheduledEffect] = {}
        self.totals = EffectTotals()
        self._apply_counter = itertools.count(1)
        self._chat_tasks: Set[asyncio.Task] = set()

    def queue(
        self,
        binding: Binding,
        event: NormalizedEvent,
        operations: List[EffectOperation],
        source: EffectSource,
    ) -> ScheduledEffect:
        delay = binding.delay_seconds or 0
        duration = binding.duration_seconds
        operations = [op.model_copy() for op in operations]

        entry = entry_for_event(
            event,
            source,
            log_event_type(event),
            matched_bindings=[BindingRef(id=binding.id, label=binding.label)],
            actions=[op.model_copy() for op in operations],
            delay_sec=delay,
            duration_sec=duration,
            status="queued",
        )
        self.log.append(entry)

        effect = ScheduledEffect(
            id=uuid.uuid4().hex,
            binding_id=binding.id,
            binding_label=binding.label,
            operations=operations,
            delay_seconds=delay,
            duration_seconds=duration,
            event=event,
            source=source,
            log_entry_id=entry.id,
        )
        self.active[effect.id] = effect
        # Zero delay still goes through the loop so queue() never applies inline
        self.timers.start(apply_timer_key(effect.id), delay, lambda: self.apply(effect.id))
        logger.info(
            f"Queued effect {effect.id} for binding '{binding.label or binding.id}' "
            f"(delay={delay}s, duration={duration}s, source={source})"
        )
        return effect

    def apply(self, effect_id: str) -> bool:
        effect = self.active.get(effect_id)
        if effect is None or effect.applied:
            return False

        self.timers.cancel(apply_timer_key(effect_id))
        effect.applied = True
        effect.applied_at = self.clock()
        effect.apply_order = next(self._apply_counter)

        self._publish_command("apply", effect)
        self.log.update(effect.log_entry_id, status="applied")
        self._recompute_totals()

        if effect.duration_seconds is not None:
            self.timers.start(
                revert_timer_key(effect_id),
                effect.duration_seconds,
                lambda: self.revert(effect_id, "reverted"),
            )

        for index, op in enumerate(effect.operations):
            if isinstance(op, ChatOperation):
                self._dispatch_chat(effect, index, op)

        logger.info(f"Applied effect {effect_id}")
        return True

    def revert(self, effect_id: str, status: str = "reverted", note: Optional[str] = None) -> bool:
        effect = self.active.pop(effect_id, None)
        if effect is None:
            return False

        self.timers.cancel(apply_timer_key(effect_id))
        self.timers.cancel(revert_timer_key(effect_id))

        if effect.applied:
            self._publish_command("revert", effect)
        changes: Dict[str, Any] = {"status": status}
        if note:
            changes["note"] = note
        self.log.update(effect.log_entry_id, **changes)
        self._recompute_totals()
        logger.info(f"Reverted effect {effect_id} ({status})")
        return True

    def clear_all(self, status: str = "reverted", note: Optional[str] = None) -> int:
        """Revert every active effect and cancel their timers and chat sends."""
        count = 0
        for effect_id in list(self.active):
            if self.revert(effect_id, status, note):
                count += 1
        current = asyncio.current_task()
        for task in list(self._chat_tasks):
            # A chat send whose 401 expired the credential is the caller here
            if task is not current:
                task.cancel()
        if count:
            logger.info(f"Cleared {count} active effect(s)")
        return count

    async def close(self) -> None:
        self.clear_all(note="shutdown")
        if self._chat_tasks:
            await asyncio.gather(*list(self._chat_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _publish_command(self, action: str, effect: ScheduledEffect) -> None:
        self.publisher.publish(
            EFFECT_COMMAND_TOPIC,
            {
                "action": action,
                "effect_id": effect.id,
                "binding_id": effect.binding_id,
                "operations": [op.model_dump() for op in effect.audio_operations],
                "delay_sec": effect.delay_seconds,
                "duration_sec": effect.duration_seconds,
                "source": effect.source,
            },
        )

    def _recompute_totals(self) -> None:
        totals = compute_totals(list(self.active.values()))
        if totals == self.totals:
            return
        self.totals = totals
        self.publisher.publish(EFFECT_TOTALS_TOPIC, totals.model_dump())

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def _dispatch_chat(self, effect: ScheduledEffect, index: int, op: ChatOperation) -> None:
        message = render_template(op.template, effect.event)
        op.message = message
        self.log.patch_action(effect.log_entry_id, index, message=message)
        if not message:
            self.log.patch_action(effect.log_entry_id, index, sent=False, error="Empty message")
            return
        if self.chat_sender is None:
            self.log.patch_action(effect.log_entry_id, index, sent=False, error="Chat unavailable")
            return

        task = asyncio.ensure_future(self._send_chat(effect.log_entry_id, index, message))
        self._chat_tasks.add(task)
        task.add_done_callback(self._chat_tasks.discard)

    async def _send_chat(self, log_entry_id: str, index: int, message: str) -> None:
        try:
            message_id = await self.chat_sender(message)
        except ChatSendFailed as e:
            logger.warning(f"Chat send failed: {sanitize_error(e)}")
            self.log.patch_action(log_entry_id, index, sent=False, error=sanitize_error(e))
            return
        except (TuneshiftError, httpx.HTTPError) as e:
            logger.warning(f"Chat send failed: {e}")
            self.log.patch_action(log_entry_id, index, sent=False, error=sanitize_error(e))
            return
        except asyncio.CancelledError:
            self.log.patch_action(log_entry_id, index, sent=False, error="Cancelled")
            raise

        logger.info(f"Chat message sent ({message_id})")
        self.log.patch_action(log_entry_id, index, sent=True, message_id=message_id or None)
