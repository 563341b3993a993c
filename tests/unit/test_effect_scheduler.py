"""Unit tests for EffectScheduler."""
import asyncio
import pytest

from tuneshift.effects.scheduler import (
    EFFECT_COMMAND_TOPIC,
    EFFECT_TOTALS_TOPIC,
    EffectScheduler,
    apply_timer_key,
    revert_timer_key,
)
from tuneshift.errors import ChatSendFailed
from tuneshift.memory.activity_log import ActivityLog
from tuneshift.rules.matcher import derive_operations
from tuneshift.schemas.bindings import Binding
from tuneshift.schemas.events import CheerEvent, FollowEvent


def make_binding(amount=3, op="add", kind="pitch", delay=0, duration=None, template="", binding_id="b1"):
    return Binding.model_validate(
        {
            "id": binding_id,
            "label": f"binding {binding_id}",
            "event_type": "bits",
            "config": {"type": "bits", "range": {"mode": "range", "min": 1}},
            "action": {"type": kind, "amount": amount, "op": op},
            "delay_seconds": delay,
            "duration_seconds": duration,
            "chat_template": template,
        }
    )


class ChatRecorder:
    def __init__(self, error=None):
        self.messages = []
        self.error = error

    async def __call__(self, message):
        if self.error:
            raise self.error
        self.messages.append(message)
        return f"msg-{len(self.messages)}"


@pytest.fixture
def activity_log(store, publisher, timers, test_settings):
    return ActivityLog(store, publisher, timers, config=test_settings)


@pytest.fixture
def chat():
    return ChatRecorder()


@pytest.fixture
async def scheduler(activity_log, publisher, timers, chat):
    scheduler = EffectScheduler(activity_log, publisher, timers, chat_sender=chat)
    yield scheduler
    await scheduler.close()
    timers.cancel_all()


def queue(scheduler, binding, event=None, source="real"):
    event = event or CheerEvent(user_display="Viewer", bits=50)
    return scheduler.queue(binding, event, derive_operations(binding), source)


@pytest.mark.unit
@pytest.mark.asyncio
class TestLifecycle:
    """queued -> applied -> reverted."""

    async def test_timed_effect_applies_then_reverts(self, scheduler, activity_log, publisher, eventually):
        totals = []
        publisher.subscribe(EFFECT_TOTALS_TOPIC, lambda topic, data: totals.append(data["semitone_offset"]))

        effect = queue(scheduler, make_binding(amount=3, delay=0, duration=0.05))
        entry = activity_log.entries[0]

        assert entry.status == "queued"
        assert entry.delay_sec == 0
        assert entry.duration_sec == 0.05
        assert scheduler.totals.semitone_offset == 0

        await eventually(lambda: entry.status == "applied")
        assert scheduler.totals.semitone_offset == 3

        await eventually(lambda: entry.status == "reverted")
        assert scheduler.totals.semitone_offset == 0
        assert effect.id not in scheduler.active
        assert totals == [3, 0]

    async def test_delay_postpones_apply(self, scheduler, activity_log, timers):
        effect = queue(scheduler, make_binding(delay=10))

        await asyncio.sleep(0.01)

        assert activity_log.entries[0].status == "queued"
        assert timers.is_pending(apply_timer_key(effect.id))

    async def test_null_duration_never_reverts(self, scheduler, activity_log, timers, eventually):
        effect = queue(scheduler, make_binding(duration=None))

        await eventually(lambda: activity_log.entries[0].status == "applied")

        assert not timers.is_pending(revert_timer_key(effect.id))
        assert effect.id in scheduler.active

    async def test_apply_and_revert_commands_published(self, scheduler, publisher, eventually):
        commands = []
        publisher.subscribe(EFFECT_COMMAND_TOPIC, lambda topic, data: commands.append(data))

        effect = queue(scheduler, make_binding(duration=0.01, template="hi {user}"))
        await eventually(lambda: len(commands) == 2)

        assert [c["action"] for c in commands] == ["apply", "revert"]
        assert commands[0]["effect_id"] == effect.id
        assert commands[0]["operations"] == [{"kind": "pitch", "op": "add", "semitones": 3.0}]
        assert commands[0]["source"] == "real"

    async def test_revert_before_apply_publishes_no_command(self, scheduler, publisher, activity_log):
        commands = []
        publisher.subscribe(EFFECT_COMMAND_TOPIC, lambda topic, data: commands.append(data))
        effect = queue(scheduler, make_binding(delay=10))

        assert scheduler.revert(effect.id, "reverted", note="test") is True

        assert commands == []
        assert activity_log.entries[0].status == "reverted"
        assert activity_log.entries[0].note == "test"
        assert scheduler.revert(effect.id) is False


@pytest.mark.unit
@pytest.mark.asyncio
class TestTotals:
    """Aggregate totals across concurrently applied effects."""

    async def test_adds_sum_and_revert_subtracts(self, scheduler):
        first = queue(scheduler, make_binding(amount=2, binding_id="a"))
        second = queue(scheduler, make_binding(amount=2, binding_id="b"))
        scheduler.apply(first.id)
        scheduler.apply(second.id)

        assert scheduler.totals.semitone_offset == 4

        scheduler.revert(first.id)
        assert scheduler.totals.semitone_offset == 2

    async def test_last_applied_set_wins_plus_adds(self, scheduler):
        set_low = queue(scheduler, make_binding(amount=-5, op="set", binding_id="a"))
        add = queue(scheduler, make_binding(amount=1, binding_id="b"))
        set_high = queue(scheduler, make_binding(amount=7, op="set", binding_id="c"))
        scheduler.apply(set_high.id)
        scheduler.apply(add.id)
        scheduler.apply(set_low.id)

        assert scheduler.totals.semitone_offset == -4

        scheduler.revert(set_low.id)
        assert scheduler.totals.semitone_offset == 8

    async def test_axes_are_independent(self, scheduler):
        pitch = queue(scheduler, make_binding(amount=3, binding_id="a"))
        speed = queue(scheduler, make_binding(amount=25, kind="speed", binding_id="b"))
        scheduler.apply(pitch.id)
        scheduler.apply(speed.id)

        assert scheduler.totals.semitone_offset == 3
        assert scheduler.totals.speed_percent == 25

    async def test_apply_is_idempotent(self, scheduler):
        effect = queue(scheduler, make_binding(amount=2))

        assert scheduler.apply(effect.id) is True
        assert scheduler.apply(effect.id) is False
        assert scheduler.totals.semitone_offset == 2

    async def test_clear_all_reverts_everything(self, scheduler, activity_log, timers):
        for name in ("a", "b", "c"):
            effect = queue(scheduler, make_binding(amount=1, duration=60, binding_id=name))
            scheduler.apply(effect.id)

        assert scheduler.clear_all("reverted", note="Token expired") == 3

        assert scheduler.active == {}
        assert scheduler.totals.semitone_offset == 0
        assert all(entry.status == "reverted" for entry in activity_log.entries)
        assert all(entry.note == "Token expired" for entry in activity_log.entries)
        assert not any(key.startswith("effect:") for key in timers.keys())


@pytest.mark.unit
@pytest.mark.asyncio
class TestChat:
    """Chat operations are rendered at apply time and patched into the log."""

    async def test_chat_sent_and_patched(self, scheduler, activity_log, chat, eventually):
        effect = queue(scheduler, make_binding(template="Thanks {user} for {bits} bits"))
        scheduler.apply(effect.id)
        action = activity_log.entries[0].actions[1]

        await eventually(lambda: action.sent is True)

        assert chat.messages == ["Thanks Viewer for 50 bits"]
        assert action.message == "Thanks Viewer for 50 bits"
        assert action.message_id == "msg-1"
        assert activity_log.entries[0].status == "applied"

    async def test_chat_failure_does_not_change_status(self, activity_log, publisher, timers, eventually):
        failing = ChatRecorder(error=ChatSendFailed(403, {"message": "forbidden"}))
        scheduler = EffectScheduler(activity_log, publisher, timers, chat_sender=failing)
        effect = queue(scheduler, make_binding(template="hi"))
        scheduler.apply(effect.id)
        action = activity_log.entries[0].actions[1]

        await eventually(lambda: action.sent is False)

        assert "forbidden" in action.error
        assert activity_log.entries[0].status == "applied"
        await scheduler.close()

    async def test_empty_render_is_not_sent(self, scheduler, activity_log, chat):
        effect = queue(scheduler, make_binding(template="{user}"), event=FollowEvent(user_display=""))
        scheduler.apply(effect.id)
        action = activity_log.entries[0].actions[1]

        assert action.sent is False
        assert action.error == "Empty message"
        assert chat.messages == []

    async def test_no_sender_marks_unavailable(self, activity_log, publisher, timers):
        scheduler = EffectScheduler(activity_log, publisher, timers)
        effect = queue(scheduler, make_binding(template="hi"))
        scheduler.apply(effect.id)

        assert activity_log.entries[0].actions[1].error == "Chat unavailable"
        await scheduler.close()

    async def test_chat_only_binding(self, scheduler, activity_log, chat, eventually):
        effect = queue(scheduler, make_binding(amount=0, template="hello"))

        assert [op.kind for op in effect.operations] == ["chat"]
        await eventually(lambda: chat.messages == ["hello"])
        assert scheduler.totals.semitone_offset == 0

    async def test_chat_failure_that_clears_effects_keeps_its_error(self, activity_log, publisher, timers, eventually):
        scheduler = None

        async def expiring_sender(message):
            # A 401 expires the credential, which clears effects from inside this send
            scheduler.clear_all("reverted", note="Unauthorized")
            await asyncio.sleep(0)
            raise ChatSendFailed(401, {"message": "invalid oauth token"})

        scheduler = EffectScheduler(activity_log, publisher, timers, chat_sender=expiring_sender)
        effect = queue(scheduler, make_binding(template="hi", duration=60))
        scheduler.apply(effect.id)
        entry = activity_log.entries[0]
        action = entry.actions[1]

        await eventually(lambda: action.sent is False)

        assert "invalid oauth token" in action.error
        assert entry.status == "reverted"
        assert entry.note == "Unauthorized"
        await scheduler.close()
