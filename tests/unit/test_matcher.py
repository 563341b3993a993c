"""Unit tests for binding matching and synthetic test payloads."""
import pytest

from tuneshift.rules.matcher import derive_operations, log_event_type, match, matches
from tuneshift.rules.normalizer import normalize
from tuneshift.rules.synthetic import build_test_payload
from tuneshift.schemas.bindings import Binding, ChannelPointReward
from tuneshift.schemas.events import (
    CHANNEL_CHEER,
    CHANNEL_POINTS_REDEMPTION,
    CHANNEL_SUBSCRIBE,
    ChannelPointsEvent,
    CheerEvent,
    FollowEvent,
    SubEvent,
)
from tuneshift.schemas.messages import TestEventRequest
from tuneshift.schemas.state import ChatOperation, PitchOperation, SpeedOperation


def make_binding(event_type, config=None, **overrides):
    values = {
        "id": f"b-{event_type}",
        "label": event_type,
        "event_type": event_type,
        "config": dict({"type": event_type}, **(config or {})),
        "action": {"type": "pitch", "amount": 2, "op": "add"},
    }
    values.update(overrides)
    return Binding.model_validate(values)


@pytest.mark.unit
class TestMatches:
    """Test per-kind predicates."""

    def test_bits_range(self):
        inside = make_binding("bits", {"range": {"mode": "range", "min": 10, "max": 100}})
        above = make_binding("bits", {"range": {"mode": "range", "min": 200, "max": None}})
        event = CheerEvent(user_display="Viewer", bits=50)

        assert matches(inside, event) is True
        assert matches(above, event) is False

    def test_bits_exact(self):
        binding = make_binding("bits", {"range": {"mode": "exact", "exact": 100}})

        assert matches(binding, CheerEvent(bits=100)) is True
        assert matches(binding, CheerEvent(bits=101)) is False

    def test_exact_without_value_never_matches(self):
        binding = make_binding("bits", {"range": {"mode": "exact"}})

        assert matches(binding, CheerEvent(bits=1)) is False

    def test_channel_points_reward_id(self):
        binding = make_binding("channel_points", {"reward_id": "r1"})

        assert matches(binding, ChannelPointsEvent(reward_id="r1")) is True
        assert matches(binding, ChannelPointsEvent(reward_id="r2")) is False

    def test_sub_tiers(self):
        any_tier = make_binding("sub", {"tiers": []})
        tier2 = make_binding("sub", {"tiers": ["tier2", "tier3"]})

        assert matches(any_tier, SubEvent(tier="1000")) is True
        assert matches(tier2, SubEvent(tier="1000")) is False
        assert matches(tier2, SubEvent(tier="3000")) is True

    def test_gift_sub_does_not_match_sub_binding(self):
        sub = make_binding("sub", {"tiers": []})
        gift = make_binding("gift_sub", {"range": {"mode": "range", "min": 5}})
        event = SubEvent(tier="1000", is_gift=True, gift_count=5)

        assert matches(sub, event) is False
        assert matches(gift, event) is True
        assert matches(gift, SubEvent(tier="1000", is_gift=True, gift_count=4)) is False

    def test_follow_and_disabled(self):
        assert matches(make_binding("follow"), FollowEvent()) is True
        assert matches(make_binding("follow", enabled=False), FollowEvent()) is False

    def test_log_event_type(self):
        assert log_event_type(SubEvent(tier="1000", is_gift=True, gift_count=1)) == "gift_sub"
        assert log_event_type(CheerEvent(bits=1)) == "cheer"


@pytest.mark.unit
class TestDeriveOperations:
    def test_pitch_add_with_chat(self):
        binding = make_binding("follow", chat_template="hi {user}")

        assert derive_operations(binding) == [
            PitchOperation(op="add", semitones=2),
            ChatOperation(template="hi {user}"),
        ]

    def test_speed_set(self):
        binding = make_binding("follow", action={"type": "speed", "amount": 25, "op": "set"})

        assert derive_operations(binding) == [SpeedOperation(op="set", percent=25)]

    def test_zero_add_dropped_zero_set_kept(self):
        add_zero = make_binding("follow", action={"type": "pitch", "amount": 0, "op": "add"})
        set_zero = make_binding("follow", action={"type": "pitch", "amount": 0, "op": "set"})

        assert derive_operations(add_zero) == []
        assert derive_operations(set_zero) == [PitchOperation(op="set", semitones=0)]

    def test_blank_template_ignored(self):
        binding = make_binding("follow", chat_template="   ")

        assert derive_operations(binding) == [PitchOperation(op="add", semitones=2)]


@pytest.mark.unit
class TestMatch:
    def test_each_matching_binding_gets_a_request(self):
        bindings = [
            make_binding("bits", {"range": {"mode": "range", "min": 10, "max": 100}}, id="low"),
            make_binding("bits", {"range": {"mode": "range", "min": 1}}, id="any"),
            make_binding("bits", {"range": {"mode": "range", "min": 200}}, id="high"),
            make_binding("follow", id="follow"),
        ]

        outcome = match(CheerEvent(bits=50), bindings)

        assert [b.id for b in outcome.matched] == ["low", "any"]
        assert [r.binding.id for r in outcome.requests] == ["low", "any"]

    def test_matched_without_operations_has_no_request(self):
        binding = make_binding("follow", action={"type": "pitch", "amount": 0, "op": "add"})

        outcome = match(FollowEvent(), [binding])

        assert len(outcome.matched) == 1
        assert outcome.requests == []


@pytest.mark.unit
class TestSyntheticPayloads:
    """Synthetic payloads normalize exactly like real notifications."""

    def test_bits_payload(self):
        request = TestEventRequest(type="bits", username="viewer123", amount=100)

        subscription_type, event = build_test_payload(request, broadcaster_id="1001")

        assert subscription_type == CHANNEL_CHEER
        assert normalize(subscription_type, event) == CheerEvent(user_display="viewer123", bits=100)

    def test_default_username(self):
        request = TestEventRequest(type="follow", username="   ")

        _, event = build_test_payload(request)

        assert event["user_name"] == "TestUser"

    def test_channel_points_uses_cached_reward(self):
        request = TestEventRequest(type="channel_points", reward_id="r1")
        rewards = [ChannelPointReward(id="r1", title="Chipmunk", cost=500)]

        subscription_type, event = build_test_payload(request, rewards=rewards)

        assert subscription_type == CHANNEL_POINTS_REDEMPTION
        normalized = normalize(subscription_type, event)
        assert normalized.reward_title == "Chipmunk"
        assert normalized.reward_cost == 500

    def test_channel_points_without_reward_is_dropped(self):
        request = TestEventRequest(type="channel_points")

        subscription_type, event = build_test_payload(request)

        assert normalize(subscription_type, event) is None

    def test_gift_sub_count(self):
        request = TestEventRequest(type="gift_sub", amount=3, sub_tier="tier2")

        subscription_type, event = build_test_payload(request)

        assert subscription_type == CHANNEL_SUBSCRIBE
        normalized = normalize(subscription_type, event)
        assert normalized.is_gift is True
        assert normalized.gift_count == 3
        assert normalized.tier == "2000"

    def test_bits_without_amount_is_dropped(self):
        request = TestEventRequest(type="bits")

        subscription_type, event = build_test_payload(request)

        assert normalize(subscription_type, event) is None
