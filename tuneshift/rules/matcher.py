"""
Rule Matcher

Matches a normalized event against the user's bindings and derives the
operations each matching binding contributes:

    channel_points  reward id equality
    bits            exact-or-range over the cheered bits
    gift_sub        exact-or-range over the gift count
    sub             non-gift subs; empty tier list matches any tier
    follow          always, when enabled

A match whose derived operation list is empty (zero "add" amount and no
chat template) is reported as matched but produces no schedule request.
"""

from dataclasses import dataclass, field
from typing import Iterable, List

from tuneshift.schemas.bindings import (
    TIER_NAMES,
    Binding,
    BindingEventType,
    BitsConfig,
    ChannelPointsConfig,
    GiftSubConfig,
    SubConfig,
)
from tuneshift.schemas.events import (
    ChannelPointsEvent,
    CheerEvent,
    FollowEvent,
    LogEventType,
    NormalizedEvent,
    SubEvent,
)
from tuneshift.schemas.state import ChatOperation, EffectOperation, PitchOperation, SpeedOperation
from tuneshift.utils.logging import get_logger

logger = get_logger(__name__, category="rules")


@dataclass
class ScheduleRequest:
    binding: Binding
    operations: List[EffectOperation]


@dataclass
class MatchOutcome:
    matched: List[Binding] = field(default_factory=list)
    requests: List[ScheduleRequest] = field(default_factory=list)


def binding_event_type(event: NormalizedEvent) -> BindingEventType:
    if isinstance(event, CheerEvent):
        return "bits"
    if isinstance(event, SubEvent):
        return "gift_sub" if event.is_gift else "sub"
    return event.kind


def log_event_type(event: NormalizedEvent) -> LogEventType:
    if isinstance(event, SubEvent) and event.is_gift:
        return "gift_sub"
    return event.kind


def matches(binding: Binding, event: NormalizedEvent) -> bool:
    if not binding.enabled or binding.event_type != binding_event_type(event):
        return False

    config = binding.config
    if isinstance(event, ChannelPointsEvent):
        return isinstance(config, ChannelPointsConfig) and config.reward_id == event.reward_id
    if isinstance(event, CheerEvent):
        return isinstance(config, BitsConfig) and config.range.contains(event.bits)
    if isinstance(event, SubEvent):
        if event.is_gift:
            return isinstance(config, GiftSubConfig) and config.range.contains(event.gift_count or 1)
        if not isinstance(config, SubConfig):
            return False
        return not config.tiers or TIER_NAMES[event.tier] in config.tiers
    if isinstance(event, FollowEvent):
        return True
    return False


def derive_operations(binding: Binding) -> List[EffectOperation]:
    operations: List[EffectOperation] = []
    action = binding.action
    # A "set" to zero is meaningful (reset the axis); an "add" of zero is not
    if action.op == "set" or action.amount != 0:
        if action.type == "pitch":
            operations.append(PitchOperation(op=action.op, semitones=action.amount))
        else:
            operations.append(SpeedOperation(op=action.op, percent=action.amount))
    if binding.chat_template.strip():
        operations.append(ChatOperation(template=binding.chat_template))
    return operations


def match(event: NormalizedEvent, bindings: Iterable[Binding]) -> MatchOutcome:
    outcome = MatchOutcome()
    for binding in bindings:
        if not matches(binding, event):
            continue
        outcome.matched.append(binding)
        operations = derive_operations(binding)
        if operations:
            outcome.requests.append(ScheduleRequest(binding=binding, operations=operations))
        else:
            logger.debug(f"Binding {binding.id} matched but has no effective operations")
    logger.info(
        f"Matched {event.kind} event: {len(outcome.matched)} binding(s), "
        f"{len(outcome.requests)} to schedule"
    )
    return outcome
