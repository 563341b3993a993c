"""
Event Normalizer

The boundary between untyped EventSub payloads and the rest of the core.
normalize() validates the raw event for its subscription type and returns
the canonical NormalizedEvent, or None when identifying fields are missing
(no reward id, non-positive bits, unknown tier). Dropped events are not
errors; they are logged at debug level only.
"""

from typing import Any, Optional

from pydantic import ValidationError

from tuneshift.schemas.events import (
    CHANNEL_CHEER,
    CHANNEL_FOLLOW,
    CHANNEL_POINTS_REDEMPTION,
    CHANNEL_SUBSCRIBE,
    ChannelPointsEvent,
    ChannelPointsRedemptionPayload,
    CheerEvent,
    CheerPayload,
    FollowEvent,
    FollowPayload,
    NormalizedEvent,
    SubEvent,
    SubscribePayload,
)
from tuneshift.utils.logging import get_logger

logger = get_logger(__name__, category="rules")

ANONYMOUS_DISPLAY = "Anonymous"


def _display_name(payload: Any) -> str:
    return payload.user_name or payload.user_login or ""


def normalize(subscription_type: str, payload: Optional[dict]) -> Optional[NormalizedEvent]:
    if not isinstance(payload, dict):
        return None

    try:
        if subscription_type == CHANNEL_POINTS_REDEMPTION:
            redemption = ChannelPointsRedemptionPayload.model_validate(payload)
            return ChannelPointsEvent(
                user_display=_display_name(redemption),
                reward_id=redemption.reward.id,
                reward_title=redemption.reward.title,
                reward_cost=redemption.reward.cost,
            )

        if subscription_type == CHANNEL_CHEER:
            cheer = CheerPayload.model_validate(payload)
            display = ANONYMOUS_DISPLAY if cheer.is_anonymous else _display_name(cheer)
            return CheerEvent(user_display=display, bits=cheer.bits)

        if subscription_type == CHANNEL_SUBSCRIBE:
            sub = SubscribePayload.model_validate(payload)
            gift_count = None
            if sub.is_gift:
                gift_count = sub.total if sub.total and sub.total > 0 else 1
            return SubEvent(
                user_display=_display_name(sub),
                tier=sub.tier,
                is_gift=sub.is_gift,
                gift_count=gift_count,
            )

        if subscription_type == CHANNEL_FOLLOW:
            follow = FollowPayload.model_validate(payload)
            return FollowEvent(user_display=_display_name(follow))

    except ValidationError as e:
        logger.debug(f"Dropping {subscription_type} payload: {e.error_count()} invalid field(s)")
        return None

    logger.debug(f"Dropping unsupported subscription type: {subscription_type}")
    return None
