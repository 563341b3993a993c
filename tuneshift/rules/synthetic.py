"""
Synthetic EventSub payloads for test events.

Test events go through the same normalize/match/schedule path as real
notifications, so they are shaped like the real `payload.event` objects.
"""

from typing import List, Optional, Tuple

from tuneshift.schemas.bindings import TIER_CODES, ChannelPointReward
from tuneshift.schemas.events import (
    CHANNEL_CHEER,
    CHANNEL_FOLLOW,
    CHANNEL_POINTS_REDEMPTION,
    CHANNEL_SUBSCRIBE,
)
from tuneshift.schemas.messages import TestEventRequest

DEFAULT_TEST_USERNAME = "TestUser"

TEST_EVENT_SUBSCRIPTION_MAP = {
    "channel_points": CHANNEL_POINTS_REDEMPTION,
    "bits": CHANNEL_CHEER,
    "gift_sub": CHANNEL_SUBSCRIBE,
    "sub": CHANNEL_SUBSCRIBE,
    "follow": CHANNEL_FOLLOW,
}


def build_test_payload(
    request: TestEventRequest,
    broadcaster_id: Optional[str] = None,
    rewards: Optional[List[ChannelPointReward]] = None,
) -> Tuple[str, dict]:
    """Return (subscription_type, event payload) for a test request."""
    username = request.username.strip() or DEFAULT_TEST_USERNAME
    event = {
        "broadcaster_user_id": broadcaster_id,
        "user_id": "test-user",
        "user_login": username.lower(),
        "user_name": username,
    }

    if request.type == "channel_points":
        reward_id = request.reward_id or ""
        reward = next((item for item in rewards or [] if item.id == reward_id), None)
        event["reward"] = {
            "id": reward_id,
            "title": reward.title if reward else "",
            "cost": reward.cost if reward else None,
        }
    elif request.type == "bits":
        event["is_anonymous"] = False
        event["bits"] = int(request.amount or 0)
    elif request.type == "gift_sub":
        event["tier"] = TIER_CODES[request.sub_tier]
        event["is_gift"] = True
        event["total"] = max(1, int(request.amount or 1))
    elif request.type == "sub":
        event["tier"] = TIER_CODES[request.sub_tier]
        event["is_gift"] = False

    return TEST_EVENT_SUBSCRIPTION_MAP[request.type], event
