"""
EventSub Event Schemas

Pydantic models for the Twitch EventSub payloads this service subscribes to,
and the normalized event shape used past the normalize boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from typing_extensions import Annotated

CHANNEL_POINTS_REDEMPTION = "channel.channel_points_custom_reward_redemption.add"
CHANNEL_CHEER = "channel.cheer"
CHANNEL_SUBSCRIBE = "channel.subscribe"
CHANNEL_FOLLOW = "channel.follow"

SUPPORTED_SUBSCRIPTION_TYPES = (
	CHANNEL_POINTS_REDEMPTION,
	CHANNEL_CHEER,
	CHANNEL_SUBSCRIBE,
	CHANNEL_FOLLOW,
)


class RedemptionReward(BaseModel):
	id: str = Field(min_length=1)
	title: str = ""
	cost: Optional[int] = None
	prompt: Optional[str] = None


class ChannelPointsRedemptionPayload(BaseModel):
	"""Event when a viewer redeems a custom channel points reward."""

	id: Optional[str] = None
	broadcaster_user_id: Optional[str] = None
	user_id: Optional[str] = None
	user_login: Optional[str] = None
	user_name: Optional[str] = None
	user_input: Optional[str] = None
	reward: RedemptionReward
	redeemed_at: Optional[datetime] = None


class CheerPayload(BaseModel):
	"""Event when a viewer cheers bits. Anonymous cheers carry no user fields."""

	is_anonymous: bool = False
	broadcaster_user_id: Optional[str] = None
	user_id: Optional[str] = None
	user_login: Optional[str] = None
	user_name: Optional[str] = None
	message: Optional[str] = None
	bits: int = Field(gt=0)


class SubscribePayload(BaseModel):
	"""Event when a user subscribes to a channel."""

	broadcaster_user_id: Optional[str] = None
	user_id: Optional[str] = None
	user_login: Optional[str] = None
	user_name: Optional[str] = None
	tier: Literal["1000", "2000", "3000"] = Field(description="Subscription tier: '1000', '2000', or '3000'")
	is_gift: bool = False
	total: Optional[int] = Field(default=None, description="Gift count (synthetic test events only)")


class FollowPayload(BaseModel):
	"""Event when a user follows a channel (channel.follow v2)."""

	broadcaster_user_id: Optional[str] = None
	user_id: Optional[str] = None
	user_login: Optional[str] = None
	user_name: Optional[str] = None
	followed_at: Optional[datetime] = None


class EventSubSession(BaseModel):
	"""EventSub WebSocket session metadata."""

	id: str = Field(description="Session ID from session_welcome")
	status: str = Field(description="Session status: 'connected', 'reconnecting', ...")
	keepalive_timeout_seconds: Optional[int] = None
	reconnect_url: Optional[str] = None
	connected_at: Optional[datetime] = None


class HelixTransport(BaseModel):
	method: str = "websocket"
	session_id: Optional[str] = None


class HelixSubscription(BaseModel):
	"""Server-side subscription as returned by GET /eventsub/subscriptions."""

	id: str
	status: str = ""
	type: str
	version: str
	condition: Dict[str, str] = Field(default_factory=dict)
	transport: HelixTransport = Field(default_factory=HelixTransport)


class SubscriptionDefinition(BaseModel):
	type: str
	version: str
	condition: Dict[str, str]


# Normalized events: a closed tagged union, keyed by kind


class ChannelPointsEvent(BaseModel):
	kind: Literal["channel_points"] = "channel_points"
	user_display: str = ""
	reward_id: str
	reward_title: str = ""
	reward_cost: Optional[int] = None


class CheerEvent(BaseModel):
	kind: Literal["cheer"] = "cheer"
	user_display: str = ""
	bits: int


class SubEvent(BaseModel):
	kind: Literal["sub"] = "sub"
	user_display: str = ""
	tier: Literal["1000", "2000", "3000"]
	is_gift: bool = False
	gift_count: Optional[int] = None


class FollowEvent(BaseModel):
	kind: Literal["follow"] = "follow"
	user_display: str = ""


NormalizedEvent = Annotated[
	Union[ChannelPointsEvent, CheerEvent, SubEvent, FollowEvent],
	Field(discriminator="kind"),
]

EventKind = Literal["channel_points", "cheer", "sub", "follow"]
LogEventType = Literal["channel_points", "cheer", "sub", "gift_sub", "follow"]
