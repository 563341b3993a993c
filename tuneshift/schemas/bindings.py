"""
Binding Schemas

A binding is a user-authored rule: an event predicate plus the pitch/speed
action (and optional chat message) to run when the predicate matches.
Bindings are owned by the UI; the core only reads them.
"""

from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field
from typing_extensions import Annotated

BindingEventType = Literal["channel_points", "bits", "gift_sub", "sub", "follow"]
SubTier = Literal["tier1", "tier2", "tier3"]

TIER_CODES = {"tier1": "1000", "tier2": "2000", "tier3": "3000"}
TIER_NAMES = {code: name for name, code in TIER_CODES.items()}


class RangeConfig(BaseModel):
    """Exact-or-range predicate over a numeric amount (bits, gifted subs)."""

    mode: Literal["exact", "range"] = "exact"
    exact: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None

    def contains(self, value: float) -> bool:
        if self.mode == "exact":
            return self.exact is not None and value == self.exact
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


class ChannelPointsConfig(BaseModel):
    type: Literal["channel_points"] = "channel_points"
    reward_id: Optional[str] = None
    reward_title: Optional[str] = None


class BitsConfig(BaseModel):
    type: Literal["bits"] = "bits"
    range: RangeConfig = Field(default_factory=RangeConfig)


class GiftSubConfig(BaseModel):
    type: Literal["gift_sub"] = "gift_sub"
    range: RangeConfig = Field(default_factory=RangeConfig)


class SubConfig(BaseModel):
    type: Literal["sub"] = "sub"
    tiers: List[SubTier] = Field(default_factory=list, description="Empty matches any tier")


class FollowConfig(BaseModel):
    type: Literal["follow"] = "follow"


BindingConfig = Annotated[
    Union[ChannelPointsConfig, BitsConfig, GiftSubConfig, SubConfig, FollowConfig],
    Field(discriminator="type"),
]


class BindingAction(BaseModel):
    type: Literal["pitch", "speed"]
    amount: float = 0
    op: Literal["add", "set"] = "add"


class Binding(BaseModel):
    """A user rule mapping an event predicate to effect operations."""

    id: str
    label: str = ""
    enabled: bool = True
    event_type: BindingEventType
    config: BindingConfig
    action: BindingAction
    delay_seconds: Optional[float] = Field(default=None, ge=0)
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    chat_template: str = ""


class ChannelPointReward(BaseModel):
    id: str
    title: str
    cost: Optional[int] = None
