"""
State Schemas

Credential, diagnostics, effect and activity-log models shared by the core
and published to observers.
"""

from __future__ import annotations

import time
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from typing_extensions import Annotated

from tuneshift.schemas.bindings import Binding, ChannelPointReward, SubTier
from tuneshift.schemas.events import LogEventType

EffectSource = Literal["real", "test"]
LogStatus = Literal["queued", "applied", "reverted", "skipped", "error"]


class Credential(BaseModel):
    """OAuth user token plus the identity it belongs to."""

    access_token: str
    token_type: str = "bearer"
    scopes: List[str] = Field(default_factory=list)
    client_id: str = ""
    user_id: str
    display_name: str = ""
    issued_at: float = Field(description="Unix time (seconds) the lifetime is counted from")
    expires_in: int = Field(description="Lifetime in seconds")

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in

    def remaining_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, self.expires_at - now)

    def is_usable(self, padding_seconds: float, now: Optional[float] = None) -> bool:
        return self.remaining_seconds(now) > padding_seconds


class TokenValidation(BaseModel):
    """Response of GET /oauth2/validate."""

    client_id: str = ""
    login: Optional[str] = None
    scopes: Optional[List[str]] = None
    user_id: Optional[str] = None
    expires_in: int = 0


class DiagnosticsSnapshot(BaseModel):
    websocket_connected: bool = False
    session_id: Optional[str] = None
    subscriptions: int = 0
    last_keepalive_at: Optional[float] = None
    last_notification_at: Optional[float] = None
    last_notification_type: Optional[str] = None
    last_error: Optional[str] = None
    token_type: Optional[str] = None
    token_client_id: Optional[str] = None
    token_expires_in: Optional[int] = None


class PitchOperation(BaseModel):
    kind: Literal["pitch"] = "pitch"
    op: Literal["add", "set"] = "add"
    semitones: float


class SpeedOperation(BaseModel):
    kind: Literal["speed"] = "speed"
    op: Literal["add", "set"] = "add"
    percent: float


class ChatOperation(BaseModel):
    kind: Literal["chat"] = "chat"
    template: str
    message: Optional[str] = None
    sent: Optional[bool] = None
    message_id: Optional[str] = None
    error: Optional[str] = None


EffectOperation = Annotated[
    Union[PitchOperation, SpeedOperation, ChatOperation],
    Field(discriminator="kind"),
]


class EffectTotals(BaseModel):
    """Aggregate of every currently applied effect, consumed by the audio engine."""

    semitone_offset: float = 0
    speed_percent: float = 0


class BindingRef(BaseModel):
    id: str
    label: str = ""


class RewardRef(BaseModel):
    id: str
    title: str = ""
    cost: Optional[int] = None


class ActivityLogEntry(BaseModel):
    id: str
    ts: float = Field(default_factory=time.time)
    source: EffectSource
    event_type: LogEventType
    user_display: Optional[str] = None
    reward: Optional[RewardRef] = None
    bits_amount: Optional[int] = None
    sub_tier: Optional[Literal["1000", "2000", "3000"]] = None
    gift_amount: Optional[int] = None
    matched_bindings: List[BindingRef] = Field(default_factory=list)
    actions: List[EffectOperation] = Field(default_factory=list)
    delay_sec: Optional[float] = None
    duration_sec: Optional[float] = None
    status: LogStatus = "queued"
    note: Optional[str] = None


class TestEventsState(BaseModel):
    __test__ = False  # not a pytest test class

    type: Literal["channel_points", "bits", "gift_sub", "sub", "follow"] = "channel_points"
    username: str = ""
    amount: str = ""
    channel_points_reward_id: Optional[str] = None
    sub_tier: SubTier = "tier1"


class ControllerState(BaseModel):
    """State shared with the UI and persisted under the "state" key."""

    capture_events: bool = False
    logged_in: bool = False
    twitch_display_name: Optional[str] = None
    channel_point_rewards: List[ChannelPointReward] = Field(default_factory=list)
    test_events: TestEventsState = Field(default_factory=TestEventsState)
    bindings: List[Binding] = Field(default_factory=list)
    diagnostics_expanded: bool = False
    event_log_expanded: bool = False
    effect_semitone_offset: float = 0
    effect_speed_percent: float = 0


class ActionResult(BaseModel):
    status: Literal["ok", "error"]
    message_key: Optional[str] = None
    message_params: Dict[str, Union[str, int, float]] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message_key: str, **params: Union[str, int, float]) -> "ActionResult":
        return cls(status="ok", message_key=message_key, message_params=params)

    @classmethod
    def error(cls, message_key: str, **params: Union[str, int, float]) -> "ActionResult":
        return cls(status="error", message_key=message_key, message_params=params)
