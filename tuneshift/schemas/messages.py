"""
Message Schemas

Request/response bodies for the HTTP surface in tuneshift.main.
"""

from typing import Optional

from pydantic import BaseModel, Field

from tuneshift.schemas.bindings import BindingEventType, SubTier
from tuneshift.schemas.state import ActionResult, ControllerState


class TestEventRequest(BaseModel):
    """Synthetic event fired from the UI's test panel."""

    __test__ = False  # not a pytest test class

    type: BindingEventType
    username: str = ""
    amount: Optional[float] = None
    reward_id: Optional[str] = None
    sub_tier: SubTier = "tier1"

    class Config:
        json_schema_extra = {
            "example": {
                "type": "bits",
                "username": "viewer123",
                "amount": 100,
                "reward_id": None,
                "sub_tier": "tier1",
            }
        }


class ActionResponse(BaseModel):
    status: str
    message_key: Optional[str] = None
    message_params: dict = Field(default_factory=dict)
    state: ControllerState

    @classmethod
    def from_result(cls, result: ActionResult, state: ControllerState) -> "ActionResponse":
        return cls(
            status=result.status,
            message_key=result.message_key,
            message_params=result.message_params,
            state=state,
        )


class DevtoolsToggle(BaseModel):
    expanded: bool


class GrantCallback(BaseModel):
    redirect_url: str = Field(..., description="Final redirect URL including the #fragment")


class PendingGrant(BaseModel):
    authorize_url: str
