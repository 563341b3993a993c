"""Chat template rendering for matched events."""

import re
from typing import Dict

from tuneshift.schemas.events import (
    ChannelPointsEvent,
    CheerEvent,
    NormalizedEvent,
    SubEvent,
)

PLACEHOLDER = re.compile(r"\{(\w+)\}")


def template_values(event: NormalizedEvent) -> Dict[str, str]:
    values = {
        "user": event.user_display,
        "reward": "",
        "cost": "",
        "bits": "",
        "tier": "",
        "count": "",
        "amount": "",
    }
    if isinstance(event, ChannelPointsEvent):
        values["reward"] = event.reward_title
        if event.reward_cost is not None:
            values["cost"] = str(event.reward_cost)
            values["amount"] = values["cost"]
    elif isinstance(event, CheerEvent):
        values["bits"] = str(event.bits)
        values["amount"] = values["bits"]
    elif isinstance(event, SubEvent):
        # "1000" -> "1"
        values["tier"] = str(int(event.tier) // 1000)
        if event.gift_count is not None:
            values["count"] = str(event.gift_count)
            values["amount"] = values["count"]
    return values


def render_template(template: str, event: NormalizedEvent) -> str:
    """Substitute {user}, {reward}, {cost}, {bits}, {tier}, {count}, {amount}.

    Unknown placeholders are left as written.
    """
    values = template_values(event)

    def replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        return values[key] if key in values else match.group(0)

    return PLACEHOLDER.sub(replace, template).strip()
