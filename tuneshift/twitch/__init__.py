"""
Twitch layer: OAuth token authority, Helix client, EventSub session,
subscription reconciliation and the reward cache
"""

from .api import HelixClient
from .auth import TokenAuthority
from .eventsub import EventSubWebSocketClient, SessionState
from .rewards import RewardCacheRefresher
from .subscriptions import SubscriptionReconciler

__all__ = [
    "HelixClient",
    "TokenAuthority",
    "EventSubWebSocketClient",
    "SessionState",
    "RewardCacheRefresher",
    "SubscriptionReconciler",
]
