"""
Rate-limited Twitch Helix API client

Every request goes through TokenAuthority.ensure_valid() and carries the
bearer token and Client-Id headers. A 401 expires the credential and hands
the failed response back to the caller; a 429 is retried after
max(Ratelimit-Reset - now, 2^attempt * base) seconds, up to
rate_limit_max_attempts times, after which the 429 is returned unchanged.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from tuneshift.config import Settings, settings as default_settings
from tuneshift.errors import ChatSendFailed
from tuneshift.schemas.bindings import ChannelPointReward
from tuneshift.schemas.events import HelixSubscription, SubscriptionDefinition
from tuneshift.twitch.auth import TokenAuthority
from tuneshift.utils.logging import get_logger
from tuneshift.utils.sanitize import response_body

logger = get_logger(__name__, category="system")


def rate_limit_delay(
    response: httpx.Response,
    attempt: int,
    base_delay: float = 1.0,
    now: Optional[float] = None,
) -> float:
    """Seconds to wait before retrying a 429."""
    delay = (2 ** attempt) * base_delay
    reset = response.headers.get("Ratelimit-Reset")
    if reset:
        try:
            reset_epoch = float(reset)
        except ValueError:
            return delay
        now = time.time() if now is None else now
        delay = max(reset_epoch - now, delay)
    return delay


class HelixClient:
    """Authenticated Helix calls for one identity."""

    def __init__(
        self,
        authority: TokenAuthority,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Settings = default_settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.authority = authority
        self.config = config
        self.http_client = http_client or authority.http_client
        self._sleep = sleep
        self._clock = clock

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        attempt: int = 0,
    ) -> httpx.Response:
        """Send a Helix request. Callers must check the response status."""
        credential = await self.authority.ensure_valid()
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Client-Id": credential.client_id or self.authority.client_id,
        }
        if json is not None:
            headers["Content-Type"] = "application/json"

        response = await self.http_client.request(
            method,
            f"{self.config.twitch_helix_base}{path}",
            params=params,
            json=json,
            headers=headers,
        )

        if response.status_code == 401:
            logger.warning(f"Helix {method} {path} returned 401, expiring credential")
            await self.authority.expire("Unauthorized")
            return response

        if response.status_code == 429 and attempt < self.config.rate_limit_max_attempts:
            delay = rate_limit_delay(
                response,
                attempt,
                base_delay=self.config.rate_limit_base_delay_seconds,
                now=self._clock(),
            )
            logger.warning(
                "Helix rate limited on %s %s, retrying in %.1fs (attempt %s/%s)",
                method,
                path,
                delay,
                attempt + 1,
                self.config.rate_limit_max_attempts,
            )
            await self._sleep(delay)
            return await self.request(method, path, params=params, json=json, attempt=attempt + 1)

        return response

    # ------------------------------------------------------------------
    # EventSub subscriptions
    # ------------------------------------------------------------------

    async def list_all_subscriptions(
        self,
    ) -> Tuple[List[HelixSubscription], Optional[httpx.Response]]:
        """Follow pagination. Returns (subscriptions, failed_response_or_None)."""
        subscriptions: List[HelixSubscription] = []
        cursor: Optional[str] = None
        while True:
            params = {"after": cursor} if cursor else None
            response = await self.request("GET", "/eventsub/subscriptions", params=params)
            if response.status_code != 200:
                return subscriptions, response
            body = response.json()
            subscriptions.extend(HelixSubscription.model_validate(item) for item in body.get("data") or [])
            cursor = (body.get("pagination") or {}).get("cursor")
            if not cursor:
                return subscriptions, None

    async def create_subscription(
        self, definition: SubscriptionDefinition, session_id: str
    ) -> httpx.Response:
        return await self.request(
            "POST",
            "/eventsub/subscriptions",
            json={
                "type": definition.type,
                "version": definition.version,
                "condition": definition.condition,
                "transport": {"method": "websocket", "session_id": session_id},
            },
        )

    async def delete_subscription(self, subscription_id: str) -> httpx.Response:
        return await self.request("DELETE", "/eventsub/subscriptions", params={"id": subscription_id})

    # ------------------------------------------------------------------
    # Channel points, chat
    # ------------------------------------------------------------------

    async def get_custom_rewards(self, broadcaster_id: str) -> httpx.Response:
        return await self.request(
            "GET", "/channel_points/custom_rewards", params={"broadcaster_id": broadcaster_id}
        )

    async def fetch_rewards(self, broadcaster_id: str) -> List[ChannelPointReward]:
        response = await self.get_custom_rewards(broadcaster_id)
        if response.status_code != 200:
            raise httpx.HTTPStatusError(
                f"Failed to fetch channel point rewards ({response.status_code})",
                request=response.request,
                response=response,
            )
        return [
            ChannelPointReward(id=item["id"], title=item.get("title", ""), cost=item.get("cost"))
            for item in response.json().get("data") or []
            if item.get("id")
        ]

    async def send_chat_message(self, broadcaster_id: str, message: str) -> str:
        """POST /chat/messages as the broadcaster. Returns the message id."""
        response = await self.request(
            "POST",
            "/chat/messages",
            json={
                "broadcaster_id": broadcaster_id,
                "sender_id": broadcaster_id,
                "message": message,
            },
        )
        if response.status_code != 200:
            raise ChatSendFailed(response.status_code, response_body(response))

        data = (response.json().get("data") or [{}])[0]
        if not data.get("is_sent", False):
            raise ChatSendFailed(response.status_code, data.get("drop_reason") or data)
        return data.get("message_id", "")
