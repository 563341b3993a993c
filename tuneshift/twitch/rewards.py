"""
Channel Point Reward Cache

Keeps the broadcaster's custom rewards (id, title, cost) cached for display
and test-event construction. Refreshes once when started after sign-in,
then every reward_refresh_interval_seconds. Manual refreshes are rejected
while unauthenticated or while a refresh is running, and are debounced to
one per reward_manual_refresh_min_interval_seconds.
"""

from __future__ import annotations

import inspect
import math
import time
from typing import Any, Callable, List, Optional

import httpx

from tuneshift.config import Settings, settings as default_settings
from tuneshift.errors import AUTH_FAILURES, NotAuthenticated, TuneshiftError
from tuneshift.schemas.bindings import ChannelPointReward
from tuneshift.schemas.state import ActionResult
from tuneshift.twitch.api import HelixClient
from tuneshift.twitch.auth import TokenAuthority
from tuneshift.utils.logging import get_logger
from tuneshift.utils.sanitize import sanitize_error
from tuneshift.utils.timers import TimerTable

logger = get_logger(__name__, category="rewards")

REWARD_REFRESH_TIMER_KEY = "reward-refresh"


class RewardCacheRefresher:
    """Periodic poller for channel point rewards."""

    def __init__(
        self,
        api: HelixClient,
        authority: TokenAuthority,
        timers: TimerTable,
        on_update: Callable[[List[ChannelPointReward]], Any],
        config: Settings = default_settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.authority = authority
        self.timers = timers
        self.on_update = on_update
        self.interval = config.reward_refresh_interval_seconds
        self.manual_min_interval = config.reward_manual_refresh_min_interval_seconds
        self.clock = clock

        self.rewards: List[ChannelPointReward] = []
        self.in_flight = False
        self.running = False
        self.last_manual_at: Optional[float] = None

    def start(self) -> None:
        """Refresh now, then on every interval until stop()."""
        self.running = True
        self.timers.start(REWARD_REFRESH_TIMER_KEY, 0, self._tick)
        logger.info(f"Reward refresh started (interval: {self.interval}s)")

    def stop(self) -> None:
        if self.running:
            logger.info("Reward refresh stopped")
        self.running = False
        self.timers.cancel(REWARD_REFRESH_TIMER_KEY)

    async def _tick(self) -> None:
        if not self.running:
            return
        try:
            await self.refresh()
        except AUTH_FAILURES as e:
            logger.warning(f"Reward refresh stopped by authentication failure: {e}")
            return
        except (TuneshiftError, httpx.HTTPError, ValueError) as e:
            logger.error(f"Reward refresh failed: {sanitize_error(e)}")

        if self.running:
            self.timers.start(REWARD_REFRESH_TIMER_KEY, self.interval, self._tick)

    async def refresh(self) -> int:
        """Fetch rewards now. Returns the number of rewards cached."""
        if self.in_flight:
            return len(self.rewards)
        credential = self.authority.credential
        if credential is None:
            raise NotAuthenticated()

        self.in_flight = True
        try:
            rewards = await self.api.fetch_rewards(credential.user_id)
        finally:
            self.in_flight = False

        if self.authority.credential is None:
            # Signed out while the request was in flight
            raise NotAuthenticated()

        self.rewards = rewards
        logger.info(f"Cached {len(rewards)} channel point rewards")
        result = self.on_update(rewards)
        if inspect.isawaitable(result):
            await result
        return len(rewards)

    async def refresh_manual(self) -> ActionResult:
        if not self.authority.is_usable():
            return ActionResult.error("toasts.rewardsNotAuthenticated")
        if self.in_flight:
            return ActionResult.error("toasts.rewardsRefreshInFlight")

        now = self.clock()
        if self.last_manual_at is not None:
            elapsed = now - self.last_manual_at
            if elapsed < self.manual_min_interval:
                wait = math.ceil(self.manual_min_interval - elapsed)
                return ActionResult.error("toasts.rewardsRefreshThrottled", seconds=wait)
        self.last_manual_at = now

        try:
            count = await self.refresh()
        except AUTH_FAILURES:
            return ActionResult.error("toasts.rewardsNotAuthenticated")
        except (TuneshiftError, httpx.HTTPError, ValueError) as e:
            logger.error(f"Manual reward refresh failed: {sanitize_error(e)}")
            return ActionResult.error("toasts.rewardsRefreshFailed")
        return ActionResult.ok("toasts.rewardsRefreshed", count=count)

    def clear(self) -> None:
        self.stop()
        self.rewards = []
        self.last_manual_at = None
