"""
EventSub Subscription Reconciler

Makes the server-side subscriptions match the required set for the current
WebSocket session: existing enabled subscriptions on this session are
counted, missing ones are created, and copies bound to an older session are
deleted. A single in-flight flag guards against reentrant triggers (welcome,
revocation, manual reconnect); a trigger that arrives mid-sync is dropped.

A 403 from the subscription API is terminal: the blocked flag is set and
the session is torn down without retry. Any other failure schedules a
reconnect instead of retrying the sync directly.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, List, Optional, Set

import httpx

from tuneshift.config import Settings, settings as default_settings
from tuneshift.core.context import SessionContext
from tuneshift.errors import (
    AUTH_FAILURES,
    NotAuthenticated,
    SubscriptionPermissionDenied,
    SubscriptionSyncFailed,
)
from tuneshift.schemas.events import (
    CHANNEL_CHEER,
    CHANNEL_FOLLOW,
    CHANNEL_POINTS_REDEMPTION,
    CHANNEL_SUBSCRIBE,
    HelixSubscription,
    SubscriptionDefinition,
)
from tuneshift.twitch.api import HelixClient
from tuneshift.twitch.auth import TokenAuthority
from tuneshift.utils.logging import get_logger
from tuneshift.utils.sanitize import response_body, sanitize_error
from tuneshift.utils.timers import TimerTable

logger = get_logger(__name__, category="subscriptions")

SYNC_DEADLINE_TIMER_KEY = "subscription-sync-deadline"


def required_definitions(user_id: str) -> List[SubscriptionDefinition]:
    """One subscription per supported event kind, scoped to the broadcaster."""
    return [
        SubscriptionDefinition(
            type=CHANNEL_POINTS_REDEMPTION,
            version="1",
            condition={"broadcaster_user_id": user_id},
        ),
        SubscriptionDefinition(
            type=CHANNEL_CHEER,
            version="1",
            condition={"broadcaster_user_id": user_id},
        ),
        SubscriptionDefinition(
            type=CHANNEL_SUBSCRIBE,
            version="1",
            condition={"broadcaster_user_id": user_id},
        ),
        SubscriptionDefinition(
            type=CHANNEL_FOLLOW,
            version="2",
            condition={"broadcaster_user_id": user_id, "moderator_user_id": user_id},
        ),
    ]


def subscription_matches(
    entry: HelixSubscription,
    definition: SubscriptionDefinition,
    session_id: Optional[str] = None,
) -> bool:
    if entry.type != definition.type or entry.version != definition.version:
        return False
    for key, value in definition.condition.items():
        if entry.condition.get(key) != value:
            return False
    if session_id:
        return entry.transport.session_id == session_id
    return True


def is_stale_copy(entry: HelixSubscription, definition: SubscriptionDefinition, session_id: str) -> bool:
    return (
        subscription_matches(entry, definition)
        and entry.transport.method == "websocket"
        and bool(entry.transport.session_id)
        and entry.transport.session_id != session_id
    )


def owned_by(entry: HelixSubscription, user_id: str) -> bool:
    return user_id in entry.condition.values()


class SubscriptionReconciler:
    """Diffs desired vs. existing EventSub subscriptions for the current session."""

    def __init__(
        self,
        api: HelixClient,
        authority: TokenAuthority,
        context: SessionContext,
        timers: TimerTable,
        on_failure: Callable[[str], Any],
        on_blocked: Callable[[str], Any],
        config: Settings = default_settings,
    ):
        self.api = api
        self.authority = authority
        self.context = context
        self.timers = timers
        self.on_failure = on_failure
        self.on_blocked = on_blocked
        self.deadline_seconds = config.subscription_sync_deadline_seconds
        self.in_flight = False
        self.ready = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def blocked(self) -> bool:
        return self.context.subscriptions_blocked

    def trigger(self, reason: str) -> Optional[asyncio.Task]:
        """Start a sync in the background unless one is already running."""
        if self.in_flight:
            logger.debug(f"Subscription sync already in flight; dropping trigger ({reason})")
            return None
        logger.info(f"Subscription sync triggered ({reason})")
        task = asyncio.create_task(self.sync())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _is_stale(self, session_id: str) -> bool:
        return self.context.session_id != session_id or self.authority.credential is None

    def _raise_for(self, response: httpx.Response, subscription_type: Optional[str]) -> None:
        if response.status_code == 401:
            raise NotAuthenticated("Unauthorized")
        if response.status_code == 403:
            raise SubscriptionPermissionDenied(subscription_type, response_body(response))
        raise SubscriptionSyncFailed(
            f"Subscription request for {subscription_type or 'list'} failed ({response.status_code})",
            status=response.status_code,
        )

    async def sync(self) -> bool:
        """Reconcile once. Returns True when the session ends up fully subscribed."""
        if self.in_flight:
            logger.debug("Subscription sync already in flight; dropping")
            return False
        if self.blocked:
            logger.debug("Subscription sync skipped: blocked by a permission failure")
            return False

        credential = self.authority.credential
        session_id = self.context.session_id
        if credential is None or not session_id:
            return False

        self.in_flight = True
        self.ready = False
        self.timers.start(
            SYNC_DEADLINE_TIMER_KEY,
            self.deadline_seconds,
            lambda: self._on_deadline(session_id),
        )
        try:
            existing, failed = await self.api.list_all_subscriptions()
            if failed is not None:
                self._raise_for(failed, None)
            if self._is_stale(session_id):
                return False

            active = 0
            for definition in required_definitions(credential.user_id):
                match = next(
                    (entry for entry in existing if subscription_matches(entry, definition, session_id)),
                    None,
                )
                if match is not None and match.status == "enabled":
                    active += 1
                else:
                    response = await self.api.create_subscription(definition, session_id)
                    # 409: Twitch already holds this exact subscription for the session
                    if response.status_code not in (200, 202, 409):
                        self._raise_for(response, definition.type)
                    if self._is_stale(session_id):
                        return False
                    logger.info(f"Created EventSub subscription: {definition.type} v{definition.version}")
                    active += 1

                for entry in existing:
                    if not is_stale_copy(entry, definition, session_id):
                        continue
                    response = await self.api.delete_subscription(entry.id)
                    if response.status_code not in (200, 204, 404):
                        self._raise_for(response, definition.type)
                    logger.info(
                        f"Deleted stale subscription {entry.type} ({entry.id}) "
                        f"from session {entry.transport.session_id}"
                    )
                    if self._is_stale(session_id):
                        return False

            self.ready = True
            self.timers.cancel(SYNC_DEADLINE_TIMER_KEY)
            self.context.update_diagnostics(subscriptions=active, last_error=None)
            logger.info(f"EventSub subscriptions ready: {active} active on session {session_id}")
            return True

        except SubscriptionPermissionDenied as e:
            self.timers.cancel(SYNC_DEADLINE_TIMER_KEY)
            logger.error(f"Subscription permission denied: {e}; halting EventSub retries")
            self.context.subscriptions_blocked = True
            self.context.update_diagnostics(last_error=sanitize_error(e))
            await self._call(self.on_blocked, sanitize_error(e))
            return False
        except AUTH_FAILURES as e:
            # TokenAuthority already cleared the credential and reset dependents
            self.timers.cancel(SYNC_DEADLINE_TIMER_KEY)
            logger.warning(f"Subscription sync stopped by authentication failure: {e}")
            return False
        except (SubscriptionSyncFailed, httpx.HTTPError, ValueError) as e:
            self.timers.cancel(SYNC_DEADLINE_TIMER_KEY)
            logger.error(f"Failed to ensure EventSub subscriptions: {sanitize_error(e)}")
            if not self._is_stale(session_id):
                self.context.update_diagnostics(last_error="Subscription sync failed")
                await self._call(self.on_failure, "ensure-subscriptions")
            return False
        finally:
            self.in_flight = False

    async def _on_deadline(self, session_id: str) -> None:
        if self.ready or self.context.session_id != session_id:
            return
        logger.warning(f"Subscription sync did not finish within {self.deadline_seconds}s")
        self.context.update_diagnostics(last_error="Subscription sync timed out")
        await self._call(self.on_failure, "sync-deadline")

    async def delete_all(self) -> int:
        """Best-effort removal of every subscription naming the current identity."""
        credential = self.authority.credential
        if credential is None:
            return 0
        deleted = 0
        try:
            existing, failed = await self.api.list_all_subscriptions()
            if failed is not None:
                logger.warning(f"Could not list subscriptions for cleanup ({failed.status_code})")
                return 0
            for entry in existing:
                if owned_by(entry, credential.user_id):
                    response = await self.api.delete_subscription(entry.id)
                    if response.status_code in (200, 204, 404):
                        deleted += 1
        except (httpx.HTTPError, *AUTH_FAILURES) as e:
            logger.warning(f"Failed to clean subscriptions: {sanitize_error(e)}")
        return deleted

    def reset(self, clear_block: bool = True) -> None:
        self.timers.cancel(SYNC_DEADLINE_TIMER_KEY)
        self.ready = False
        if clear_block:
            self.context.subscriptions_blocked = False

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    async def _call(callback: Callable[..., Any], *args: Any) -> None:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
