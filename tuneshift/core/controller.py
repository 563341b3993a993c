"""
Controller

Owns one instance of every core component and the persisted controller
state, and exposes the actions the UI can trigger. Actions never raise;
they return an ActionResult for the UI to render as a toast.

Notification pipeline:

    EventSub notification (or synthetic test event)
        -> capture gate -> normalize -> match -> EffectScheduler.queue()
        -> no schedulable match: one "skipped" activity log entry

When the credential is cleared for any reason, every dependent subsystem
is torn down before the clearing call returns.
"""

from __future__ import annotations

import time
from typing import Any, Callable, List, Optional

import httpx
import websockets

from tuneshift.config import Settings, settings as default_settings
from tuneshift.core.context import SessionContext
from tuneshift.core.publisher import Publisher
from tuneshift.effects.scheduler import EFFECT_TOTALS_TOPIC, EffectScheduler
from tuneshift.errors import (
    AUTH_FAILURES,
    ClientMismatch,
    GrantCancelled,
    GrantStateMismatch,
    InsufficientScopes,
    MissingClientConfiguration,
    NotAuthenticated,
    TuneshiftError,
)
from tuneshift.memory.activity_log import ActivityLog, entry_for_event
from tuneshift.memory.store import KeyValueStore
from tuneshift.rules.matcher import log_event_type, match
from tuneshift.rules.normalizer import normalize
from tuneshift.rules.synthetic import build_test_payload
from tuneshift.schemas.bindings import ChannelPointReward
from tuneshift.schemas.messages import TestEventRequest
from tuneshift.schemas.state import ActionResult, BindingRef, ControllerState, EffectSource
from tuneshift.twitch.api import HelixClient
from tuneshift.twitch.auth import TokenAuthority
from tuneshift.twitch.eventsub import EventSubWebSocketClient
from tuneshift.twitch.grant import CallbackGrantFlow, GrantFlow
from tuneshift.twitch.rewards import RewardCacheRefresher
from tuneshift.twitch.subscriptions import SubscriptionReconciler
from tuneshift.utils.logging import get_logger
from tuneshift.utils.sanitize import sanitize_error
from tuneshift.utils.timers import TimerTable

logger = get_logger(__name__, category="system")

STATE_STORAGE_KEY = "state"
STATE_TOPIC = "state"


class Controller:
    """Wires the Twitch session, rule pipeline and effect scheduler together."""

    def __init__(
        self,
        store: KeyValueStore,
        config: Settings = default_settings,
        grant_flow: Optional[GrantFlow] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        ws_connect: Callable[[str], Any] = websockets.connect,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.publisher = Publisher()
        self.timers = TimerTable()
        self.context = SessionContext(self.publisher)
        self.grant_flow = grant_flow or CallbackGrantFlow()
        self.state = ControllerState()

        self.authority = TokenAuthority(
            store,
            self.context,
            grant_flow=self.grant_flow,
            http_client=http_client,
            config=config,
            clock=clock,
        )
        self.api = HelixClient(self.authority, config=config)
        self.activity_log = ActivityLog(store, self.publisher, self.timers, config=config)
        self.scheduler = EffectScheduler(
            self.activity_log,
            self.publisher,
            self.timers,
            chat_sender=self._send_chat,
        )
        self.reconciler = SubscriptionReconciler(
            self.api,
            self.authority,
            self.context,
            self.timers,
            on_failure=self._on_sync_failure,
            on_blocked=self._on_subscriptions_blocked,
            config=config,
        )
        self.session = EventSubWebSocketClient(
            self.authority,
            self.context,
            self.timers,
            on_notification=self._on_notification,
            on_ready=self._on_session_ready,
            on_revocation=self._on_revocation,
            on_teardown=self._on_session_teardown,
            config=config,
            connect=ws_connect,
        )
        self.rewards = RewardCacheRefresher(
            self.api,
            self.authority,
            self.timers,
            on_update=self._on_rewards_updated,
            config=config,
        )

        self.authority.on_cleared(self._on_credential_cleared)
        self.publisher.subscribe(EFFECT_TOTALS_TOPIC, self._on_totals)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted state and resume a stored credential, if any."""
        raw_state = await self.store.get(STATE_STORAGE_KEY)
        if raw_state:
            try:
                self.state = ControllerState.model_validate(raw_state)
            except ValueError as e:
                logger.warning(f"Discarding unreadable controller state: {e}")
        # Effects never survive a restart
        self.state.effect_semitone_offset = 0
        self.state.effect_speed_percent = 0

        await self.activity_log.load()
        await self.authority.load()
        await self._sync_state_with_auth()

        if self.authority.credential is not None:
            await self.resume()

    async def resume(self) -> bool:
        """Revalidate the stored credential and reopen the session."""
        try:
            await self.authority.ensure_valid()
            await self.authority.refresh_profile()
            await self._sync_state_with_auth()
            await self.session.start()
            self.rewards.start()
            logger.info("Resumed stored Twitch session")
            return True
        except AUTH_FAILURES as e:
            logger.warning(f"Stored credential could not be resumed: {e}")
        except (TuneshiftError, httpx.HTTPError) as e:
            logger.warning(f"Failed to resume Twitch session: {sanitize_error(e)}")
            await self.authority.expire(sanitize_error(e))
        await self._sync_state_with_auth()
        return False

    async def shutdown(self) -> None:
        self.rewards.stop()
        await self.scheduler.close()
        await self.session.stop()
        self.reconciler.reset(clear_block=False)
        await self.reconciler.close()
        self.timers.cancel_all()
        await self.activity_log.flush()
        await self.publisher.wait_all()
        await self.authority.close()
        await self.store.close()
        logger.info("Controller shut down")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def connect(self) -> ActionResult:
        try:
            await self.authority.connect()
            await self._sync_state_with_auth()
            await self.session.start()
            self.rewards.start()
            return ActionResult.ok("toasts.twitchConnected")
        except MissingClientConfiguration:
            return ActionResult.error("toasts.twitchMissingClientId")
        except InsufficientScopes as e:
            return ActionResult.error("toasts.twitchMissingScopes", scopes=", ".join(e.missing))
        except GrantCancelled:
            return ActionResult.error("toasts.twitchAuthCancelled")
        except (GrantStateMismatch, ClientMismatch) as e:
            logger.error(f"Twitch grant rejected: {e}")
            return ActionResult.error("toasts.twitchAuthFailed")
        except (TuneshiftError, httpx.HTTPError) as e:
            logger.error(f"Twitch connect failed: {sanitize_error(e)}")
            return ActionResult.error("toasts.twitchAuthFailed")

    async def reconnect(self) -> ActionResult:
        if not await self._ensure_fresh_auth():
            return await self.connect()
        try:
            self.reconciler.reset(clear_block=False)
            await self.session.start()
            self.rewards.start()
            return ActionResult.ok("toasts.twitchReconnected")
        except (TuneshiftError, httpx.HTTPError) as e:
            logger.error(f"Twitch reconnect failed: {sanitize_error(e)}")
            return ActionResult.error("toasts.twitchAuthFailed")

    async def disconnect(self) -> ActionResult:
        if self.authority.credential is not None:
            deleted = await self.reconciler.delete_all()
            logger.info(f"Deleted {deleted} EventSub subscription(s) before disconnect")
        await self.authority.sign_out()
        self.context.update_diagnostics(last_error=None)
        return ActionResult.ok("toasts.twitchDisconnected")

    async def trigger_test_event(self, request: TestEventRequest) -> ActionResult:
        if not self.state.capture_events:
            return ActionResult.error("toasts.captureDisabled")

        credential = self.authority.credential
        subscription_type, payload = build_test_payload(
            request,
            broadcaster_id=credential.user_id if credential else None,
            rewards=self.rewards.rewards or self.state.channel_point_rewards,
        )
        await self.route_event(subscription_type, payload, source="test")
        return ActionResult.ok("toasts.testFired")

    async def refresh_rewards(self) -> ActionResult:
        return await self.rewards.refresh_manual()

    async def update_state(self, next_state: ControllerState) -> ControllerState:
        """Accept UI-owned fields; login and effect totals stay core-owned."""
        self.state = next_state.model_copy(
            update={
                "logged_in": self.state.logged_in,
                "twitch_display_name": self.state.twitch_display_name,
                "effect_semitone_offset": self.state.effect_semitone_offset,
                "effect_speed_percent": self.state.effect_speed_percent,
            }
        )
        await self._persist_state()
        return self.state

    async def set_diagnostics_expanded(self, expanded: bool) -> ControllerState:
        self.state.diagnostics_expanded = expanded
        await self._persist_state()
        return self.state

    # ------------------------------------------------------------------
    # Notification pipeline
    # ------------------------------------------------------------------

    async def route_event(self, subscription_type: str, payload: dict, source: EffectSource) -> bool:
        """Run one notification through normalize/match/schedule. False if capture is off."""
        if source == "test":
            self.context.update_diagnostics(
                last_notification_at=time.time(),
                last_notification_type=subscription_type,
            )
        if not self.state.capture_events:
            logger.info(f"Capture disabled; ignoring {subscription_type}")
            return False

        event = normalize(subscription_type, payload)
        if event is None:
            return True

        outcome = match(event, self.state.bindings)
        if not outcome.requests:
            self.activity_log.append(
                entry_for_event(
                    event,
                    source,
                    log_event_type(event),
                    matched_bindings=[
                        BindingRef(id=binding.id, label=binding.label) for binding in outcome.matched
                    ],
                    status="skipped",
                    note="no_actions" if outcome.matched else "no_matching_binding",
                )
            )
            return True

        for request in outcome.requests:
            self.scheduler.queue(request.binding, event, request.operations, source)
        return True

    async def _on_notification(
        self, subscription_type: str, event: dict, message_id: Optional[str]
    ) -> None:
        await self.route_event(subscription_type, event, source="real")

    def _on_session_ready(self, session_id: str) -> None:
        self.reconciler.trigger("welcome")

    def _on_revocation(self, subscription_type: str) -> None:
        self.reconciler.trigger(f"revocation:{subscription_type}")

    async def _on_sync_failure(self, reason: str) -> None:
        await self.session.fault(reason)

    def _on_session_teardown(self, reason: str) -> None:
        self.scheduler.clear_all("reverted", note=reason)

    async def _on_subscriptions_blocked(self, reason: str) -> None:
        """Permission denial is terminal: drop the credential so the user re-authorizes."""
        self.rewards.stop()
        await self.authority.expire(reason)

    async def _send_chat(self, message: str) -> str:
        credential = self.authority.credential
        if credential is None:
            raise NotAuthenticated()
        return await self.api.send_chat_message(credential.user_id, message)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def _ensure_fresh_auth(self) -> bool:
        if self.authority.credential is None:
            return False
        try:
            await self.authority.ensure_valid()
            return True
        except (TuneshiftError, httpx.HTTPError) as e:
            logger.warning(f"Stored credential could not be revalidated: {sanitize_error(e)}")
            return False

    async def _on_credential_cleared(self, reason: str) -> None:
        self.scheduler.clear_all("reverted", note=reason)
        self.rewards.clear()
        await self.session.stop()
        # The block outlives the credential until a new grant succeeds
        self.reconciler.reset(clear_block=False)
        await self._sync_state_with_auth()

    async def _on_rewards_updated(self, rewards: List[ChannelPointReward]) -> None:
        self.state.channel_point_rewards = list(rewards)
        await self._persist_state()

    async def _on_totals(self, topic: str, totals: dict) -> None:
        self.state.effect_semitone_offset = totals["semitone_offset"]
        self.state.effect_speed_percent = totals["speed_percent"]
        await self._persist_state()

    async def _sync_state_with_auth(self) -> None:
        credential = self.authority.credential
        self.state.logged_in = credential is not None
        self.state.twitch_display_name = credential.display_name if credential else None
        if credential is None:
            self.state.channel_point_rewards = []
        await self._persist_state()

    async def _persist_state(self) -> None:
        await self.store.set(STATE_STORAGE_KEY, self.state.model_dump(mode="json"))
        self.publisher.publish(STATE_TOPIC, self.state.model_dump(mode="json"))
