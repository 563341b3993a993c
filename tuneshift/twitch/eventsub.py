"""
Twitch EventSub WebSocket Client

Session state machine for the EventSub WebSocket transport:

    idle -> connecting -> ready -> (closed -> reconnecting -> connecting ...)

A welcome records the session id, arms the keepalive watchdog
(advertised timeout + grace), resets the reconnect backoff and triggers
subscription reconciliation. Socket loss, keepalive timeout, server
session_close and reconciliation failures all schedule a reconnect with
exponential backoff (floor 1s, doubling, ceiling 30s). Nothing connects or
reconnects while the credential is unusable or subscriptions are blocked.
Every teardown except a server-directed migration to reconnect_url is
reported to `on_teardown` with its reason.

Notifications are deduplicated by message id for a short TTL since the
transport may redeliver.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets
from cachetools import TTLCache

from tuneshift.config import Settings, settings as default_settings
from tuneshift.core.context import SessionContext
from tuneshift.errors import KeepaliveTimeout, SocketFault
from tuneshift.schemas.events import EventSubSession
from tuneshift.twitch.auth import TokenAuthority
from tuneshift.utils.logging import get_logger
from tuneshift.utils.sanitize import sanitize_error
from tuneshift.utils.timers import TimerTable

logger = get_logger(__name__, category="eventsub")

RECONNECT_TIMER_KEY = "eventsub-reconnect"
KEEPALIVE_TIMER_KEY = "eventsub-keepalive"

NotificationHandler = Callable[[str, dict, Optional[str]], Awaitable[None]]


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class EventSubWebSocketClient:
    """EventSub WebSocket client for receiving real-time Twitch events."""

    def __init__(
        self,
        authority: TokenAuthority,
        context: SessionContext,
        timers: TimerTable,
        on_notification: NotificationHandler,
        on_ready: Callable[[str], Any],
        on_revocation: Callable[[str], Any],
        on_teardown: Optional[Callable[[str], Any]] = None,
        config: Settings = default_settings,
        connect: Callable[[str], Awaitable[Any]] = websockets.connect,
        dedup_clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize EventSub WebSocket client.

        Args:
            authority: Token authority; its credential gates every (re)connect
            context: Shared session context (diagnostics, session id, blocked flag)
            timers: Timer table holding the reconnect and keepalive timers
            on_notification: Called with (subscription_type, event, message_id)
            on_ready: Called with the session id after each welcome
            on_revocation: Called with the revoked subscription type
            on_teardown: Called with the reason whenever a session is torn down
            connect: WebSocket connect factory (overridable for tests)
            dedup_clock: Clock for the message-id dedup cache
        """
        self.authority = authority
        self.context = context
        self.timers = timers
        self.on_notification = on_notification
        self.on_ready = on_ready
        self.on_revocation = on_revocation
        self.on_teardown = on_teardown
        self.url = config.twitch_eventsub_ws_url
        self._connect = connect

        self.state = SessionState.IDLE
        self.ws: Optional[Any] = None
        self.session: Optional[EventSubSession] = None
        self.keepalive_timeout: float = 0

        # Reconnection state
        self.initial_reconnect_delay = config.eventsub_reconnect_delay
        self.max_reconnect_delay = config.eventsub_max_reconnect_delay
        self.reconnect_delay = self.initial_reconnect_delay
        self.keepalive_grace = config.eventsub_keepalive_grace_seconds
        self.default_keepalive = config.eventsub_default_keepalive_seconds

        self._seen_messages: TTLCache = TTLCache(
            maxsize=config.eventsub_dedup_max_entries,
            ttl=config.eventsub_dedup_ttl_seconds,
            timer=dedup_clock,
        )
        self._reader_task: Optional[asyncio.Task] = None
        # Bumped on every teardown so suspended connects can tell they are stale
        self._generation = 0

    @property
    def is_connected(self) -> bool:
        return self.ws is not None

    def can_connect(self) -> bool:
        return self.authority.is_usable() and not self.context.subscriptions_blocked

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Drop any existing session and connect fresh."""
        await self.stop()
        return await self.connect()

    async def connect(self, url: Optional[str] = None) -> bool:
        """Open the socket (only if the credential is usable and not blocked)."""
        if not self.can_connect():
            logger.info("EventSub connect skipped: credential unusable or subscriptions blocked")
            return False

        target = url or self.url
        generation = self._generation
        self.state = SessionState.CONNECTING
        self.context.update_diagnostics(websocket_connected=False, session_id=None)
        logger.info("Connecting to Twitch EventSub WebSocket...")

        try:
            ws = await self._connect(target)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.error(f"Failed to connect to EventSub WebSocket: {e}")
            if generation == self._generation:
                self.state = SessionState.CLOSED
                self.context.update_diagnostics(last_error=sanitize_error(SocketFault(f"Connect failed: {e}")))
                self.schedule_reconnect("socket-error")
            return False

        if generation != self._generation:
            # Torn down (sign-out, stop) while the handshake was in flight
            await self._close_socket(ws)
            return False

        self.ws = ws
        self.context.update_diagnostics(websocket_connected=True, last_error=None)
        logger.info("Connected to EventSub WebSocket")
        self._reader_task = asyncio.create_task(self._handle_messages(ws))
        return True

    async def stop(self) -> None:
        """Close the session and cancel every session timer; back to idle."""
        await self._teardown("Session stopped")
        self.reconnect_delay = self.initial_reconnect_delay
        self.state = SessionState.IDLE

    async def fault(self, reason: str) -> None:
        """Treat the current session as broken: tear down and schedule a reconnect."""
        logger.warning(f"EventSub session fault: {reason}")
        await self._teardown(reason)
        self.schedule_reconnect(reason)

    async def _teardown(self, reason: str, notify: bool = True) -> None:
        self._generation += 1
        self.timers.cancel(RECONNECT_TIMER_KEY)
        self.timers.cancel(KEEPALIVE_TIMER_KEY)

        ws, self.ws = self.ws, None
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        if ws is not None:
            await self._close_socket(ws)

        self.session = None
        self.state = SessionState.CLOSED
        self.context.reset_connection()
        if notify and self.on_teardown is not None:
            await self._call(self.on_teardown, reason)

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.warning(f"Error closing WebSocket: {e}")

    def schedule_reconnect(self, reason: str) -> Optional[float]:
        """Arm the reconnect timer with the current backoff. Returns the delay used."""
        if not self.can_connect():
            logger.info(f"Not scheduling EventSub reconnect ({reason}): credential unusable or blocked")
            return None
        if self.timers.is_pending(RECONNECT_TIMER_KEY):
            return None

        delay = self.reconnect_delay
        self.reconnect_delay = min(delay * 2, self.max_reconnect_delay)
        self.state = SessionState.RECONNECTING
        logger.info(f"Scheduling EventSub reconnect in {delay} seconds ({reason})...")
        self.timers.start(RECONNECT_TIMER_KEY, delay, self._reconnect)
        return delay

    async def _reconnect(self) -> None:
        if self.ws is None:
            logger.info("Attempting EventSub reconnection...")
            await self.connect()

    async def _handle_messages(self, ws: Any) -> None:
        """Handle incoming WebSocket messages until the socket closes."""
        close_reason = "socket-close"
        try:
            async for message in ws:
                await self.handle_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"EventSub WebSocket connection closed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in message handler: {e}", exc_info=True)
            close_reason = "socket-error"

        if ws is self.ws:
            self._reader_task = None
            await self.fault(close_reason)

    # ------------------------------------------------------------------
    # Protocol messages
    # ------------------------------------------------------------------

    async def handle_message(self, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to parse WebSocket message: {e}")
            return

        metadata = data.get("metadata") or {}
        payload = data.get("payload") or {}
        message_type = metadata.get("message_type")

        if message_type == "session_welcome":
            await self._handle_session_welcome(payload)
        elif message_type == "session_keepalive":
            self._record_keepalive()
        elif message_type == "notification":
            await self._handle_notification(metadata, payload)
        elif message_type == "session_reconnect":
            await self._handle_session_reconnect(payload)
        elif message_type == "revocation":
            await self._handle_revocation(payload)
        elif message_type == "session_close":
            await self._handle_session_close(payload)
        else:
            logger.debug(f"Unknown message type: {message_type}")

    async def _handle_session_welcome(self, payload: dict) -> None:
        session = payload.get("session") or {}
        session_id = session.get("id")
        if not session_id:
            logger.warning("session_welcome without a session id")
            return

        keepalive = session.get("keepalive_timeout_seconds") or self.default_keepalive
        self.keepalive_timeout = float(keepalive)
        self.session = EventSubSession(
            id=session_id,
            status=session.get("status") or "connected",
            keepalive_timeout_seconds=int(self.keepalive_timeout),
            connected_at=datetime.now(timezone.utc),
        )
        self.state = SessionState.READY
        self.reconnect_delay = self.initial_reconnect_delay
        self.context.set_session(session_id)
        self.context.update_diagnostics(websocket_connected=True, last_error=None)
        logger.info(f"EventSub session established: {session_id}")

        self._record_keepalive()
        await self._call(self.on_ready, session_id)

    def _record_keepalive(self) -> None:
        self.context.update_diagnostics(last_keepalive_at=time.time())
        self._arm_watchdog()

    def _arm_watchdog(self) -> None:
        if self.keepalive_timeout > 0:
            self.timers.start(
                KEEPALIVE_TIMER_KEY,
                self.keepalive_timeout + self.keepalive_grace,
                self._on_keepalive_timeout,
            )

    async def _on_keepalive_timeout(self) -> None:
        error = KeepaliveTimeout()
        logger.warning(f"EventSub {error}")
        self.context.update_diagnostics(last_error=str(error))
        await self._teardown(str(error))
        self.schedule_reconnect("keepalive-timeout")

    async def _handle_notification(self, metadata: dict, payload: dict) -> None:
        message_id = metadata.get("message_id")
        if message_id:
            if message_id in self._seen_messages:
                logger.debug(f"Dropping duplicate EventSub message {message_id}")
                return
            self._seen_messages[message_id] = True

        subscription = payload.get("subscription") or {}
        subscription_type = subscription.get("type") or "unknown"
        self.context.update_diagnostics(
            last_notification_at=time.time(),
            last_notification_type=subscription_type,
        )
        self._arm_watchdog()
        logger.info(f"Received EventSub notification: {subscription_type}")

        try:
            await self.on_notification(subscription_type, payload.get("event") or {}, message_id)
        except Exception as e:
            logger.error(f"Error in event handler for {subscription_type}: {e}", exc_info=True)

    async def _handle_session_reconnect(self, payload: dict) -> None:
        session = payload.get("session") or {}
        reconnect_url = session.get("reconnect_url")
        logger.info("EventSub session reconnect requested")

        # Migrating to reconnect_url keeps subscriptions and applied effects
        await self._teardown("Session migrated", notify=False)
        self.reconnect_delay = self.initial_reconnect_delay
        if reconnect_url:
            await self.connect(reconnect_url)
        else:
            self.schedule_reconnect("session-reconnect")

    async def _handle_revocation(self, payload: dict) -> None:
        subscription = payload.get("subscription") or {}
        subscription_type = subscription.get("type") or "unknown"
        logger.warning(
            f"EventSub subscription revoked: {subscription_type} ({subscription.get('status')})"
        )
        self.context.update_diagnostics(last_error=f"Revoked: {subscription_type}")
        await self._call(self.on_revocation, subscription_type)

    async def _handle_session_close(self, payload: dict) -> None:
        status = (payload.get("session") or {}).get("status") or "unknown"
        logger.warning(f"EventSub session closed: {status}")
        await self._teardown(f"Session closed: {status}")
        self.context.update_diagnostics(last_error=f"Session closed: {status}")
        self.schedule_reconnect("session-close")

    @staticmethod
    async def _call(callback: Callable[..., Any], *args: Any) -> None:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
