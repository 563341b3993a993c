import asyncio
import json
import time
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from tuneshift.config import Settings
from tuneshift.core.context import SessionContext
from tuneshift.core.publisher import Publisher
from tuneshift.memory.store import MemoryStore
from tuneshift.schemas.state import Credential
from tuneshift.twitch.auth import TokenAuthority
from tuneshift.utils.timers import TimerTable

CLIENT_ID = "client-123"
USER_ID = "1001"
REQUIRED_SCOPES = [
    "channel:read:redemptions",
    "bits:read",
    "channel:read:subscriptions",
    "moderator:read:followers",
    "user:write:chat",
]


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    """Keep a developer's .env or shell from leaking into tests."""
    monkeypatch.setenv("TWITCH_CLIENT_ID", CLIENT_ID)
    monkeypatch.setenv("STORE_BACKEND", "memory")
    yield


def build_settings(**overrides) -> Settings:
    values = {
        "twitch_client_id": CLIENT_ID,
        "store_backend": "memory",
        "event_log_flush_seconds": 0.01,
        "rate_limit_base_delay_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings():
    return build_settings()


@pytest.fixture
def make_settings():
    return build_settings


def build_credential(**overrides) -> Credential:
    values = {
        "access_token": "tok-abc",
        "scopes": list(REQUIRED_SCOPES),
        "client_id": CLIENT_ID,
        "user_id": USER_ID,
        "display_name": "Streamer",
        "issued_at": time.time(),
        "expires_in": 14400,
    }
    values.update(overrides)
    return Credential(**values)


@pytest.fixture
def make_credential():
    return build_credential


class FakeTwitch:
    """httpx.MockTransport handler emulating the Twitch endpoints the core calls."""

    def __init__(self):
        self.user_id = USER_ID
        self.login = "streamer"
        self.display_name = "Streamer"
        self.client_id = CLIENT_ID
        self.scopes = list(REQUIRED_SCOPES)
        self.expires_in = 14400
        self.validate_status = 200
        self.subscriptions: List[dict] = []
        self.rewards: List[dict] = []
        self.chat_messages: List[dict] = []
        self.requests: List[httpx.Request] = []
        self._queued: Dict[Tuple[str, str], List[httpx.Response]] = {}
        self._next_id = 0

    def queue(self, method: str, path: str, *responses: httpx.Response) -> None:
        """Serve `responses` (in order) before falling back to the default behavior."""
        self._queued.setdefault((method, path), []).extend(responses)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def add_subscription(self, type: str, version: str, condition: dict, session_id: str, status: str = "enabled") -> dict:
        self._next_id += 1
        sub = {
            "id": f"sub-{self._next_id}",
            "status": status,
            "type": type,
            "version": version,
            "condition": condition,
            "transport": {"method": "websocket", "session_id": session_id},
        }
        self.subscriptions.append(sub)
        return sub

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queued = self._queued.get((request.method, request.url.path))
        if queued:
            return queued.pop(0)

        path = request.url.path
        if path == "/oauth2/validate":
            if self.validate_status != 200:
                return httpx.Response(
                    self.validate_status,
                    json={"status": self.validate_status, "message": "invalid access token"},
                )
            return httpx.Response(
                200,
                json={
                    "client_id": self.client_id,
                    "login": self.login,
                    "scopes": self.scopes,
                    "user_id": self.user_id,
                    "expires_in": self.expires_in,
                },
            )

        if path == "/helix/users":
            return httpx.Response(
                200,
                json={"data": [{"id": self.user_id, "login": self.login, "display_name": self.display_name}]},
            )

        if path == "/helix/eventsub/subscriptions":
            if request.method == "GET":
                return httpx.Response(
                    200,
                    json={"data": list(self.subscriptions), "total": len(self.subscriptions), "pagination": {}},
                )
            if request.method == "POST":
                body = json.loads(request.content)
                sub = self.add_subscription(
                    body["type"], body["version"], body["condition"], body["transport"]["session_id"]
                )
                return httpx.Response(202, json={"data": [sub]})
            if request.method == "DELETE":
                sub_id = request.url.params.get("id")
                self.subscriptions = [sub for sub in self.subscriptions if sub["id"] != sub_id]
                return httpx.Response(204)

        if path == "/helix/channel_points/custom_rewards":
            return httpx.Response(200, json={"data": list(self.rewards)})

        if path == "/helix/chat/messages":
            body = json.loads(request.content)
            self.chat_messages.append(body)
            return httpx.Response(
                200, json={"data": [{"message_id": f"msg-{len(self.chat_messages)}", "is_sent": True}]}
            )

        return httpx.Response(404, json={"error": "Not Found"})


@pytest.fixture
def fake_twitch():
    return FakeTwitch()


@pytest.fixture
def http_client(fake_twitch):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_twitch))


class FakeWebSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, url: str):
        self.url = url
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def feed(self, message: dict) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def drop(self) -> None:
        """Simulate the server going away."""
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)


class FakeConnector:
    def __init__(self):
        self.sockets: List[FakeWebSocket] = []
        self.failures = 0

    @property
    def latest(self) -> Optional[FakeWebSocket]:
        return self.sockets[-1] if self.sockets else None

    async def __call__(self, url: str) -> FakeWebSocket:
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws


@pytest.fixture
def connector():
    return FakeConnector()


class EventSubMessages:
    """Builders for EventSub WebSocket envelopes."""

    _counter = 0

    @classmethod
    def _metadata(cls, message_type: str, message_id: Optional[str] = None) -> dict:
        cls._counter += 1
        return {
            "message_id": message_id or f"m-{cls._counter}",
            "message_type": message_type,
            "message_timestamp": "2026-01-01T00:00:00Z",
        }

    @classmethod
    def welcome(cls, session_id: str = "session-1", keepalive: float = 10) -> dict:
        return {
            "metadata": cls._metadata("session_welcome"),
            "payload": {
                "session": {
                    "id": session_id,
                    "status": "connected",
                    "keepalive_timeout_seconds": keepalive,
                    "reconnect_url": None,
                }
            },
        }

    @classmethod
    def keepalive(cls) -> dict:
        return {"metadata": cls._metadata("session_keepalive"), "payload": {}}

    @classmethod
    def notification(cls, subscription_type: str, event: dict, message_id: Optional[str] = None) -> dict:
        return {
            "metadata": cls._metadata("notification", message_id),
            "payload": {
                "subscription": {"id": "sub-x", "type": subscription_type, "version": "1", "status": "enabled"},
                "event": event,
            },
        }

    @classmethod
    def reconnect(cls, url: Optional[str]) -> dict:
        return {
            "metadata": cls._metadata("session_reconnect"),
            "payload": {"session": {"id": "session-1", "status": "reconnecting", "reconnect_url": url}},
        }

    @classmethod
    def revocation(cls, subscription_type: str) -> dict:
        return {
            "metadata": cls._metadata("revocation"),
            "payload": {"subscription": {"id": "sub-x", "type": subscription_type, "status": "authorization_revoked"}},
        }

    @classmethod
    def session_close(cls, status: str = "websocket_disconnected") -> dict:
        return {"metadata": cls._metadata("session_close"), "payload": {"session": {"status": status}}}


@pytest.fixture
def messages():
    return EventSubMessages


@pytest.fixture
def publisher():
    return Publisher()


@pytest.fixture
def context(publisher):
    return SessionContext(publisher)


@pytest.fixture
def timers():
    return TimerTable()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def authority(store, context, http_client, test_settings):
    return TokenAuthority(store, context, http_client=http_client, config=test_settings)


async def wait_for(predicate, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll until predicate() is truthy or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return wait_for
