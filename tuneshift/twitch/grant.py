"""
OAuth implicit-grant flow collaborators.

The core never renders the consent page; it hands the authorize URL to a
GrantFlow and receives the final redirect URL back (None when the user
cancels). CallbackGrantFlow is the HTTP-hosted variant used by
tuneshift.main: the UI fetches the pending URL, completes the consent in a
browser, and posts the redirect back.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from tuneshift.utils.logging import get_logger

logger = get_logger(__name__, category="auth")


def generate_state() -> str:
    return secrets.token_hex(16)


def build_authorize_url(
    auth_base: str,
    client_id: str,
    redirect_uri: str,
    scopes: List[str],
    state: str,
) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "token",
        "scope": " ".join(scopes),
        "state": state,
        "force_verify": "true",
    }
    return f"{auth_base}/authorize?{urlencode(params)}"


@dataclass
class GrantRedirect:
    access_token: Optional[str]
    state: Optional[str]
    scopes: List[str] = field(default_factory=list)
    error: Optional[str] = None


def parse_redirect(redirect_url: str) -> GrantRedirect:
    """Read access_token/state/scope from the redirect's #fragment."""
    parsed = urlparse(redirect_url)
    fragment = parse_qs(parsed.fragment)
    # Twitch reports denials in the query string
    query = parse_qs(parsed.query)

    def first(values: dict, name: str) -> Optional[str]:
        items = values.get(name)
        return items[0] if items else None

    scope_value = first(fragment, "scope") or ""
    return GrantRedirect(
        access_token=first(fragment, "access_token"),
        state=first(fragment, "state") or first(query, "state"),
        scopes=[scope for scope in scope_value.split(" ") if scope],
        error=first(query, "error") or first(fragment, "error"),
    )


class GrantFlow:
    async def launch(self, authorize_url: str) -> Optional[str]:
        """Run the consent flow; return the final redirect URL or None if cancelled."""
        raise NotImplementedError


class CallbackGrantFlow(GrantFlow):
    """Parks the flow until the UI posts the redirect URL (or cancels)."""

    def __init__(self):
        self.authorize_url: Optional[str] = None
        self._future: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self._future is not None and not self._future.done()

    async def launch(self, authorize_url: str) -> Optional[str]:
        if self.pending:
            self.cancel()
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self.authorize_url = authorize_url
        self._future = future
        logger.info("Waiting for Twitch authorization callback")
        try:
            return await future
        finally:
            if self._future is future:
                self.authorize_url = None
                self._future = None

    def complete(self, redirect_url: str) -> bool:
        if not self.pending:
            return False
        self._future.set_result(redirect_url)
        return True

    def cancel(self) -> bool:
        if not self.pending:
            return False
        self._future.set_result(None)
        return True
