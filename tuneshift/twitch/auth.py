"""
Token Authority

Owns the single Twitch user credential: acquisition through the implicit
grant flow, revalidation against /oauth2/validate, scope enforcement and
invalidation. Every ensure_valid() call revalidates upstream so tokens
revoked from the Twitch dashboard are caught, not only ones that ran out of
lifetime locally.

Clearing the credential (sign-out, expiry, validation failure, scope
shortfall) notifies registered listeners, which tear down the session,
reconciler, scheduler and reward refresher before expire() returns.
"""

from __future__ import annotations

import json
import time
from typing import Awaitable, Callable, Iterable, List, Optional

import httpx

from tuneshift.config import Settings, settings as default_settings
from tuneshift.core.context import SessionContext
from tuneshift.errors import (
    ClientMismatch,
    GrantCancelled,
    GrantStateMismatch,
    InsufficientScopes,
    MissingClientConfiguration,
    NotAuthenticated,
    TokenExpired,
    TokenValidationFailed,
    TuneshiftError,
)
from tuneshift.memory.store import KeyValueStore
from tuneshift.schemas.state import Credential, TokenValidation
from tuneshift.twitch.grant import GrantFlow, build_authorize_url, generate_state, parse_redirect
from tuneshift.utils.logging import get_logger
from tuneshift.utils.sanitize import response_body

logger = get_logger(__name__, category="auth")

TWITCH_AUTH_STORAGE_KEY = "twitch"
LEGACY_AUTH_STORAGE_KEYS = ("twitchAuth",)

ClearedListener = Callable[[str], Awaitable[None]]


def scopes_missing(required: Iterable[str], granted: Iterable[str]) -> List[str]:
    """Required scopes absent from the granted list (case-insensitive)."""
    granted_lower = {scope.lower() for scope in granted}
    return [scope for scope in required if scope.lower() not in granted_lower]


class TokenAuthority:
    """Single-identity OAuth token lifecycle."""

    def __init__(
        self,
        store: KeyValueStore,
        context: SessionContext,
        grant_flow: Optional[GrantFlow] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Settings = default_settings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.context = context
        self.grant_flow = grant_flow
        self.config = config
        self.clock = clock
        self.http_client = http_client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self._credential: Optional[Credential] = None
        self._listeners: List[ClearedListener] = []
        self._clearing = False

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def client_id(self) -> str:
        return (self.config.twitch_client_id or "").strip()

    def is_usable(self, credential: Optional[Credential] = None) -> bool:
        credential = credential or self._credential
        if credential is None:
            return False
        return credential.is_usable(self.config.auth_expiry_padding_seconds, now=self.clock())

    def on_cleared(self, listener: ClearedListener) -> None:
        """Register an async callback run whenever the credential is cleared."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def load(self) -> Optional[Credential]:
        await self.migrate_legacy_storage()
        raw = await self.store.get(TWITCH_AUTH_STORAGE_KEY)
        if raw:
            try:
                self._credential = Credential.model_validate(raw)
                logger.info(f"Loaded stored Twitch credential for user {self._credential.user_id}")
            except ValueError as e:
                logger.warning(f"Discarding unreadable stored credential: {e}")
                await self.store.delete(TWITCH_AUTH_STORAGE_KEY)
        return self._credential

    async def migrate_legacy_storage(self) -> None:
        """Move a credential stored under an old key to the current one."""
        if await self.store.get(TWITCH_AUTH_STORAGE_KEY):
            return

        for legacy_key in LEGACY_AUTH_STORAGE_KEYS:
            legacy = await self.store.get(legacy_key)
            if not legacy:
                continue
            try:
                if not self.client_id or not isinstance(legacy, dict):
                    continue
                access_token = str(legacy.get("accessToken") or "")
                user_id = legacy.get("broadcasterId") or legacy.get("userId")
                if not access_token or not isinstance(user_id, str):
                    continue

                now = self.clock()
                expires_at = legacy.get("expiresAt")
                # Legacy records kept expiry in epoch milliseconds
                expires_in = 0
                if isinstance(expires_at, (int, float)):
                    expires_in = max(0, round(expires_at / 1000 - now))

                migrated = Credential(
                    access_token=access_token,
                    scopes=legacy.get("scopes") if isinstance(legacy.get("scopes"), list) else [],
                    client_id=self.client_id,
                    user_id=user_id,
                    display_name=legacy.get("displayName") if isinstance(legacy.get("displayName"), str) else "",
                    issued_at=now,
                    expires_in=expires_in,
                )
                await self.store.set(TWITCH_AUTH_STORAGE_KEY, migrated.model_dump())
                logger.info(f"Migrated legacy credential from '{legacy_key}'")
                return
            finally:
                await self.store.delete(legacy_key)

    async def _set_credential(self, credential: Credential) -> None:
        self._credential = credential
        await self.store.set(TWITCH_AUTH_STORAGE_KEY, credential.model_dump())

    # ------------------------------------------------------------------
    # Upstream calls
    # ------------------------------------------------------------------

    async def validate_token(self, access_token: str) -> TokenValidation:
        """GET /oauth2/validate; raises TokenValidationFailed on non-2xx."""
        response = await self.http_client.get(
            f"{self.config.twitch_auth_base}/validate",
            headers={"Authorization": f"OAuth {access_token}"},
        )
        if response.status_code != 200:
            raise TokenValidationFailed(response.status_code, response_body(response))
        return TokenValidation.model_validate(response.json())

    async def fetch_profile(self, access_token: str) -> dict:
        """GET /helix/users for the token's own identity."""
        if not self.client_id:
            raise MissingClientConfiguration()
        response = await self.http_client.get(
            f"{self.config.twitch_helix_base}/users",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Client-Id": self.client_id,
            },
        )
        if response.status_code == 401:
            raise GrantCancelled("Authorization rejected")
        if response.status_code != 200:
            raise TuneshiftError(f"Failed to fetch Twitch profile ({response.status_code})")
        users = response.json().get("data") or []
        if not users:
            raise TuneshiftError("Twitch profile payload missing")
        return users[0]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> Credential:
        """Run the grant flow and return a validated credential with the required scopes."""
        if not self.client_id:
            raise MissingClientConfiguration()
        if self.grant_flow is None:
            raise MissingClientConfiguration("No grant flow configured")

        state = generate_state()
        authorize_url = build_authorize_url(
            self.config.twitch_auth_base,
            self.client_id,
            self.config.twitch_redirect_uri,
            self.config.twitch_required_scopes,
            state,
        )
        redirect_url = await self.grant_flow.launch(authorize_url)
        if not redirect_url:
            raise GrantCancelled()

        redirect = parse_redirect(redirect_url)
        if redirect.error:
            raise GrantCancelled(redirect.error)
        if not redirect.access_token:
            raise TuneshiftError("Missing access token from Twitch redirect")
        if redirect.state != state:
            raise GrantStateMismatch()

        validation = await self.validate_token(redirect.access_token)
        if validation.client_id and validation.client_id != self.client_id:
            raise ClientMismatch()

        granted = validation.scopes or redirect.scopes
        missing = scopes_missing(self.config.twitch_required_scopes, granted)
        if missing:
            raise InsufficientScopes(missing)
        if not validation.user_id:
            raise TuneshiftError("Missing user identifier from validation")

        profile = await self.fetch_profile(redirect.access_token)
        credential = Credential(
            access_token=redirect.access_token,
            scopes=granted,
            client_id=validation.client_id or self.client_id,
            user_id=validation.user_id,
            display_name=profile.get("display_name") or validation.login or "",
            issued_at=self.clock(),
            expires_in=validation.expires_in,
        )
        self.context.subscriptions_blocked = False
        await self._set_credential(credential)
        self.context.update_diagnostics(
            token_type="user",
            token_client_id=credential.client_id,
            token_expires_in=credential.expires_in,
            last_error=None,
        )
        logger.info(f"Twitch connected as {credential.display_name} ({credential.user_id})")
        return credential

    async def ensure_valid(self) -> Credential:
        """Return a revalidated, non-expired credential or clear it and raise."""
        credential = self._credential
        if credential is None:
            raise NotAuthenticated()

        if not self.is_usable(credential):
            await self.expire("Token expired")
            raise TokenExpired()

        try:
            validation = await self.validate_token(credential.access_token)
        except TokenValidationFailed as e:
            logger.warning(f"Token validation failed with status {e.status}")
            await self.expire(json.dumps({"status": e.status, "body": e.body}, default=str))
            raise

        current = self._credential
        if current is None or current.access_token != credential.access_token:
            # Signed out or replaced while the validation call was in flight
            raise NotAuthenticated("Credential changed during validation")

        granted = validation.scopes or current.scopes
        missing = scopes_missing(self.config.twitch_required_scopes, granted)
        if missing:
            await self.expire(f"Missing scopes: {', '.join(missing)}")
            raise InsufficientScopes(missing)

        updated = current.model_copy(
            update={
                "token_type": "bearer",
                "scopes": granted,
                "client_id": validation.client_id or current.client_id,
                "user_id": validation.user_id or current.user_id,
                "issued_at": self.clock(),
                "expires_in": validation.expires_in,
            }
        )
        if not self.is_usable(updated):
            await self.expire("Token expired")
            raise TokenExpired()

        await self._set_credential(updated)
        self.context.update_diagnostics(
            token_type="user",
            token_client_id=updated.client_id,
            token_expires_in=updated.expires_in,
            last_error=None,
        )
        return updated

    async def refresh_profile(self) -> Optional[Credential]:
        """Pick up display-name or id changes for the stored identity."""
        credential = self._credential
        if credential is None:
            return None
        try:
            profile = await self.fetch_profile(credential.access_token)
        except GrantCancelled:
            await self.expire("Unauthorized")
            raise NotAuthenticated()

        updates = {}
        if profile.get("display_name") and profile["display_name"] != credential.display_name:
            updates["display_name"] = profile["display_name"]
        if profile.get("id") and profile["id"] != credential.user_id:
            updates["user_id"] = profile["id"]
        if updates and self._credential is credential:
            await self._set_credential(credential.model_copy(update=updates))
        return self._credential

    async def expire(self, reason: str = "Token expired") -> None:
        """Clear the credential, surface `reason` in diagnostics and reset dependents."""
        await self._clear(last_error=reason, reason=reason)

    async def sign_out(self) -> None:
        await self._clear(last_error=None, reason="Signed out")

    async def _clear(self, last_error: Optional[str], reason: str) -> None:
        if self._clearing:
            return
        self._clearing = True
        try:
            if self._credential is not None:
                logger.warning(f"Clearing Twitch credential: {reason}")
            self._credential = None
            await self.store.delete(TWITCH_AUTH_STORAGE_KEY)
            self.context.reset_connection(
                last_error=last_error,
                token_type=None,
                token_client_id=None,
                token_expires_in=None,
            )
            for listener in list(self._listeners):
                try:
                    await listener(reason)
                except Exception as e:
                    logger.error(f"Credential-cleared listener failed: {e}", exc_info=True)
        finally:
            self._clearing = False

    async def close(self) -> None:
        await self.http_client.aclose()
