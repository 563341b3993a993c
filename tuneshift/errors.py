"""
Error taxonomy for the Twitch session core.

Recoverable by retry: SocketFault, KeepaliveTimeout, SubscriptionSyncFailed.
Terminal for the session (credential is cleared, user must sign in again):
TokenValidationFailed, InsufficientScopes, SubscriptionPermissionDenied.
ChatSendFailed is local to one scheduled effect.
"""

from __future__ import annotations

from typing import Any, List, Optional


class TuneshiftError(Exception):
    """Base class for every error raised by the core."""


class GrantCancelled(TuneshiftError):
    def __init__(self, message: str = "Authentication cancelled"):
        super().__init__(message)


class GrantStateMismatch(TuneshiftError):
    def __init__(self, message: str = "OAuth state mismatch"):
        super().__init__(message)


class ClientMismatch(TuneshiftError):
    def __init__(self, message: str = "Token was issued for a different client"):
        super().__init__(message)


class MissingClientConfiguration(TuneshiftError):
    def __init__(self, message: str = "Missing Twitch client ID"):
        super().__init__(message)


class InsufficientScopes(TuneshiftError):
    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required Twitch scopes: {', '.join(self.missing)}")


class TokenValidationFailed(TuneshiftError):
    def __init__(self, status: int, body: Any = None, message: str = "Token validation failed"):
        self.status = status
        self.body = body
        super().__init__(f"{message} ({status})")


class NotAuthenticated(TuneshiftError):
    def __init__(self, message: str = "Not authenticated with Twitch"):
        super().__init__(message)


class TokenExpired(TuneshiftError):
    def __init__(self, message: str = "Token expired"):
        super().__init__(message)


class SubscriptionPermissionDenied(TuneshiftError):
    def __init__(self, subscription_type: Optional[str] = None, body: Any = None):
        self.subscription_type = subscription_type
        self.body = body
        target = subscription_type or "subscriptions"
        super().__init__(f"Permission denied for {target}")


class SubscriptionSyncFailed(TuneshiftError):
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class SocketFault(TuneshiftError):
    pass


class KeepaliveTimeout(TuneshiftError):
    def __init__(self, message: str = "Keepalive timeout"):
        super().__init__(message)


class ChatSendFailed(TuneshiftError):
    def __init__(self, status: Optional[int], body: Any = None, message: str = "Chat send failed"):
        self.status = status
        self.body = body
        suffix = f" ({status})" if status is not None else ""
        super().__init__(f"{message}{suffix}")


# Failures after which TokenAuthority has already cleared the credential
AUTH_FAILURES = (NotAuthenticated, TokenExpired, TokenValidationFailed, InsufficientScopes)
