"""
Configuration Management

All tunables for the Twitch session, the effect scheduler and storage live
here. Values come from environment variables (or a .env file), matched
case-insensitively against the field names.
"""

from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application Settings

    Pydantic loads every field from the environment, converting types
    ("30" -> 30.0) and falling back to the defaults below.
    """

    log_level: str = "INFO"
    log_categories: Optional[str] = None  # Comma-separated categories (auth,eventsub,subscriptions,rules,effects,activity,rewards,system). If None, show all logs.
    port: int = 8000
    host: str = "127.0.0.1"

    # Twitch application
    twitch_client_id: Optional[str] = None
    twitch_redirect_uri: str = "http://localhost:8000/auth/twitch"
    twitch_auth_base: str = "https://id.twitch.tv/oauth2"
    twitch_helix_base: str = "https://api.twitch.tv/helix"
    twitch_eventsub_ws_url: str = "wss://eventsub.wss.twitch.tv/ws"
    twitch_required_scopes: List[str] = [
        "channel:read:redemptions",
        "bits:read",
        "channel:read:subscriptions",
        "moderator:read:followers",
        "user:write:chat",
    ]
    http_timeout_seconds: float = 30.0

    # Token lifecycle
    auth_expiry_padding_seconds: float = 60.0

    # EventSub WebSocket session
    eventsub_reconnect_delay: float = 1.0  # Initial reconnect delay in seconds
    eventsub_max_reconnect_delay: float = 30.0  # Maximum reconnect delay in seconds
    eventsub_keepalive_grace_seconds: float = 5.0
    eventsub_default_keepalive_seconds: float = 10.0
    eventsub_dedup_ttl_seconds: float = 300.0
    eventsub_dedup_max_entries: int = 4096

    # Subscription reconciliation
    subscription_sync_deadline_seconds: float = 10.0

    # Helix rate limiting
    rate_limit_max_attempts: int = 3
    rate_limit_base_delay_seconds: float = 1.0

    # Channel point reward cache
    reward_refresh_interval_seconds: float = 60.0
    reward_manual_refresh_min_interval_seconds: float = 15.0

    # Activity log
    event_log_limit: int = 200
    event_log_flush_seconds: float = 0.5

    # Key-value storage
    store_backend: str = "file"  # "file" or "redis"
    store_path: str = "data/tuneshift.json"
    redis_url: str = "redis://localhost:6379/0"
    redis_namespace: str = "tuneshift"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra env vars without validation errors


# Loaded once at import; components accept overrides for tests
settings = Settings()
