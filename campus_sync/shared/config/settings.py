"""
Realtime sync settings loaded from environment variables.
Uses pydantic-settings for type-safe configuration.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Realtime sync settings with defaults for development."""

    model_config = SettingsConfigDict(
        env_prefix="CAMPUS_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = True

    # Redis push transport
    redis_url: str = "redis://localhost:6379"
    redis_channel_prefix: str = "realtime"

    # Channels
    # A client session keeps roughly a dozen channels open; the cap only
    # catches leaks from screens that subscribe under ever-changing names.
    max_channels: int = 32
    channel_close_timeout: float = 5.0  # Seconds to wait for unsubscribe/close

    # Cache lifetimes (seconds)
    identity_ttl_seconds: float = 24 * 60 * 60  # Identity changes only via auth or profile events
    request_list_ttl_seconds: float = 5 * 60
    mentor_directory_ttl_seconds: float = 10 * 60

    # Reconnection policy
    reconnect_cooldown_seconds: float = 2.0  # Foreground/online flapping window
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_backoff_base: float = 2.0
    reconnect_jitter_factor: float = 0.25
    reconnect_max_attempts: int = 8

    # Collaboration requests
    request_expiry_days: int = 14  # Server-side auto-expiry of stale pending requests

    def validate_reconnect_policy(self) -> list[str]:
        """
        Validate that the reconnect policy values are coherent.
        Returns a list of validation errors. Empty list means all checks pass.
        """
        errors = []

        if self.reconnect_initial_delay <= 0:
            errors.append("RECONNECT_INITIAL_DELAY must be positive")
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            errors.append("RECONNECT_MAX_DELAY must be >= RECONNECT_INITIAL_DELAY")
        if self.reconnect_max_attempts < 1:
            errors.append("RECONNECT_MAX_ATTEMPTS must be >= 1")
        if self.max_channels < 1:
            errors.append("MAX_CHANNELS must be >= 1")

        return errors


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience exports
settings = get_settings()
