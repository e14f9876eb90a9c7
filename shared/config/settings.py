"""
Application settings loaded from environment variables.
Uses pydantic-settings for type-safe configuration.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with defaults for development."""

    # Environment
    environment: str = "development"
    debug: bool = True

    # Server
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8001

    # Logging
    log_level: str = ""  # Empty: DEBUG when debug is on, INFO otherwise
    log_format: Literal["auto", "json", "text"] = "auto"  # auto: JSON in production

    # Redis
    redis_url: str = "redis://localhost:6379"
    redis_pool_max_connections: int = 50
    redis_socket_timeout: int = 5  # Socket timeout in seconds (connect and read/write)

    # Membership store
    # "memory" keeps membership in-process; "redis" makes it durable and shared
    membership_backend: Literal["memory", "redis"] = "memory"
    membership_key_prefix: str = ""  # Optional namespace, e.g. "chat:" -> "chat:topic:<name>"
    membership_default_ttl: float = 86400.0  # Seconds; refreshed on every join. 0 disables expiry

    # Store round trip retries (transient backend errors)
    store_retry_attempts: int = 3
    store_retry_initial_delay: float = 0.05
    store_retry_max_delay: float = 1.0

    # WebSocket sessions
    # "single": a new connection replaces the client's previous one
    # "multi": connections accumulate up to ws_max_connections_per_client
    ws_session_policy: Literal["single", "multi"] = "single"
    ws_max_connections_per_client: int = 5
    ws_default_topics: str = ""  # Comma-separated topics every client joins on connect
    ws_track_connections_in_store: bool = True
    ws_restore_memberships_on_open: bool = True

    # Broadcast
    ws_send_timeout: float = 5.0  # Seconds before a single send counts as timed out
    ws_evict_on_timeout: bool = False
    ws_broadcast_batch_size: int = 50  # Members delivered to in parallel
    ws_publish_requires_membership: bool = True

    # Connection loop
    ws_receive_timeout: float = 90.0
    ws_max_message_size: int = 64 * 1024  # 64 KB
    ws_maintenance_interval: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @property
    def default_topics(self) -> list[str]:
        """Default topics parsed from the comma-separated setting."""
        return [t.strip() for t in self.ws_default_topics.split(",") if t.strip()]

    @property
    def effective_log_level(self) -> str:
        if self.log_level:
            return self.log_level.upper()
        return "DEBUG" if self.debug else "INFO"

    @property
    def use_json_logs(self) -> bool:
        if self.log_format == "auto":
            return self.environment == "production"
        return self.log_format == "json"

    @property
    def default_ttl(self) -> float | None:
        """Membership TTL in seconds, or None when expiry is disabled."""
        return self.membership_default_ttl if self.membership_default_ttl > 0 else None

    def validate_for_production(self) -> list[str]:
        """
        Validate that the configuration is safe for production.
        Returns a list of validation errors. Empty list means all checks pass.
        """
        errors = []

        if self.environment == "production":
            if self.debug:
                errors.append("DEBUG must be False in production")

            if self.membership_backend != "redis":
                errors.append(
                    "MEMBERSHIP_BACKEND must be 'redis' in production "
                    "(in-memory membership is lost on restart)"
                )

        if self.ws_send_timeout <= 0:
            errors.append("WS_SEND_TIMEOUT must be positive")

        if self.ws_max_connections_per_client < 1:
            errors.append("WS_MAX_CONNECTIONS_PER_CLIENT must be at least 1")

        if self.store_retry_attempts < 1:
            errors.append("STORE_RETRY_ATTEMPTS must be at least 1")

        if 0 < self.membership_default_ttl <= self.ws_maintenance_interval:
            errors.append(
                "MEMBERSHIP_DEFAULT_TTL must exceed WS_MAINTENANCE_INTERVAL "
                "(memberships of connected clients are refreshed once per interval)"
            )

        if self.log_level and self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"LOG_LEVEL {self.log_level!r} is not a logging level")

        return errors


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience exports
settings = get_settings()
