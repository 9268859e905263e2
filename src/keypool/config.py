"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite:///data/keypool.db"

    # Logging
    log_level: str = "INFO"

    # Quota bookkeeping (seconds)
    exhaustion_cooldown_seconds: int = 300  # 5 minutes after a recorded 429
    exhaustion_cache_ttl_seconds: int = 600  # ephemeral fast-path set
    quota_window_seconds: int = 86400  # usage window before counters reset
    quota_cache_ttl_seconds: int = 10  # aggregated snapshot cache

    # Health probes
    health_probe_timeout: float = 5.0
    provider_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    # Ephemeral tier
    cache_backend: str = "memory"  # "memory" or "redis"
    redis_url: str | None = None
    redis_prefix: str = "keypool:"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
