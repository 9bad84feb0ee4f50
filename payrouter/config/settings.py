import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment."""

    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0
    redis_max_connections: int = 50
    provider_cache_ttl_seconds: int = 30
    webhook_retry_cooldown_seconds: int = 300
    webhook_retry_sweep_interval_seconds: float = 60.0
    webhook_delivery_timeout_seconds: float = 5.0
    analytics_retention_days: int = 90
    analytics_cleanup_interval_seconds: float = 86400.0
    app_port: int = 9999

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


def get_settings() -> Settings:
    """Build settings from environment variables, falling back to defaults."""
    return Settings(
        redis_host=os.getenv("REDIS_HOST", "redis"),
        redis_port=_env_int("REDIS_PORT", 6379),
        redis_db=_env_int("REDIS_DB", 0),
        redis_max_connections=_env_int("REDIS_MAX_CONNECTIONS", 50),
        provider_cache_ttl_seconds=_env_int("PROVIDER_CACHE_TTL_SECONDS", 30),
        webhook_retry_cooldown_seconds=_env_int("WEBHOOK_RETRY_COOLDOWN_SECONDS", 300),
        webhook_retry_sweep_interval_seconds=_env_float("WEBHOOK_RETRY_SWEEP_INTERVAL_SECONDS", 60.0),
        webhook_delivery_timeout_seconds=_env_float("WEBHOOK_DELIVERY_TIMEOUT_SECONDS", 5.0),
        analytics_retention_days=_env_int("ANALYTICS_RETENTION_DAYS", 90),
        analytics_cleanup_interval_seconds=_env_float("ANALYTICS_CLEANUP_INTERVAL_SECONDS", 86400.0),
        app_port=_env_int("APP_PORT", 9999),
    )
