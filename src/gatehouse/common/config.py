"""Gatehouse configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "token_secret": "insecure-token-secret-change-me",
}

LOG_LEVELS = ("ERROR", "WARN", "INFO", "DEBUG")


class GatehouseSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GATEHOUSE_")

    environment: str = "development"

    # Tokens
    token_secret: str = "insecure-token-secret-change-me"
    token_lifetime_seconds: int = 86400  # 24 hours

    # Wallet challenges
    wallet_nonce_ttl_ms: int = 300_000
    nonce_backend: str = "memory"  # "memory" | "redis"

    # Stores
    db_url: str = "sqlite+aiosqlite:///./gatehouse.db"
    activity_db_url: str = "sqlite+aiosqlite:///./gatehouse-activity.db"
    redis_url: str = "redis://localhost:6379/0"
    store_timeout_seconds: float = 5.0

    # Credentials
    bcrypt_rounds: int = 12
    crypto_workers: int = 4

    # Sessions
    session_ttl_seconds: int = 3600
    profile_cache_ttl_seconds: int = 1800

    # Rate limiting. Overrides map a route class to its own max.
    # e.g. '{"login": 20, "profile": 60}'
    rate_limit_window_ms: int = 900_000
    rate_limit_max: int = 100
    rate_limit_overrides: dict[str, int] = {}

    # Audit pipeline
    audit_batch_size: int = 100
    audit_batch_timeout_ms: int = 5000
    audit_flush_retries: int = 0
    audit_flush_retry_delay_ms: int = 200
    slow_request_ms: int = 1000
    large_response_bytes: int = 1_048_576
    log_level: str = "INFO"

    # Tenancy
    default_tenant_slug: str = "default"

    # API
    api_title: str = "Gatehouse"
    api_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: list[str] = ["http://localhost:3000"]

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level == "WARNING":
            level = "WARN"
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("nonce_backend")
    @classmethod
    def _check_nonce_backend(cls, value: str) -> str:
        if value not in ("memory", "redis"):
            raise ValueError("nonce_backend must be 'memory' or 'redis'")
        return value

    @field_validator("bcrypt_rounds")
    @classmethod
    def _check_bcrypt_rounds(cls, value: int) -> int:
        if value < 10 or value > 31:
            raise ValueError("bcrypt_rounds must be between 10 and 31")
        return value

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"GATEHOUSE_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}. "
                "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )

        if insecure_fields:
            warnings.warn(
                "Using the insecure default token secret — set GATEHOUSE_TOKEN_SECRET for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> GatehouseSettings:
    settings = GatehouseSettings()
    settings.validate_for_production()
    return settings
