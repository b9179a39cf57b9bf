"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the burn
synchronization service, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis settings for short-lived signature claim markers."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    claims_enabled: bool = Field(
        default=True,
        alias="CLAIMS_ENABLED",
        description="Use Redis claim markers to keep live and backfill workers off the same signature",
    )
    claim_ttl_seconds: int = Field(
        default=300,
        alias="CLAIM_TTL_SECONDS",
        ge=10,
        le=24 * 3600,
        description="Lifetime of a processing-in-progress claim; refreshed before each ledger call",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class SolanaSettings(BaseSettings):
    """Solana RPC and log subscription settings."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    rpc_url: str = Field(
        default="https://api.devnet.solana.com",
        alias="SOLANA_RPC_URL",
        description="HTTP JSON-RPC endpoint",
    )
    ws_url: str | None = Field(
        default=None,
        alias="SOLANA_WS_URL",
        description="Websocket endpoint (derived from SOLANA_RPC_URL when unset)",
    )
    program_id: str | None = Field(
        default=None,
        alias="SOLANA_PROGRAM_ID",
        description="Program whose logs carry burn events",
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed",
        alias="SOLANA_COMMITMENT",
        description="Commitment level for subscriptions and fetches",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="SOLANA_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Rate limit for HTTP RPC calls",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("SOLANA_RPC_URL must be an HTTP(S) endpoint")
        return v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str | None) -> str | None:
        """Validate WebSocket URL format."""
        if v is None:
            return v
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("SOLANA_WS_URL must start with ws:// or wss://")
        return v

    @property
    def resolved_ws_url(self) -> str:
        """Websocket URL, derived from the HTTP endpoint if not configured."""
        if self.ws_url:
            return self.ws_url
        if self.rpc_url.startswith("https://"):
            return "wss://" + self.rpc_url[len("https://") :]
        return "ws://" + self.rpc_url[len("http://") :]


class LedgerSettings(BaseSettings):
    """External tokenomics ledger API settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", extra="ignore")

    base_url: str = Field(
        default="https://public.believe.app/v1",
        alias="LEDGER_BASE_URL",
        description="Base URL of the tokenomics API",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="LEDGER_API_KEY",
        description="API key sent as x-believe-api-key",
    )
    persist_onchain: bool = Field(
        default=True,
        alias="LEDGER_PERSIST_ONCHAIN",
        description="Ask the ledger to persist each proof on-chain",
    )
    max_attempts: int = Field(
        default=5,
        alias="LEDGER_MAX_ATTEMPTS",
        ge=1,
        le=20,
        description="Maximum HTTP attempts per event before surfacing a terminal failure",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        alias="LEDGER_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Base delay for exponential backoff (doubles per retry)",
    )
    retry_max_delay_seconds: float = Field(
        default=30.0,
        alias="LEDGER_RETRY_MAX_DELAY_SECONDS",
        ge=0.0,
        le=600.0,
        description="Upper bound for a single backoff delay",
    )
    timeout_seconds: float = Field(
        default=15.0,
        alias="LEDGER_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Per-request HTTP timeout",
    )
    batch_enabled: bool = Field(
        default=False,
        alias="LEDGER_BATCH_ENABLED",
        description="Send multi-event transactions through /tokenomics/burn-batch",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("LEDGER_BASE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class DispatchSettings(BaseSettings):
    """Worker pool settings for live dispatch."""

    model_config = SettingsConfigDict(env_prefix="DISPATCH_", extra="ignore")

    workers: int = Field(
        default=4,
        alias="DISPATCH_WORKERS",
        ge=1,
        le=256,
        description="Concurrent signatures dispatched at once",
    )
    queue_size: int = Field(
        default=1000,
        alias="DISPATCH_QUEUE_SIZE",
        ge=1,
        le=1_000_000,
        description="Bounded queue between the live subscription and the workers",
    )
    shutdown_grace_seconds: float = Field(
        default=30.0,
        alias="SHUTDOWN_GRACE_SECONDS",
        ge=0.0,
        le=3600.0,
        description="How long workers may drain in-flight work on shutdown",
    )


class BackfillSettings(BaseSettings):
    """Historical catch-up settings."""

    model_config = SettingsConfigDict(env_prefix="BACKFILL_", extra="ignore")

    on_start: bool = Field(
        default=True,
        alias="BACKFILL_ON_START",
        description="Run one backfill pass when the pipeline starts",
    )
    interval_seconds: int = Field(
        default=900,
        alias="BACKFILL_INTERVAL_SECONDS",
        ge=0,
        le=7 * 24 * 3600,
        description="Periodic safety-net backfill interval (0 disables)",
    )
    limit: int = Field(
        default=500,
        alias="BACKFILL_LIMIT",
        ge=1,
        le=100_000,
        description="Signatures examined per backfill pass",
    )
    concurrency: int = Field(
        default=4,
        alias="BACKFILL_CONCURRENCY",
        ge=1,
        le=64,
        description="Signatures processed concurrently during backfill",
    )


class RetentionSettings(BaseSettings):
    """Processed-signature retention settings."""

    model_config = SettingsConfigDict(env_prefix="SIGNATURES_", extra="ignore")

    retention_days: int | None = Field(
        default=None,
        alias="SIGNATURES_RETENTION_DAYS",
        ge=1,
        description="Prune processed signatures older than this (unset keeps forever)",
    )
    min_retention_days: int = Field(
        default=30,
        alias="SIGNATURES_MIN_RETENTION_DAYS",
        ge=1,
        description="Refuse to prune inside this window (covers plausible backfill gaps)",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from burn_sync.config import get_settings

        settings = get_settings()
        print(settings.solana.program_id)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    solana: SolanaSettings = Field(
        default_factory=lambda: SolanaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ledger: LedgerSettings = Field(
        default_factory=lambda: LedgerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    dispatch: DispatchSettings = Field(
        default_factory=lambda: DispatchSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    backfill: BackfillSettings = Field(
        default_factory=lambda: BackfillSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retention: RetentionSettings = Field(
        default_factory=lambda: RetentionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Parse and log burn events without calling the ledger or marking signatures",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "solana": {
                "rpc_url": self.solana.rpc_url,
                "ws_url": self.solana.resolved_ws_url,
                "program_id": self.solana.program_id or "(not set)",
                "commitment": self.solana.commitment,
            },
            "ledger": {
                "base_url": self.ledger.base_url,
                "api_key": "(set)" if self.ledger.api_key else "(not set)",
                "persist_onchain": str(self.ledger.persist_onchain),
                "max_attempts": str(self.ledger.max_attempts),
                "batch_enabled": str(self.ledger.batch_enabled),
            },
            "dispatch": {
                "workers": str(self.dispatch.workers),
                "queue_size": str(self.dispatch.queue_size),
            },
            "backfill": {
                "on_start": str(self.backfill.on_start),
                "interval_seconds": str(self.backfill.interval_seconds),
                "limit": str(self.backfill.limit),
            },
            "claims_enabled": str(self.redis.claims_enabled),
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["run", "backfill", "init-db", "prune"]) -> None:
        """Validate command-specific requirements.

        A command that needs a capability which is not configured must refuse
        to run rather than start half-wired.
        """
        if command in ("run", "backfill"):
            if not self.solana.program_id:
                raise ValueError("SOLANA_PROGRAM_ID is required to ingest burn events")
            if not self.dry_run and self.ledger.api_key is None:
                raise ValueError("LEDGER_API_KEY is required unless DRY_RUN is enabled")

        if command == "prune" and self.retention.retention_days is not None:
            if self.retention.retention_days < self.retention.min_retention_days:
                raise ValueError(
                    "SIGNATURES_RETENTION_DAYS must be >= SIGNATURES_MIN_RETENTION_DAYS"
                )

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
