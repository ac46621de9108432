"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
settlement sync, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from cow_settlement_sync.networks import (
    SETTLEMENT_CONTRACT_ADDRESS,
    NetworkConfig,
    build_network_table,
)

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _parse_chain_mapping(v: object, *, env_name: str) -> dict[int, str]:
    """Parse ``"1=https://a,42161=https://b"`` into ``{1: ..., 42161: ...}``."""
    if v is None or v == "":
        return {}
    if isinstance(v, dict):
        return {int(k): str(url).strip() for k, url in v.items()}
    if not isinstance(v, str):
        raise TypeError(f"Invalid {env_name} type")

    parsed: dict[int, str] = {}
    for part in v.split(","):
        part = part.strip()
        if not part:
            continue
        chain_id, sep, url = part.partition("=")
        if not sep or not url.strip():
            raise ValueError(f"{env_name} entries must look like '<chain_id>=<url>', got {part!r}")
        try:
            parsed[int(chain_id.strip())] = url.strip()
        except ValueError as e:
            raise ValueError(f"{env_name} has a non-numeric chain id: {chain_id!r}") from e
    return parsed


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size (ignored for SQLite)",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL connection string (or sqlite+aiosqlite:// for local use)"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis cache settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; leave unset to disable the order fill cache",
    )
    fills_cache_ttl_seconds: int = Field(
        default=24 * 3600,
        alias="REDIS_FILLS_CACHE_TTL_SECONDS",
        ge=60,
        le=90 * 24 * 3600,
        description="TTL for cached settlement API responses",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        """Check if the Redis cache is enabled."""
        return self.url is not None


class RpcSettings(BaseSettings):
    """Blockchain RPC settings."""

    model_config = SettingsConfigDict(env_prefix="RPC_", extra="ignore")

    urls: Annotated[dict[int, str], NoDecode] = Field(
        default_factory=dict,
        alias="RPC_URLS",
        description="RPC endpoint per chain id, e.g. '1=https://...,42161=https://...'",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side rate limit for RPC calls",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="RPC_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="HTTP timeout for a single RPC request",
    )

    @field_validator("urls", mode="before")
    @classmethod
    def _parse_urls(cls, v: object) -> dict[int, str]:
        return _parse_chain_mapping(v, env_name="RPC_URLS")

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: dict[int, str]) -> dict[int, str]:
        """Validate RPC URL format."""
        for chain_id, url in v.items():
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"RPC URL for chain {chain_id} must be an HTTP(S) endpoint")
        return v


class SettlementApiSettings(BaseSettings):
    """Settlement (order book) API settings."""

    model_config = SettingsConfigDict(env_prefix="SETTLEMENT_", extra="ignore")

    api_urls: Annotated[dict[int, str], NoDecode] = Field(
        default_factory=dict,
        alias="SETTLEMENT_API_URLS",
        description="Optional settlement API base URL overrides per chain id",
    )
    timeout_seconds: float = Field(
        default=30.0,
        alias="SETTLEMENT_API_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="HTTP timeout for settlement API requests",
    )
    contract_address: str = Field(
        default=SETTLEMENT_CONTRACT_ADDRESS,
        alias="SETTLEMENT_CONTRACT_ADDRESS",
        description="Settlement contract whose transactions are ingested",
    )

    @field_validator("api_urls", mode="before")
    @classmethod
    def _parse_api_urls(cls, v: object) -> dict[int, str]:
        return _parse_chain_mapping(v, env_name="SETTLEMENT_API_URLS")


class BackoffSettings(BaseSettings):
    """Retry/backoff tuning for network-bound calls."""

    model_config = SettingsConfigDict(env_prefix="BACKOFF_", extra="ignore")

    max_retries: int = Field(
        default=5,
        alias="BACKOFF_MAX_RETRIES",
        ge=0,
        le=50,
        description="Retries after the first failed attempt",
    )
    base_delay_seconds: float = Field(
        default=2.0,
        alias="BACKOFF_BASE_DELAY_SECONDS",
        ge=0.0,
        le=3600.0,
        description="Delay before the first retry",
    )
    max_delay_seconds: float = Field(
        default=60.0,
        alias="BACKOFF_MAX_DELAY_SECONDS",
        ge=0.0,
        le=3600.0,
        description="Upper bound for a single retry delay",
    )
    multiplier: float = Field(
        default=2.0,
        alias="BACKOFF_MULTIPLIER",
        ge=1.0,
        le=10.0,
        description="Exponential growth factor between retries",
    )


class SyncSettings(BaseSettings):
    """Historical and realtime sync settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    networks: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(1, 42161),
        alias="SYNC_NETWORKS",
        description="Chain ids processed by the historical sync, in order (comma-separated)",
    )
    lookback_months: int = Field(
        default=4,
        alias="SYNC_LOOKBACK_MONTHS",
        ge=1,
        le=120,
        description="Default historical lookback window (30-day months)",
    )
    max_lookback_months: int = Field(
        default=6,
        alias="SYNC_MAX_LOOKBACK_MONTHS",
        ge=1,
        le=120,
        description="Cap on the historical lookback window unless forced",
    )
    historical_cooldown_seconds: float = Field(
        default=600.0,
        alias="SYNC_HISTORICAL_COOLDOWN_SECONDS",
        ge=0.0,
        le=24 * 3600,
        description="Pause between blocks during the historical scan",
    )
    realtime_cooldown_seconds: float = Field(
        default=0.0,
        alias="SYNC_REALTIME_COOLDOWN_SECONDS",
        ge=0.0,
        le=3600.0,
        description="Pause between blocks of one realtime batch",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        alias="SYNC_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="How often the realtime sync polls the chain head",
    )
    report_interval_seconds: float = Field(
        default=30.0,
        alias="SYNC_REPORT_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="How often the realtime sync logs a progress report",
    )
    scan_mode: Literal["blocks", "logs"] = Field(
        default="blocks",
        alias="SYNC_SCAN_MODE",
        description="Historical scan strategy: every block, or only blocks with Trade logs",
    )
    log_chunk_size: int = Field(
        default=100,
        alias="SYNC_LOG_CHUNK_SIZE",
        ge=1,
        le=100_000,
        description="Block range per eth_getLogs request in log-scan mode",
    )
    min_log_chunk_size: int = Field(
        default=10,
        alias="SYNC_MIN_LOG_CHUNK_SIZE",
        ge=1,
        le=100_000,
        description="Smallest range to split a failing log request into",
    )
    chunk_delay_seconds: float = Field(
        default=2.0,
        alias="SYNC_CHUNK_DELAY_SECONDS",
        ge=0.0,
        le=3600.0,
        description="Pause between log chunks in log-scan mode",
    )

    @field_validator("networks", mode="before")
    @classmethod
    def _parse_networks(cls, v: object) -> tuple[int, ...]:
        if v is None:
            raise ValueError("SYNC_NETWORKS must be set")
        if isinstance(v, str):
            return tuple(int(p.strip()) for p in v.split(",") if p.strip())
        if isinstance(v, int):
            return (v,)
        if isinstance(v, (list, tuple)):
            return tuple(int(x) for x in v)
        raise TypeError("Invalid SYNC_NETWORKS type")

    @field_validator("networks")
    @classmethod
    def validate_networks(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if not v:
            raise ValueError("SYNC_NETWORKS must list at least one chain id")
        return v


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from cow_settlement_sync.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.resolve_networks())
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
    rpc: RpcSettings = Field(
        default_factory=lambda: RpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    settlement_api: SettlementApiSettings = Field(
        default_factory=lambda: SettlementApiSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    backoff: BackoffSettings = Field(
        default_factory=lambda: BackoffSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def resolve_networks(self, chain_ids: Iterable[int] | None = None) -> list[NetworkConfig]:
        """Build the validated network table.

        Args:
            chain_ids: Chain ids to resolve. Defaults to SYNC_NETWORKS.

        Returns:
            Network configurations in the requested order.

        Raises:
            NetworkConfigError: If a network is unknown or misconfigured.
        """
        return build_network_table(
            self.sync.networks if chain_ids is None else chain_ids,
            rpc_urls=self.rpc.urls,
            api_url_overrides=self.settlement_api.api_urls,
            settlement_contract=self.settlement_api.contract_address,
        )

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "rpc_urls": {str(k): self._redact_url(v) for k, v in self.rpc.urls.items()},
            "settlement_api_urls": {str(k): v for k, v in self.settlement_api.api_urls.items()},
            "backoff": {
                "max_retries": str(self.backoff.max_retries),
                "base_delay_seconds": str(self.backoff.base_delay_seconds),
                "max_delay_seconds": str(self.backoff.max_delay_seconds),
                "multiplier": str(self.backoff.multiplier),
            },
            "sync": {
                "networks": ",".join(str(c) for c in self.sync.networks),
                "lookback_months": str(self.sync.lookback_months),
                "historical_cooldown_seconds": str(self.sync.historical_cooldown_seconds),
                "poll_interval_seconds": str(self.sync.poll_interval_seconds),
                "scan_mode": self.sync.scan_mode,
            },
            "log_level": self.log_level,
        }

    def validate_requirements(
        self,
        *,
        command: Literal["historical", "realtime", "prune", "stats", "init-db"],
        chain_ids: Iterable[int] | None = None,
    ) -> None:
        """Validate command-specific requirements.

        Commands that talk to a chain refuse to run when a requested network
        has no RPC endpoint.
        """
        if command in ("historical", "realtime", "prune"):
            self.resolve_networks(chain_ids)
        if self.sync.min_log_chunk_size > self.sync.log_chunk_size:
            raise ValueError("SYNC_MIN_LOG_CHUNK_SIZE must not exceed SYNC_LOG_CHUNK_SIZE")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
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
