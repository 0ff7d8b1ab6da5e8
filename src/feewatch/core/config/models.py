"""
Pydantic configuration models for FeeWatch.

These models provide type-safe configuration with validation for:
- Application settings
- Chain connection and scanner pacing
- Upstream retry strategy
- Per-source scanning definitions
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


DEFAULT_CONTRACT_ADDRESS = "0xbD6C7B0d2f68c2b7805d88388319cfB6EcB50eA9"
DEFAULT_FLOOR_HEIGHT = 77_000_000
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# =============================================================================
# Enums
# =============================================================================


class ScanStatus(str, Enum):
    """Scanner status stored on the progress row."""

    IDLE = "idle"
    SCANNING = "scanning"
    ERROR = "error"


# =============================================================================
# Chain Configuration
# =============================================================================


class ChainConfig(BaseModel):
    """Upstream chain connection settings."""

    rpc_url: str = Field(
        default="https://polygon-rpc.com",
        description="JSON-RPC endpoint URL",
    )
    contract_address: str = Field(
        default=DEFAULT_CONTRACT_ADDRESS,
        description="Fee collector contract address",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Per-request timeout in seconds",
    )

    @field_validator("contract_address")
    @classmethod
    def address_is_hex(cls, v: str) -> str:
        """Ensure the contract address looks like a 20-byte hex address."""
        value = v.strip()
        if not value.startswith("0x") or len(value) != 42:
            raise ValueError(f"invalid contract address: {v}")
        int(value[2:], 16)
        return value


# =============================================================================
# Retry Configuration
# =============================================================================


class RetryConfig(BaseModel):
    """Retry strategy for upstream calls. Static once loaded."""

    max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Maximum retry attempts per upstream call",
    )
    base_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Base backoff delay in milliseconds",
    )
    max_delay_ms: int = Field(
        default=5 * 60 * 1000,
        ge=0,
        description="Upper bound for backoff delay in milliseconds",
    )
    exponential: bool = Field(
        default=True,
        description="Double the delay on every attempt",
    )

    @field_validator("max_delay_ms")
    @classmethod
    def max_delay_gte_base(cls, v: int, info: Any) -> int:
        """Ensure max delay is at least the base delay."""
        base_delay = info.data.get("base_delay_ms", 0)
        if v < base_delay:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        return v


# =============================================================================
# Scanner Configuration
# =============================================================================


class ScannerConfig(BaseModel):
    """Scan cycle sizing and loop pacing."""

    batch_size: int = Field(
        default=10_000,
        ge=1,
        description="Blocks covered by one scan cycle",
    )
    maintenance_interval_ms: int = Field(
        default=60_000,
        ge=0,
        description="Delay between cycles once caught up with the head",
    )
    catch_up_pacing_ms: int = Field(
        default=2_000,
        ge=0,
        description="Delay between cycles while far behind the head",
    )


class SourceConfig(BaseModel):
    """A single scanned source (one orchestrator per source)."""

    source_id: str = Field(
        default="polygon",
        min_length=1,
        max_length=100,
        description="Unique source identifier",
    )
    floor_height: int = Field(
        default=DEFAULT_FLOOR_HEIGHT,
        ge=0,
        description="Oldest block to scan",
    )
    rpc_url: str | None = Field(
        default=None,
        description="Override for the chain RPC URL",
    )
    contract_address: str | None = Field(
        default=None,
        description="Override for the contract address",
    )
    batch_size: int | None = Field(
        default=None,
        ge=1,
        description="Override for the scanner batch size",
    )
    enabled: bool = Field(
        default=True,
        description="Whether this source is scanned by 'scan run'",
    )

    @field_validator("source_id")
    @classmethod
    def source_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("source_id must not be blank")
        return v.strip()


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    url: str = Field(
        default="sqlite:///data/feewatch.db",
        description="SQLAlchemy URL for progress and event storage",
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging)",
    )
    pool_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Connection pool size",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = Field(
        default="INFO",
        description="Console log level",
    )
    file: Path | None = Field(
        default=Path("logs/feewatch.log"),
        description="Log file path",
    )
    json_format: bool = Field(
        default=True,
        description="Use JSON format for file logs",
    )
    rich_console: bool = Field(
        default=True,
        description="Use Rich for console output",
    )

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"level must be one of {', '.join(LOG_LEVELS)}")
        return level


# =============================================================================
# Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """Root application configuration.

    This is the main configuration object loaded from app.yaml.
    """

    data_dir: Path = Field(
        default=Path("data"),
        description="Data storage directory",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    sources: list[SourceConfig] = Field(
        default_factory=lambda: [SourceConfig()],
        description="Sources to scan",
    )

    @field_validator("sources")
    @classmethod
    def source_ids_unique(cls, v: list[SourceConfig]) -> list[SourceConfig]:
        seen: set[str] = set()
        for source in v:
            if source.source_id in seen:
                raise ValueError(f"duplicate source_id: {source.source_id}")
            seen.add(source.source_id)
        return v

    def get_source(self, source_id: str | None = None) -> SourceConfig:
        """Look up a source by id; the first configured source when None.

        Raises:
            KeyError: If no source matches
        """
        if source_id is None:
            if not self.sources:
                raise KeyError("no sources configured")
            return self.sources[0]
        for source in self.sources:
            if source.source_id == source_id:
                return source
        raise KeyError(source_id)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        if self.logging.file:
            self.logging.file.parent.mkdir(parents=True, exist_ok=True)
