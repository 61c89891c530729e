"""Application settings using Pydantic for environment-based configuration."""
from enum import Enum
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MissingRegisterPolicy(str, Enum):
    """What to do with a cash payment when the operator has no OPEN register."""

    REJECT = "reject"  # Refuse the payment, nothing is written
    FLAG = "flag"  # Accept it and mark the ledger entry for reconciliation


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./parking.db",
        description="SQLAlchemy async database URL",
    )
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    sqlite_busy_timeout: float = Field(
        default=15.0, description="Seconds a SQLite writer waits for the database lock"
    )

    # Atomic transaction retries
    transaction_max_attempts: int = Field(
        default=4, ge=1, le=10, description="Attempts per unit of work before giving up"
    )
    transaction_retry_base_delay: float = Field(
        default=0.05, ge=0, description="Base delay for retry backoff (seconds)"
    )
    transaction_retry_max_delay: float = Field(
        default=1.0, ge=0, description="Upper bound for a single retry delay (seconds)"
    )

    # Cash handling
    missing_register_policy: MissingRegisterPolicy = Field(
        default=MissingRegisterPolicy.REJECT,
        description="Behaviour when a payment arrives without an OPEN cash register",
    )
    pension_expiring_soon_days: int = Field(
        default=7, ge=0, description="Days before end date a pension counts as expiring"
    )
    lot_timezone: str = Field(
        default="America/Mexico_City",
        description="IANA zone used for partner day/time validity windows",
    )

    # Application Configuration
    app_name: str = Field(default="parking-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    lot_name: str = Field(default="Estacionamiento Principal", description="Printed on receipts")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    model_config = SettingsConfigDict(
        env_prefix="PARKING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("lot_timezone")
    @classmethod
    def validate_lot_timezone(cls, v: str) -> str:
        """Validate the IANA zone name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.lot_timezone)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """True when the configured store is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
