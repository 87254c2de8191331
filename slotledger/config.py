"""
Settings for the slot ledger, read from the environment (and ``.env``).

Startup fails when the database URL is missing or not PostgreSQL, since row
locks, SKIP LOCKED claims and RETURNING deltas are PostgreSQL features.
"""

import sys
from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Critical configuration is missing or invalid."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Store. No default URL: an unset DATABASE_URL must stop the process.
    database_url: str = ""
    database_read_url: str | None = None
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # Flat commission kept by the platform per settled unit
    commission_profile_slots: Decimal = Decimal("0.50")
    commission_full_account: Decimal = Decimal("1.00")

    # Seconds to coalesce change-feed events before re-syncing stock
    resync_debounce_seconds: float = 0.4

    # HTTP surface
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "SlotLedger API"
    api_version: str = "0.1.0"
    api_description: str = "Slot allocation and settlement core for the resale dashboard"

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"  # json | console
    service_name: str = "slotledger"
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        problems: list[str] = []

        if not self.database_url:
            problems.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            problems.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )
        if self.commission_profile_slots < 0 or self.commission_full_account < 0:
            problems.append("Commission rates cannot be negative")
        if self.resync_debounce_seconds < 0:
            problems.append("RESYNC_DEBOUNCE_SECONDS cannot be negative")
        if self.log_format not in ("json", "console"):
            problems.append(f"LOG_FORMAT must be 'json' or 'console', got: {self.log_format}")

        if problems:
            banner = "=" * 60
            message = "\n".join(
                ["", banner, "SLOTLEDGER CANNOT START: invalid configuration", banner]
                + [f"  x {p}" for p in problems]
                + [banner, ""]
            )
            print(message, file=sys.stderr)
            raise ConfigurationError(message)

        return self

    @property
    def read_database_url(self) -> str:
        """Replica URL, or the primary when no replica is configured."""
        return self.database_read_url or self.database_url


# Validated at import time
settings = Settings()
