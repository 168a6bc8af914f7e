"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - A misconfigured ledger must not start serving spends.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""


class Settings(BaseSettings):
    """Settings read from the environment (or .env), case-insensitive."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: str = "production"  # production, staging, test

    # Database - no default, the URL must point at PostgreSQL
    database_url: str = ""
    database_read_url: str | None = None
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # HTTP
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Points Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Point ledger and balance reconciliation service"

    # Bearer token shared by the chat pipeline, payment webhook and cron runner
    service_token: str = ""

    # Observability
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    metrics_enabled: bool = True
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "points-ledger-api"

    # Ledger policy
    point_expiry_years: int = 1  # calendar years added to acquired_at
    daily_attendance_points: int = 30
    reconcile_batch_size: int = 500
    history_max_limit: int = 100

    def _database_errors(self) -> list[str]:
        if not self.database_url:
            return ["DATABASE_URL is required but empty or missing"]
        if not self.database_url.startswith(("postgresql", "postgres")):
            return [f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."]
        return []

    def _policy_errors(self) -> list[str]:
        errors = []
        if self.point_expiry_years < 1:
            errors.append(f"POINT_EXPIRY_YEARS must be at least 1, got: {self.point_expiry_years}")
        for name in ("daily_attendance_points", "reconcile_batch_size", "history_max_limit"):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be positive")
        return errors

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: refuse to build Settings with missing or unsafe values.

        All problems are reported together on stderr before raising.
        """
        errors = self._database_errors()
        if not self.service_token and self.environment != "test":
            errors.append("SERVICE_TOKEN is required outside the test environment")
        errors.extend(self._policy_errors())

        if errors:
            banner = "=" * 60
            error_msg = "\n".join(
                ["", banner, "CONFIGURATION ERROR - POINTS LEDGER CANNOT START", banner]
                + [f"  - {e}" for e in errors]
                + [banner, ""]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Replica URL, falling back to the primary."""
        return self.database_read_url or self.database_url


# Validated at import time
settings = Settings()
