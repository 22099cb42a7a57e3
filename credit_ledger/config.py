"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import base64
import json
import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # Cache store (shared provider tokens)
    redis_url: str = "redis://localhost:6379/0"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credit Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and reconciliation engine for pay-per-use mobile clients"

    # Service-to-service authentication (X-API-Key). Empty disables the check.
    api_key: str = ""

    # Google service account used for Play Developer API, FCM and generation calls.
    # Raw JSON or base64 encoded JSON.
    GOOGLE_SERVICE_ACCOUNT: str = ""
    ANDROID_PACKAGE_NAME: str = ""
    FCM_PROJECT_ID: str = ""

    # Pub/Sub push authentication for Real-Time Developer Notifications
    PUBSUB_PUSH_AUDIENCE: str = ""
    PUBSUB_PUSH_SERVICE_ACCOUNT: str = ""

    # Outbound provider calls
    provider_timeout_seconds: float = 15.0
    push_timeout_seconds: float = 10.0
    generation_endpoint: str = ""
    generation_timeout_seconds: float = 60.0
    token_safety_margin_seconds: int = 300

    # Reaper
    reaper_enabled: bool = True
    reaper_interval_seconds: int = 300
    stuck_timeout_seconds: int = 600
    retention_days: int = 90
    archive_batch_size: int = 1000
    archive_s3_bucket: str = ""
    archive_s3_prefix: str = "ledger-archive"
    aws_region: str = "us-east-1"
    ack_max_attempts: int = 8

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-ledger-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.token_safety_margin_seconds < 0:
            errors.append("TOKEN_SAFETY_MARGIN_SECONDS cannot be negative")

        if self.archive_batch_size <= 0:
            errors.append("ARCHIVE_BATCH_SIZE must be positive")

        if self.GOOGLE_SERVICE_ACCOUNT:
            try:
                self.service_account_info
            except ValueError as exc:
                errors.append(str(exc))

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def service_account_info(self) -> dict[str, str]:
        """Parse the service account credentials (raw or base64 JSON)."""
        raw = self.GOOGLE_SERVICE_ACCOUNT.strip()
        if not raw.startswith("{"):
            try:
                raw = base64.b64decode(raw).decode("utf-8")
            except (ValueError, UnicodeDecodeError) as exc:
                raise ValueError("GOOGLE_SERVICE_ACCOUNT is neither JSON nor base64 JSON") from exc
        try:
            info: dict[str, str] = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError("GOOGLE_SERVICE_ACCOUNT is not valid JSON") from exc
        for field in ("client_email", "private_key"):
            if not info.get(field):
                raise ValueError(f"GOOGLE_SERVICE_ACCOUNT missing {field}")
        return info


# Global settings instance - validates at import time
settings = Settings()
