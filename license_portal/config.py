"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

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
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "License Portal"
    api_version: str = "0.1.0"
    api_description: str = "Credit-gated UID and license key provisioning"
    cors_origins: list[str] = ["*"]
    run_migrations_on_startup: bool = True

    # Bootstrap admin - the one account that can never lose super-admin rights
    bootstrap_admin_username: str = "admin"
    admin_password: str = ""
    bootstrap_admin_credits: int = 1000

    # Sessions (signed JWT stored in a cookie)
    session_secret: str = ""
    session_expire_hours: int = 24
    session_cookie_name: str = "portal_session"

    # Public URL of this deployment (payment callbacks)
    public_base_url: str = "http://localhost:8000"

    # Generic UID registration API - environment defaults, overridden by ApiConfig
    base_url: str = ""
    api_key: str = ""
    uid_api_timeout_seconds: float = 10.0

    # GenzAuth seller API
    genzauth_base_url: str = "https://genzauth-tl0c.onrender.com/api/seller"
    genzauth_seller_key: str = ""
    genzauth_timeout_seconds: float = 15.0
    genzauth_batch_delay_seconds: float = 0.2

    # Crypto payments - NOWPayments
    nowpayments_api_key: str = ""
    nowpayments_base_url: str = "https://api.nowpayments.io/v1"
    nowpayments_pay_currency: str = "usdttrc20"
    nowpayments_timeout_seconds: float = 10.0
    usd_per_credit: float = 1.0

    # Credits and invoicing
    credit_value: int = 10  # Invoice value of one credit
    tax_rate_percent: int = 18
    invoice_currency: str = "INR"
    register_credits: int = 10
    aimkill_account_credits: int = 50
    owner_initial_credits: int = 5000
    license_key_cost: int = 1

    # Retention
    activity_log_cap: int = 100
    chat_retention_days: int = 30
    chat_message_max_length: int = 2000
    hwid_reset_cooldown_hours: int = 24

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "license-portal"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The portal must refuse to start without an admin bootstrap password or
        a session signing secret rather than run with an insecure default.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.admin_password:
            errors.append("ADMIN_PASSWORD is required to bootstrap the admin account")

        if not self.session_secret:
            errors.append("SESSION_SECRET is required but empty or missing")
        elif len(self.session_secret) < 32:
            errors.append("SESSION_SECRET must be at least 32 characters")

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
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def payment_callback_url(self) -> str:
        """IPN callback URL handed to the payment processor."""
        return f"{self.public_base_url.rstrip('/')}/api/payment/webhook"


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
