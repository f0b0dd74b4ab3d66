"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class ModelRegistryEntry(BaseModel):
    """Statically configured model: its pricing tier and output ceiling."""

    model_id: str
    tier: str = "paid"
    max_tokens: int | None = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Token Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Token metering and payment reconciliation service"

    # Security - HS256 secret for user/admin bearer tokens
    jwt_secret: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "token-ledger-api"
    deployment_environment: str = "production"

    # Payment Gateway - Razorpay
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""  # Also signs client checkout confirmations
    razorpay_webhook_secret: str = ""  # Falls back to key secret when unset
    razorpay_api_base: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 10.0

    # Model Provider (OpenAI-compatible chat completions endpoint)
    provider_api_base: str = "https://openrouter.ai/api/v1"
    provider_api_key: str = ""
    provider_timeout_seconds: float = 60.0
    model_registry: list[ModelRegistryEntry] = Field(default_factory=list)

    # Ledger Policy
    signup_free_tokens: int = 10_000
    transaction_log_cap: int = 200
    plan_history_view_limit: int = 10
    default_token_estimate: int = 200
    max_token_estimate: int = 2000
    # Flat internal cost per request, by tier. Independent of provider usage.
    flat_token_costs: dict[str, int] = Field(
        default_factory=lambda: {"free": 1, "paid": 10, "premium": 50}
    )

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
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        for tier in ("free", "paid", "premium"):
            cost = self.flat_token_costs.get(tier)
            if cost is None or cost <= 0:
                errors.append(f"FLAT_TOKEN_COSTS must define a positive cost for '{tier}'")

        if self.max_token_estimate <= 0:
            errors.append("MAX_TOKEN_ESTIMATE must be positive")

        if self.transaction_log_cap <= 0:
            errors.append("TRANSACTION_LOG_CAP must be positive")

        # If we have errors, fail immediately with clear messaging
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
    def webhook_secret(self) -> str:
        """Secret used to sign webhook bodies (fallback to key secret)."""
        return self.razorpay_webhook_secret or self.razorpay_key_secret

    @property
    def gateway_configured(self) -> bool:
        """Whether gateway credentials are present."""
        return bool(self.razorpay_key_id and self.razorpay_key_secret)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
