"""Application configuration using Pydantic BaseSettings."""

from decimal import Decimal

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # Provider calls
    provider_timeout_seconds: float = Field(default=50.0, alias="PROVIDER_TIMEOUT_SECONDS")
    provider_timeout_margin_seconds: float = Field(
        default=2.0, alias="PROVIDER_TIMEOUT_MARGIN_SECONDS"
    )
    provider_error_body_limit: int = Field(default=20_000, alias="PROVIDER_ERROR_BODY_LIMIT")
    default_image_width: int = Field(default=1024, alias="DEFAULT_IMAGE_WIDTH")
    default_image_height: int = Field(default=1024, alias="DEFAULT_IMAGE_HEIGHT")

    # Credits
    initial_credit_balance: Decimal = Field(default=Decimal("100"), alias="INITIAL_CREDIT_BALANCE")
    default_credit_cost: Decimal = Field(default=Decimal("0.5"), alias="DEFAULT_CREDIT_COST")
    provider_revenue_share: Decimal = Field(default=Decimal("0.30"), alias="PROVIDER_REVENUE_SHARE")

    # Anonymous trial pool
    trial_pool_ttl_seconds: int = Field(default=86_400, alias="TRIAL_POOL_TTL_SECONDS")
    trial_pool_max: int = Field(default=5, alias="TRIAL_POOL_MAX")
    trial_pool_client_id: str = Field(default="__pool__", alias="TRIAL_POOL_CLIENT_ID")
    trial_default_provider_id: int = Field(default=1, alias="TRIAL_DEFAULT_PROVIDER_ID")
    trial_default_method: str = Field(default="fluxImage", alias="TRIAL_DEFAULT_METHOD")

    # Scheduling (local in-process tasks or external broker with signed callbacks)
    scheduler_backend: str = Field(default="local", alias="SCHEDULER_BACKEND")
    broker_url: str = Field(default="", alias="BROKER_URL")
    broker_token: str = Field(default="", alias="BROKER_TOKEN")
    broker_current_signing_key: str = Field(default="", alias="BROKER_CURRENT_SIGNING_KEY")
    broker_next_signing_key: str = Field(default="", alias="BROKER_NEXT_SIGNING_KEY")

    # Share links for unpublished source images
    share_token_secret: str = Field(default="", alias="SHARE_TOKEN_SECRET")
    share_token_ttl_seconds: int = Field(default=3600, alias="SHARE_TOKEN_TTL_SECONDS")

    # Image storage
    storage_root: str = Field(default="./var/images", alias="STORAGE_ROOT")
    storage_public_url: str = Field(
        default="http://localhost:8000/images", alias="STORAGE_PUBLIC_URL"
    )

    # Reconciliation sweep
    sweep_batch_size: int = Field(default=100, alias="SWEEP_BATCH_SIZE")
    sweep_interval_seconds: int = Field(default=60, alias="SWEEP_INTERVAL_SECONDS")  # 0 disables

    @property
    def uses_broker(self) -> bool:
        return self.scheduler_backend == "broker"

    @property
    def signing_keys(self) -> list[str]:
        """Callback signing keys accepted during key rotation."""
        return [k for k in (self.broker_current_signing_key, self.broker_next_signing_key) if k]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with a readable message when the configuration cannot work.
        Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if self.scheduler_backend not in ("local", "broker"):
            missing.append("SCHEDULER_BACKEND: must be 'local' or 'broker'")

        if self.uses_broker:
            if not self.broker_url:
                missing.append("BROKER_URL: base URL of the message broker")
            if not self.broker_token:
                missing.append("BROKER_TOKEN: publish token for the message broker")
            if not self.broker_current_signing_key:
                missing.append("BROKER_CURRENT_SIGNING_KEY: used to verify job callbacks")

        if not Decimal("0") <= self.provider_revenue_share <= Decimal("1"):
            missing.append("PROVIDER_REVENUE_SHARE: must be between 0 and 1")

        if missing:
            error_msg = "CRITICAL: Invalid or missing configuration:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        renderer = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
