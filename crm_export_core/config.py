"""
Centralized configuration management for the CRM export core.

Settings are pydantic models populated from environment variables with
sensible defaults, grouped by concern:
- Upstream CRM endpoints and OAuth client credentials
- Billing meters, fallback prices and discount tiers
- Export batching, retry and staleness windows
- Queue and logging settings
- Export storage and completion emails
"""

import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import (
    CRM_API_VERSION,
    EnvironmentVariable,
    ExportSinkKind,
    ItemCategory,
    LogLevel,
    QueueName,
)


class QueueConfig(BaseModel):
    """Queue configuration for Azure Storage Queues."""

    connection_string: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.AZURE_STORAGE_CONNECTION.value, ""),
        description="Azure Storage connection string",
    )
    export_queue_name: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.EXPORT_QUEUE_NAME.value, QueueName.EXPORT_JOBS.value
        ),
        description="Queue carrying export batch dispatch messages",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.LOG_LEVEL.value, LogLevel.INFO.value),
        description="Logging level",
    )

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {level.value for level in LogLevel}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class UpstreamConfig(BaseModel):
    """CRM API and OAuth endpoint configuration."""

    base_url: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.CRM_BASE_URL.value, "https://services.leadconnectorhq.com"
        )
    )
    oauth_url: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.CRM_OAUTH_URL.value, "https://services.leadconnectorhq.com/oauth"
        )
    )
    client_id: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.CRM_CLIENT_ID.value, "")
    )
    client_secret: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.CRM_CLIENT_SECRET.value, "")
    )
    redirect_uri: Optional[str] = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.CRM_REDIRECT_URI.value)
    )
    app_id: str = Field(default_factory=lambda: os.getenv(EnvironmentVariable.CRM_APP_ID.value, ""))
    api_version: str = Field(default=CRM_API_VERSION, description="Value of the Version header")
    timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv(EnvironmentVariable.HTTP_TIMEOUT.value, "30")),
        description="Timeout applied to every outbound HTTP call",
    )

    @field_validator("base_url", "oauth_url")
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class DiscountTier(BaseModel):
    """Volume discount applied to counts in [min_items, max_items)."""

    min_items: int
    max_items: Optional[int] = None
    percent: int


def _default_discount_tiers() -> List[DiscountTier]:
    return [
        DiscountTier(min_items=0, max_items=1000, percent=10),
        DiscountTier(min_items=1000, max_items=2000, percent=20),
        DiscountTier(min_items=2000, max_items=5000, percent=40),
        DiscountTier(min_items=5000, max_items=30000, percent=50),
        DiscountTier(min_items=30000, max_items=None, percent=60),
    ]


class BillingConfig(BaseModel):
    """Metering configuration."""

    meter_ids: dict[str, str] = Field(
        default_factory=lambda: {category.value: category.value for category in ItemCategory},
        description="Item category to upstream meter id",
    )
    fallback_prices_cents: dict[str, float] = Field(
        default_factory=lambda: {
            ItemCategory.CONVERSATIONS.value: 0.05,
            ItemCategory.SMS_WHATSAPP.value: 0.05,
            ItemCategory.EMAIL.value: 0.3,
        },
        description="Unit prices used when the billing configuration cannot be fetched",
    )
    price_cache_ttl_seconds: int = Field(default=3600)
    discount_tiers: List[DiscountTier] = Field(default_factory=_default_discount_tiers)

    @field_validator("discount_tiers")
    def validate_tiers(cls, v: List[DiscountTier]) -> List[DiscountTier]:
        """Tiers must be contiguous, start at zero and end unbounded."""
        if not v:
            raise ValueError("At least one discount tier is required")
        if v[0].min_items != 0:
            raise ValueError("First discount tier must start at 0")
        for previous, current in zip(v, v[1:]):
            if previous.max_items != current.min_items:
                raise ValueError("Discount tiers must be contiguous")
        if v[-1].max_items is not None:
            raise ValueError("Last discount tier must be unbounded")
        return v


class ExportConfig(BaseModel):
    """Export job orchestration settings."""

    batch_size: int = Field(default=10000, gt=0)
    message_page_size: int = Field(default=100, gt=0, le=500)
    conversation_page_size: int = Field(default=100, gt=0, le=100)
    max_retries: int = Field(default=3, ge=0)
    stale_after_minutes: int = Field(default=30, gt=0)
    recent_jobs_limit: int = Field(default=10, gt=0)
    output_dir: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.EXPORT_OUTPUT_DIR.value, "./exports")
    )
    sink: ExportSinkKind = Field(
        default_factory=lambda: ExportSinkKind(
            os.getenv(EnvironmentVariable.EXPORT_SINK.value, ExportSinkKind.BLOB.value).lower()
        ),
        description="Storage for export parts and assembled output",
    )
    blob_container: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.EXPORT_BLOB_CONTAINER.value, "exports"
        )
    )
    link_expiry_days: int = Field(
        default_factory=lambda: int(
            os.getenv(EnvironmentVariable.EXPORT_LINK_EXPIRY_DAYS.value, "7")
        ),
        gt=0,
    )


class NotificationConfig(BaseModel):
    """Completion email settings; emails are skipped without an API key."""

    api_key: Optional[str] = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.BREVO_API_KEY.value)
    )
    api_url: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.BREVO_API_URL.value, "https://api.brevo.com/v3/smtp/email"
        )
    )
    from_name: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.EMAIL_FROM_NAME.value, "CRM Export")
    )
    from_address: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.EMAIL_FROM_ADDRESS.value, "noreply@example.com"
        )
    )


class SecurityConfig(BaseModel):
    """Credential lifecycle and encryption settings."""

    renewal_lookahead_seconds: int = Field(
        default=300, description="Credentials expiring within this window are renewed first"
    )
    archive_retention_days: int = Field(default=90)
    encryption_key: Optional[str] = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.ENCRYPTION_KEY.value),
        description="Secret mixed into the pgcrypto key for token columns",
    )


class AppConfig(BaseModel):
    """Main application configuration."""

    environment: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.APP_ENV.value, "development"),
    )
    debug: bool = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.DEBUG.value, "false").lower()
        == "true",
    )

    queue: QueueConfig = Field(default_factory=QueueConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create configuration from environment variables."""
        return cls()


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
