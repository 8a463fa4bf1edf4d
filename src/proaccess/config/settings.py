"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe webhook signing secret",
    )
    require_webhook_signature: bool = Field(
        default=True,
        description="Reject webhooks that cannot be signature-verified",
    )
    auth_jwt_secret: SecretStr = Field(
        default=SecretStr(""),
        description="HS256 secret used to verify session tokens",
    )
    auth_jwt_audience: str = Field(
        default="authenticated",
        description="Expected 'aud' claim of session tokens",
    )
    checkout_currency: str = Field(
        default="usd",
        description="Currency of the Pro subscription price",
    )
    checkout_unit_amount: int = Field(
        default=1299,
        ge=1,
        description="Pro subscription price per interval, in minor units",
    )
    checkout_interval: Literal["day", "week", "month", "year"] = Field(
        default="week",
        description="Recurring billing interval",
    )
    checkout_product_name: str = Field(
        default="Pro Subscription",
        description="Product name shown on the hosted checkout page",
    )
    checkout_product_description: str = Field(
        default="Access to all locked content",
        description="Product description shown on the hosted checkout page",
    )
    app_origin: str = Field(
        default="http://localhost:5173",
        description="Fallback origin for checkout redirect URLs",
    )
    pro_period_days: int = Field(
        default=7,
        ge=1,
        description="Days of entitlement granted per paid period",
    )
    admin_grant_days: int = Field(
        default=365,
        ge=1,
        description="Days of entitlement granted by a manual admin grant",
    )
    points_redeem_cost: int = Field(
        default=200,
        ge=1,
        description="Points needed to redeem a Pro period",
    )
    points_redeem_days: int = Field(
        default=30,
        ge=1,
        description="Days of entitlement granted by a points redemption",
    )
    verify_poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Delay between entitlement polls after checkout",
    )
    verify_poll_max_attempts: int = Field(
        default=15,
        ge=1,
        description="Maximum entitlement polls after checkout",
    )
    webhook_server_host: str = Field(
        default="0.0.0.0",
        description="HTTP server bind address",
    )
    webhook_server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="HTTP server port",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("checkout_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Stripe expects lowercase ISO currency codes."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("checkout_currency must be a 3-letter ISO code")
        return v.lower()


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
