"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "paycore"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    secret_key: str = "change-me"
    public_base_url: str = "http://localhost:8000"

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Postgres
    database_url: str = ""
    database_ssl: bool = False

    # Redis (webhook dedup cache + Celery broker)
    redis_url: str = ""

    # Admin
    admin_api_key: str = ""

    # Gateways
    enabled_gateways: List[str] = [
        "paymob",
        "fawry",
        "tap",
        "hyperpay",
        "stripe",
        "bank_transfer",
    ]
    default_currency: str = "EGP"

    # Paymob
    paymob_base_url: str = "https://accept.paymob.com"
    paymob_api_key: str = ""
    paymob_integration_id: int = 0
    paymob_iframe_id: int = 0
    paymob_hmac_secret: str = ""
    paymob_hmac_algorithm: Literal["sha512", "sha256"] = "sha512"

    # Fawry
    fawry_base_url: str = "https://atfawry.fawrystaging.com"
    fawry_merchant_code: str = ""
    fawry_secure_key: str = ""
    fawry_expiry_hours: int = 48

    # Tap
    tap_base_url: str = "https://api.tap.company"
    tap_secret_key: str = ""

    # Hyperpay (OPPWA)
    hyperpay_base_url: str = "https://eu-test.oppwa.com"
    hyperpay_access_token: str = ""
    hyperpay_entity_id: str = ""
    hyperpay_webhook_key: str = ""

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Manual bank transfer
    bank_name: str = ""
    bank_account_name: str = ""
    bank_account_number: str = ""
    bank_iban: str = ""
    bank_swift: str = ""
    bank_transfer_expiry_days: int = 3

    # Outbound gateway call budget
    gateway_timeout_seconds: float = 10.0
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.5

    # Commission fallback when no rule matches
    default_platform_rate: Decimal = Decimal("30")
    default_instructor_rate: Decimal = Decimal("70")
    default_hold_period_days: int = 14

    # Webhooks
    webhook_max_attempts: int = 10

    # Notifications
    notification_webhook_url: str = ""

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
