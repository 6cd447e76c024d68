"""Application configuration using Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache
from typing import Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Telephony Core API"
    app_env: str = "development"
    debug: bool = False
    api_v1_prefix: str = "/api/v1"
    secret_key: str = "change-me-in-production"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/telephony"
    database_pool_size: int = 20
    run_migrations_on_startup: bool = True

    # Redis (cache invalidation fan-out between workers)
    redis_url: str = ""

    # Carrier (Voximplant platform API)
    carrier_api_url: str = "https://api.voximplant.com/platform_api"
    carrier_api_key: str = ""
    carrier_account_id: str = ""
    carrier_application_id: str = ""
    carrier_inbound_rule_id: str = ""
    carrier_country_code: str = "RU"
    carrier_timeout_seconds: float = 10.0
    carrier_offer_count: int = 20
    carrier_sms_region_id: str = "177"
    carrier_geographic_region_id: str = "1"

    # Billing
    call_rate_per_minute: Decimal = Decimal("5")
    balance_floor: Decimal = Decimal("0")
    allow_overage: bool = True
    default_free_minutes: int = 0
    number_connection_fee: Decimal = Decimal("0")
    number_rental_markup: Decimal = Decimal("100")

    # Call history
    default_timezone: str = "Europe/Moscow"
    history_max_page_size: int = 100

    # Notification delivery
    telegram_api_url: str = "https://api.telegram.org"
    sms_gateway_url: str = "https://gate.smsaero.ru/v2"
    sms_gateway_email: str = ""
    sms_gateway_api_key: str = ""
    sms_gateway_sender: str = "SMS Aero"
    dispatch_max_attempts: int = 3
    dispatch_backoff_seconds: float = 1.0
    dispatch_backoff_max_seconds: float = 10.0
    dispatch_attempt_timeout_seconds: float = 10.0
    dispatch_total_budget_seconds: float = 60.0

    # Background maintenance
    reconcile_interval_seconds: int = 60
    reconcile_grace_seconds: int = 30
    dead_letter_max_attempts: int = 10
    maintenance_enabled: bool = True

    # Caching
    balance_cache_ttl_seconds: float = 3.0
    catalog_cache_ttl_seconds: float = 300.0

    # JWT Settings (request-scoped dashboard credentials)
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 30

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    # Carrier webhook authentication
    api_key_header: str = "x-api-key"
    api_keys: str = ""  # Comma-separated list

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [v]
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.app_env.lower() == "production"

    @property
    def valid_api_keys(self) -> List[str]:
        """Get list of valid API keys."""
        if not self.api_keys:
            return []
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def carrier_configured(self) -> bool:
        """Check if carrier credentials are present."""
        return bool(self.carrier_api_key and self.carrier_account_id)

    @property
    def sms_gateway_configured(self) -> bool:
        """Check if SMS gateway credentials are present."""
        return bool(self.sms_gateway_email and self.sms_gateway_api_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
