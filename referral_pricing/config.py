from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ==============================
    # Application
    # ==============================
    APP_NAME: str = "Referral Pricing Scheduler"
    ENVIRONMENT: str = "local"

    # ==============================
    # Database
    # ==============================
    DATABASE_URL: str = "sqlite:///./referral_pricing.db"
    DB_TIMEOUT_SECONDS: int = 30

    # ==============================
    # Logging
    # ==============================
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ==============================
    # Pricing rules
    # ==============================
    PRICING_ENABLED: bool = True
    PRICING_CONTRIBUTION_PERCENT: Decimal = Decimal("25")
    PRICING_MIN_PRICE: Decimal = Decimal("0.00")
    PRICING_DRIFT_TOLERANCE: Decimal = Decimal("0.01")

    # ==============================
    # Retry policy
    # ==============================
    PRICING_MAX_ATTEMPTS: int = 3
    PRICING_RETRY_DELAYS: list[int] = [60, 300, 900]
    PRICING_RETRY_PERMANENT_FAILURES: bool = False
    PRICING_MAX_PENDING_DAYS: int = 90
    PRICING_HISTORY_LIMIT: int = 100
    PRICING_LEASE_SECONDS: int = 30

    # ==============================
    # Billing API
    # ==============================
    BILLING_API_URL: Optional[str] = None
    BILLING_API_TOKEN: Optional[str] = None
    BILLING_TIMEOUT_SECONDS: float = 10.0

    # ==============================
    # Notifications
    # ==============================
    NOTIFY_WEBHOOK_URL: Optional[str] = None
    NOTIFY_BATCH_SIZE: int = 50

    # ==============================
    # Scheduler
    # ==============================
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_RETRY_SECONDS: int = 3600
    SCHEDULER_NOTIFY_SECONDS: int = 300
    SCHEDULER_POLL_SECONDS: int = 5


@lru_cache
def get_settings() -> Settings:
    """Cached settings loader (once per process)."""
    return Settings()


__all__ = ["Settings", "get_settings"]
