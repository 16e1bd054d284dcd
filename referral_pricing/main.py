from fastapi import FastAPI

from referral_pricing.config import Settings, get_settings
from referral_pricing.core.logging import setup_logging
from referral_pricing.database import create_schema
from referral_pricing.routers import (
    billing_events_router,
    health_router,
    price_changes_router,
    referrals_router,
)

setup_logging()
settings: Settings = get_settings()

create_schema()

app = FastAPI(title=settings.APP_NAME)

app.include_router(health_router)
app.include_router(referrals_router)
app.include_router(billing_events_router)
app.include_router(price_changes_router)


__all__ = ["app"]
