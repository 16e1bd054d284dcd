from referral_pricing.routers.billing_events import router as billing_events_router
from referral_pricing.routers.health import router as health_router
from referral_pricing.routers.price_changes import router as price_changes_router
from referral_pricing.routers.referrals import router as referrals_router

__all__ = [
    "billing_events_router",
    "health_router",
    "price_changes_router",
    "referrals_router",
]
