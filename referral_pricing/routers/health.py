from datetime import datetime, timezone

from fastapi import APIRouter

from referral_pricing.config import get_settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check():
    settings = get_settings()
    return {
        "status": "ok",
        "app": settings.APP_NAME,
        "environment": settings.ENVIRONMENT,
        "pricing_enabled": settings.PRICING_ENABLED,
        "time": datetime.now(timezone.utc).isoformat(),
    }
