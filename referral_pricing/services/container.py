import logging
from dataclasses import dataclass
from typing import Optional

from referral_pricing.config import Settings, get_settings
from referral_pricing.core.reduction_calculator import ReductionCalculator
from referral_pricing.services.billing_gateway import BillingGateway, HttpBillingGateway
from referral_pricing.services.coordinator import ReferralPricingCoordinator
from referral_pricing.services.notification_service import NotificationService
from referral_pricing.services.price_change_scheduler import PriceChangeScheduler
from referral_pricing.services.schedule_store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class PricingServices:
    settings: Settings
    calculator: ReductionCalculator
    store: ScheduleStore
    scheduler: PriceChangeScheduler
    coordinator: ReferralPricingCoordinator
    notifier: NotificationService


def build_pricing_services(
    settings: Optional[Settings] = None,
    *,
    billing: Optional[BillingGateway] = None,
    session_factory=None,
) -> PricingServices:
    """Wire the pricing components from settings."""
    settings = settings or get_settings()
    if billing is None:
        billing = HttpBillingGateway.from_settings(settings)

    calculator = ReductionCalculator.from_settings(settings)
    store = ScheduleStore.from_settings(settings, session_factory)
    notifier = NotificationService.from_settings(settings, store)
    scheduler = PriceChangeScheduler(
        store,
        billing,
        drift_tolerance=settings.PRICING_DRIFT_TOLERANCE,
        retry_permanent_failures=settings.PRICING_RETRY_PERMANENT_FAILURES,
        lease_seconds=settings.PRICING_LEASE_SECONDS,
        max_pending_days=settings.PRICING_MAX_PENDING_DAYS,
        alert=notifier.send_operator_alert,
    )
    coordinator = ReferralPricingCoordinator(
        calculator,
        scheduler,
        billing,
        enabled=settings.PRICING_ENABLED,
        max_pending_days=settings.PRICING_MAX_PENDING_DAYS,
        price_tolerance=settings.PRICING_DRIFT_TOLERANCE,
    )
    logger.debug(
        "Pricing services ready (enabled=%s, max_attempts=%s)",
        settings.PRICING_ENABLED,
        settings.PRICING_MAX_ATTEMPTS,
    )
    return PricingServices(
        settings=settings,
        calculator=calculator,
        store=store,
        scheduler=scheduler,
        coordinator=coordinator,
        notifier=notifier,
    )


__all__ = ["PricingServices", "build_pricing_services"]
