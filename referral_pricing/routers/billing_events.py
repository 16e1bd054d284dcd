from typing import Optional

from fastapi import APIRouter, Depends

from referral_pricing.core.constants import TERMINATION_CANCELLED
from referral_pricing.dependencies import get_services
from referral_pricing.schemas.referral import PricingResultRead, TerminationEvent

router = APIRouter(prefix="/billing/subscriptions", tags=["Billing events"])

# Webhooks are always acknowledged; the body says what happened.


@router.post("/{subscription_id}/payment-due", status_code=202, response_model=PricingResultRead)
def payment_due(subscription_id: int, services=Depends(get_services)):
    return services.scheduler.on_payment_due(subscription_id).to_dict()


@router.post("/{subscription_id}/payment-completed", status_code=202, response_model=PricingResultRead)
def payment_completed(subscription_id: int, services=Depends(get_services)):
    return services.scheduler.on_payment_completed(subscription_id).to_dict()


@router.post("/{subscription_id}/terminated", status_code=202, response_model=PricingResultRead)
def subscription_terminated(
    subscription_id: int,
    payload: Optional[TerminationEvent] = None,
    services=Depends(get_services),
):
    reason = payload.reason if payload else TERMINATION_CANCELLED
    return services.coordinator.on_subscription_terminated(subscription_id, reason).to_dict()


__all__ = ["router"]
