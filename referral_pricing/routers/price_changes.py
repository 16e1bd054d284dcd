from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from referral_pricing.core.constants import SCHEDULE_STATUSES
from referral_pricing.core.exceptions import StorageError
from referral_pricing.dependencies import get_services
from referral_pricing.schemas.price_change import (
    PriceChangeHistoryRead,
    PricingStatsRead,
    ScheduledPriceChangeRead,
)
from referral_pricing.schemas.referral import SimulationRequest
from referral_pricing.services.notification_service import build_message, is_terminal_outcome
from referral_pricing.services.stats_service import pricing_statistics

router = APIRouter(prefix="/price-changes", tags=["Price changes"])


@router.get("/subscriptions/{subscription_id}", response_model=List[ScheduledPriceChangeRead])
def list_price_changes(
    subscription_id: int,
    status: Optional[str] = Query(None, description="pending, applied, failed or cancelled"),
    services=Depends(get_services),
):
    if status is not None and status not in SCHEDULE_STATUSES:
        raise HTTPException(status_code=400, detail="Unknown status: {}".format(status))
    try:
        rows = services.store.list_for_subscription(subscription_id, status=status)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [ScheduledPriceChangeRead.model_validate(row) for row in rows]


@router.get("/subscriptions/{subscription_id}/history", response_model=List[PriceChangeHistoryRead])
def list_price_change_history(
    subscription_id: int,
    limit: int = Query(20, ge=1, le=100),
    services=Depends(get_services),
):
    try:
        rows = services.store.list_history(subscription_id, limit=limit)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [PriceChangeHistoryRead.model_validate(row) for row in rows]


@router.get("/stats", response_model=PricingStatsRead)
def price_change_stats(services=Depends(get_services)):
    try:
        return pricing_statistics(services.store.session_factory)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.get("/outcomes")
def unnotified_outcomes(limit: int = Query(50, ge=1, le=500), services=Depends(get_services)):
    try:
        rows = services.store.list_unnotified_history(limit=limit)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [build_message(row) for row in rows if is_terminal_outcome(row)]


@router.post("/retry-sweep")
def run_retry_sweep_now(services=Depends(get_services)):
    stats = services.scheduler.run_retry_sweep()
    return {"status": "completed", "stats": stats}


@router.post("/simulate")
def simulate_reduction(payload: SimulationRequest, services=Depends(get_services)):
    return services.calculator.simulate(payload.current_price, payload.referred_contribution)


__all__ = ["router"]
