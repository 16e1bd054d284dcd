from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from referral_pricing.core.results import RESULT_SCHEDULED, ErrorKind
from referral_pricing.dependencies import get_services
from referral_pricing.schemas.referral import PricingResultRead, ReferralContext

router = APIRouter(prefix="/referrals", tags=["Referrals"])

_STATUS_CODES = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.PERMANENT: 422,
    ErrorKind.STORAGE: 503,
}


def _status_code(result):
    if result.success:
        return 201 if result.status == RESULT_SCHEDULED else 200
    return _STATUS_CODES.get(result.error_kind, 500)


@router.post("/qualified", response_model=PricingResultRead)
def referral_order_qualified(payload: ReferralContext, services=Depends(get_services)):
    result = services.coordinator.on_referral_order_qualified(payload)
    body = PricingResultRead(**result.to_dict()).model_dump(mode="json")
    return JSONResponse(status_code=_status_code(result), content=body)


__all__ = ["router"]
