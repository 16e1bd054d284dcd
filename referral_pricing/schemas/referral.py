from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class ReferralContext(BaseModel):
    referrer_subscription_id: int
    referred_order_id: int
    referrer_price: Decimal
    referred_contribution: Decimal
    referred_customer_id: int
    referred_product_ids: List[int] = Field(default_factory=list)


class TerminationEvent(BaseModel):
    reason: str = "cancelled"


class SimulationRequest(BaseModel):
    current_price: Decimal
    referred_contribution: Decimal


class PricingResultRead(BaseModel):
    success: bool
    status: str
    change_id: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False
    details: dict = Field(default_factory=dict)
