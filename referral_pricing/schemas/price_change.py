from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ScheduledPriceChangeRead(BaseModel):
    id: int
    referrer_subscription_id: int
    referred_order_id: int
    action: str
    original_price: Decimal
    new_price: Decimal
    reduction_amount: Decimal
    reduction_percentage: Decimal
    referred_contribution: Decimal
    scheduled_date: datetime
    applied_date: Optional[datetime]
    status: str
    retry_count: int
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PriceChangeHistoryRead(BaseModel):
    id: int
    referrer_subscription_id: int
    referred_order_id: int
    action: str
    price_before: Decimal
    price_after: Decimal
    reduction_amount: Decimal
    execution_status: str
    execution_details: dict
    user_notified: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PricingStatsRead(BaseModel):
    total_scheduled: int
    pending: int
    applied: int
    failed: int
    cancelled: int
    total_savings: Decimal
    success_rate: float
