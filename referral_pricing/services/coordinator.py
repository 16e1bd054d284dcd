from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal

from referral_pricing.core.constants import TERMINATION_CANCELLED, TERMINATION_EXPIRED
from referral_pricing.core.dates import utc_now
from referral_pricing.core.exceptions import BillingError, InvalidInputError
from referral_pricing.core.reduction_calculator import ReductionCalculator, to_decimal
from referral_pricing.core.results import RESULT_REJECTED, ErrorKind, PricingResult
from referral_pricing.schemas.referral import ReferralContext
from referral_pricing.services.billing_gateway import BillingGateway
from referral_pricing.services.price_change_scheduler import PriceChangeScheduler

logger = logging.getLogger(__name__)

TERMINATION_REASONS = (TERMINATION_CANCELLED, TERMINATION_EXPIRED)


class ReferralValidationError(Exception):
    pass


class ReferralPricingCoordinator:
    """Entry point for referral events.

    Validates the referral, computes the reduction and asks the scheduler to
    persist it. Validation failures are data conditions: they are logged and
    returned, never retried.
    """

    def __init__(
        self,
        calculator: ReductionCalculator,
        scheduler: PriceChangeScheduler,
        billing: BillingGateway,
        *,
        enabled: bool = True,
        max_pending_days: int = 90,
        price_tolerance=Decimal("0.01"),
    ) -> None:
        self._calculator = calculator
        self._scheduler = scheduler
        self._billing = billing
        self._enabled = enabled
        self._max_pending_days = max_pending_days
        self._price_tolerance = Decimal(str(price_tolerance))

    def on_referral_order_qualified(self, context: ReferralContext) -> PricingResult:
        if not self._enabled:
            return PricingResult.noop("automatic referral pricing is disabled")

        try:
            subscription = self._validate(context)
            calculation = self._calculator.calculate(context.referrer_price, context.referred_contribution)
        except (ReferralValidationError, InvalidInputError) as exc:
            logger.info(
                "Order %s not eligible for referral pricing: %s",
                context.referred_order_id,
                exc,
            )
            return PricingResult.failure(ErrorKind.VALIDATION, str(exc), status=RESULT_REJECTED)
        except BillingError as exc:
            logger.warning(
                "Billing lookup failed for referrer subscription %s: %s",
                context.referrer_subscription_id,
                exc,
            )
            kind = ErrorKind.TRANSIENT if exc.transient else ErrorKind.VALIDATION
            return PricingResult.failure(kind, str(exc), status=RESULT_REJECTED)

        result = self._scheduler.schedule_price_change(
            referrer_subscription_id=context.referrer_subscription_id,
            referred_order_id=context.referred_order_id,
            calculation=calculation,
            scheduled_date=subscription.next_payment_date,
            metadata={
                "referred_product_ids": sorted(set(context.referred_product_ids)),
                "referrer_customer_id": subscription.customer_id,
                "referred_customer_id": context.referred_customer_id,
            },
        )
        if result.success:
            logger.info(
                "Referral reduction scheduled for subscription %s (order %s, change %s, saving %s)",
                context.referrer_subscription_id,
                context.referred_order_id,
                result.change_id,
                calculation.reduction_amount,
            )
        return result

    def on_subscription_terminated(self, subscription_id: int, reason: str = TERMINATION_CANCELLED) -> PricingResult:
        reason = (reason or TERMINATION_CANCELLED).strip().lower()
        if reason not in TERMINATION_REASONS:
            logger.info("Subscription %s terminated with non-standard reason %r", subscription_id, reason)
        result = self._scheduler.cancel_pending(subscription_id, reason)
        if result.status == "cancelled":
            logger.info(
                "Pending price change %s cancelled after subscription %s %s",
                result.change_id,
                subscription_id,
                reason,
            )
        return result

    def _validate(self, context: ReferralContext):
        if context.referrer_subscription_id <= 0:
            raise ReferralValidationError("Invalid referrer subscription id")
        if not context.referred_product_ids:
            raise ReferralValidationError("Referred order has no billable item")
        if to_decimal(context.referred_contribution, "referred_contribution") <= 0:
            raise ReferralValidationError("Referred order has no billable contribution")

        subscription = self._billing.get_subscription(context.referrer_subscription_id)
        if not subscription.is_billable:
            raise ReferralValidationError(
                "Referrer subscription {} is not active".format(context.referrer_subscription_id)
            )
        if subscription.customer_id is None:
            raise ReferralValidationError(
                "Referrer subscription {} has no customer id; self-referral cannot be ruled out".format(
                    context.referrer_subscription_id
                )
            )
        if subscription.customer_id == context.referred_customer_id:
            raise ReferralValidationError("Self-referral is not allowed")
        if subscription.next_payment_date is None:
            raise ReferralValidationError("Referrer subscription has no next payment date")

        horizon = utc_now() + timedelta(days=self._max_pending_days)
        if self._max_pending_days > 0 and subscription.next_payment_date > horizon:
            raise ReferralValidationError(
                "Next payment date {} is more than {} days away".format(
                    subscription.next_payment_date.date(), self._max_pending_days
                )
            )

        referrer_price = to_decimal(context.referrer_price, "referrer_price")
        if abs(subscription.price - referrer_price) > self._price_tolerance:
            raise ReferralValidationError(
                "Referrer price mismatch: context {}, billing {}".format(referrer_price, subscription.price)
            )
        return subscription


__all__ = ["ReferralPricingCoordinator", "ReferralValidationError", "TERMINATION_REASONS"]
