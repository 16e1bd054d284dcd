from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Optional

from referral_pricing.core.constants import PERCENT_PRECISION, PRICE_PRECISION
from referral_pricing.core.dates import utc_now
from referral_pricing.core.exceptions import InvalidInputError

logger = logging.getLogger(__name__)

ReductionRule = Callable[[Decimal, Decimal], Decimal]

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def to_decimal(value, field_name="value") -> Decimal:
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise InvalidInputError("{} is not a number: {!r}".format(field_name, value)) from exc
    if not result.is_finite():
        raise InvalidInputError("{} must be finite: {!r}".format(field_name, value))
    return result


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(PRICE_PRECISION, rounding=ROUND_HALF_UP)


def percentage_of_contribution(percent) -> ReductionRule:
    """Reduction equal to ``percent`` % of the referred contribution."""
    rate = to_decimal(percent, "percent") / _HUNDRED

    def rule(_current_price: Decimal, referred_contribution: Decimal) -> Decimal:
        return referred_contribution * rate

    rule.description = "max(min_price, current_price - referred_contribution * {}%)".format(percent)
    return rule


@dataclass(frozen=True)
class ReductionResult:
    original_price: Decimal
    new_price: Decimal
    reduction_amount: Decimal
    theoretical_reduction: Decimal
    referred_contribution: Decimal
    reduction_percentage: Decimal
    is_free_subscription: bool
    calculation_metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "original_price": str(self.original_price),
            "new_price": str(self.new_price),
            "reduction_amount": str(self.reduction_amount),
            "theoretical_reduction": str(self.theoretical_reduction),
            "referred_contribution": str(self.referred_contribution),
            "reduction_percentage": str(self.reduction_percentage),
            "is_free_subscription": self.is_free_subscription,
            "calculation_metadata": dict(self.calculation_metadata),
        }


class ReductionCalculator:
    """Pure reduction maths. Performs no I/O.

    Intermediate values keep full precision; rounding to cents happens once
    when the result is built.
    """

    def __init__(
        self,
        *,
        contribution_percent=Decimal("25"),
        min_price=Decimal("0.00"),
        rule: Optional[ReductionRule] = None,
    ) -> None:
        self._contribution_percent = to_decimal(contribution_percent, "contribution_percent")
        self._min_price = to_decimal(min_price, "min_price")
        if self._min_price < _ZERO:
            raise InvalidInputError("min_price cannot be negative")
        self._rule = rule or percentage_of_contribution(self._contribution_percent)

    @classmethod
    def from_settings(cls, settings) -> "ReductionCalculator":
        return cls(
            contribution_percent=settings.PRICING_CONTRIBUTION_PERCENT,
            min_price=settings.PRICING_MIN_PRICE,
        )

    def calculate(self, current_price, referred_contribution) -> ReductionResult:
        current = to_decimal(current_price, "current_price")
        contribution = to_decimal(referred_contribution, "referred_contribution")
        if current < _ZERO:
            raise InvalidInputError("current_price cannot be negative: {}".format(current))
        if contribution < _ZERO:
            raise InvalidInputError("referred_contribution cannot be negative: {}".format(contribution))

        theoretical = max(_ZERO, self._rule(current, contribution))
        floor = min(self._min_price, current)
        actual = min(theoretical, current - floor)
        new_price = current - actual

        if current > _ZERO:
            percentage = (actual / current * _HUNDRED).quantize(PERCENT_PRECISION, rounding=ROUND_HALF_UP)
        else:
            percentage = _ZERO.quantize(PERCENT_PRECISION)

        rounded_new = quantize_money(new_price)
        result = ReductionResult(
            original_price=quantize_money(current),
            new_price=rounded_new,
            reduction_amount=quantize_money(current) - rounded_new,
            theoretical_reduction=quantize_money(theoretical),
            referred_contribution=quantize_money(contribution),
            reduction_percentage=percentage,
            is_free_subscription=rounded_new == _ZERO,
            calculation_metadata=self._build_metadata(),
        )
        logger.debug(
            "Reduction calculated: %s -> %s (contribution %s)",
            result.original_price,
            result.new_price,
            result.referred_contribution,
        )
        return result

    def simulate(self, current_price, referred_contribution) -> dict[str, Any]:
        """Dry-run used for previews; input errors come back as data."""
        try:
            payload = self.calculate(current_price, referred_contribution).as_dict()
        except InvalidInputError as exc:
            return {
                "is_simulation": True,
                "error": True,
                "error_message": str(exc),
                "simulated_at": utc_now().isoformat(),
            }
        payload["is_simulation"] = True
        payload["error"] = False
        payload["simulated_at"] = utc_now().isoformat()
        return payload

    def _build_metadata(self) -> dict[str, Any]:
        return {
            "calculated_at": utc_now().isoformat(),
            "contribution_percent": str(self._contribution_percent),
            "min_price": str(self._min_price),
            "precision": str(PRICE_PRECISION),
            "formula": getattr(self._rule, "description", getattr(self._rule, "__name__", "custom")),
        }


__all__ = [
    "ReductionCalculator",
    "ReductionResult",
    "percentage_of_contribution",
    "quantize_money",
    "to_decimal",
]
