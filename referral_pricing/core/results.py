from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    STORAGE = "storage"


# Status values carried by results in addition to the schedule statuses.
RESULT_SCHEDULED = "scheduled"
RESULT_NOOP = "noop"
RESULT_REJECTED = "rejected"
RESULT_ERROR = "error"


@dataclass
class PricingResult:
    """Outcome of a coordinator or scheduler call.

    Webhook handlers acknowledge every event; ``success`` and ``error_kind``
    tell the caller whether anything is left to do on its side.
    """

    success: bool
    status: str
    change_id: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.error_kind in (ErrorKind.TRANSIENT, ErrorKind.STORAGE)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["error_kind"] = self.error_kind.value if self.error_kind else None
        payload["retryable"] = self.retryable
        return payload

    @classmethod
    def noop(cls, reason: str, change_id: Optional[int] = None) -> "PricingResult":
        return cls(success=True, status=RESULT_NOOP, change_id=change_id, details={"reason": reason})

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        error: str,
        *,
        status: str = RESULT_ERROR,
        change_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> "PricingResult":
        return cls(
            success=False,
            status=status,
            change_id=change_id,
            error=error,
            error_kind=kind,
            details=details or {},
        )


@dataclass(frozen=True)
class PriceChangeOutcome:
    """Terminal outcome pushed to notification listeners."""

    change_id: int
    referrer_subscription_id: int
    referred_order_id: int
    referrer_customer_id: Optional[int]
    status: str
    original_price: Decimal
    new_price: Decimal
    reduction_amount: Decimal
    reason: Optional[str]
    occurred_at: datetime


__all__ = [
    "ErrorKind",
    "PriceChangeOutcome",
    "PricingResult",
    "RESULT_ERROR",
    "RESULT_NOOP",
    "RESULT_REJECTED",
    "RESULT_SCHEDULED",
]
