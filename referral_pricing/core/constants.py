from decimal import Decimal

STATUS_PENDING = "pending"
STATUS_APPLIED = "applied"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

SCHEDULE_STATUSES = (STATUS_PENDING, STATUS_APPLIED, STATUS_FAILED, STATUS_CANCELLED)

ACTION_APPLY_REDUCTION = "apply_reduction"
# Reserved for the symmetric operation; nothing schedules it yet.
ACTION_REMOVE_REDUCTION = "remove_reduction"

PRICING_ACTIONS = (ACTION_APPLY_REDUCTION, ACTION_REMOVE_REDUCTION)

EXECUTION_SUCCESS = "success"
EXECUTION_FAILED = "failed"
EXECUTION_CANCELLED = "cancelled"

EXECUTION_STATUSES = (EXECUTION_SUCCESS, EXECUTION_FAILED, EXECUTION_CANCELLED)

BILLABLE_SUBSCRIPTION_STATUSES = frozenset({"active"})

TERMINATION_CANCELLED = "cancelled"
TERMINATION_EXPIRED = "expired"

PRICE_PRECISION = Decimal("0.01")
PERCENT_PRECISION = Decimal("0.01")

DEFAULT_RETRY_DELAYS = (60, 300, 900)
