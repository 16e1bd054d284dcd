from __future__ import annotations

import logging
import os
import socket
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from referral_pricing.core.constants import (
    ACTION_APPLY_REDUCTION,
    EXECUTION_CANCELLED,
    EXECUTION_FAILED,
    EXECUTION_SUCCESS,
    STATUS_APPLIED,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
)
from referral_pricing.core.dates import utc_now
from referral_pricing.core.exceptions import (
    AlreadyScheduledError,
    BillingError,
    InvalidInputError,
    StorageError,
)
from referral_pricing.core.reduction_calculator import ReductionResult
from referral_pricing.core.results import (
    RESULT_SCHEDULED,
    ErrorKind,
    PriceChangeOutcome,
    PricingResult,
)
from referral_pricing.services.billing_gateway import BillingGateway
from referral_pricing.services.schedule_store import NewHistoryRecord, NewPriceChange, ScheduleStore

logger = logging.getLogger(__name__)

OutcomeListener = Callable[[PriceChangeOutcome], None]

_APPLY_EXCEPTIONS = (OSError, RuntimeError, ValueError, ArithmeticError)
_HOOK_EXCEPTIONS = (OSError, RuntimeError, ValueError)


def _owner_id() -> str:
    return "{}:{}".format(socket.gethostname(), os.getpid())


class ApplyFailure(Exception):
    """Internal signal for a failed apply attempt."""

    def __init__(self, message: str, *, permanent: bool) -> None:
        super().__init__(message)
        self.permanent = permanent


class PriceChangeScheduler:
    """State machine for scheduled referral price changes.

    ``pending -> applied | failed | cancelled``, plus ``pending -> pending``
    on a retryable failure. Every transition writes either the applied marker
    or a history row.
    """

    def __init__(
        self,
        store: ScheduleStore,
        billing: BillingGateway,
        *,
        drift_tolerance=Decimal("0.01"),
        retry_permanent_failures: bool = False,
        lease_seconds: int = 30,
        max_pending_days: int = 90,
        owner: Optional[str] = None,
        alert: Optional[Callable[[str, dict], None]] = None,
    ) -> None:
        self._store = store
        self._billing = billing
        self._drift_tolerance = Decimal(str(drift_tolerance))
        self._retry_permanent_failures = retry_permanent_failures
        self._lease_seconds = lease_seconds
        self._max_pending_days = max_pending_days
        self._owner = owner or _owner_id()
        self._alert = alert
        self._listeners: list[OutcomeListener] = []

    @property
    def store(self) -> ScheduleStore:
        return self._store

    def subscribe(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_price_change(
        self,
        *,
        referrer_subscription_id: int,
        referred_order_id: int,
        calculation: ReductionResult,
        scheduled_date: datetime,
        metadata: Optional[dict] = None,
    ) -> PricingResult:
        meta = dict(metadata or {})
        meta["calculation_metadata"] = dict(calculation.calculation_metadata)
        meta["theoretical_reduction"] = str(calculation.theoretical_reduction)
        meta.setdefault("scheduled_by", "automatic_system")
        entry = NewPriceChange(
            referrer_subscription_id=referrer_subscription_id,
            referred_order_id=referred_order_id,
            action=ACTION_APPLY_REDUCTION,
            original_price=calculation.original_price,
            new_price=calculation.new_price,
            reduction_amount=calculation.reduction_amount,
            reduction_percentage=calculation.reduction_percentage,
            referred_contribution=calculation.referred_contribution,
            scheduled_date=scheduled_date,
            metadata=meta,
        )
        try:
            change_id = self._store.create_pending(entry)
        except AlreadyScheduledError as exc:
            logger.warning(
                "Price change already pending for subscription %s (entry %s)",
                referrer_subscription_id,
                exc.existing_id,
            )
            return PricingResult.failure(
                ErrorKind.CONFLICT,
                str(exc),
                status="conflict",
                change_id=exc.existing_id,
            )
        except InvalidInputError as exc:
            return PricingResult.failure(ErrorKind.VALIDATION, str(exc), status="rejected")
        except StorageError as exc:
            return self._storage_failure("schedule_price_change", exc, subscription_id=referrer_subscription_id)

        return PricingResult(
            success=True,
            status=RESULT_SCHEDULED,
            change_id=change_id,
            details={
                "scheduled_date": scheduled_date.isoformat(),
                "original_price": str(calculation.original_price),
                "new_price": str(calculation.new_price),
                "reduction_amount": str(calculation.reduction_amount),
            },
        )

    # ------------------------------------------------------------------
    # Billing events
    # ------------------------------------------------------------------

    def on_billing_event(self, subscription_id: int, *, event: str = "payment_due") -> PricingResult:
        """Apply the pending change of ``subscription_id``, if any."""
        try:
            pending = self._store.get_pending(subscription_id)
        except StorageError as exc:
            return self._storage_failure("on_billing_event", exc, subscription_id=subscription_id)
        if pending is None:
            return PricingResult.noop("no pending price change")

        logger.info(
            "Billing event %s for subscription %s with pending change %s",
            event,
            subscription_id,
            pending.id,
        )
        return self.apply(pending.id)

    def on_payment_due(self, subscription_id: int) -> PricingResult:
        return self.on_billing_event(subscription_id, event="payment_due")

    def on_payment_completed(self, subscription_id: int) -> PricingResult:
        return self.on_billing_event(subscription_id, event="payment_completed")

    def apply(self, change_id: int) -> PricingResult:
        try:
            entry = self._store.claim(change_id, self._owner, lease_seconds=self._lease_seconds)
        except StorageError as exc:
            return self._storage_failure("apply", exc, change_id=change_id)
        if entry is None:
            logger.info("Price change %s already handled or in progress", change_id)
            return PricingResult.noop("already handled or in progress", change_id=change_id)

        try:
            self._apply_to_subscription(entry)
        except ApplyFailure as exc:
            return self._handle_failure(entry, str(exc), permanent=exc.permanent)
        except _APPLY_EXCEPTIONS as exc:
            logger.exception("Unexpected error applying price change %s", entry.id)
            return self._handle_failure(entry, "{}: {}".format(type(exc).__name__, exc), permanent=False)

        try:
            applied = self._store.mark_applied(entry.id, owner=self._owner)
        except StorageError as exc:
            return self._storage_failure("mark_applied", exc, change_id=entry.id)
        if not applied:
            return self._revert_superseded(entry)

        applied_at = utc_now()
        self._write_history(
            entry,
            NewHistoryRecord(
                referrer_subscription_id=entry.referrer_subscription_id,
                referred_order_id=entry.referred_order_id,
                action=entry.action,
                price_before=entry.original_price,
                price_after=entry.new_price,
                reduction_amount=entry.reduction_amount,
                execution_status=EXECUTION_SUCCESS,
                execution_details={"applied_at": applied_at.isoformat(), "final_status": STATUS_APPLIED},
            )
        )
        logger.info(
            "Price change %s applied to subscription %s: %s -> %s",
            entry.id,
            entry.referrer_subscription_id,
            entry.original_price,
            entry.new_price,
        )
        self._publish(entry, STATUS_APPLIED, None, applied_at)
        return PricingResult(
            success=True,
            status=STATUS_APPLIED,
            change_id=entry.id,
            details={
                "price_before": str(entry.original_price),
                "price_after": str(entry.new_price),
                "reduction_amount": str(entry.reduction_amount),
            },
        )

    def _apply_to_subscription(self, entry) -> None:
        try:
            subscription = self._billing.get_subscription(entry.referrer_subscription_id)
        except BillingError as exc:
            raise ApplyFailure(str(exc), permanent=not exc.transient) from exc

        if not subscription.is_billable:
            raise ApplyFailure(
                "Subscription {} is not active (status {})".format(
                    entry.referrer_subscription_id, subscription.status or "unknown"
                ),
                permanent=not self._retry_permanent_failures,
            )

        drift = abs(subscription.price - entry.original_price)
        if drift > self._drift_tolerance and abs(subscription.price - entry.new_price) <= self._drift_tolerance:
            # An earlier attempt set the price but could not record it.
            logger.warning(
                "Subscription %s already at %s; recording change %s as applied",
                entry.referrer_subscription_id,
                subscription.price,
                entry.id,
            )
            return

        if drift > self._drift_tolerance:
            raise ApplyFailure(
                "Price drift detected: expected {}, found {}".format(entry.original_price, subscription.price),
                permanent=not self._retry_permanent_failures,
            )

        note = "Referral reduction applied: {} -> {} (saving {})".format(
            entry.original_price, entry.new_price, entry.reduction_amount
        )
        try:
            self._billing.set_subscription_price(entry.referrer_subscription_id, entry.new_price, note)
        except BillingError as exc:
            raise ApplyFailure(str(exc), permanent=not exc.transient) from exc

    def _revert_superseded(self, entry) -> PricingResult:
        """Undo a price write whose entry was cancelled while the apply held it.

        Billing is at ``new_price`` here but the entry left ``pending`` under
        us, so the original price goes back and a failed history row records
        both writes.
        """
        try:
            current = self._store.get(entry.id)
        except StorageError as exc:
            return self._storage_failure("apply", exc, change_id=entry.id)
        final_status = current.status if current is not None else None
        if final_status == STATUS_APPLIED:
            return PricingResult.noop("already applied by a concurrent transition", change_id=entry.id)
        if final_status == STATUS_PENDING:
            # Lease expired and another worker holds the entry; it will see the new price.
            logger.error(
                "Lease on price change %s lost after setting subscription %s to %s",
                entry.id,
                entry.referrer_subscription_id,
                entry.new_price,
            )
            return PricingResult.noop("lease taken over by another worker", change_id=entry.id)

        logger.error(
            "Subscription %s price was set to %s but change %s became %s; reverting to %s",
            entry.referrer_subscription_id,
            entry.new_price,
            entry.id,
            final_status,
            entry.original_price,
        )
        message = "Price change {} was {} while being applied".format(entry.id, final_status or "removed")
        details = {
            "error_message": message,
            "final_status": final_status,
            "price_written": str(entry.new_price),
            "failed_at": utc_now().isoformat(),
        }
        try:
            self._billing.set_subscription_price(
                entry.referrer_subscription_id,
                entry.original_price,
                "Referral reduction reverted: change {} was {}".format(entry.id, final_status or "removed"),
            )
        except BillingError as exc:
            logger.critical(
                "Could not revert subscription %s to %s: %s",
                entry.referrer_subscription_id,
                entry.original_price,
                exc,
            )
            details.update(reverted=False, revert_error=str(exc))
            self._raise_alert(
                "Referral price revert failed",
                {
                    "change_id": entry.id,
                    "subscription_id": entry.referrer_subscription_id,
                    "price": str(entry.new_price),
                    "expected_price": str(entry.original_price),
                    "error": str(exc),
                },
            )
        else:
            details["reverted"] = True

        price_after = entry.original_price if details["reverted"] else entry.new_price
        self._write_history(
            entry,
            NewHistoryRecord(
                referrer_subscription_id=entry.referrer_subscription_id,
                referred_order_id=entry.referred_order_id,
                action=entry.action,
                price_before=entry.original_price,
                price_after=price_after,
                reduction_amount=entry.original_price - price_after,
                execution_status=EXECUTION_FAILED,
                execution_details=details,
            )
        )
        return PricingResult.failure(
            ErrorKind.CONFLICT,
            message,
            status=final_status or "conflict",
            change_id=entry.id,
            details={"reverted": details["reverted"]},
        )

    def _handle_failure(self, entry, message: str, *, permanent: bool) -> PricingResult:
        try:
            updated = self._store.mark_failed(entry.id, message, permanent=permanent, owner=self._owner)
        except StorageError as exc:
            return self._storage_failure("mark_failed", exc, change_id=entry.id)
        if updated is None:
            return PricingResult.noop("already handled by a concurrent transition", change_id=entry.id)

        self._write_history(
            entry,
            NewHistoryRecord(
                referrer_subscription_id=entry.referrer_subscription_id,
                referred_order_id=entry.referred_order_id,
                action=entry.action,
                price_before=entry.original_price,
                price_after=entry.original_price,
                reduction_amount=Decimal("0.00"),
                execution_status=EXECUTION_FAILED,
                execution_details={
                    "error_message": message,
                    "retry_count": updated.retry_count,
                    "permanent": permanent,
                    "final_status": updated.status,
                    "failed_at": utc_now().isoformat(),
                },
            )
        )
        if updated.status == STATUS_FAILED:
            self._publish(entry, STATUS_FAILED, message, utc_now())

        kind = ErrorKind.PERMANENT if permanent or updated.status == STATUS_FAILED else ErrorKind.TRANSIENT
        return PricingResult.failure(
            kind,
            message,
            status=updated.status,
            change_id=entry.id,
            details={"retry_count": updated.retry_count},
        )

    # ------------------------------------------------------------------
    # Retry sweep
    # ------------------------------------------------------------------

    def run_retry_sweep(self, now: Optional[datetime] = None) -> dict:
        """Re-attempt entries whose backoff elapsed and expire stale ones."""
        now = now or utc_now()
        stats = {"candidates": 0, "applied": 0, "failed": 0, "retrying": 0, "skipped": 0, "expired": 0}

        try:
            stats["expired"] = self._expire_stale(now)
            candidates = self._store.list_retry_candidates(now)
        except StorageError as exc:
            self._storage_failure("run_retry_sweep", exc)
            stats["error"] = str(exc)
            return stats

        stats["candidates"] = len(candidates)
        if candidates:
            logger.info("Retry sweep: %d price change(s) due", len(candidates))
        for candidate in candidates:
            result = self.apply(candidate.id)
            if result.status == STATUS_APPLIED:
                stats["applied"] += 1
            elif result.status == STATUS_FAILED:
                stats["failed"] += 1
            elif result.status == STATUS_PENDING:
                stats["retrying"] += 1
            else:
                stats["skipped"] += 1
        return stats

    def _expire_stale(self, now: datetime) -> int:
        if self._max_pending_days <= 0:
            return 0
        cutoff = now - timedelta(days=self._max_pending_days)
        expired = 0
        for entry in self._store.list_stale_pending(cutoff):
            claimed = self._store.claim(entry.id, self._owner, lease_seconds=self._lease_seconds, now=now)
            if claimed is None:
                continue
            message = "Scheduled date {} is more than {} days old".format(
                claimed.scheduled_date, self._max_pending_days
            )
            result = self._handle_failure(claimed, message, permanent=True)
            if result.status == STATUS_FAILED:
                expired += 1
        return expired

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_pending(self, subscription_id: int, reason: str) -> PricingResult:
        try:
            pending = self._store.get_pending(subscription_id)
            if pending is None:
                return PricingResult.noop("no pending price change")
            cancelled = self._store.mark_cancelled(pending.id, reason)
        except StorageError as exc:
            return self._storage_failure("cancel_pending", exc, subscription_id=subscription_id)
        if not cancelled:
            return PricingResult.noop("already handled by a concurrent transition", change_id=pending.id)

        cancelled_at = utc_now()
        self._write_history(
            pending,
            NewHistoryRecord(
                referrer_subscription_id=pending.referrer_subscription_id,
                referred_order_id=pending.referred_order_id,
                action=pending.action,
                price_before=pending.original_price,
                price_after=pending.original_price,
                reduction_amount=Decimal("0.00"),
                execution_status=EXECUTION_CANCELLED,
                execution_details={
                    "cancellation_reason": reason,
                    "cancelled_at": cancelled_at.isoformat(),
                    "final_status": STATUS_CANCELLED,
                },
            )
        )
        self._publish(pending, STATUS_CANCELLED, reason, cancelled_at)
        return PricingResult(
            success=True,
            status=STATUS_CANCELLED,
            change_id=pending.id,
            details={"reason": reason},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _write_history(self, entry, record: NewHistoryRecord) -> None:
        # The transition is already committed; a lost history row is reported
        # to operators rather than undoing it.
        details = dict(record.execution_details)
        details.setdefault("change_id", entry.id)
        details.setdefault("referrer_customer_id", (entry.meta or {}).get("referrer_customer_id"))
        record.execution_details = details
        try:
            self._store.append_history(record)
        except StorageError as exc:
            self._storage_failure(
                "append_history",
                exc,
                subscription_id=record.referrer_subscription_id,
            )

    def _publish(self, entry, status: str, reason: Optional[str], occurred_at: datetime) -> None:
        if not self._listeners:
            return
        meta = entry.meta or {}
        outcome = PriceChangeOutcome(
            change_id=entry.id,
            referrer_subscription_id=entry.referrer_subscription_id,
            referred_order_id=entry.referred_order_id,
            referrer_customer_id=meta.get("referrer_customer_id"),
            status=status,
            original_price=entry.original_price,
            new_price=entry.new_price,
            reduction_amount=entry.reduction_amount,
            reason=reason,
            occurred_at=occurred_at,
        )
        for listener in self._listeners:
            try:
                listener(outcome)
            except _HOOK_EXCEPTIONS:
                logger.exception("Outcome listener failed for price change %s", entry.id)

    def _storage_failure(self, operation: str, exc: Exception, **context) -> PricingResult:
        logger.critical(
            "Storage failure during %s: %s",
            operation,
            exc,
            extra={"context": dict(context, operation=operation)},
        )
        self._raise_alert("Storage failure during {}".format(operation), dict(context, error=str(exc)))
        return PricingResult.failure(
            ErrorKind.STORAGE,
            str(exc),
            change_id=context.get("change_id"),
        )

    def _raise_alert(self, title: str, context: dict) -> None:
        if self._alert is None:
            return
        try:
            self._alert(title, context)
        except _HOOK_EXCEPTIONS:
            logger.exception("Operator alert failed: %s", title)


__all__ = ["ApplyFailure", "PriceChangeScheduler"]
