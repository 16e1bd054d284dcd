import unittest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from referral_pricing.core.constants import (
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
    BillingRejectedError,
    BillingTimeoutError,
    BillingUnavailableError,
    StorageError,
)
from referral_pricing.core.results import RESULT_NOOP, RESULT_SCHEDULED, ErrorKind
from referral_pricing.services.price_change_scheduler import PriceChangeScheduler
from support import FakeBillingGateway, make_services

SUBSCRIPTION_ID = 501


class PriceChangeSchedulerTest(unittest.TestCase):
    def setUp(self):
        self.billing = FakeBillingGateway()
        self.billing.add_subscription(SUBSCRIPTION_ID, "100.00", customer_id=42)
        self.services = make_services(self.billing)
        self.scheduler = self.services.scheduler
        self.store = self.services.store
        self.outcomes = []
        self.scheduler.subscribe(self.outcomes.append)

    def schedule(self, scheduler=None, scheduled_date=None, order_id=9001):
        scheduler = scheduler or self.scheduler
        calculation = self.services.calculator.calculate("100.00", "50.00")
        return scheduler.schedule_price_change(
            referrer_subscription_id=SUBSCRIPTION_ID,
            referred_order_id=order_id,
            calculation=calculation,
            scheduled_date=scheduled_date or utc_now() + timedelta(days=7),
            metadata={"referrer_customer_id": 42},
        )

    def history(self):
        return self.store.list_history(SUBSCRIPTION_ID)

    def test_schedule_creates_pending_entry(self):
        result = self.schedule()

        self.assertTrue(result.success)
        self.assertEqual(result.status, RESULT_SCHEDULED)
        entry = self.store.get(result.change_id)
        self.assertEqual(entry.status, STATUS_PENDING)
        self.assertEqual(entry.reduction_amount, Decimal("10.00"))
        self.assertEqual(entry.new_price, Decimal("90.00"))
        self.assertIn("calculation_metadata", entry.meta)

    def test_schedule_twice_reports_conflict(self):
        first = self.schedule()
        second = self.schedule(order_id=9002)

        self.assertFalse(second.success)
        self.assertEqual(second.status, "conflict")
        self.assertEqual(second.error_kind, ErrorKind.CONFLICT)
        self.assertEqual(second.change_id, first.change_id)
        self.assertFalse(second.retryable)
        self.assertEqual(self.store.get(first.change_id).referred_order_id, 9001)

    def test_billing_event_applies_reduction(self):
        change_id = self.schedule().change_id

        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertTrue(result.success)
        self.assertEqual(result.status, STATUS_APPLIED)
        self.assertEqual(self.billing.subscriptions[SUBSCRIPTION_ID].price, Decimal("90.00"))
        self.assertIn("Referral reduction applied", self.billing.price_updates[0][2])
        self.assertEqual(self.store.get(change_id).status, STATUS_APPLIED)

        history = self.history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].execution_status, EXECUTION_SUCCESS)
        self.assertEqual(history[0].price_before, Decimal("100.00"))
        self.assertEqual(history[0].price_after, Decimal("90.00"))
        self.assertEqual(history[0].execution_details["change_id"], change_id)
        self.assertEqual(history[0].execution_details["referrer_customer_id"], 42)

        self.assertEqual(len(self.outcomes), 1)
        self.assertEqual(self.outcomes[0].status, STATUS_APPLIED)
        self.assertEqual(self.outcomes[0].referrer_customer_id, 42)

    def test_payment_completed_routes_to_same_handler(self):
        self.schedule()
        self.assertEqual(self.scheduler.on_payment_completed(SUBSCRIPTION_ID).status, STATUS_APPLIED)

    def test_billing_event_without_pending_entry_is_noop(self):
        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertTrue(result.success)
        self.assertEqual(result.status, RESULT_NOOP)
        self.assertEqual(self.billing.price_updates, [])

    def test_repeated_billing_event_applies_once(self):
        self.schedule()

        self.scheduler.on_payment_due(SUBSCRIPTION_ID)
        second = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(second.status, RESULT_NOOP)
        self.assertEqual(len(self.billing.price_updates), 1)
        self.assertEqual(len(self.history()), 1)

    def test_concurrent_billing_event_is_noop(self):
        change_id = self.schedule().change_id
        nested = []

        def second_handler(_subscription_id):
            self.billing.on_set_price = None
            nested.append(self.scheduler.on_payment_due(SUBSCRIPTION_ID))

        self.billing.on_set_price = second_handler
        first = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(first.status, STATUS_APPLIED)
        self.assertEqual(nested[0].status, RESULT_NOOP)
        self.assertEqual(nested[0].change_id, change_id)
        self.assertEqual(len(self.billing.price_updates), 1)
        history = self.history()
        self.assertEqual([row.execution_status for row in history], [EXECUTION_SUCCESS])

    def test_price_drift_fails_permanently_by_default(self):
        change_id = self.schedule().change_id
        self.billing.update(SUBSCRIPTION_ID, price=Decimal("95.00"))

        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertFalse(result.success)
        self.assertEqual(result.status, STATUS_FAILED)
        self.assertEqual(result.error_kind, ErrorKind.PERMANENT)
        self.assertIn("drift", result.error)
        self.assertEqual(self.billing.subscriptions[SUBSCRIPTION_ID].price, Decimal("95.00"))
        self.assertEqual(self.store.get(change_id).status, STATUS_FAILED)

        history = self.history()
        self.assertEqual(history[0].execution_status, EXECUTION_FAILED)
        self.assertIn("drift", history[0].execution_details["error_message"])
        self.assertEqual(history[0].price_after, Decimal("100.00"))
        self.assertEqual(self.outcomes[0].status, STATUS_FAILED)

    def test_price_drift_retryable_when_configured(self):
        services = make_services(self.billing, PRICING_RETRY_PERMANENT_FAILURES=True)
        change_id = self.schedule(scheduler=services.scheduler).change_id
        self.billing.update(SUBSCRIPTION_ID, price=Decimal("95.00"))

        result = services.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(result.status, STATUS_PENDING)
        self.assertEqual(result.error_kind, ErrorKind.TRANSIENT)
        entry = services.store.get(change_id)
        self.assertEqual(entry.status, STATUS_PENDING)
        self.assertEqual(entry.retry_count, 1)
        self.assertNotEqual(entry.status, STATUS_APPLIED)

    def test_inactive_subscription_fails(self):
        change_id = self.schedule().change_id
        self.billing.update(SUBSCRIPTION_ID, status="on-hold")

        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(result.status, STATUS_FAILED)
        self.assertIn("not active", result.error)
        self.assertEqual(self.store.get(change_id).status, STATUS_FAILED)

    def test_price_already_at_new_value_is_recorded_as_applied(self):
        change_id = self.schedule().change_id
        self.billing.update(SUBSCRIPTION_ID, price=Decimal("90.00"))

        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(result.status, STATUS_APPLIED)
        self.assertEqual(self.billing.price_updates, [])
        self.assertEqual(self.store.get(change_id).status, STATUS_APPLIED)

    def test_rejected_price_update_is_permanent(self):
        self.schedule()
        self.billing.set_errors.append(BillingRejectedError("HTTP 400"))

        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(result.status, STATUS_FAILED)
        self.assertEqual(result.error_kind, ErrorKind.PERMANENT)

    def test_transient_failures_exhaust_retry_budget(self):
        change_id = self.schedule().change_id
        self.billing.set_errors.extend(
            [BillingTimeoutError("timed out"), BillingUnavailableError("HTTP 503"), BillingTimeoutError("timed out")]
        )

        first = self.scheduler.on_payment_due(SUBSCRIPTION_ID)
        self.assertEqual(first.status, STATUS_PENDING)
        self.assertEqual(first.error_kind, ErrorKind.TRANSIENT)
        self.assertTrue(first.retryable)

        sweep = self.scheduler.run_retry_sweep(utc_now() + timedelta(seconds=61))
        self.assertEqual(sweep["candidates"], 1)
        self.assertEqual(sweep["retrying"], 1)

        sweep = self.scheduler.run_retry_sweep(utc_now() + timedelta(seconds=301))
        self.assertEqual(sweep["failed"], 1)

        entry = self.store.get(change_id)
        self.assertEqual(entry.status, STATUS_FAILED)
        self.assertEqual(entry.retry_count, 3)
        self.assertEqual(self.store.list_retry_candidates(utc_now() + timedelta(days=1)), [])

        history = self.history()
        self.assertEqual(len(history), 3)
        self.assertEqual(history[0].execution_details["final_status"], STATUS_FAILED)
        self.assertEqual(history[1].execution_details["final_status"], STATUS_PENDING)
        self.assertEqual([outcome.status for outcome in self.outcomes], [STATUS_FAILED])

    def test_retry_sweep_applies_after_transient_failure(self):
        change_id = self.schedule().change_id
        self.billing.set_errors.append(BillingUnavailableError("HTTP 502"))
        self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        early = self.scheduler.run_retry_sweep()
        self.assertEqual(early["candidates"], 0)

        sweep = self.scheduler.run_retry_sweep(utc_now() + timedelta(seconds=61))

        self.assertEqual(sweep["applied"], 1)
        self.assertEqual(self.store.get(change_id).status, STATUS_APPLIED)
        self.assertEqual(self.billing.subscriptions[SUBSCRIPTION_ID].price, Decimal("90.00"))

    def test_retry_sweep_expires_stale_entries(self):
        change_id = self.schedule(scheduled_date=utc_now() - timedelta(days=91)).change_id

        sweep = self.scheduler.run_retry_sweep()

        self.assertEqual(sweep["expired"], 1)
        entry = self.store.get(change_id)
        self.assertEqual(entry.status, STATUS_FAILED)
        self.assertTrue(entry.meta["permanent_failure"])
        self.assertEqual(self.billing.price_updates, [])

    def test_cancel_pending(self):
        change_id = self.schedule().change_id

        result = self.scheduler.cancel_pending(SUBSCRIPTION_ID, "cancelled")

        self.assertEqual(result.status, STATUS_CANCELLED)
        self.assertEqual(self.store.get(change_id).status, STATUS_CANCELLED)
        history = self.history()
        self.assertEqual(history[0].execution_status, EXECUTION_CANCELLED)
        self.assertEqual(history[0].execution_details["cancellation_reason"], "cancelled")
        self.assertEqual(self.outcomes[0].reason, "cancelled")

        late_event = self.scheduler.on_payment_due(SUBSCRIPTION_ID)
        self.assertEqual(late_event.status, RESULT_NOOP)
        self.assertEqual(self.billing.price_updates, [])

    def test_cancelled_entry_is_never_applied(self):
        change_id = self.schedule().change_id
        self.scheduler.cancel_pending(SUBSCRIPTION_ID, "expired")

        result = self.scheduler.apply(change_id)

        self.assertEqual(result.status, RESULT_NOOP)
        self.assertEqual(self.store.get(change_id).status, STATUS_CANCELLED)

    def test_cancel_without_pending_entry_is_noop(self):
        self.assertEqual(self.scheduler.cancel_pending(SUBSCRIPTION_ID, "cancelled").status, RESULT_NOOP)

    def test_cancel_after_apply_is_noop(self):
        self.schedule()
        self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        result = self.scheduler.cancel_pending(SUBSCRIPTION_ID, "cancelled")

        self.assertEqual(result.status, RESULT_NOOP)

    def test_cancel_during_apply_reverts_price(self):
        change_id = self.schedule().change_id
        cancels = []

        def terminate_mid_apply(_subscription_id):
            self.billing.on_set_price = None
            cancels.append(self.services.coordinator.on_subscription_terminated(SUBSCRIPTION_ID))

        self.billing.on_set_price = terminate_mid_apply
        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(cancels[0].status, STATUS_CANCELLED)
        self.assertFalse(result.success)
        self.assertEqual(result.status, STATUS_CANCELLED)
        self.assertEqual(result.error_kind, ErrorKind.CONFLICT)
        self.assertTrue(result.details["reverted"])
        self.assertEqual(self.store.get(change_id).status, STATUS_CANCELLED)
        self.assertEqual(self.billing.subscriptions[SUBSCRIPTION_ID].price, Decimal("100.00"))
        self.assertEqual(
            [update[1] for update in self.billing.price_updates],
            [Decimal("90.00"), Decimal("100.00")],
        )
        self.assertIn("reverted", self.billing.price_updates[1][2])

        rows = {row.execution_status: row for row in self.history()}
        self.assertEqual(set(rows), {EXECUTION_CANCELLED, EXECUTION_FAILED})
        failed = rows[EXECUTION_FAILED]
        self.assertEqual(failed.price_after, Decimal("100.00"))
        self.assertEqual(failed.reduction_amount, Decimal("0.00"))
        self.assertTrue(failed.execution_details["reverted"])
        self.assertEqual(failed.execution_details["price_written"], "90.00")
        self.assertEqual(failed.execution_details["final_status"], STATUS_CANCELLED)
        self.assertEqual([outcome.status for outcome in self.outcomes], [STATUS_CANCELLED])

    def test_failed_revert_is_recorded_and_alerted(self):
        alert = MagicMock()
        scheduler = PriceChangeScheduler(self.store, self.billing, alert=alert)
        change_id = self.schedule(scheduler=scheduler).change_id

        def reject_revert(_subscription_id):
            self.billing.on_set_price = None
            self.billing.set_errors.append(BillingUnavailableError("billing API down"))

        def terminate_mid_apply(_subscription_id):
            self.billing.on_set_price = reject_revert
            scheduler.cancel_pending(SUBSCRIPTION_ID, "cancelled")

        self.billing.on_set_price = terminate_mid_apply
        result = scheduler.apply(change_id)

        self.assertFalse(result.success)
        self.assertFalse(result.details["reverted"])
        self.assertEqual(self.billing.subscriptions[SUBSCRIPTION_ID].price, Decimal("90.00"))
        failed = [row for row in self.history() if row.execution_status == EXECUTION_FAILED]
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0].price_after, Decimal("90.00"))
        self.assertFalse(failed[0].execution_details["reverted"])
        self.assertIn("billing API down", failed[0].execution_details["revert_error"])
        alert.assert_called_once()
        self.assertEqual(alert.call_args[0][1]["change_id"], change_id)

    def test_unexpected_billing_error_is_retried(self):
        change_id = self.schedule().change_id
        self.billing.set_errors.append(RuntimeError("socket closed"))

        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, ErrorKind.TRANSIENT)
        entry = self.store.get(change_id)
        self.assertEqual(entry.status, STATUS_PENDING)
        self.assertEqual(entry.retry_count, 1)
        self.assertIn("RuntimeError: socket closed", entry.meta["last_error"])

    def test_storage_failure_is_reported(self):
        alert = MagicMock()
        scheduler = PriceChangeScheduler(self.store, self.billing, alert=alert)

        with patch.object(self.store, "get_pending", side_effect=StorageError("database is locked")):
            result = scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, ErrorKind.STORAGE)
        self.assertTrue(result.retryable)
        alert.assert_called_once()
        self.assertIn("on_billing_event", alert.call_args[0][0])

    def test_lost_history_row_does_not_undo_apply(self):
        change_id = self.schedule().change_id

        with patch.object(self.store, "append_history", side_effect=StorageError("disk full")):
            result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(result.status, STATUS_APPLIED)
        self.assertEqual(self.store.get(change_id).status, STATUS_APPLIED)

    def test_failing_listener_does_not_break_apply(self):
        def broken_listener(_outcome):
            raise RuntimeError("listener down")

        self.scheduler.subscribe(broken_listener)
        self.schedule()

        result = self.scheduler.on_payment_due(SUBSCRIPTION_ID)

        self.assertEqual(result.status, STATUS_APPLIED)
        self.assertEqual(len(self.outcomes), 1)


if __name__ == "__main__":
    unittest.main()
