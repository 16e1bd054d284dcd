import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from referral_pricing.core.exceptions import StorageError
from referral_pricing.core.scheduler import Scheduler
from referral_pricing.scheduler.jobs import NOTIFICATION_JOB, RETRY_SWEEP_JOB, build_job_scheduler
from support import FakeBillingGateway, make_services


class SchedulerTest(unittest.TestCase):
    def test_run_pending_executes_due_job(self):
        hits = {"count": 0}

        def job():
            hits["count"] += 1

        scheduler = Scheduler()
        scheduler.add_interval_job("test", 60, job, run_in_thread=False)
        scheduler.run_pending()
        self.assertEqual(hits["count"], 0)

        scheduler._jobs[0].next_run = datetime.now(timezone.utc) - timedelta(seconds=1)
        scheduler.run_pending()

        self.assertEqual(hits["count"], 1)
        self.assertGreater(scheduler._jobs[0].next_run, datetime.now(timezone.utc))

    def test_run_immediately(self):
        hits = []
        scheduler = Scheduler()
        scheduler.add_interval_job("now", 3600, lambda: hits.append(1), run_immediately=True)

        scheduler.run_pending()

        self.assertEqual(hits, [1])

    def test_failing_job_does_not_stop_others(self):
        hits = []

        def broken():
            raise RuntimeError("boom")

        scheduler = Scheduler()
        scheduler.add_interval_job("broken", 60, broken)
        scheduler.add_interval_job("ok", 60, lambda: hits.append(1))

        scheduler.run_all_now()

        self.assertEqual(hits, [1])

    def test_storage_error_in_job_is_contained(self):
        hits = []

        def locked():
            raise StorageError("database is locked")

        scheduler = Scheduler()
        scheduler.add_interval_job("locked", 60, locked)
        scheduler.add_interval_job("ok", 60, lambda: hits.append(1))

        with self.assertLogs("referral_pricing.core.scheduler", level="ERROR") as logs:
            scheduler.run_all_now()

        self.assertEqual(hits, [1])
        self.assertIn("locked", logs.output[0])

    def test_interval_must_be_positive(self):
        with self.assertRaises(ValueError):
            Scheduler().add_interval_job("bad", 0, lambda: None)


class JobSchedulerTest(unittest.TestCase):
    def test_registers_retry_sweep_without_webhook(self):
        services = make_services()

        scheduler = build_job_scheduler(services, services.settings)

        self.assertEqual([job.name for job in scheduler._jobs], [RETRY_SWEEP_JOB])

    def test_registers_notifications_with_webhook(self):
        services = make_services(NOTIFY_WEBHOOK_URL="https://hooks.example.com/referrals")

        scheduler = build_job_scheduler(services, services.settings)

        self.assertEqual([job.name for job in scheduler._jobs], [RETRY_SWEEP_JOB, NOTIFICATION_JOB])

    def test_run_all_now_retries_failed_changes(self):
        billing = FakeBillingGateway()
        billing.add_subscription(7001, "100.00", customer_id=42)
        services = make_services(billing, PRICING_RETRY_DELAYS=[0, 0, 0])
        services.scheduler.schedule_price_change(
            referrer_subscription_id=7001,
            referred_order_id=1,
            calculation=services.calculator.calculate("100.00", "50.00"),
            scheduled_date=datetime.now(timezone.utc),
        )
        services.store.mark_failed(services.store.get_pending(7001).id, "timed out")

        build_job_scheduler(services, services.settings).run_all_now()

        self.assertEqual(billing.subscriptions[7001].price, Decimal("90.00"))
        self.assertIsNone(services.store.get_pending(7001))


if __name__ == "__main__":
    unittest.main()
