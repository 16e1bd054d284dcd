import logging

from referral_pricing.core.scheduler import Scheduler

logger = logging.getLogger(__name__)

RETRY_SWEEP_JOB = "price-change-retry-sweep"
NOTIFICATION_JOB = "price-change-notifications"


def run_retry_sweep_job(services):
    stats = services.scheduler.run_retry_sweep()
    logger.info(
        "Retry sweep finished: %d candidate(s), %d applied, %d retrying, %d failed, %d expired",
        stats["candidates"],
        stats["applied"],
        stats["retrying"],
        stats["failed"],
        stats["expired"],
    )
    return stats


def run_notification_job(services):
    return services.notifier.dispatch_pending()


def build_job_scheduler(services, settings) -> Scheduler:
    scheduler = Scheduler(poll_seconds=settings.SCHEDULER_POLL_SECONDS)
    scheduler.add_interval_job(
        RETRY_SWEEP_JOB,
        settings.SCHEDULER_RETRY_SECONDS,
        lambda: run_retry_sweep_job(services),
        jitter_seconds=min(60, settings.SCHEDULER_RETRY_SECONDS // 10),
        run_immediately=True,
    )
    if services.notifier.enabled:
        scheduler.add_interval_job(
            NOTIFICATION_JOB,
            settings.SCHEDULER_NOTIFY_SECONDS,
            lambda: run_notification_job(services),
        )
    else:
        logger.info("NOTIFY_WEBHOOK_URL not set; notification job not registered.")
    return scheduler


__all__ = [
    "NOTIFICATION_JOB",
    "RETRY_SWEEP_JOB",
    "build_job_scheduler",
    "run_notification_job",
    "run_retry_sweep_job",
]
