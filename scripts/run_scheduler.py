import argparse
import logging

from referral_pricing.config import get_settings
from referral_pricing.core.logging import setup_logging
from referral_pricing.database import create_schema
from referral_pricing.scheduler.jobs import build_job_scheduler
from referral_pricing.services.container import build_pricing_services

logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Run the referral price-change scheduler.")
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run the retry sweep and notification dispatch once and exit.",
    )
    return parser.parse_args()


def main():
    setup_logging()
    args = parse_args()
    settings = get_settings()

    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled by SCHEDULER_ENABLED.")
        return

    create_schema()
    services = build_pricing_services(settings)
    scheduler = build_job_scheduler(services, settings)

    if args.run_once:
        scheduler.run_all_now()
        return

    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted.")


if __name__ == "__main__":
    main()
