from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from referral_pricing.core.exceptions import PricingError

logger = logging.getLogger(__name__)

_SCHEDULED_JOB_EXCEPTIONS = (OSError, RuntimeError, ValueError, PricingError)


@dataclass
class IntervalJob:
    name: str
    interval_seconds: int
    func: Callable[[], None]
    jitter_seconds: int = 0
    run_in_thread: bool = False
    next_run: Optional[datetime] = None


class Scheduler:
    """Runs interval jobs from a polling loop.

    Jobs are triggers only; they must be safe to run on several processes at
    once because the work they do is guarded by conditional updates.
    """

    def __init__(self, *, poll_seconds: int = 1):
        self._jobs: list[IntervalJob] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._poll_seconds = max(1, int(poll_seconds))

    def add_interval_job(
        self,
        name: str,
        interval_seconds: int,
        func: Callable[[], None],
        *,
        jitter_seconds: int = 0,
        run_in_thread: bool = False,
        run_immediately: bool = False,
    ) -> None:
        interval = int(interval_seconds)
        if interval < 1:
            raise ValueError("interval_seconds must be at least 1")
        job = IntervalJob(
            name=name,
            interval_seconds=interval,
            func=func,
            jitter_seconds=max(0, int(jitter_seconds)),
            run_in_thread=run_in_thread,
        )
        job.next_run = self._now() if run_immediately else self._schedule_next(job)
        with self._lock:
            self._jobs.append(job)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _schedule_next(self, job: IntervalJob) -> datetime:
        run_at = self._now() + timedelta(seconds=job.interval_seconds)
        if job.jitter_seconds:
            run_at += timedelta(seconds=secrets.randbelow(job.jitter_seconds + 1))
        return run_at

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="pricing-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Scheduler started with %d job(s).", len(self._jobs))

    def stop(self) -> None:
        self._stop_event.set()
        if not self._thread:
            return
        self._thread.join(timeout=self._poll_seconds + 1)
        self._thread = None
        logger.info("Scheduler stopped.")

    def run_forever(self) -> None:
        logger.info("Scheduler running in foreground with %d job(s).", len(self._jobs))
        self._stop_event.clear()
        self._run()

    def run_all_now(self) -> None:
        with self._lock:
            jobs = list(self._jobs)
        for job in jobs:
            self._safe_run(job)

    def run_pending(self) -> None:
        now = self._now()
        with self._lock:
            jobs = list(self._jobs)
        for job in jobs:
            if job.next_run and now >= job.next_run:
                self._run_job(job)
                job.next_run = self._schedule_next(job)

    def _run_job(self, job: IntervalJob) -> None:
        logger.debug("Running scheduled job: %s", job.name)
        if job.run_in_thread:
            threading.Thread(
                target=self._safe_run,
                args=(job,),
                name=f"job-{job.name}",
                daemon=True,
            ).start()
        else:
            self._safe_run(job)

    @staticmethod
    def _safe_run(job: IntervalJob) -> None:
        try:
            job.func()
        except _SCHEDULED_JOB_EXCEPTIONS:
            logger.exception("Scheduled job failed: %s", job.name)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(self._poll_seconds)


__all__ = ["IntervalJob", "Scheduler"]
