"""
APScheduler wrapper for periodic mirror runs.
"""

import logging
from collections.abc import Callable
from typing import Any

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class MirrorScheduler:
    """
    Schedules mirror jobs on interval or cron triggers.

    A job never overlaps itself: a firing that comes due while the previous
    run is still going is skipped (``max_instances=1``) and missed firings
    collapse into one (``coalesce=True``).
    """

    def __init__(self, scheduler: BaseScheduler | None = None):
        self.scheduler = scheduler or BlockingScheduler(timezone="UTC")

    def _add(self, job_func: Callable, trigger, job_id: str, kwargs: dict[str, Any]):
        return self.scheduler.add_job(
            job_func,
            trigger=trigger,
            id=job_id,
            kwargs=kwargs,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def add_interval_job(
        self, job_func: Callable, interval_seconds: int, job_id: str, **kwargs
    ) -> None:
        if interval_seconds < 1:
            raise ValueError(f"Interval must be at least 1 second, got {interval_seconds}")
        self._add(job_func, IntervalTrigger(seconds=interval_seconds), job_id, kwargs)
        logger.info(f"Added interval job '{job_id}' every {interval_seconds}s")

    def add_cron_job(
        self, job_func: Callable, cron_expression: str, job_id: str, **kwargs
    ) -> None:
        """
        Add a job on a five-field crontab schedule (``"0 */6 * * *"``).

        Raises:
            ValueError: If the expression is not a valid crontab
        """
        if len(cron_expression.split()) != 5:
            raise ValueError(
                "Cron expression must have 5 parts: minute hour day month day_of_week"
            )
        trigger = CronTrigger.from_crontab(cron_expression, timezone="UTC")
        self._add(job_func, trigger, job_id, kwargs)
        logger.info(f"Added cron job '{job_id}' with schedule '{cron_expression}'")

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)
        logger.info(f"Removed job '{job_id}'")

    def start(self) -> None:
        """Start the scheduler; blocks until interrupted."""
        logger.info(f"Starting mirror scheduler with {len(self.scheduler.get_jobs())} job(s)")
        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Scheduler stopped by user")
            self.stop()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def list_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": (
                    job.next_run_time.isoformat()
                    if getattr(job, "next_run_time", None) else None
                ),
                "trigger": str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]
