"""
Periodic crawl trigger.

An APScheduler background job that asks the crawl scheduler for due
crawls every few minutes. It only schedules; the crawl workers run them.
"""

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from ingestion.scheduler import CrawlScheduler


logger = logging.getLogger(__name__)


class PeriodicCrawlTrigger:
    def __init__(
        self,
        scheduler: CrawlScheduler,
        tick_minutes: int = 5,
        background: Optional[BackgroundScheduler] = None,
    ):
        if tick_minutes < 1:
            raise ValueError("tick_minutes must be at least 1")
        self._scheduler = scheduler
        self._tick_minutes = tick_minutes
        self._background = background or BackgroundScheduler()
        self._job = None

    def tick(self) -> list[str]:
        """Schedule due crawls once. Errors are logged so the next tick still runs."""
        try:
            return self._scheduler.schedule_due_crawls()
        except Exception:
            logger.exception("Periodic crawl tick failed")
            return []

    def start(self) -> None:
        if self._job is not None:
            return
        self._job = self._background.add_job(
            self.tick,
            "interval",
            minutes=self._tick_minutes,
            id="schedule-due-crawls",
            max_instances=1,
            coalesce=True,
        )
        if not self._background.running:
            self._background.start()
        logger.info("Periodic crawl trigger started (every %d minutes)", self._tick_minutes)

    def shutdown(self) -> None:
        if self._job is None:
            return
        self._job.remove()
        self._job = None
        if self._background.running:
            self._background.shutdown(wait=False)
        logger.info("Periodic crawl trigger stopped")

    @property
    def running(self) -> bool:
        return self._job is not None
