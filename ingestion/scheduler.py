"""
Crawl Job Scheduler - Background Crawls with One Job per Source

Jobs are queued in memory and executed either by a fixed pool of worker
threads (start/shutdown) or inline by a cron-style caller (run_pending).

Guarantees:
    - At most one job per source is queued or running. Scheduling a source
      that already has one returns the existing job id.
    - Synchronous crawls (run_now) hold the same per-source slot, so a
      direct trigger never overlaps a background crawl of that source.
    - Workers pick the ready job with the lowest priority number, then the
      earliest scheduled.
    - A running job always reaches a terminal state; only queued jobs can
      be cancelled.
    - A rate-limited crawl puts its source on cooldown; jobs scheduled
      during the cooldown wait until it expires.
    - Failed jobs are not retried. The next scheduled run picks the source
      up again.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Final, Optional

from ingestion.errors import QueueFullError, SourceBusyError
from ingestion.orchestrator import CrawlOrchestrator
from ingestion.schema import CrawlJob, CrawlOptions, CrawlResult, JobState, utcnow
from ingestion.sources import SourceRegistry


logger = logging.getLogger(__name__)


DEFAULT_JOB_OPTIONS: Final[CrawlOptions] = CrawlOptions(max_pages=3, max_listings=200)

# Terminal jobs kept for inspection before the oldest are discarded
JOB_HISTORY_LIMIT: Final[int] = 500


@dataclass(frozen=True)
class ScheduleSummary:
    scheduled: int
    job_ids: list[str]
    batch_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheduled": self.scheduled,
            "jobIds": list(self.job_ids),
            "batchId": self.batch_id,
        }


class CrawlScheduler:
    """In-process crawl job queue and worker pool."""

    def __init__(
        self,
        orchestrator: CrawlOrchestrator,
        registry: SourceRegistry,
        workers: int = 2,
        queue_size: int = 100,
        job_options: CrawlOptions = DEFAULT_JOB_OPTIONS,
        cooldown_seconds: float = 900.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")

        self._orchestrator = orchestrator
        self._registry = registry
        self._workers = workers
        self._queue_size = queue_size
        self._job_options = job_options
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._cond = threading.Condition()
        self._jobs: dict[str, CrawlJob] = {}
        self._queued: list[str] = []
        self._in_flight: dict[str, str] = {}
        self._cooldowns: dict[str, datetime] = {}
        self._threads: list[threading.Thread] = []
        self._stopping = False

    # =========================================================================
    # Scheduling
    # =========================================================================

    def schedule_crawl(
        self,
        source_id: str,
        priority: Optional[int] = None,
        batch_id: Optional[str] = None,
    ) -> str:
        """
        Queue a crawl for a source, or return the id of its in-flight job.

        Raises:
            SourceNotFoundError: Unknown source id
            QueueFullError: The queue is at capacity
        """
        source = self._registry.get_source(source_id)

        with self._cond:
            existing = self._in_flight.get(source_id)
            if existing is not None:
                logger.debug("Crawl of %s already in flight as job %s", source_id, existing)
                return existing

            if len(self._queued) >= self._queue_size:
                raise QueueFullError(f"Crawl queue is full ({self._queue_size} jobs)")

            now = self._clock()
            cooldown = self._cooldowns.get(source_id)
            job = CrawlJob(
                id=str(uuid.uuid4()),
                source_id=source_id,
                priority=source.priority if priority is None else priority,
                scheduled_at=now,
                not_before=cooldown if cooldown and cooldown > now else None,
                batch_id=batch_id,
            )
            self._jobs[job.id] = job
            self._queued.append(job.id)
            self._in_flight[source_id] = job.id
            self._cond.notify()

        logger.info("Scheduled crawl job %s for %s (priority %d)", job.id, source_id, job.priority)
        return job.id

    def schedule_all_crawls(self, batch_id: Optional[str] = None) -> ScheduleSummary:
        """Schedule every enabled source in priority order under one batch id."""
        batch_id = batch_id or str(uuid.uuid4())
        job_ids = []
        for source in self._registry.list_sources(enabled_only=True):
            try:
                job_ids.append(self.schedule_crawl(source.id, batch_id=batch_id))
            except QueueFullError:
                logger.warning("Queue full; %s and later sources not scheduled", source.id)
                break
        return ScheduleSummary(scheduled=len(job_ids), job_ids=job_ids, batch_id=batch_id)

    def schedule_due_crawls(self) -> list[str]:
        """Schedule enabled sources whose refresh interval has elapsed."""
        now = self._clock()
        job_ids = []
        for source in self._registry.list_sources(enabled_only=True):
            last = self._registry.last_crawled_at(source.id)
            interval = timedelta(minutes=source.policy.refresh_interval_minutes)
            if last is not None and now - last < interval:
                continue
            try:
                job_ids.append(self.schedule_crawl(source.id))
            except QueueFullError:
                logger.warning("Queue full; due crawl of %s deferred", source.id)
                break
        if job_ids:
            logger.info("Scheduled %d due crawls", len(job_ids))
        return job_ids

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued job. Running and finished jobs are left alone."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.QUEUED:
                return False
            self._queued.remove(job_id)
            job.state = JobState.CANCELLED
            job.finished_at = self._clock()
            self._in_flight.pop(job.source_id, None)
        logger.info("Cancelled crawl job %s for %s", job_id, job.source_id)
        return True

    # =========================================================================
    # Execution
    # =========================================================================

    def _take_ready_job(self, now: datetime) -> Optional[CrawlJob]:
        """Pop the best ready job. Caller holds the condition."""
        ready = [
            self._jobs[job_id]
            for job_id in self._queued
            if self._jobs[job_id].not_before is None or self._jobs[job_id].not_before <= now
        ]
        if not ready:
            return None

        job = min(ready, key=lambda j: (j.priority, j.scheduled_at))
        self._queued.remove(job.id)
        job.state = JobState.RUNNING
        job.started_at = now
        return job

    def _seconds_until_next_ready(self, now: datetime) -> Optional[float]:
        waits = [
            (self._jobs[job_id].not_before - now).total_seconds()
            for job_id in self._queued
            if self._jobs[job_id].not_before is not None
        ]
        return max(0.0, min(waits)) if waits else None

    def _execute(self, job: CrawlJob) -> None:
        options = replace(self._job_options, batch_id=job.batch_id)
        logger.info("Running crawl job %s for %s", job.id, job.source_id)

        result = None
        error = None
        try:
            result = self._orchestrator.run_crawl(job.source_id, options)
        except Exception as e:
            logger.exception("Crawl job %s for %s failed", job.id, job.source_id)
            error = f"{type(e).__name__}: {e}"

        self._finish(job, result, error)

    def _finish(self, job: CrawlJob, result: Optional[CrawlResult], error: Optional[str]) -> None:
        with self._cond:
            now = self._clock()
            job.finished_at = now
            if error is None:
                job.state = JobState.SUCCEEDED
                job.result = result
                if result.rate_limited:
                    wait = max(result.retry_after_seconds or 0.0, self._cooldown_seconds)
                    self._cooldowns[job.source_id] = now + timedelta(seconds=wait)
                    logger.warning("%s rate limited; cooling down for %.0fs", job.source_id, wait)
            else:
                job.state = JobState.FAILED
                job.error = error
            self._in_flight.pop(job.source_id, None)
            self._prune_history()
            self._cond.notify_all()

    def run_now(self, source_id: str, options: CrawlOptions) -> CrawlResult:
        """
        Crawl a source on the calling thread while holding its in-flight slot.

        The crawl is recorded as a job like any other; errors propagate to
        the caller after the job is marked failed.

        Raises:
            SourceNotFoundError: Unknown source id
            SourceBusyError: A job for the source is already queued or running
        """
        source = self._registry.get_source(source_id)

        with self._cond:
            existing = self._in_flight.get(source_id)
            if existing is not None:
                raise SourceBusyError(source_id, existing)
            now = self._clock()
            job = CrawlJob(
                id=str(uuid.uuid4()),
                source_id=source_id,
                priority=source.priority,
                scheduled_at=now,
                state=JobState.RUNNING,
                started_at=now,
                batch_id=options.batch_id,
            )
            self._jobs[job.id] = job
            self._in_flight[source_id] = job.id

        logger.info("Running direct crawl %s for %s", job.id, source_id)
        try:
            result = self._orchestrator.run_crawl(source_id, options)
        except Exception as e:
            self._finish(job, None, f"{type(e).__name__}: {e}")
            raise
        self._finish(job, result, None)
        return result

    def _prune_history(self) -> None:
        finished = [j for j in self._jobs.values() if j.state.is_terminal]
        excess = len(finished) - JOB_HISTORY_LIMIT
        if excess <= 0:
            return
        finished.sort(key=lambda j: j.finished_at or j.scheduled_at)
        for job in finished[:excess]:
            del self._jobs[job.id]

    def run_pending(self, max_jobs: Optional[int] = None) -> list[CrawlJob]:
        """
        Execute ready jobs inline on the calling thread.

        Used by cron-style triggers when no worker pool is running.
        """
        processed = []
        while max_jobs is None or len(processed) < max_jobs:
            with self._cond:
                job = self._take_ready_job(self._clock())
            if job is None:
                break
            self._execute(job)
            processed.append(replace(job))
        return processed

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                while True:
                    if self._stopping:
                        return
                    job = self._take_ready_job(self._clock())
                    if job is not None:
                        break
                    self._cond.wait(timeout=self._seconds_until_next_ready(self._clock()))
            self._execute(job)

    def start(self) -> None:
        with self._cond:
            if any(t.is_alive() for t in self._threads):
                return
            self._stopping = False
            self._threads = [
                threading.Thread(target=self._worker_loop, name=f"crawl-worker-{i}", daemon=True)
                for i in range(self._workers)
            ]
        for thread in self._threads:
            thread.start()
        logger.info("Crawl scheduler started with %d workers", self._workers)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop workers. Running jobs finish; queued jobs stay queued."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if wait:
            for thread in self._threads:
                thread.join(timeout)
        logger.info("Crawl scheduler stopped")

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads) and not self._stopping

    # =========================================================================
    # Inspection
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[CrawlJob]:
        with self._cond:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def list_jobs(self, limit: int = 50, state: Optional[JobState] = None) -> list[CrawlJob]:
        """Jobs newest first."""
        with self._cond:
            jobs = [replace(j) for j in self._jobs.values() if state is None or j.state == state]
        jobs.sort(key=lambda j: j.scheduled_at, reverse=True)
        return jobs[:limit]

    def cooldown_until(self, source_id: str) -> Optional[datetime]:
        with self._cond:
            until = self._cooldowns.get(source_id)
        return until if until and until > self._clock() else None

    def queue_stats(self) -> dict[str, Any]:
        with self._cond:
            counts = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state.value] += 1
            now = self._clock()
            cooling = sorted(s for s, until in self._cooldowns.items() if until > now)
            return {
                "jobs": counts,
                "queueSize": len(self._queued),
                "capacity": self._queue_size,
                "workers": self._workers,
                "workersRunning": sum(1 for t in self._threads if t.is_alive()),
                "sourcesInFlight": sorted(self._in_flight),
                "sourcesCoolingDown": cooling,
            }
