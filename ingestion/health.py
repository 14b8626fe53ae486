"""
Health Recorder - Append-Only Crawl Metrics per Source

Every non-dry-run crawl appends exactly one SourceHealthMetric. The latest
metric drives the health status shown on the status surface; the rolling
summary gives a longer view over the last few runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Final, Optional

from ingestion.schema import SourceHealthMetric
from ingestion.store import IngestionStore


logger = logging.getLogger(__name__)


# =============================================================================
# Health Classification
# =============================================================================

FAILING_THRESHOLD: Final[float] = 0.5
DEGRADED_THRESHOLD: Final[float] = 0.2


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILING = "failing"


def classify_health(metric: Optional[SourceHealthMetric]) -> HealthStatus:
    """
    Classify a source from its latest metric.

    A source that has never been crawled is reported healthy.
    """
    if metric is None:
        return HealthStatus.HEALTHY

    rate = metric.failure_rate
    if rate > FAILING_THRESHOLD:
        return HealthStatus.FAILING
    if rate > DEGRADED_THRESHOLD:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


# =============================================================================
# Summary
# =============================================================================


@dataclass(frozen=True)
class HealthSummary:
    """Aggregate of the most recent runs for one source."""

    source_id: str
    runs: int
    fetch_attempts: int
    fetch_failures: int
    listings_found: int
    new_listings: int
    delisted_listings: int
    failure_rate: float
    status: HealthStatus
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "runs": self.runs,
            "fetchAttempts": self.fetch_attempts,
            "fetchFailures": self.fetch_failures,
            "listingsFound": self.listings_found,
            "newListings": self.new_listings,
            "delistedListings": self.delisted_listings,
            "failureRate": round(self.failure_rate, 4),
            "status": self.status.value,
            "lastSuccessAt": self.last_success_at.isoformat() if self.last_success_at else None,
            "lastError": self.last_error,
            "lastErrorAt": self.last_error_at.isoformat() if self.last_error_at else None,
        }


# =============================================================================
# Recorder
# =============================================================================


class HealthRecorder:
    """Thin append-only layer over the store's health metric operations."""

    def __init__(self, store: IngestionStore):
        self._store = store

    def record(self, metric: SourceHealthMetric) -> None:
        self._store.append_health_metric(metric)
        logger.info(
            "Recorded health for %s: %d/%d fetches failed, %d listings",
            metric.source_id,
            metric.fetch_failures,
            metric.fetch_attempts,
            metric.listings_found,
        )

    def latest(self, source_id: str) -> Optional[SourceHealthMetric]:
        metrics = self._store.read_health_metrics(source_id, limit=1)
        return metrics[0] if metrics else None

    def history(self, source_id: str, limit: int = 20) -> list[SourceHealthMetric]:
        return self._store.read_health_metrics(source_id, limit=limit)

    def summary(self, source_id: str, window: int = 7) -> HealthSummary:
        """
        Summarise the last `window` runs.

        The rolling failure rate is total failures over total attempts
        across the window, so one bad run among many good ones does not
        flip the summary to failing.
        """
        metrics = self.history(source_id, limit=window)

        attempts = sum(m.fetch_attempts for m in metrics)
        failures = sum(m.fetch_failures for m in metrics)
        rate = failures / max(1, attempts)

        last_success_at = next(
            (m.recorded_at for m in metrics if m.fetch_successes > 0),
            None,
        )
        last_error_metric = next((m for m in metrics if m.last_error), None)

        return HealthSummary(
            source_id=source_id,
            runs=len(metrics),
            fetch_attempts=attempts,
            fetch_failures=failures,
            listings_found=sum(m.listings_found for m in metrics),
            new_listings=sum(m.new_listings for m in metrics),
            delisted_listings=sum(m.delisted_listings for m in metrics),
            failure_rate=rate,
            status=classify_health(metrics[0] if metrics else None),
            last_success_at=last_success_at,
            last_error=last_error_metric.last_error if last_error_metric else None,
            last_error_at=last_error_metric.last_error_at if last_error_metric else None,
        )
