"""
Tests for source health classification and rolling summaries.
"""

import pytest

from ingestion.health import HealthStatus, classify_health
from ingestion.schema import SourceHealthMetric

from tests.conftest import FIXED_NOW


def metric(attempts=10, failures=0, **kwargs):
    values = dict(
        source_id="src-a",
        recorded_at=FIXED_NOW,
        fetch_attempts=attempts,
        fetch_successes=attempts - failures,
        fetch_failures=failures,
    )
    values.update(kwargs)
    return SourceHealthMetric(**values)


class TestClassifyHealth:
    @pytest.mark.parametrize("failures,expected", [
        (6, HealthStatus.FAILING),
        (5, HealthStatus.DEGRADED),
        (3, HealthStatus.DEGRADED),
        (2, HealthStatus.HEALTHY),
        (1, HealthStatus.HEALTHY),
        (0, HealthStatus.HEALTHY),
    ])
    def test_thresholds(self, failures, expected):
        assert classify_health(metric(attempts=10, failures=failures)) == expected

    def test_never_crawled_is_healthy(self):
        assert classify_health(None) == HealthStatus.HEALTHY

    def test_zero_attempts_does_not_divide_by_zero(self):
        assert metric(attempts=0, failures=0).failure_rate == 0.0


class TestHealthRecorder:
    def test_status_uses_latest_metric_only(self, health, registry, clock):
        health.record(metric(attempts=1, failures=1, recorded_at=clock()))
        clock.advance(hours=1)
        health.record(metric(attempts=4, failures=0, recorded_at=clock()))

        assert registry.health_status("src-a") == HealthStatus.HEALTHY
        assert health.latest("src-a").fetch_attempts == 4

    def test_summary_aggregates_window(self, health, clock):
        health.record(metric(
            attempts=2, failures=2, recorded_at=clock(),
            last_error="HTTP 503", last_error_at=clock(),
        ))
        clock.advance(hours=1)
        health.record(metric(attempts=3, failures=0, listings_found=40, new_listings=5, recorded_at=clock()))
        clock.advance(hours=1)
        health.record(metric(attempts=5, failures=1, listings_found=60, recorded_at=clock()))

        summary = health.summary("src-a", window=7)

        assert summary.runs == 3
        assert summary.fetch_attempts == 10
        assert summary.fetch_failures == 3
        assert summary.failure_rate == pytest.approx(0.3)
        assert summary.listings_found == 100
        assert summary.status == HealthStatus.HEALTHY
        assert summary.last_success_at == clock.now
        assert summary.last_error == "HTTP 503"

    def test_summary_window_limits_runs(self, health, clock):
        for _ in range(5):
            health.record(metric(attempts=1, recorded_at=clock()))
            clock.advance(minutes=10)

        assert health.summary("src-a", window=2).runs == 2

    def test_summary_of_unknown_source_is_empty(self, health):
        summary = health.summary("nope")

        assert summary.runs == 0
        assert summary.status == HealthStatus.HEALTHY
        assert summary.to_dict()["lastSuccessAt"] is None
