"""
Ingestion Errors - Failure Taxonomy for Crawls

Item-level failures (ParseError) are absorbed by the orchestrator and
reported in aggregate. Fetch failures stop pagination for the current run
only. Configuration, authentication and missing-source failures are fatal
and propagate to the caller unmodified.
"""

from __future__ import annotations

from typing import Optional


class IngestionError(Exception):
    """Base class for all ingestion failures."""


# =============================================================================
# Item-Level
# =============================================================================


class ParseError(IngestionError):
    """Raised by an adapter when a raw item cannot be normalised."""

    def __init__(self, source_id: str, item_ref: str, reason: str):
        self.source_id = source_id
        self.item_ref = item_ref
        self.reason = reason
        super().__init__(f"[{source_id}] cannot parse {item_ref or '<unknown>'}: {reason}")


# =============================================================================
# Fetch-Level
# =============================================================================


class FetchError(IngestionError):
    """A page or dataset fetch failed."""

    def __init__(
        self,
        message: str,
        transient: bool,
        status_code: Optional[int] = None,
    ):
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)


class TransientFetchError(FetchError):
    """Timeout, connection failure or 5xx. Eligible for the next scheduled run."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, transient=True, status_code=status_code)


class RateLimitError(TransientFetchError):
    """Source answered with a rate-limit response (HTTP 429)."""

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
        status_code: Optional[int] = 429,
    ):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, status_code=status_code)


class FatalFetchError(FetchError):
    """Non-retryable response for this request (e.g. 404 on a search page)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, transient=False, status_code=status_code)


# =============================================================================
# Run-Level (Fatal)
# =============================================================================


class ConfigurationError(IngestionError):
    """Invalid source definition or missing connection parameters."""


class AuthenticationError(ConfigurationError):
    """Missing or rejected credentials for a source."""


class SourceNotFoundError(IngestionError):
    """No source configuration exists for the requested id."""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Source not found: {source_id}")


# =============================================================================
# Store / Scheduler
# =============================================================================


class DuplicateListingError(IngestionError):
    """Insert lost the race: a record for (source_id, key) already exists."""

    def __init__(self, source_id: str, source_key: str):
        self.source_id = source_id
        self.source_key = source_key
        super().__init__(f"Listing already stored: {source_id}/{source_key}")


class ConcurrentUpdateError(IngestionError):
    """Conditional update failed because the record version moved on."""

    def __init__(self, listing_id: str, expected: int, actual: int):
        self.listing_id = listing_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Listing {listing_id} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )


class QueueFullError(IngestionError):
    """The crawl job queue has reached its capacity."""


class SourceBusyError(IngestionError):
    """A crawl of the source is already queued or running."""

    def __init__(self, source_id: str, job_id: str):
        self.source_id = source_id
        self.job_id = job_id
        super().__init__(f"Crawl of {source_id} already in progress (job {job_id})")
