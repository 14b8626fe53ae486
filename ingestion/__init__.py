"""
Rental listing ingestion core.

Crawls heterogeneous listing sources, normalises and deduplicates their
listings, tracks delisting and records per-source health.
"""

from ingestion.errors import (
    AuthenticationError,
    ConfigurationError,
    FetchError,
    IngestionError,
    ParseError,
    SourceNotFoundError,
)
from ingestion.schema import (
    CrawlOptions,
    CrawlResult,
    ListingRecord,
    ListingStatus,
    NormalizedListing,
)

__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "CrawlOptions",
    "CrawlResult",
    "FetchError",
    "IngestionError",
    "ListingRecord",
    "ListingStatus",
    "NormalizedListing",
    "ParseError",
    "SourceNotFoundError",
]
