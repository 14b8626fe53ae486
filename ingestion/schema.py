"""
Ingestion Schema - Canonical Listing, Health and Crawl Records

NormalizedListing is what every adapter produces. ListingRecord is what the
listing store keeps: the normalised fields plus tracking, dedup and
concurrency metadata. Records are never deleted; delisting is a status
transition.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Enums
# =============================================================================


class ListingStatus(Enum):
    """Lifecycle status of a stored listing."""

    ACTIVE = "active"
    DELISTED = "delisted"


class JobState(Enum):
    """State of a background crawl job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobState.QUEUED, JobState.RUNNING)


# =============================================================================
# Normalised Listing (adapter output)
# =============================================================================


@dataclass(frozen=True)
class NormalizedListing:
    """
    A single listing as normalised by an adapter.

    Pure data: adapters build these without touching the store.
    `source_listing_id` is optional; `source_url` is the fallback key.
    """

    source_id: str
    source_url: str
    price: float
    beds: int
    baths: float
    address_text: str

    source_listing_id: Optional[str] = None
    title: Optional[str] = None
    sqft: Optional[int] = None

    neighborhood: Optional[str] = None
    borough: Optional[str] = None
    city: str = "New York"
    state: str = "NY"
    zip_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    images: tuple[str, ...] = ()
    description: Optional[str] = None
    amenities: tuple[str, ...] = ()
    broker_company: Optional[str] = None
    no_fee: Optional[bool] = None
    available_date: Optional[date] = None

    def __post_init__(self) -> None:
        if not self.source_id:
            raise ValueError("source_id is required")
        if not self.source_url and not self.source_listing_id:
            raise ValueError("source_url or source_listing_id is required")
        if self.price < 0:
            raise ValueError("price cannot be negative")
        if self.beds < 0:
            raise ValueError("beds cannot be negative")
        if self.baths < 0:
            raise ValueError("baths cannot be negative")

    @property
    def source_key(self) -> str:
        """Stable external key within the source."""
        return self.source_listing_id or self.source_url

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["images"] = list(self.images)
        data["amenities"] = list(self.amenities)
        data["available_date"] = self.available_date.isoformat() if self.available_date else None
        return data


# =============================================================================
# Stored Listing
# =============================================================================


@dataclass
class ListingRecord:
    """
    A listing as persisted by the listing store.

    Invariants:
        - (source_id, source_key) is unique across the store
        - first_seen_at never changes after insert
        - canonical_id is None exactly when is_duplicate is False
        - version increases by one on every conditional update
    """

    id: str
    source_id: str
    source_url: str
    price: float
    beds: int
    baths: float
    address_text: str
    first_seen_at: datetime
    last_seen_at: datetime
    last_updated_at: datetime

    source_listing_id: Optional[str] = None
    title: Optional[str] = None
    sqft: Optional[int] = None
    address_normalized: Optional[str] = None
    neighborhood: Optional[str] = None
    borough: Optional[str] = None
    city: str = "New York"
    state: str = "NY"
    zip_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    images: list[str] = field(default_factory=list)
    description: Optional[str] = None
    amenities: list[str] = field(default_factory=list)
    broker_company: Optional[str] = None
    no_fee: Optional[bool] = None
    available_date: Optional[date] = None

    # Tracking
    status: ListingStatus = ListingStatus.ACTIVE
    delisted_at: Optional[datetime] = None
    price_history: list[dict[str, Any]] = field(default_factory=list)
    relist_detected: bool = False

    # Dedup
    dedup_key: Optional[str] = None
    is_duplicate: bool = False
    canonical_id: Optional[str] = None
    source_priority: int = 0
    crawl_batch_id: Optional[str] = None

    # Optimistic concurrency
    version: int = 1

    @property
    def source_key(self) -> str:
        return self.source_listing_id or self.source_url

    @property
    def is_active(self) -> bool:
        return self.status == ListingStatus.ACTIVE

    @classmethod
    def from_listing(
        cls,
        listing: NormalizedListing,
        seen_at: datetime,
        address_normalized: Optional[str] = None,
        dedup_key: Optional[str] = None,
        source_priority: int = 0,
        crawl_batch_id: Optional[str] = None,
    ) -> "ListingRecord":
        """Build a fresh canonical record from adapter output."""
        return cls(
            id=str(uuid.uuid4()),
            source_id=listing.source_id,
            source_listing_id=listing.source_listing_id,
            source_url=listing.source_url,
            title=listing.title,
            price=listing.price,
            beds=listing.beds,
            baths=listing.baths,
            sqft=listing.sqft,
            address_text=listing.address_text,
            address_normalized=address_normalized,
            neighborhood=listing.neighborhood,
            borough=listing.borough,
            city=listing.city,
            state=listing.state,
            zip_code=listing.zip_code,
            latitude=listing.latitude,
            longitude=listing.longitude,
            images=list(listing.images),
            description=listing.description,
            amenities=list(listing.amenities),
            broker_company=listing.broker_company,
            no_fee=listing.no_fee,
            available_date=listing.available_date,
            first_seen_at=seen_at,
            last_seen_at=seen_at,
            last_updated_at=seen_at,
            dedup_key=dedup_key,
            source_priority=source_priority,
            crawl_batch_id=crawl_batch_id,
        )

    def copy(self, **changes: Any) -> "ListingRecord":
        """Detached copy, so callers never mutate stored state."""
        clone = replace(self, **changes)
        if "images" not in changes:
            clone.images = list(self.images)
        if "amenities" not in changes:
            clone.amenities = list(self.amenities)
        if "price_history" not in changes:
            clone.price_history = [dict(p) for p in self.price_history]
        return clone

    def to_dict(self) -> dict[str, Any]:
        """Convert record to dictionary for serialisation."""
        data = asdict(self)
        data["status"] = self.status.value
        data["available_date"] = (
            self.available_date.isoformat() if self.available_date else None
        )
        for name in ("first_seen_at", "last_seen_at", "last_updated_at", "delisted_at"):
            data[name] = _iso(getattr(self, name))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ListingRecord":
        """Create record from dictionary."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = ListingStatus(values.get("status", "active"))
        if values.get("available_date"):
            values["available_date"] = date.fromisoformat(values["available_date"])
        for name in ("first_seen_at", "last_seen_at", "last_updated_at", "delisted_at"):
            values[name] = _from_iso(values.get(name))
        return cls(**values)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a single listing upsert."""

    listing_id: str
    created: bool
    is_duplicate: bool
    canonical_id: Optional[str] = None
    reactivated: bool = False
    price_changed: bool = False


# =============================================================================
# Source Health
# =============================================================================


@dataclass(frozen=True)
class SourceHealthMetric:
    """
    Per-crawl health record. Append-only; never edited in place.
    """

    source_id: str
    recorded_at: datetime
    fetch_attempts: int = 0
    fetch_successes: int = 0
    fetch_failures: int = 0
    parse_failures: int = 0
    listings_found: int = 0
    new_listings: int = 0
    updated_listings: int = 0
    duplicates_detected: int = 0
    delisted_listings: int = 0
    duration_ms: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def failure_rate(self) -> float:
        return self.fetch_failures / max(1, self.fetch_attempts)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["recorded_at"] = _iso(self.recorded_at)
        data["last_error_at"] = _iso(self.last_error_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SourceHealthMetric":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["recorded_at"] = _from_iso(values["recorded_at"])
        values["last_error_at"] = _from_iso(values.get("last_error_at"))
        return cls(**values)


# =============================================================================
# Crawl Runs and Jobs
# =============================================================================


@dataclass(frozen=True)
class CrawlOptions:
    """Limits for a single crawl run."""

    max_pages: int = 5
    max_listings: int = 500
    dry_run: bool = False
    batch_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        if self.max_listings < 1:
            raise ValueError("max_listings must be at least 1")


@dataclass
class CrawlResult:
    """Summary of one crawl run for one source."""

    source_id: str
    listings_found: int = 0
    new_listings: int = 0
    updated_listings: int = 0
    duplicates_detected: int = 0
    delisted_listings: int = 0
    errors: list[str] = field(default_factory=list)
    pages_fetched: int = 0
    fetch_failures: int = 0
    delisting_skipped: bool = False
    rate_limited: bool = False
    retry_after_seconds: Optional[float] = None
    dry_run: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Wire shape used by the trigger surface."""
        return {
            "sourceId": self.source_id,
            "listingsFound": self.listings_found,
            "newListings": self.new_listings,
            "updatedListings": self.updated_listings,
            "duplicatesDetected": self.duplicates_detected,
            "delistedListings": self.delisted_listings,
            "errors": list(self.errors),
            "pagesFetched": self.pages_fetched,
            "fetchFailures": self.fetch_failures,
            "delistingSkipped": self.delisting_skipped,
            "rateLimited": self.rate_limited,
            "dryRun": self.dry_run,
            "durationMs": self.duration_ms,
        }


@dataclass
class CrawlJob:
    """A queued or executed background crawl for one source."""

    id: str
    source_id: str
    priority: int
    scheduled_at: datetime
    state: JobState = JobState.QUEUED
    not_before: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[CrawlResult] = None
    error: Optional[str] = None
    batch_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.id,
            "sourceId": self.source_id,
            "priority": self.priority,
            "state": self.state.value,
            "scheduledAt": _iso(self.scheduled_at),
            "notBefore": _iso(self.not_before),
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "batchId": self.batch_id,
        }
