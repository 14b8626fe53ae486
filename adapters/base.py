"""
Source Adapter Interface - Abstract Base for Listing Sources

Every source is served by an adapter that knows how to fetch raw items and
normalise them into NormalizedListing. Adapters never touch the store; the
orchestrator drives them and decides what to persist.

Two fetch shapes exist:
    - PagedSourceAdapter: sequential pages with an opaque continuation token
    - RunBasedSourceAdapter: a hosted service produces a dataset per run;
      the adapter reads the latest completed dataset

All HTTP goes through SourceAdapter._request so that failures are
classified the same way for every source.
"""

from __future__ import annotations

import logging
import random
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Final, Optional

import requests

from ingestion.errors import (
    AuthenticationError,
    FatalFetchError,
    ParseError,
    RateLimitError,
    TransientFetchError,
)
from ingestion.schema import NormalizedListing
from ingestion.sources import SourceConfig


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_USER_AGENT: Final[str] = "RentalIngestBot/1.0 (+listing aggregation; polite crawling)"
DEFAULT_TIMEOUT_SECONDS: Final[float] = 30.0

BOROUGHS: Final[tuple[str, ...]] = ("Manhattan", "Brooklyn", "Queens", "Bronx", "Staten Island")

BOROUGH_PATTERNS: Final[dict[str, list[re.Pattern]]] = {
    "Manhattan": [
        re.compile(p, re.I)
        for p in (r"manhattan", r"\bnyc\b", r"new york,?\s*ny", r"midtown", r"uptown", r"downtown")
    ],
    "Brooklyn": [
        re.compile(p, re.I)
        for p in (r"brooklyn", r"\bbk\b", r"williamsburg", r"bushwick", r"bed-?stuy")
    ],
    "Queens": [
        re.compile(p, re.I)
        for p in (r"queens", r"astoria", r"long island city", r"\blic\b", r"flushing")
    ],
    "Bronx": [re.compile(p, re.I) for p in (r"bronx", r"\bbx\b")],
    "Staten Island": [re.compile(p, re.I) for p in (r"staten island",)],
}

NEIGHBORHOODS: Final[dict[str, tuple[str, ...]]] = {
    "Manhattan": (
        "Upper East Side", "Upper West Side", "Midtown", "Chelsea", "Greenwich Village",
        "East Village", "West Village", "SoHo", "Tribeca", "Financial District",
        "Lower East Side", "Harlem", "Washington Heights", "Inwood", "Murray Hill",
        "Gramercy", "Flatiron", "NoHo", "Nolita", "Chinatown", "Little Italy",
        "Battery Park", "Hells Kitchen", "Kips Bay", "Yorkville",
    ),
    "Brooklyn": (
        "Williamsburg", "Bushwick", "Bed-Stuy", "Bedford-Stuyvesant", "Crown Heights",
        "Park Slope", "DUMBO", "Brooklyn Heights", "Greenpoint", "Prospect Heights",
        "Fort Greene", "Clinton Hill", "Cobble Hill", "Carroll Gardens", "Red Hook",
        "Sunset Park", "Bay Ridge", "Flatbush", "Prospect Lefferts Gardens",
        "Ditmas Park", "Boerum Hill", "Gowanus", "Windsor Terrace", "Kensington",
    ),
    "Queens": (
        "Astoria", "Long Island City", "Sunnyside", "Woodside", "Jackson Heights",
        "Flushing", "Forest Hills", "Rego Park", "Ridgewood", "Elmhurst", "Corona",
    ),
    "Bronx": (
        "South Bronx", "Mott Haven", "Hunts Point", "Fordham", "Riverdale",
        "Kingsbridge", "Morris Park", "Pelham Bay",
    ),
}


# =============================================================================
# Normalisation Helpers
# =============================================================================

_BEDS_RE: Final = re.compile(r"(\d+)\s*(?:br|bd|bed|beds|bedroom|bedrooms)\b", re.I)
_BATHS_RE: Final = re.compile(r"(\d+(?:\.\d+)?)\s*(?:ba|bath|baths|bathroom|bathrooms)\b", re.I)
_SQFT_RE: Final = re.compile(r"(\d{1,3}(?:,\d{3})*|\d+)\s*(?:sq\.?\s*ft|sqft|ft2|sf)\b", re.I)


def clean_price(value: Any) -> Optional[float]:
    """Parse "$3,450/mo" style prices. Returns None when no number is present."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = re.search(r"\d[\d,]*(?:\.\d+)?", str(value))
    if not match:
        return None
    return float(match.group(0).replace(",", ""))


def parse_beds(value: Any) -> int:
    """Bedroom count; studios and unknowns are 0."""
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if not value:
        return 0
    text = str(value)
    match = _BEDS_RE.search(text)
    if match:
        return int(match.group(1))
    if re.fullmatch(r"\s*\d+\s*", text):
        return int(text)
    return 0


def parse_baths(value: Any, default: float = 1.0) -> float:
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    if not value:
        return default
    text = str(value)
    match = _BATHS_RE.search(text)
    if match:
        return float(match.group(1))
    if re.fullmatch(r"\s*\d+(?:\.\d+)?\s*", text):
        return float(text)
    return default


def parse_sqft(value: Any) -> Optional[int]:
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    if not value:
        return None
    match = _SQFT_RE.search(str(value))
    if match:
        return int(match.group(1).replace(",", ""))
    return None


def clean_address(address: Optional[str]) -> str:
    """Collapse whitespace and stray commas; keeps the address human-readable."""
    if not address:
        return ""
    text = re.sub(r"\s+", " ", address)
    text = re.sub(r",\s*,", ",", text)
    return text.strip(" ,")


def infer_borough(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for borough, patterns in BOROUGH_PATTERNS.items():
        if any(p.search(text) for p in patterns):
            return borough
    neighborhood = infer_neighborhood(text)
    if neighborhood:
        return borough_for_neighborhood(neighborhood)
    return None


def infer_neighborhood(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    lower = text.lower()
    # Longest names first so "East Village" is not reported as "Village"
    candidates = sorted(
        (n for names in NEIGHBORHOODS.values() for n in names),
        key=len,
        reverse=True,
    )
    for name in candidates:
        if name.lower() in lower:
            return name
    return None


def borough_for_neighborhood(neighborhood: str) -> Optional[str]:
    lower = neighborhood.lower()
    for borough, names in NEIGHBORHOODS.items():
        if any(n.lower() == lower for n in names):
            return borough
    return None


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After header in seconds (delta-seconds or HTTP-date form)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


# =============================================================================
# Fetch Results
# =============================================================================


@dataclass(frozen=True)
class Page:
    """One page of raw items and the token for the next page (None = last)."""

    items: list[dict[str, Any]] = field(default_factory=list)
    next_token: Optional[str] = None


class RunStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# Source Adapter Interface
# =============================================================================


class SourceAdapter(ABC):
    """
    Abstract interface for all listing sources.

    Subclasses must implement:
    - normalize: raw item -> NormalizedListing, raising ParseError

    Subclasses may override:
    - preflight: validate connection and credentials before any fetch
    - item_ref: short identifier of a raw item for error messages
    """

    # Sources that authenticate map 401/403 to AuthenticationError
    credentialed: ClassVar[bool] = False

    def __init__(
        self,
        config: SourceConfig,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.timeout = timeout
        self._rng = rng or random.Random()
        self._owns_session = session is None
        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": user_agent,
            "Accept-Language": "en-US,en;q=0.9",
        })

    @property
    def source_id(self) -> str:
        return self.config.id

    # =========================================================================
    # Contract
    # =========================================================================

    @abstractmethod
    def normalize(self, raw: dict[str, Any]) -> NormalizedListing:
        """
        Normalise one raw item. Pure: no I/O, no store access.

        Raises:
            ParseError: If the item cannot be normalised
        """
        ...

    def preflight(self) -> None:
        """
        Validate the source before fetching.

        Raises:
            ConfigurationError: Connection parameters are unusable
            AuthenticationError: Required credentials are missing
        """

    def item_ref(self, raw: dict[str, Any]) -> str:
        for key in ("id", "source_listing_id", "url", "source_url"):
            if raw.get(key):
                return str(raw[key])
        return ""

    def request_delay_seconds(self) -> float:
        """Politeness delay before the next request to this source."""
        return self.config.policy.delay_seconds(self._rng)

    # =========================================================================
    # Helpers for subclasses
    # =========================================================================

    def _parse_error(self, raw: dict[str, Any], reason: str) -> ParseError:
        ref = self.item_ref(raw)
        logger.warning("Rejected item %s from %s: %s", ref or "<unknown>", self.source_id, reason)
        return ParseError(self.source_id, ref, reason)

    def _build_listing(self, raw: dict[str, Any], **fields: Any) -> NormalizedListing:
        """Construct a NormalizedListing, turning validation failures into ParseError."""
        try:
            return NormalizedListing(source_id=self.source_id, **fields)
        except (TypeError, ValueError) as e:
            raise self._parse_error(raw, str(e)) from e

    def _request(
        self,
        method: str,
        url: str,
        allowed_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> requests.Response:
        """
        Perform one HTTP request and classify failures.

        Raises:
            TransientFetchError: Timeout, connection failure or 5xx
            RateLimitError: HTTP 429
            AuthenticationError: 401/403 on a credentialed source
            FatalFetchError: Any other unsuccessful status
        """
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientFetchError(f"Timeout fetching {url}") from e
        except requests.ConnectionError as e:
            raise TransientFetchError(f"Connection failed for {url}: {e}") from e
        except requests.RequestException as e:
            raise FatalFetchError(f"Request failed for {url}: {e}") from e

        status = response.status_code
        if status < 400 or status in allowed_statuses:
            return response

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitError(
                f"Rate limited by {self.source_id} ({url})",
                retry_after_seconds=retry_after,
            )
        if status >= 500:
            raise TransientFetchError(f"HTTP {status} from {url}", status_code=status)
        if status in (401, 403) and self.credentialed:
            raise AuthenticationError(f"Credentials rejected by {self.source_id} (HTTP {status})")
        raise FatalFetchError(f"HTTP {status} from {url}", status_code=status)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "SourceAdapter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class PagedSourceAdapter(SourceAdapter):
    """Adapter whose source is read page by page."""

    @abstractmethod
    def fetch_page(self, page_token: Optional[str] = None) -> Page:
        """
        Fetch one page of raw items.

        Args:
            page_token: Continuation token from the previous page; None for the first

        Raises:
            FetchError: On any fetch failure
        """
        ...


class RunBasedSourceAdapter(SourceAdapter):
    """Adapter backed by a hosted scraping service with per-run datasets."""

    credentialed = True

    @abstractmethod
    def trigger_run(self, options: Optional[dict[str, Any]] = None) -> str:
        """Start a new run and return its id."""
        ...

    @abstractmethod
    def get_run_status(self, run_id: str) -> RunStatus:
        ...

    @abstractmethod
    def fetch_dataset(self, limit: int) -> list[dict[str, Any]]:
        """Raw items from the latest completed run; empty if none exists."""
        ...

    def wait_for_run(
        self,
        run_id: str,
        timeout: float = 300.0,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> RunStatus:
        """
        Poll a run until it finishes.

        Raises:
            FatalFetchError: The run failed or was aborted
            TransientFetchError: The run did not finish within `timeout`
        """
        deadline = monotonic() + timeout
        while monotonic() < deadline:
            status = self.get_run_status(run_id)
            if status == RunStatus.SUCCEEDED:
                return status
            if status == RunStatus.FAILED:
                raise FatalFetchError(f"Run {run_id} for {self.source_id} failed")
            sleep(poll_interval)
        raise TransientFetchError(f"Run {run_id} for {self.source_id} timed out after {timeout}s")

    def fetch_and_normalize(self, max_listings: int) -> tuple[list[NormalizedListing], list[str]]:
        """Fetch the latest dataset and normalise it, collecting parse errors."""
        listings: list[NormalizedListing] = []
        errors: list[str] = []
        for raw in self.fetch_dataset(limit=max_listings):
            try:
                listings.append(self.normalize(raw))
            except ParseError as e:
                errors.append(str(e))
        return listings, errors
