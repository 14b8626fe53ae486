"""
Source Registry - Crawlable Source Definitions and Health Status

A SourceConfig is a tagged union over the kind of adapter that serves it:
direct HTML scraping, a hosted run-based scraping service, or a JSON API.
Each kind carries only the connection fields it needs, so a run-based
source cannot be defined with a search path and vice versa.

The registry reads definitions from a SourceConfigStore and joins them with
the health recorder for status reporting.
"""

from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from ingestion.errors import ConfigurationError, SourceNotFoundError
from ingestion.health import HealthRecorder, HealthStatus, classify_health


logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================


class SourceKind(Enum):
    DIRECT_HTML = "direct-html"
    RUN_BASED_SERVICE = "run-based-service"
    API = "api"


class Difficulty(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Scrape Policy
# =============================================================================


@dataclass(frozen=True)
class RateLimit:
    """Politeness settings applied between requests to one source."""

    delay_ms: int = 2000
    jitter_ms: int = 1000
    requests_per_minute: int = 20

    def __post_init__(self) -> None:
        if self.delay_ms < 0 or self.jitter_ms < 0:
            raise ConfigurationError("rate limit delays cannot be negative")
        if self.requests_per_minute <= 0:
            raise ConfigurationError("requests_per_minute must be positive")


@dataclass(frozen=True)
class ScrapePolicy:
    refresh_interval_minutes: int = 60
    requires_js: bool = False
    difficulty: Difficulty = Difficulty.MEDIUM
    rate_limit: RateLimit = field(default_factory=RateLimit)

    def __post_init__(self) -> None:
        if self.refresh_interval_minutes <= 0:
            raise ConfigurationError("refresh_interval_minutes must be positive")

    def delay_seconds(self, rng: Optional[random.Random] = None) -> float:
        """Inter-request delay: base delay plus uniform jitter."""
        jitter = (rng or random).uniform(0, self.rate_limit.jitter_ms)
        return (self.rate_limit.delay_ms + jitter) / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "refresh_interval_minutes": self.refresh_interval_minutes,
            "requires_js": self.requires_js,
            "difficulty": self.difficulty.value,
            "rate_limit": {
                "delay_ms": self.rate_limit.delay_ms,
                "jitter_ms": self.rate_limit.jitter_ms,
                "requests_per_minute": self.rate_limit.requests_per_minute,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScrapePolicy":
        return cls(
            refresh_interval_minutes=int(data.get("refresh_interval_minutes", 60)),
            requires_js=bool(data.get("requires_js", False)),
            difficulty=Difficulty(data.get("difficulty", "medium")),
            rate_limit=RateLimit(**data.get("rate_limit", {})),
        )


# =============================================================================
# Connection Variants
# =============================================================================


@dataclass(frozen=True)
class DirectHtmlConnection:
    """Search pages fetched and parsed directly."""

    kind: ClassVar[SourceKind] = SourceKind.DIRECT_HTML

    parser: str
    base_url: str
    search_path: str = "/"
    borough_filters: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"base_url must be an http(s) URL: {self.base_url!r}")


@dataclass(frozen=True)
class RunServiceConnection:
    """Hosted scraping service: trigger a run, then read its dataset."""

    kind: ClassVar[SourceKind] = SourceKind.RUN_BASED_SERVICE

    parser: str
    actor_id: str
    api_base_url: str = "https://api.apify.com/v2"
    token_env: str = "APIFY_API_TOKEN"

    def validate(self) -> None:
        if not self.actor_id:
            raise ConfigurationError("actor_id is required for run-based sources")
        if not self.token_env:
            raise ConfigurationError("token_env is required for run-based sources")


@dataclass(frozen=True)
class ApiConnection:
    """Paginated JSON API."""

    kind: ClassVar[SourceKind] = SourceKind.API

    parser: str
    endpoint: Optional[str] = None
    api_key_env: Optional[str] = None
    page_size: int = 50

    def validate(self) -> None:
        if self.page_size <= 0:
            raise ConfigurationError("page_size must be positive")


Connection = Union[DirectHtmlConnection, RunServiceConnection, ApiConnection]

_CONNECTION_TYPES: dict[SourceKind, type] = {
    SourceKind.DIRECT_HTML: DirectHtmlConnection,
    SourceKind.RUN_BASED_SERVICE: RunServiceConnection,
    SourceKind.API: ApiConnection,
}


def _connection_to_dict(connection: Connection) -> dict[str, Any]:
    data = dict(connection.__dict__)
    if isinstance(connection, DirectHtmlConnection):
        data["borough_filters"] = dict(connection.borough_filters)
    return data


# =============================================================================
# Source Config
# =============================================================================


@dataclass(frozen=True)
class SourceConfig:
    """
    Definition of one crawlable source.

    Lower priority numbers are crawled first and win same-batch dedup
    tie-breaks.
    """

    id: str
    name: str
    connection: Connection
    enabled: bool = True
    priority: int = 10
    policy: ScrapePolicy = field(default_factory=ScrapePolicy)
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigurationError("source id is required")
        if not self.name:
            raise ConfigurationError(f"source name is required for {self.id}")
        if self.priority < 0:
            raise ConfigurationError(f"priority cannot be negative for {self.id}")
        if not getattr(self.connection, "parser", None):
            raise ConfigurationError(f"parser is required for {self.id}")
        self.connection.validate()

    @property
    def kind(self) -> SourceKind:
        return self.connection.kind

    @property
    def parser(self) -> str:
        return self.connection.parser

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "enabled": self.enabled,
            "priority": self.priority,
            "policy": self.policy.to_dict(),
            "connection": _connection_to_dict(self.connection),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SourceConfig":
        """
        Build a config from its tagged dictionary form.

        Raises:
            ConfigurationError: Unknown kind or malformed connection
        """
        try:
            kind = SourceKind(data["kind"])
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"invalid source kind: {data.get('kind')!r}") from e

        try:
            connection = _CONNECTION_TYPES[kind](**data.get("connection", {}))
            policy = ScrapePolicy.from_dict(data.get("policy", {}))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid source definition: {e}") from e

        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            connection=connection,
            enabled=bool(data.get("enabled", True)),
            priority=int(data.get("priority", 10)),
            policy=policy,
            notes=data.get("notes"),
        )


# =============================================================================
# Config Store
# =============================================================================


class SourceConfigStore(ABC):
    """Persistence for source definitions."""

    @abstractmethod
    def get_source(self, source_id: str) -> Optional[SourceConfig]:
        ...

    @abstractmethod
    def list_sources(self, enabled_only: bool = False) -> list[SourceConfig]:
        ...

    @abstractmethod
    def upsert_source(self, config: SourceConfig) -> None:
        ...


class MemorySourceConfigStore(SourceConfigStore):
    def __init__(self, sources: Optional[list[SourceConfig]] = None):
        self._lock = threading.Lock()
        self._sources: dict[str, SourceConfig] = {}
        for source in sources or []:
            self._sources[source.id] = source

    def get_source(self, source_id: str) -> Optional[SourceConfig]:
        with self._lock:
            return self._sources.get(source_id)

    def list_sources(self, enabled_only: bool = False) -> list[SourceConfig]:
        with self._lock:
            return [s for s in self._sources.values() if s.enabled or not enabled_only]

    def upsert_source(self, config: SourceConfig) -> None:
        with self._lock:
            self._sources[config.id] = config


# =============================================================================
# Default Sources
# =============================================================================

DEFAULT_SOURCES: list[SourceConfig] = [
    SourceConfig(
        id="craigslist-nyc",
        name="Craigslist NYC",
        priority=2,
        connection=DirectHtmlConnection(
            parser="craigslist",
            base_url="https://newyork.craigslist.org",
            search_path="/search/apa",
            borough_filters={
                "manhattan": "/mnh",
                "brooklyn": "/brk",
                "queens": "/que",
                "bronx": "/brx",
                "staten island": "/stn",
            },
        ),
        policy=ScrapePolicy(
            refresh_interval_minutes=30,
            difficulty=Difficulty.MEDIUM,
            rate_limit=RateLimit(delay_ms=3000, jitter_ms=2000, requests_per_minute=15),
        ),
        notes="By-owner and broker classifieds; heavy spam filtering in the adapter.",
    ),
    SourceConfig(
        id="streeteasy-apify",
        name="StreetEasy (hosted scraper)",
        priority=1,
        connection=RunServiceConnection(
            parser="apify-streeteasy",
            actor_id="memo23~apify-streeteasy-cheerio",
        ),
        policy=ScrapePolicy(
            refresh_interval_minutes=360,
            requires_js=True,
            difficulty=Difficulty.HIGH,
            rate_limit=RateLimit(delay_ms=1000, jitter_ms=0, requests_per_minute=30),
        ),
        notes="Reads the dataset of the latest completed actor run.",
    ),
    SourceConfig(
        id="broker-feed",
        name="Broker listings feed",
        priority=5,
        enabled=False,
        connection=ApiConnection(
            parser="broker-api",
            endpoint="https://feeds.example-broker.com/v1/rentals",
            api_key_env="BROKER_FEED_API_KEY",
            page_size=50,
        ),
        policy=ScrapePolicy(
            refresh_interval_minutes=120,
            difficulty=Difficulty.LOW,
            rate_limit=RateLimit(delay_ms=500, jitter_ms=250, requests_per_minute=60),
        ),
    ),
]


# =============================================================================
# Registry
# =============================================================================


@dataclass(frozen=True)
class SourceStatus:
    """Status-surface projection of one source."""

    source_id: str
    name: str
    kind: SourceKind
    enabled: bool
    priority: int
    status: HealthStatus
    failure_rate: Optional[float] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_crawled_at: Optional[datetime] = None
    listings_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "name": self.name,
            "kind": self.kind.value,
            "enabled": self.enabled,
            "priority": self.priority,
            "status": self.status.value,
            "failureRate": round(self.failure_rate, 4) if self.failure_rate is not None else None,
            "lastError": self.last_error,
            "lastErrorAt": self.last_error_at.isoformat() if self.last_error_at else None,
            "lastCrawledAt": self.last_crawled_at.isoformat() if self.last_crawled_at else None,
            "listingsCount": self.listings_count,
        }


class SourceRegistry:
    """Read access to source definitions joined with their health."""

    def __init__(self, config_store: SourceConfigStore, health: HealthRecorder):
        self._config_store = config_store
        self._health = health

    def list_sources(self, enabled_only: bool = False) -> list[SourceConfig]:
        """Sources in crawl order: priority ascending, ties by id."""
        sources = self._config_store.list_sources(enabled_only=enabled_only)
        return sorted(sources, key=lambda s: (s.priority, s.id))

    def get_source(self, source_id: str) -> SourceConfig:
        source = self._config_store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    def has_source(self, source_id: str) -> bool:
        return self._config_store.get_source(source_id) is not None

    def upsert_source(self, config: SourceConfig) -> None:
        self._config_store.upsert_source(config)
        logger.info("Upserted source %s (%s, enabled=%s)", config.id, config.kind.value, config.enabled)

    def health_status(self, source_id: str) -> HealthStatus:
        return classify_health(self._health.latest(source_id))

    def last_crawled_at(self, source_id: str) -> Optional[datetime]:
        latest = self._health.latest(source_id)
        return latest.recorded_at if latest else None

    def status_report(
        self,
        listing_counts: Optional[dict[str, int]] = None,
    ) -> list[SourceStatus]:
        """
        Project every source into its status-surface form.

        Args:
            listing_counts: Optional active canonical listing count per source
        """
        counts = listing_counts or {}
        report = []
        for source in self.list_sources():
            latest = self._health.latest(source.id)
            report.append(
                SourceStatus(
                    source_id=source.id,
                    name=source.name,
                    kind=source.kind,
                    enabled=source.enabled,
                    priority=source.priority,
                    status=classify_health(latest),
                    failure_rate=latest.failure_rate if latest else None,
                    last_error=latest.last_error if latest else None,
                    last_error_at=latest.last_error_at if latest else None,
                    last_crawled_at=latest.recorded_at if latest else None,
                    listings_count=counts.get(source.id, 0),
                )
            )
        return report
