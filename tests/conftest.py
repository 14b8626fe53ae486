"""
Shared fixtures for ingestion tests.

Everything runs against the in-memory stores with a fixed clock, a
recording sleep and scripted stub adapters, so no test touches the
network or waits on real time.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from adapters.base import Page, PagedSourceAdapter, RunBasedSourceAdapter, RunStatus
from ingestion.context import build_context, reset_ingestion_context, set_ingestion_context
from ingestion.health import HealthRecorder
from ingestion.listings import ListingStore
from ingestion.schema import NormalizedListing
from ingestion.sources import (
    ApiConnection,
    MemorySourceConfigStore,
    RunServiceConnection,
    SourceConfig,
    SourceRegistry,
)
from ingestion.store import MemoryIngestionStore
from utils.config import Config


FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Clock and Sleep
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# =============================================================================
# Builders
# =============================================================================


def make_source(
    source_id: str = "src-a",
    priority: int = 10,
    parser: str = "stub",
    enabled: bool = True,
    run_based: bool = False,
) -> SourceConfig:
    if run_based:
        connection = RunServiceConnection(parser=parser, actor_id="test~actor")
    else:
        connection = ApiConnection(parser=parser, endpoint="https://feed.test/listings")
    return SourceConfig(
        id=source_id,
        name=f"Source {source_id}",
        connection=connection,
        priority=priority,
        enabled=enabled,
    )


def raw_item(
    ref: Any,
    price: float = 3000,
    beds: int = 1,
    address: Optional[str] = None,
    **extra: Any,
) -> dict[str, Any]:
    item = {
        "id": f"L{ref}",
        "url": f"https://feed.test/l/{ref}",
        "price": price,
        "beds": beds,
        "baths": 1,
        "address": address or f"{ref} Test Street",
    }
    item.update(extra)
    return item


def make_listing(
    source_id: str = "src-a",
    ref: Any = 1,
    price: float = 3000,
    beds: int = 1,
    address: Optional[str] = None,
    **extra: Any,
) -> NormalizedListing:
    values = dict(
        source_id=source_id,
        source_listing_id=f"L{ref}",
        source_url=f"https://feed.test/{source_id}/{ref}",
        price=price,
        beds=beds,
        baths=1.0,
        address_text=address or f"{ref} Test Street",
    )
    values.update(extra)
    return NormalizedListing(**values)


def paginate(items: list[dict[str, Any]], page_size: int) -> list[Page]:
    """Split items into pages linked by offset tokens."""
    pages = []
    for start in range(0, len(items), page_size):
        end = start + page_size
        pages.append(Page(items=items[start:end], next_token=str(end) if end < len(items) else None))
    return pages


# =============================================================================
# Stub Adapters
# =============================================================================


class _StubNormalizeMixin:
    def normalize(self, raw: dict[str, Any]) -> NormalizedListing:
        if raw.get("bad"):
            raise self._parse_error(raw, "bad item")
        return self._build_listing(
            raw,
            source_listing_id=raw["id"],
            source_url=raw["url"],
            price=float(raw["price"]),
            beds=int(raw["beds"]),
            baths=float(raw["baths"]),
            address_text=raw["address"],
        )


class StubPagedAdapter(_StubNormalizeMixin, PagedSourceAdapter):
    """
    Plays back a script of pages. A script step that is an exception is
    raised from fetch_page instead of returning a page; a callable step is
    called with the page token and its return value used.
    """

    def __init__(self, config, script=(), preflight_error: Optional[Exception] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.script = list(script)
        self.preflight_error = preflight_error
        self.tokens: list[Optional[str]] = []
        self.closed = False

    def preflight(self) -> None:
        if self.preflight_error is not None:
            raise self.preflight_error

    def fetch_page(self, page_token: Optional[str] = None) -> Page:
        self.tokens.append(page_token)
        if not self.script:
            return Page(items=[], next_token=None)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(page_token)
        return step

    def close(self) -> None:
        self.closed = True
        super().close()


class StubRunAdapter(_StubNormalizeMixin, RunBasedSourceAdapter):
    """Run-based stub whose latest dataset is a fixed list (or an exception)."""

    def __init__(self, config, dataset=(), **kwargs):
        super().__init__(config, **kwargs)
        self.dataset = dataset
        self.limits: list[int] = []
        self.statuses: list[RunStatus] = []
        self.triggered: list[Optional[dict[str, Any]]] = []
        self.closed = False

    def trigger_run(self, options=None) -> str:
        self.triggered.append(options)
        return "run-1"

    def get_run_status(self, run_id: str) -> RunStatus:
        return self.statuses.pop(0) if self.statuses else RunStatus.SUCCEEDED

    def fetch_dataset(self, limit: int) -> list[dict[str, Any]]:
        self.limits.append(limit)
        if isinstance(self.dataset, Exception):
            raise self.dataset
        return list(self.dataset)[:limit]

    def close(self) -> None:
        self.closed = True
        super().close()


class BlockingStep:
    """Script step that holds fetch_page until the test releases it."""

    def __init__(self, page: Page):
        self.page = page
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, page_token):
        self.started.set()
        self.release.wait(timeout=5)
        return self.page


class AdapterBook:
    """
    Adapter factory keyed by source id.

    Tests register what each source should return; every adapter built is
    kept in `built` for later inspection.
    """

    def __init__(self):
        self._scripts: dict[str, dict[str, Any]] = {}
        self.built: list[Any] = []

    def pages(self, source_id: str, *steps, preflight_error: Optional[Exception] = None) -> None:
        self._scripts[source_id] = {"kind": "paged", "steps": list(steps), "preflight_error": preflight_error}

    def dataset(self, source_id: str, items, statuses=()) -> None:
        self._scripts[source_id] = {"kind": "run", "items": items, "statuses": list(statuses)}

    def __call__(self, config: SourceConfig):
        entry = self._scripts.get(config.id, {"kind": "paged", "steps": [], "preflight_error": None})
        if entry["kind"] == "run":
            adapter = StubRunAdapter(config, dataset=entry["items"])
            adapter.statuses = list(entry["statuses"])
        else:
            adapter = StubPagedAdapter(
                config,
                script=list(entry["steps"]),
                preflight_error=entry["preflight_error"],
            )
        self.built.append(adapter)
        return adapter

    @property
    def last(self):
        return self.built[-1]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def store():
    return MemoryIngestionStore()


@pytest.fixture
def listing_store(store, clock):
    return ListingStore(store, clock=clock)


@pytest.fixture
def health(store):
    return HealthRecorder(store)


@pytest.fixture
def sources():
    return [
        make_source("src-a", priority=3),
        make_source("src-b", priority=1),
        make_source("src-c", priority=2),
        make_source("src-off", priority=0, enabled=False),
    ]


@pytest.fixture
def registry(sources, health):
    return SourceRegistry(MemorySourceConfigStore(sources), health)


@pytest.fixture
def adapters():
    return AdapterBook()


@pytest.fixture
def config():
    return Config(
        store_path="",
        cron_secret=None,
        crawl_workers=2,
        crawl_queue_size=10,
        rate_limit_cooldown_seconds=600,
        enable_periodic_crawls=False,
        log_level="WARNING",
    )


@pytest.fixture
def context(config, store, sources, adapters, sleeper, clock):
    ctx = build_context(
        config=config,
        store=store,
        source_store=MemorySourceConfigStore(sources),
        adapter_factory=adapters,
        sleep=sleeper,
        clock=clock,
    )
    yield ctx
    ctx.scheduler.shutdown(wait=True, timeout=5)


@pytest.fixture
def installed_context(context):
    """The test context installed as the process-wide singleton."""
    set_ingestion_context(context)
    yield context
    reset_ingestion_context()
