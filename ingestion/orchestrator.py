"""
Crawl Orchestrator - One Source, End to End

run_crawl drives a single source through:

    1. resolve the source definition
    2. build the adapter, preflight it, fetch pages sequentially
    3. normalise and upsert each page before fetching the next
    4. delist listings not seen in this run (never after an empty run)
    5. record a health metric
    6. return a CrawlResult

Failure policy:
    - ParseError: the item is skipped and reported in `errors`
    - FetchError: pagination stops, everything collected so far is kept
    - ConfigurationError / AuthenticationError / SourceNotFoundError:
      the run aborts and the error propagates; nothing is delisted. A
      failure at preflight records no metric; one after pages were
      fetched (credentials revoked mid-crawl) keeps those pages and
      records a metric carrying the error

A dry run fetches and normalises only. It never writes to the store.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from adapters import create_adapter
from adapters.base import PagedSourceAdapter, RunBasedSourceAdapter, RunStatus, SourceAdapter
from ingestion.errors import (
    ConfigurationError,
    FetchError,
    ParseError,
    RateLimitError,
    SourceBusyError,
    SourceNotFoundError,
)
from ingestion.health import HealthRecorder
from ingestion.listings import ListingStore
from ingestion.schema import CrawlOptions, CrawlResult, NormalizedListing, SourceHealthMetric, utcnow
from ingestion.sources import SourceConfig, SourceRegistry


logger = logging.getLogger(__name__)


AdapterFactory = Callable[[SourceConfig], SourceAdapter]


@dataclass
class _RunState:
    """Mutable counters for one run."""

    source: SourceConfig
    options: CrawlOptions
    result: CrawlResult
    fetch_attempts: int = 0
    fetch_successes: int = 0
    parse_failures: int = 0
    items_collected: int = 0
    seen_keys: set[str] = field(default_factory=set)
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def budget_left(self) -> int:
        return self.options.max_listings - self.items_collected


class CrawlOrchestrator:
    """Runs crawls for individual sources."""

    def __init__(
        self,
        registry: SourceRegistry,
        listings: ListingStore,
        health: HealthRecorder,
        adapter_factory: Optional[AdapterFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._listings = listings
        self._health = health
        self._adapter_factory = adapter_factory or create_adapter
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic

    # =========================================================================
    # Single Source
    # =========================================================================

    def run_crawl(self, source_id: str, options: Optional[CrawlOptions] = None) -> CrawlResult:
        """
        Crawl one source.

        Raises:
            SourceNotFoundError: Unknown source id
            ConfigurationError: Bad connection parameters or credentials
        """
        options = options or CrawlOptions()
        source = self._registry.get_source(source_id)
        if not source.enabled:
            logger.info("Source %s is disabled; crawling on explicit request", source_id)

        started = self._monotonic()
        state = _RunState(
            source=source,
            options=options,
            result=CrawlResult(source_id=source_id, dry_run=options.dry_run),
        )
        logger.info(
            "Starting crawl of %s (max_pages=%d, max_listings=%d, dry_run=%s)",
            source_id, options.max_pages, options.max_listings, options.dry_run,
        )

        adapter = self._adapter_factory(source)
        try:
            adapter.preflight()
            if isinstance(adapter, RunBasedSourceAdapter):
                self._crawl_dataset(adapter, state)
            elif isinstance(adapter, PagedSourceAdapter):
                self._crawl_pages(adapter, state)
            else:
                raise ConfigurationError(
                    f"Adapter {type(adapter).__name__} for {source_id} cannot fetch"
                )
        except ConfigurationError as e:
            logger.error("Crawl of %s aborted: %s", source_id, e)
            if state.fetch_attempts and not options.dry_run:
                self._record_abort(state, e, started)
            raise
        finally:
            adapter.close()

        result = state.result
        result.duration_ms = int((self._monotonic() - started) * 1000)

        if not options.dry_run:
            self._delist(state)
            self._record_health(state)

        logger.info(
            "Finished crawl of %s: %d found, %d new, %d updated, %d duplicates, "
            "%d delisted, %d errors in %dms",
            source_id, result.listings_found, result.new_listings, result.updated_listings,
            result.duplicates_detected, result.delisted_listings, len(result.errors),
            result.duration_ms,
        )
        return result

    def _crawl_pages(self, adapter: PagedSourceAdapter, state: _RunState) -> None:
        token: Optional[str] = None

        while state.result.pages_fetched < state.options.max_pages and state.budget_left > 0:
            if state.fetch_attempts > 0:
                self._sleep(adapter.request_delay_seconds())

            state.fetch_attempts += 1
            try:
                page = adapter.fetch_page(token)
            except FetchError as e:
                self._fetch_failed(state, e)
                break

            state.fetch_successes += 1
            state.result.pages_fetched += 1
            self._process_items(adapter, state, page.items)
            logger.info(
                "Page %d of %s: %d items (%d collected)",
                state.result.pages_fetched, state.source.id, len(page.items), state.items_collected,
            )

            if page.next_token is None:
                break
            token = page.next_token

    def _crawl_dataset(self, adapter: RunBasedSourceAdapter, state: _RunState) -> None:
        state.fetch_attempts += 1
        try:
            items = adapter.fetch_dataset(limit=state.options.max_listings)
        except FetchError as e:
            self._fetch_failed(state, e)
            return

        state.fetch_successes += 1
        state.result.pages_fetched += 1
        self._process_items(adapter, state, items)

    def _process_items(
        self,
        adapter: SourceAdapter,
        state: _RunState,
        items: list[dict[str, Any]],
    ) -> None:
        result = state.result
        accepted = items[: state.budget_left]
        state.items_collected += len(accepted)

        # One store flush per page
        with self._listings.store.batch():
            for raw in accepted:
                try:
                    listing = adapter.normalize(raw)
                except ParseError as e:
                    state.parse_failures += 1
                    result.errors.append(str(e))
                    continue

                result.listings_found += 1
                state.seen_keys.add(listing.source_key)

                if state.options.dry_run:
                    continue

                upsert = self._listings.upsert_listing(
                    listing,
                    source_priority=state.source.priority,
                    batch_id=state.options.batch_id,
                )
                if not upsert.created:
                    result.updated_listings += 1
                elif upsert.is_duplicate:
                    result.duplicates_detected += 1
                else:
                    result.new_listings += 1

    def _fetch_failed(self, state: _RunState, error: FetchError) -> None:
        result = state.result
        result.fetch_failures += 1
        message = f"Fetch failed after {result.pages_fetched} page(s): {error}"
        result.errors.append(message)
        state.last_error = str(error)
        state.last_error_at = self._clock()

        if isinstance(error, RateLimitError):
            result.rate_limited = True
            result.retry_after_seconds = error.retry_after_seconds

        logger.warning("%s: %s", state.source.id, message)

    def _delist(self, state: _RunState) -> None:
        result = state.result
        if result.listings_found == 0:
            # An empty run is far more likely a broken fetch than an empty market
            result.delisting_skipped = True
            logger.warning("Crawl of %s produced no listings; delisting skipped", state.source.id)
            return
        result.delisted_listings = self._listings.mark_listings_delisted(
            state.source.id, state.seen_keys
        )

    def _record_abort(self, state: _RunState, error: ConfigurationError, started: float) -> None:
        """Credentials rejected mid-crawl: earlier pages stay stored, nothing is delisted."""
        state.result.fetch_failures += 1
        state.result.duration_ms = int((self._monotonic() - started) * 1000)
        state.last_error = f"{type(error).__name__}: {error}"
        state.last_error_at = self._clock()
        self._record_health(state)

    def _record_health(self, state: _RunState) -> None:
        result = state.result
        self._health.record(
            SourceHealthMetric(
                source_id=state.source.id,
                recorded_at=self._clock(),
                fetch_attempts=state.fetch_attempts,
                fetch_successes=state.fetch_successes,
                fetch_failures=result.fetch_failures,
                parse_failures=state.parse_failures,
                listings_found=result.listings_found,
                new_listings=result.new_listings,
                updated_listings=result.updated_listings,
                duplicates_detected=result.duplicates_detected,
                delisted_listings=result.delisted_listings,
                duration_ms=result.duration_ms,
                last_error=state.last_error,
                last_error_at=state.last_error_at,
            )
        )

    # =========================================================================
    # Run-Based Sources
    # =========================================================================

    def run_adapter(self, source_id: str) -> RunBasedSourceAdapter:
        """
        Build and preflight the adapter of a run-based source.

        Used to trigger and poll hosted runs outside a crawl. The caller
        closes the adapter.

        Raises:
            SourceNotFoundError: Unknown source id
            ConfigurationError: Not a run-based source, or missing credentials
        """
        source = self._registry.get_source(source_id)
        adapter = self._adapter_factory(source)
        try:
            if not isinstance(adapter, RunBasedSourceAdapter):
                raise ConfigurationError(f"{source_id} is not a run-based source")
            adapter.preflight()
        except ConfigurationError:
            adapter.close()
            raise
        return adapter

    def trigger_run(self, source_id: str, run_options: Optional[dict[str, Any]] = None) -> str:
        """Start a hosted run for a run-based source and return its id."""
        with self.run_adapter(source_id) as adapter:
            run_id = adapter.trigger_run(run_options)
        logger.info("Triggered run %s for %s", run_id, source_id)
        return run_id

    def run_status(self, source_id: str, run_id: str, wait_seconds: float = 0) -> RunStatus:
        """
        Status of a hosted run, optionally polling until it finishes.

        Raises:
            FatalFetchError: The run failed (only when waiting)
            TransientFetchError: The run did not finish within `wait_seconds`
        """
        with self.run_adapter(source_id) as adapter:
            if wait_seconds <= 0:
                return adapter.get_run_status(run_id)
            return adapter.wait_for_run(
                run_id,
                timeout=wait_seconds,
                poll_interval=min(5.0, wait_seconds),
                sleep=self._sleep,
                monotonic=self._monotonic,
            )

    def preview_dataset(
        self, source_id: str, max_listings: int
    ) -> tuple[list[NormalizedListing], list[str]]:
        """Normalise the latest dataset without touching the store."""
        with self.run_adapter(source_id) as adapter:
            return adapter.fetch_and_normalize(max_listings)

    # =========================================================================
    # Several Sources
    # =========================================================================

    def run_many(
        self,
        source_ids: Optional[Iterable[str]] = None,
        options: Optional[CrawlOptions] = None,
        run_crawl: Optional[Callable[[str, CrawlOptions], CrawlResult]] = None,
    ) -> list[CrawlResult]:
        """
        Crawl several sources one after another in a shared batch.

        Defaults to every enabled source in priority order. A source that
        fails fatally, or is already being crawled, is reported as a result
        with an error instead of stopping the remaining sources.

        Args:
            run_crawl: Runs one source; defaults to this orchestrator's
                run_crawl. Pass CrawlScheduler.run_now to honour jobs
                already in flight.
        """
        run_crawl = run_crawl or self.run_crawl
        options = options or CrawlOptions()
        if options.batch_id is None:
            options = replace(options, batch_id=str(uuid.uuid4()))

        if source_ids is None:
            source_ids = [s.id for s in self._registry.list_sources(enabled_only=True)]

        results = []
        for source_id in source_ids:
            try:
                results.append(run_crawl(source_id, options))
            except (ConfigurationError, SourceBusyError, SourceNotFoundError) as e:
                results.append(
                    CrawlResult(
                        source_id=source_id,
                        errors=[f"{type(e).__name__}: {e}"],
                        dry_run=options.dry_run,
                    )
                )
        return results
