"""
Ingestion Context - Wiring of Stores, Registry, Orchestrator and Scheduler

One IngestionContext per process. The web app, the CLI and the periodic
trigger all share it through get_ingestion_context(); tests build their
own with injected stores, adapters, clock and sleep.
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from adapters import create_adapter
from ingestion.dedup import AddressBedsPriceStrategy
from ingestion.health import HealthRecorder
from ingestion.listings import ListingStore
from ingestion.orchestrator import AdapterFactory, CrawlOrchestrator
from ingestion.scheduler import CrawlScheduler
from ingestion.schema import CrawlOptions, utcnow
from ingestion.sources import (
    DEFAULT_SOURCES,
    MemorySourceConfigStore,
    SourceConfigStore,
    SourceRegistry,
)
from ingestion.store import IngestionStore, MemoryIngestionStore
from utils.config import Config


logger = logging.getLogger(__name__)


@dataclass
class IngestionContext:
    config: Config
    store: IngestionStore
    source_store: SourceConfigStore
    health: HealthRecorder
    registry: SourceRegistry
    listings: ListingStore
    orchestrator: CrawlOrchestrator
    scheduler: CrawlScheduler

    def crawl_options(self, **overrides) -> CrawlOptions:
        """Options for a direct crawl trigger, defaulted from config."""
        values = {
            "max_pages": self.config.crawl_max_pages,
            "max_listings": self.config.crawl_max_listings,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return CrawlOptions(**values)


def build_context(
    config: Optional[Config] = None,
    store: Optional[IngestionStore] = None,
    source_store: Optional[SourceConfigStore] = None,
    adapter_factory: Optional[AdapterFactory] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utcnow,
) -> IngestionContext:
    """Assemble the ingestion core. Unspecified parts come from config."""
    config = config or Config.load()
    store = store or MemoryIngestionStore(config.resolved_store_path)
    source_store = source_store or MemorySourceConfigStore(DEFAULT_SOURCES)

    if adapter_factory is None:
        adapter_factory = functools.partial(
            create_adapter,
            timeout=config.request_timeout,
            user_agent=config.user_agent,
        )

    health = HealthRecorder(store)
    registry = SourceRegistry(source_store, health)
    listings = ListingStore(
        store,
        strategy=AddressBedsPriceStrategy(config.dedup_price_tolerance),
        clock=clock,
    )
    orchestrator = CrawlOrchestrator(
        registry,
        listings,
        health,
        adapter_factory=adapter_factory,
        sleep=sleep,
        clock=clock,
    )
    scheduler = CrawlScheduler(
        orchestrator,
        registry,
        workers=config.crawl_workers,
        queue_size=config.crawl_queue_size,
        job_options=CrawlOptions(
            max_pages=config.job_max_pages,
            max_listings=config.job_max_listings,
        ),
        cooldown_seconds=config.rate_limit_cooldown_seconds,
        clock=clock,
    )

    return IngestionContext(
        config=config,
        store=store,
        source_store=source_store,
        health=health,
        registry=registry,
        listings=listings,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


# Singleton instance
_context_instance: Optional[IngestionContext] = None


def get_ingestion_context() -> IngestionContext:
    """Get the process-wide ingestion context, building it on first use."""
    global _context_instance
    if _context_instance is None:
        _context_instance = build_context()
        logger.info("Ingestion context ready (%d sources)", len(_context_instance.registry.list_sources()))
    return _context_instance


def set_ingestion_context(context: IngestionContext) -> None:
    global _context_instance
    _context_instance = context


def reset_ingestion_context() -> None:
    """Drop the singleton, stopping its workers first."""
    global _context_instance
    if _context_instance is not None:
        _context_instance.scheduler.shutdown(wait=False)
    _context_instance = None
