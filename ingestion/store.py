"""
Ingestion Store - Persistence Interface for Listings and Health Metrics

The orchestrator and listing store talk to persistence only through
IngestionStore, so the backing database can be swapped for the in-memory
implementation in tests.

Writes are conditional: inserts fail when the (source_id, key) pair already
exists and updates fail when the caller's expected version is stale. This
keeps concurrent crawls of different sources from losing each other's
updates without holding a lock across store round-trips.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final, Iterable, Iterator, Optional

from ingestion.errors import ConcurrentUpdateError, DuplicateListingError
from ingestion.schema import (
    ListingRecord,
    ListingStatus,
    SourceHealthMetric,
    utcnow,
)


logger = logging.getLogger(__name__)


# Fields that identify a record and can never be rewritten by update_listing
IMMUTABLE_FIELDS: Final[frozenset[str]] = frozenset({
    "id",
    "source_id",
    "source_listing_id",
    "source_url",
    "first_seen_at",
    "version",
})


# =============================================================================
# Interface
# =============================================================================


class IngestionStore(ABC):
    """Persistence operations consumed by the ingestion core."""

    @abstractmethod
    def find_listing(self, source_id: str, key: str) -> Optional[ListingRecord]:
        """Find a record by source and source key (listing id or URL)."""
        ...

    @abstractmethod
    def get_listing(self, listing_id: str) -> Optional[ListingRecord]:
        ...

    @abstractmethod
    def insert_listing(self, record: ListingRecord) -> ListingRecord:
        """
        Insert a new record.

        Raises:
            DuplicateListingError: If (source_id, source_key) already exists
        """
        ...

    @abstractmethod
    def update_listing(
        self,
        listing_id: str,
        changes: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[ListingRecord]:
        """
        Apply field changes in a single conditional write.

        Returns:
            The updated record, or None if no record has this id

        Raises:
            ConcurrentUpdateError: If expected_version does not match
        """
        ...

    @abstractmethod
    def query_active_keys(self, source_id: str) -> set[str]:
        ...

    @abstractmethod
    def iter_listings(self, source_id: Optional[str] = None) -> Iterator[ListingRecord]:
        ...

    @abstractmethod
    def find_by_dedup_keys(self, keys: Iterable[str]) -> list[ListingRecord]:
        ...

    @abstractmethod
    def append_health_metric(self, metric: SourceHealthMetric) -> None:
        ...

    @abstractmethod
    def read_health_metrics(
        self,
        source_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SourceHealthMetric]:
        """Health metrics, latest first."""
        ...

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group writes. Stores that persist lazily flush once on exit."""
        yield


# =============================================================================
# In-Memory Implementation
# =============================================================================


class MemoryIngestionStore(IngestionStore):
    """
    Dict-backed store with optional JSON file persistence.

    A single re-entrant lock makes every operation atomic; each public
    method is one "round-trip" from the caller's point of view.
    """

    def __init__(self, persist_path: Optional[str] = None):
        """
        Initialise store.

        Args:
            persist_path: Optional path to persist data to a JSON file
        """
        self._lock = threading.RLock()
        self._listings: dict[str, ListingRecord] = {}
        self._by_source_key: dict[tuple[str, str], str] = {}
        self._by_dedup_key: dict[str, set[str]] = {}
        self._metrics: list[SourceHealthMetric] = []
        self._persist_path = Path(persist_path) if persist_path else None
        self._batch_depth = 0
        self._dirty = False

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    # =========================================================================
    # Persistence
    # =========================================================================

    @contextmanager
    def batch(self) -> Iterator[None]:
        """
        Defer file saves until the outermost batch exits.

        Writes are visible to readers immediately; only the JSON file write
        is coalesced. Batches opened by different threads nest, so the file
        is written once the last of them exits.
        """
        with self._lock:
            self._batch_depth += 1
        try:
            yield
        finally:
            with self._lock:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._save_to_file()

    def _persist(self) -> None:
        if self._batch_depth:
            self._dirty = True
        else:
            self._save_to_file()

    def _save_to_file(self) -> None:
        self._dirty = False
        if not self._persist_path:
            return

        data = {
            "listings": [r.to_dict() for r in self._listings.values()],
            "health_metrics": [m.to_dict() for m in self._metrics],
            "saved_at": utcnow().isoformat(),
        }
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._persist_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, indent=2))
        tmp_path.replace(self._persist_path)

    def _load_from_file(self) -> None:
        try:
            data = json.loads(self._persist_path.read_text())
            for item in data.get("listings", []):
                self._index(ListingRecord.from_dict(item))
            self._metrics = [
                SourceHealthMetric.from_dict(m) for m in data.get("health_metrics", [])
            ]
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            logger.warning("Could not load ingestion store %s: %s", self._persist_path, e)
            self._listings.clear()
            self._by_source_key.clear()
            self._by_dedup_key.clear()
            self._metrics = []

    def _index(self, record: ListingRecord) -> None:
        self._listings[record.id] = record
        self._by_source_key[(record.source_id, record.source_key)] = record.id
        if record.dedup_key:
            self._by_dedup_key.setdefault(record.dedup_key, set()).add(record.id)

    # =========================================================================
    # Listings
    # =========================================================================

    def find_listing(self, source_id: str, key: str) -> Optional[ListingRecord]:
        with self._lock:
            listing_id = self._by_source_key.get((source_id, key))
            if listing_id is None:
                return None
            return self._listings[listing_id].copy()

    def get_listing(self, listing_id: str) -> Optional[ListingRecord]:
        with self._lock:
            record = self._listings.get(listing_id)
            return record.copy() if record else None

    def insert_listing(self, record: ListingRecord) -> ListingRecord:
        with self._lock:
            if (record.source_id, record.source_key) in self._by_source_key:
                raise DuplicateListingError(record.source_id, record.source_key)
            if record.id in self._listings:
                raise DuplicateListingError(record.source_id, record.source_key)

            stored = record.copy()
            self._index(stored)
            self._persist()
            return stored.copy()

    def update_listing(
        self,
        listing_id: str,
        changes: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[ListingRecord]:
        forbidden = IMMUTABLE_FIELDS.intersection(changes)
        if forbidden:
            raise ValueError(f"Cannot update immutable fields: {sorted(forbidden)}")

        with self._lock:
            current = self._listings.get(listing_id)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentUpdateError(listing_id, expected_version, current.version)

            updated = current.copy(**changes)
            updated.version = current.version + 1

            if updated.dedup_key != current.dedup_key:
                if current.dedup_key:
                    self._by_dedup_key.get(current.dedup_key, set()).discard(listing_id)
            self._index(updated)
            self._persist()
            return updated.copy()

    def query_active_keys(self, source_id: str) -> set[str]:
        with self._lock:
            return {
                r.source_key
                for r in self._listings.values()
                if r.source_id == source_id and r.status == ListingStatus.ACTIVE
            }

    def iter_listings(self, source_id: Optional[str] = None) -> Iterator[ListingRecord]:
        with self._lock:
            snapshot = [
                r.copy()
                for r in self._listings.values()
                if source_id is None or r.source_id == source_id
            ]
        return iter(snapshot)

    def find_by_dedup_keys(self, keys: Iterable[str]) -> list[ListingRecord]:
        with self._lock:
            ids: set[str] = set()
            for key in keys:
                ids.update(self._by_dedup_key.get(key, ()))
            return [self._listings[i].copy() for i in ids]

    def count(self) -> int:
        with self._lock:
            return len(self._listings)

    # =========================================================================
    # Health Metrics
    # =========================================================================

    def append_health_metric(self, metric: SourceHealthMetric) -> None:
        with self._lock:
            self._metrics.append(metric)
            self._persist()

    def read_health_metrics(
        self,
        source_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SourceHealthMetric]:
        with self._lock:
            matching = [
                m for m in self._metrics
                if source_id is None or m.source_id == source_id
            ]
        # Stable sort keeps append order for identical timestamps
        ordered = sorted(
            enumerate(matching),
            key=lambda pair: (pair[1].recorded_at, pair[0]),
            reverse=True,
        )
        result = [m for _, m in ordered]
        return result[:limit] if limit is not None else result
