"""
Listing Store - Upsert, Cross-Source Dedup and Delisting

The only component that creates or mutates ListingRecords. Every write is
a single conditional store operation: inserts are rejected if another
writer got there first, updates are rejected if the record's version moved
on. Lost races are resolved by re-reading and re-applying, never by
overwriting.

Dedup rules:
    - A listing seen again from the same source is a re-sighting, never a
      duplicate decision.
    - A listing new to its source is matched against canonical records of
      other sources. No match: new canonical. Match: duplicate pointing to
      the earliest-seen canonical.
    - Within one crawl batch, a more authoritative source (lower priority
      number) takes over canonical status from a record inserted earlier in
      that batch.
    - Canonical status is otherwise permanent; duplicates are never promoted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Final, Iterable, Optional

from ingestion.dedup import AddressBedsPriceStrategy, MatchKeyStrategy, normalize_address
from ingestion.errors import ConcurrentUpdateError, DuplicateListingError
from ingestion.schema import (
    ListingRecord,
    ListingStatus,
    NormalizedListing,
    UpsertResult,
    utcnow,
)
from ingestion.store import IngestionStore


logger = logging.getLogger(__name__)


MAX_WRITE_ATTEMPTS: Final[int] = 5


# =============================================================================
# Query
# =============================================================================


@dataclass(frozen=True)
class ListingQuery:
    """Filters for canonical listing queries."""

    source_id: Optional[str] = None
    borough: Optional[str] = None
    neighborhood: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_beds: Optional[int] = None
    max_beds: Optional[int] = None
    min_baths: Optional[float] = None
    no_fee: Optional[bool] = None
    status: Optional[ListingStatus] = ListingStatus.ACTIVE
    seen_since: Optional[datetime] = None
    sort: str = "newest"
    limit: int = 50
    offset: int = 0

    def accepts(self, record: ListingRecord) -> bool:
        if record.is_duplicate:
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.source_id and record.source_id != self.source_id:
            return False
        if self.borough and (record.borough or "").lower() != self.borough.lower():
            return False
        if self.neighborhood and (record.neighborhood or "").lower() != self.neighborhood.lower():
            return False
        if self.min_price is not None and record.price < self.min_price:
            return False
        if self.max_price is not None and record.price > self.max_price:
            return False
        if self.min_beds is not None and record.beds < self.min_beds:
            return False
        if self.max_beds is not None and record.beds > self.max_beds:
            return False
        if self.min_baths is not None and record.baths < self.min_baths:
            return False
        if self.no_fee is not None and bool(record.no_fee) != self.no_fee:
            return False
        if self.seen_since is not None and record.last_seen_at < self.seen_since:
            return False
        return True


_SORT_KEYS: Final[dict[str, tuple[Callable[[ListingRecord], Any], bool]]] = {
    "newest": (lambda r: r.first_seen_at, True),
    "oldest": (lambda r: r.first_seen_at, False),
    "price_asc": (lambda r: r.price, False),
    "price_desc": (lambda r: r.price, True),
    "recently_seen": (lambda r: r.last_seen_at, True),
}

SORT_OPTIONS: Final[tuple[str, ...]] = tuple(_SORT_KEYS)


@dataclass(frozen=True)
class ListingStats:
    total: int
    active: int
    delisted: int
    canonical: int
    duplicates: int
    seen_last_24h: int
    new_last_24h: int

    @property
    def dedup_rate(self) -> float:
        return self.duplicates / self.total if self.total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "active": self.active,
            "delisted": self.delisted,
            "canonical": self.canonical,
            "duplicates": self.duplicates,
            "seenLast24h": self.seen_last_24h,
            "newLast24h": self.new_last_24h,
            "dedupRate": round(self.dedup_rate, 4),
        }


# =============================================================================
# Listing Store
# =============================================================================


class ListingStore:
    """Dedup-aware listing persistence on top of an IngestionStore."""

    def __init__(
        self,
        store: IngestionStore,
        strategy: Optional[MatchKeyStrategy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._strategy = strategy or AddressBedsPriceStrategy()
        self._clock = clock

    @property
    def store(self) -> IngestionStore:
        return self._store

    # =========================================================================
    # Upsert
    # =========================================================================

    def upsert_listing(
        self,
        listing: NormalizedListing,
        source_priority: int = 0,
        batch_id: Optional[str] = None,
    ) -> UpsertResult:
        """
        Insert or re-sight one listing.

        Args:
            listing: Normalised adapter output
            source_priority: Priority number of the listing's source
            batch_id: Crawl batch the listing arrived in, for tie-breaks

        Returns:
            UpsertResult describing what happened
        """
        last_conflict: Optional[Exception] = None

        for _ in range(MAX_WRITE_ATTEMPTS):
            existing = self._store.find_listing(listing.source_id, listing.source_key)
            try:
                if existing is not None:
                    return self._resight(existing, listing)
                return self._insert(listing, source_priority, batch_id)
            except (DuplicateListingError, ConcurrentUpdateError) as e:
                # Another writer touched this record; re-read and re-apply
                logger.debug("Write conflict for %s/%s: %s", listing.source_id, listing.source_key, e)
                last_conflict = e

        raise last_conflict  # type: ignore[misc]

    def _resight(self, existing: ListingRecord, listing: NormalizedListing) -> UpsertResult:
        now = self._clock()
        changes: dict[str, Any] = {
            "last_seen_at": now,
            "last_updated_at": now,
            "images": list(listing.images) or existing.images,
        }

        price_changed = listing.price != existing.price
        if price_changed:
            changes["price"] = listing.price
            changes["price_history"] = existing.price_history + [
                {"price": existing.price, "date": existing.last_seen_at.isoformat()}
            ]
            changes["dedup_key"] = self._strategy.key(replace(existing, price=listing.price))
        if listing.title:
            changes["title"] = listing.title

        reactivated = existing.status == ListingStatus.DELISTED
        if reactivated:
            changes["status"] = ListingStatus.ACTIVE
            changes["delisted_at"] = None
            changes["relist_detected"] = True

        updated = self._store.update_listing(existing.id, changes, expected_version=existing.version)
        if updated is None:
            # Records are never deleted, so a vanished id means a broken store
            raise ConcurrentUpdateError(existing.id, existing.version, -1)

        if reactivated:
            logger.info("Listing %s/%s reappeared; reactivated", listing.source_id, listing.source_key)

        return UpsertResult(
            listing_id=existing.id,
            created=False,
            is_duplicate=existing.is_duplicate,
            canonical_id=existing.canonical_id,
            reactivated=reactivated,
            price_changed=price_changed,
        )

    def _insert(
        self,
        listing: NormalizedListing,
        source_priority: int,
        batch_id: Optional[str],
    ) -> UpsertResult:
        now = self._clock()
        record = ListingRecord.from_listing(
            listing,
            seen_at=now,
            address_normalized=normalize_address(listing.address_text),
            dedup_key=self._strategy.key(listing),
            source_priority=source_priority,
            crawl_batch_id=batch_id,
        )

        match = self._find_canonical_match(listing)

        if match is None:
            stored = self._store.insert_listing(record)
            return UpsertResult(listing_id=stored.id, created=True, is_duplicate=False)

        if batch_id and match.crawl_batch_id == batch_id and source_priority < match.source_priority:
            stored = self._store.insert_listing(record)
            self._demote(match, stored.id)
            logger.info(
                "Listing %s from %s takes canonical status from %s (priority %d < %d)",
                stored.id, listing.source_id, match.id, source_priority, match.source_priority,
            )
            return UpsertResult(listing_id=stored.id, created=True, is_duplicate=False)

        record.is_duplicate = True
        record.canonical_id = match.id
        stored = self._store.insert_listing(record)
        return UpsertResult(
            listing_id=stored.id,
            created=True,
            is_duplicate=True,
            canonical_id=match.id,
        )

    def _find_canonical_match(self, listing: NormalizedListing) -> Optional[ListingRecord]:
        keys = self._strategy.candidate_keys(listing)
        if not keys:
            return None

        candidates = [
            r for r in self._store.find_by_dedup_keys(keys)
            if not r.is_duplicate
            and r.source_id != listing.source_id
            and self._strategy.matches(listing, r)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda r: (r.first_seen_at, r.id))

    def _demote(self, previous: ListingRecord, new_canonical_id: str) -> None:
        """Point a former canonical and all of its duplicates at the new canonical."""
        affected = [previous] + [
            r for r in self._store.iter_listings() if r.canonical_id == previous.id
        ]
        for record in affected:
            self._update_with_retry(
                record.id,
                {"is_duplicate": True, "canonical_id": new_canonical_id},
            )

    def _update_with_retry(self, listing_id: str, changes: dict[str, Any]) -> None:
        for attempt in range(MAX_WRITE_ATTEMPTS):
            current = self._store.get_listing(listing_id)
            if current is None:
                return
            try:
                self._store.update_listing(listing_id, changes, expected_version=current.version)
                return
            except ConcurrentUpdateError:
                if attempt == MAX_WRITE_ATTEMPTS - 1:
                    raise

    # =========================================================================
    # Delisting
    # =========================================================================

    def mark_listings_delisted(self, source_id: str, active_keys: Iterable[str]) -> int:
        """
        Delist canonical active records of a source not seen in a run.

        Idempotent: a second call with the same keys changes nothing.

        Returns:
            Number of records transitioned to delisted
        """
        seen = set(active_keys)
        now = self._clock()
        delisted = 0

        with self._store.batch():
            for record in self._store.iter_listings(source_id):
                if record.is_duplicate or not record.is_active:
                    continue
                if record.source_key in seen:
                    continue
                try:
                    updated = self._store.update_listing(
                        record.id,
                        {
                            "status": ListingStatus.DELISTED,
                            "delisted_at": now,
                            "last_updated_at": now,
                        },
                        expected_version=record.version,
                    )
                except ConcurrentUpdateError:
                    # A concurrent re-sighting wins over delisting
                    logger.debug("Skipped delisting %s: record changed concurrently", record.id)
                    continue
                if updated is not None:
                    delisted += 1

        if delisted:
            logger.info("Delisted %d listings for %s", delisted, source_id)
        return delisted

    # =========================================================================
    # Queries
    # =========================================================================

    def get_listing(self, listing_id: str) -> Optional[ListingRecord]:
        return self._store.get_listing(listing_id)

    def query_listings(self, query: Optional[ListingQuery] = None) -> list[ListingRecord]:
        """Canonical listings matching the query, sorted and paginated."""
        query = query or ListingQuery()
        key, reverse = _SORT_KEYS.get(query.sort, _SORT_KEYS["newest"])
        matching = [r for r in self._store.iter_listings(query.source_id) if query.accepts(r)]
        matching.sort(key=key, reverse=reverse)
        return matching[query.offset:query.offset + query.limit]

    def count_active_by_source(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self._store.iter_listings():
            if record.is_active and not record.is_duplicate:
                counts[record.source_id] = counts.get(record.source_id, 0) + 1
        return counts

    def stats(self, now: Optional[datetime] = None) -> ListingStats:
        now = now or self._clock()
        day_ago = now - timedelta(hours=24)

        total = active = duplicates = seen_recent = new_recent = 0
        for record in self._store.iter_listings():
            total += 1
            if record.is_active:
                active += 1
            if record.is_duplicate:
                duplicates += 1
            if record.last_seen_at >= day_ago:
                seen_recent += 1
            if record.first_seen_at >= day_ago:
                new_recent += 1

        return ListingStats(
            total=total,
            active=active,
            delisted=total - active,
            canonical=total - duplicates,
            duplicates=duplicates,
            seen_last_24h=seen_recent,
            new_last_24h=new_recent,
        )
