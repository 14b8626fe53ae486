"""
Tests for the listing store and its persistence layer.

Tests cover:
- Re-sighting: idempotent upserts, price history, reactivation
- Cross-source dedup and the same-batch priority tie-break
- Delisting precision and idempotence
- Conditional writes under concurrent modification
- Queries and statistics
"""

import pytest

from ingestion.dedup import normalize_address
from ingestion.errors import ConcurrentUpdateError, DuplicateListingError
from ingestion.listings import ListingQuery, ListingStore
from ingestion.schema import ListingRecord, ListingStatus, SourceHealthMetric
from ingestion.store import MemoryIngestionStore

from tests.conftest import FIXED_NOW, make_listing


# =============================================================================
# Re-sighting
# =============================================================================


class TestUpsertResighting:
    def test_identical_upsert_twice_keeps_one_record(self, listing_store, store, clock):
        listing = make_listing(ref=1)

        first = listing_store.upsert_listing(listing)
        clock.advance(hours=2)
        second = listing_store.upsert_listing(listing)

        assert first.created is True
        assert second.created is False
        assert second.listing_id == first.listing_id
        assert store.count() == 1

        record = store.get_listing(first.listing_id)
        assert record.first_seen_at == FIXED_NOW
        assert record.last_seen_at == clock.now
        assert record.price_history == []

    def test_url_is_key_when_listing_id_missing(self, listing_store, store):
        listing = make_listing(ref=1, source_listing_id=None)

        listing_store.upsert_listing(listing)
        listing_store.upsert_listing(listing)

        assert store.count() == 1
        assert store.find_listing("src-a", listing.source_url) is not None

    def test_price_change_appends_history(self, listing_store, store, clock):
        result = listing_store.upsert_listing(make_listing(ref=1, price=3000))
        clock.advance(days=1)

        update = listing_store.upsert_listing(make_listing(ref=1, price=2850))

        assert update.price_changed is True
        record = store.get_listing(result.listing_id)
        assert record.price == 2850
        assert record.price_history == [{"price": 3000, "date": FIXED_NOW.isoformat()}]

    def test_resighting_keeps_images_when_new_sighting_has_none(self, listing_store, store):
        result = listing_store.upsert_listing(make_listing(ref=1, images=("a.jpg", "b.jpg")))
        listing_store.upsert_listing(make_listing(ref=1))

        assert store.get_listing(result.listing_id).images == ["a.jpg", "b.jpg"]

    def test_delisted_listing_reappearing_is_reactivated(self, listing_store, store, clock):
        result = listing_store.upsert_listing(make_listing(ref=1))
        listing_store.mark_listings_delisted("src-a", [])
        assert store.get_listing(result.listing_id).status == ListingStatus.DELISTED

        clock.advance(days=3)
        again = listing_store.upsert_listing(make_listing(ref=1))

        record = store.get_listing(result.listing_id)
        assert again.reactivated is True
        assert record.status == ListingStatus.ACTIVE
        assert record.delisted_at is None
        assert record.relist_detected is True
        assert record.first_seen_at == FIXED_NOW

    def test_each_write_bumps_version(self, listing_store, store):
        result = listing_store.upsert_listing(make_listing(ref=1))
        listing_store.upsert_listing(make_listing(ref=1))
        listing_store.upsert_listing(make_listing(ref=1))

        assert store.get_listing(result.listing_id).version == 3


# =============================================================================
# Cross-Source Dedup
# =============================================================================


ADDRESS = "123 West 45th Street, Apt 4B, New York, NY 10036"


class TestCrossSourceDedup:
    def test_matching_listing_from_other_source_is_duplicate(self, listing_store, store):
        x = listing_store.upsert_listing(
            make_listing("src-p", ref="x", address=ADDRESS, price=3200, beds=1),
            source_priority=1,
        )
        y = listing_store.upsert_listing(
            make_listing("src-q", ref="y", address="123 W 45 St #4B", price=3250, beds=1),
            source_priority=5,
        )

        assert x.is_duplicate is False
        assert y.is_duplicate is True
        assert y.canonical_id == x.listing_id

        x_record = store.get_listing(x.listing_id)
        y_record = store.get_listing(y.listing_id)
        assert x_record.is_duplicate is False
        assert x_record.canonical_id is None
        assert y_record.canonical_id == x.listing_id

    def test_price_straddling_bucket_boundary_still_matches(self, listing_store):
        x = listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS, price=3195))
        y = listing_store.upsert_listing(make_listing("src-q", ref="y", address=ADDRESS, price=3205))

        assert y.canonical_id == x.listing_id

    def test_price_drift_moves_the_dedup_key(self, listing_store, store):
        x = listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS, price=3000))
        listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS, price=3600))

        assert store.get_listing(x.listing_id).dedup_key == f"{normalize_address(ADDRESS)}|1|36"
        y = listing_store.upsert_listing(make_listing("src-q", ref="y", address=ADDRESS, price=3620))

        assert y.is_duplicate is True
        assert y.canonical_id == x.listing_id
        assert store.find_by_dedup_keys([f"{normalize_address(ADDRESS)}|1|30"]) == []

    def test_price_outside_tolerance_is_new_canonical(self, listing_store):
        listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS, price=3000))
        y = listing_store.upsert_listing(make_listing("src-q", ref="y", address=ADDRESS, price=3150))

        assert y.is_duplicate is False

    def test_different_beds_is_new_canonical(self, listing_store):
        listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS, beds=1))
        y = listing_store.upsert_listing(make_listing("src-q", ref="y", address=ADDRESS, beds=2))

        assert y.is_duplicate is False

    def test_same_source_never_matches_itself(self, listing_store):
        listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS))
        other = listing_store.upsert_listing(make_listing("src-p", ref="y", address=ADDRESS))

        assert other.is_duplicate is False

    def test_earliest_canonical_wins(self, listing_store, clock):
        first = listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS))
        clock.advance(minutes=5)
        # Same unit, source q: duplicate of the first
        listing_store.upsert_listing(make_listing("src-q", ref="y", address=ADDRESS))
        clock.advance(minutes=5)
        third = listing_store.upsert_listing(make_listing("src-r", ref="z", address=ADDRESS))

        assert third.canonical_id == first.listing_id

    def test_lower_priority_number_takes_over_within_batch(self, listing_store, store):
        early = listing_store.upsert_listing(
            make_listing("src-q", ref="y", address=ADDRESS),
            source_priority=5,
            batch_id="batch-1",
        )
        late = listing_store.upsert_listing(
            make_listing("src-p", ref="x", address=ADDRESS),
            source_priority=1,
            batch_id="batch-1",
        )

        assert late.is_duplicate is False
        demoted = store.get_listing(early.listing_id)
        assert demoted.is_duplicate is True
        assert demoted.canonical_id == late.listing_id

    def test_priority_does_not_override_across_batches(self, listing_store, store):
        early = listing_store.upsert_listing(
            make_listing("src-q", ref="y", address=ADDRESS),
            source_priority=5,
            batch_id="batch-1",
        )
        late = listing_store.upsert_listing(
            make_listing("src-p", ref="x", address=ADDRESS),
            source_priority=1,
            batch_id="batch-2",
        )

        assert late.is_duplicate is True
        assert late.canonical_id == early.listing_id
        assert store.get_listing(early.listing_id).is_duplicate is False

    def test_duplicates_of_demoted_record_follow_new_canonical(self, listing_store, store):
        early = listing_store.upsert_listing(
            make_listing("src-q", ref="y", address=ADDRESS), source_priority=5, batch_id="b"
        )
        dup = listing_store.upsert_listing(
            make_listing("src-r", ref="z", address=ADDRESS), source_priority=8, batch_id="b"
        )
        assert dup.canonical_id == early.listing_id

        winner = listing_store.upsert_listing(
            make_listing("src-p", ref="x", address=ADDRESS), source_priority=1, batch_id="b"
        )

        assert store.get_listing(dup.listing_id).canonical_id == winner.listing_id
        assert store.get_listing(early.listing_id).canonical_id == winner.listing_id

    def test_duplicate_is_not_promoted_when_canonical_delists(self, listing_store, store):
        x = listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS))
        y = listing_store.upsert_listing(make_listing("src-q", ref="y", address=ADDRESS))

        listing_store.mark_listings_delisted("src-p", [])

        assert store.get_listing(x.listing_id).status == ListingStatus.DELISTED
        y_record = store.get_listing(y.listing_id)
        assert y_record.is_duplicate is True
        assert y_record.canonical_id == x.listing_id


# =============================================================================
# Delisting
# =============================================================================


class TestDelisting:
    def _seed(self, listing_store):
        return {
            ref: listing_store.upsert_listing(make_listing(ref=ref)).listing_id
            for ref in ("A", "B", "C")
        }

    def test_only_unseen_listings_are_delisted(self, listing_store, store):
        ids = self._seed(listing_store)

        count = listing_store.mark_listings_delisted("src-a", ["LA", "LC"])

        assert count == 1
        assert store.get_listing(ids["B"]).status == ListingStatus.DELISTED
        assert store.get_listing(ids["B"]).delisted_at == FIXED_NOW
        assert store.get_listing(ids["A"]).status == ListingStatus.ACTIVE
        assert store.get_listing(ids["C"]).status == ListingStatus.ACTIVE

    def test_second_identical_pass_changes_nothing(self, listing_store):
        self._seed(listing_store)

        listing_store.mark_listings_delisted("src-a", ["LA", "LC"])
        assert listing_store.mark_listings_delisted("src-a", ["LA", "LC"]) == 0

    def test_other_sources_are_untouched(self, listing_store, store):
        self._seed(listing_store)
        other = listing_store.upsert_listing(make_listing("src-b", ref="Z"))

        listing_store.mark_listings_delisted("src-a", [])

        assert store.get_listing(other.listing_id).status == ListingStatus.ACTIVE

    def test_duplicate_records_are_not_delisting_candidates(self, listing_store, store):
        listing_store.upsert_listing(make_listing("src-p", ref="x", address=ADDRESS))
        dup = listing_store.upsert_listing(make_listing("src-q", ref="y", address=ADDRESS))

        assert listing_store.mark_listings_delisted("src-q", []) == 0
        assert store.get_listing(dup.listing_id).status == ListingStatus.ACTIVE


# =============================================================================
# Conditional Writes
# =============================================================================


class RacingStore(MemoryIngestionStore):
    """Lets another writer bump a record just before our first conditional update."""

    def __init__(self):
        super().__init__()
        self.races_left = 1

    def update_listing(self, listing_id, changes, expected_version=None):
        if self.races_left and expected_version is not None:
            self.races_left -= 1
            super().update_listing(listing_id, {"description": "edited elsewhere"})
        return super().update_listing(listing_id, changes, expected_version)


class TestConditionalWrites:
    def test_lost_race_is_reapplied_not_overwritten(self, clock):
        store = RacingStore()
        listings = ListingStore(store, clock=clock)
        store.races_left = 0
        result = listings.upsert_listing(make_listing(ref=1, price=3000))

        store.races_left = 1
        listings.upsert_listing(make_listing(ref=1, price=2900))

        record = store.get_listing(result.listing_id)
        assert record.price == 2900
        assert record.description == "edited elsewhere"
        assert record.version == 3

    def test_stale_version_is_rejected(self, listing_store, store):
        result = listing_store.upsert_listing(make_listing(ref=1))

        with pytest.raises(ConcurrentUpdateError):
            store.update_listing(result.listing_id, {"title": "x"}, expected_version=7)

    def test_identity_fields_cannot_be_updated(self, listing_store, store):
        result = listing_store.upsert_listing(make_listing(ref=1))

        with pytest.raises(ValueError):
            store.update_listing(result.listing_id, {"first_seen_at": FIXED_NOW})

    def test_second_insert_for_same_key_is_rejected(self, store):
        record = ListingRecord.from_listing(make_listing(ref=1), seen_at=FIXED_NOW)
        store.insert_listing(record)

        clash = ListingRecord.from_listing(make_listing(ref=1), seen_at=FIXED_NOW)
        with pytest.raises(DuplicateListingError):
            store.insert_listing(clash)

    def test_update_of_unknown_id_returns_none(self, store):
        assert store.update_listing("missing", {"title": "x"}) is None


# =============================================================================
# Persistence
# =============================================================================


class CountingStore(MemoryIngestionStore):
    """Counts JSON file writes."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.saves = 0

    def _save_to_file(self) -> None:
        self.saves += 1
        super()._save_to_file()


class TestMemoryStorePersistence:
    def test_records_and_metrics_survive_reload(self, tmp_path, clock):
        path = tmp_path / "ingestion.json"
        store = MemoryIngestionStore(str(path))
        result = ListingStore(store, clock=clock).upsert_listing(make_listing(ref=1, price=2500))
        store.append_health_metric(
            SourceHealthMetric(source_id="src-a", recorded_at=FIXED_NOW, fetch_attempts=2)
        )

        reloaded = MemoryIngestionStore(str(path))

        record = reloaded.get_listing(result.listing_id)
        assert record.price == 2500
        assert record.first_seen_at == FIXED_NOW
        assert reloaded.find_listing("src-a", "L1").id == result.listing_id
        assert reloaded.read_health_metrics("src-a")[0].fetch_attempts == 2

    def test_batch_writes_the_file_once(self, tmp_path, clock):
        path = tmp_path / "ingestion.json"
        store = CountingStore(str(path))
        listing_store = ListingStore(store, clock=clock)

        with store.batch():
            for ref in range(5):
                listing_store.upsert_listing(make_listing(ref=ref))
            assert store.count() == 5
            assert not path.exists()

        assert store.saves == 1
        assert MemoryIngestionStore(str(path)).count() == 5

    def test_nested_batches_flush_on_outermost_exit(self, tmp_path, clock):
        store = CountingStore(str(tmp_path / "ingestion.json"))
        listing_store = ListingStore(store, clock=clock)

        with store.batch():
            listing_store.upsert_listing(make_listing(ref=1))
            with store.batch():
                listing_store.upsert_listing(make_listing(ref=2))
            assert store.saves == 0

        assert store.saves == 1

    def test_batch_without_writes_saves_nothing(self, tmp_path):
        store = CountingStore(str(tmp_path / "ingestion.json"))

        with store.batch():
            pass

        assert store.saves == 0

    def test_delisting_saves_once(self, tmp_path, clock):
        store = CountingStore(str(tmp_path / "ingestion.json"))
        listing_store = ListingStore(store, clock=clock)
        with store.batch():
            for ref in range(4):
                listing_store.upsert_listing(make_listing(ref=ref))
        store.saves = 0

        assert listing_store.mark_listings_delisted("src-a", []) == 4
        assert store.saves == 1

    def test_unreadable_file_starts_empty(self, tmp_path):
        path = tmp_path / "ingestion.json"
        path.write_text("{not json")

        assert MemoryIngestionStore(str(path)).count() == 0

    def test_health_metrics_read_latest_first(self, store, clock):
        for attempts in (1, 2, 3):
            store.append_health_metric(
                SourceHealthMetric(source_id="src-a", recorded_at=clock(), fetch_attempts=attempts)
            )
            clock.advance(minutes=1)

        assert [m.fetch_attempts for m in store.read_health_metrics("src-a")] == [3, 2, 1]
        assert len(store.read_health_metrics("src-a", limit=2)) == 2

    def test_returned_records_are_detached(self, listing_store, store):
        result = listing_store.upsert_listing(make_listing(ref=1, images=("a.jpg",)))

        record = store.get_listing(result.listing_id)
        record.images.append("tampered.jpg")

        assert store.get_listing(result.listing_id).images == ["a.jpg"]


# =============================================================================
# Queries and Stats
# =============================================================================


class TestQueries:
    @pytest.fixture
    def populated(self, listing_store, clock):
        listing_store.upsert_listing(make_listing("src-a", ref=1, price=2000, beds=0, borough="Brooklyn"))
        clock.advance(minutes=1)
        listing_store.upsert_listing(make_listing("src-a", ref=2, price=3500, beds=2, borough="Manhattan", no_fee=True))
        clock.advance(minutes=1)
        listing_store.upsert_listing(make_listing("src-b", ref=3, price=2800, beds=1, borough="Brooklyn"))
        clock.advance(minutes=1)
        # Duplicate of ref 1 from another source
        listing_store.upsert_listing(
            make_listing("src-b", ref=4, price=2010, beds=0, address="1 Test Street")
        )
        return listing_store

    def test_duplicates_are_excluded(self, populated):
        assert len(populated.query_listings()) == 3

    def test_filters_combine(self, populated):
        results = populated.query_listings(ListingQuery(borough="brooklyn", max_price=2500))
        assert [r.source_listing_id for r in results] == ["L1"]

    def test_no_fee_and_min_beds(self, populated):
        results = populated.query_listings(ListingQuery(no_fee=True, min_beds=1))
        assert [r.source_listing_id for r in results] == ["L2"]

    def test_sort_and_pagination(self, populated):
        page = populated.query_listings(ListingQuery(sort="price_asc", limit=2, offset=1))
        assert [r.price for r in page] == [2800, 3500]

    def test_newest_first_by_default(self, populated):
        assert [r.source_listing_id for r in populated.query_listings()] == ["L3", "L2", "L1"]

    def test_delisted_hidden_unless_requested(self, populated):
        populated.mark_listings_delisted("src-b", [])

        active = populated.query_listings()
        delisted = populated.query_listings(ListingQuery(status=ListingStatus.DELISTED))
        everything = populated.query_listings(ListingQuery(status=None))

        assert len(active) == 2
        assert [r.source_listing_id for r in delisted] == ["L3"]
        assert len(everything) == 3

    def test_count_active_by_source_counts_canonical_only(self, populated):
        assert populated.count_active_by_source() == {"src-a": 2, "src-b": 1}

    def test_stats(self, populated, clock):
        stats = populated.stats()

        assert stats.total == 4
        assert stats.duplicates == 1
        assert stats.canonical == 3
        assert stats.active == 4
        assert stats.new_last_24h == 4
        assert stats.dedup_rate == 0.25

        clock.advance(days=2)
        assert populated.stats().seen_last_24h == 0
