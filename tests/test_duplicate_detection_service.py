"""Tests for duplicate detection and resolution."""

import random
from datetime import timedelta

import pytest

from services.duplicate_detection_service import (
    DuplicateDetector,
    address_similarity,
    details_similarity,
    normalize_address_text,
    price_similarity,
    string_similarity,
    suggest_action,
)
from services.models import Media, ResolvedAction, SuggestedAction
from services.property_store import InMemoryPropertyStore
from tests.factories import UPDATED, make_record


@pytest.fixture
def detector() -> DuplicateDetector:
    return DuplicateDetector()


class FailingResolveStore(InMemoryPropertyStore):
    async def mark_duplicate_resolved(self, candidate_id, action):
        raise RuntimeError("database unavailable")


class TestSimilarity:
    """Field-level similarity helpers."""

    def test_string_similarity_bounds(self) -> None:
        assert string_similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)
        assert string_similarity("abc", "abc") == 1.0
        assert string_similarity("", "abc") == 0.0
        assert 0.0 < string_similarity("main st", "maine st") < 1.0

    def test_address_normalisation(self) -> None:
        assert normalize_address_text("123 Main Street, Apt. 4") == "123 main st apt 4"
        assert normalize_address_text("  North  Oak AVENUE ") == "n oak ave"
        assert normalize_address_text(None) == ""

    def test_address_score_is_a_plain_mean_of_components(self) -> None:
        first = make_record(street_number="9", street_name="Elm Rd")
        second = make_record(street_number="123", street_name="Main St")

        street = string_similarity("9 elm rd", "123 main st")

        assert address_similarity(first, second) == pytest.approx((street + 3) / 4)
        assert address_similarity(first, make_record(street_name="", zip_code="")) == 1.0

    def test_price_similarity(self) -> None:
        assert price_similarity(100_000, 100_000) == 1.0
        assert price_similarity(100_000, 80_000) == pytest.approx(0.6)
        assert price_similarity(100_000, 40_000) == 0.0
        assert price_similarity(0, 100_000) == 0.0

    def test_details_similarity_skips_missing_factors(self) -> None:
        bare = make_record(bedrooms=0, bathrooms=0, square_feet=0, year_built=0)
        year_only = make_record(bedrooms=0, bathrooms=0, square_feet=0, year_built=1996)

        assert details_similarity(bare, make_record()) == 0.0
        assert details_similarity(year_only, make_record()) == 1.0
        assert details_similarity(make_record(), make_record(bedrooms=4, square_feet=1000)) == 0.5

    def test_suggest_action(self) -> None:
        assert suggest_action(0.97, ["a", "b"]) == SuggestedAction.MERGE
        assert suggest_action(0.9, []) == SuggestedAction.MERGE
        assert suggest_action(0.8, ["a", "b", "c"]) == SuggestedAction.KEEP_BOTH


class TestCompare:
    """Pairwise scoring."""

    def test_abbreviated_street_is_a_duplicate(self, detector) -> None:
        first = make_record("MLS-1", street_name="Main St", price=250_000)
        second = make_record("MLS-2", street_name="Main Street", price=252_000)

        candidate = detector.compare(first, second)

        assert candidate is not None
        assert candidate.confidence == pytest.approx(0.995, abs=0.001)
        assert candidate.address_similarity == 1.0
        assert len(candidate.match_reasons) == 3
        assert candidate.suggested_action == SuggestedAction.MERGE

    def test_abbreviated_street_with_close_square_footage(self, detector) -> None:
        first = make_record("MLS-1", street_name="Main St", price=250_000, square_feet=1500)
        second = make_record("MLS-2", street_name="Main Street", price=252_000, square_feet=1520)

        candidates = detector.find_duplicates([first, second])

        assert len(candidates) == 1
        assert candidates[0].confidence >= 0.9
        assert candidates[0].suggested_action == SuggestedAction.MERGE

    def test_identical_listings_reach_threshold(self, detector) -> None:
        candidate = detector.compare(make_record("A-1"), make_record("B-1", provider_id="other_mls"))

        assert candidate is not None
        assert candidate.confidence >= 0.85

    def test_same_mls_id_is_not_a_duplicate(self, detector) -> None:
        assert detector.compare(make_record(" mls-1 "), make_record("MLS-1", provider_id="other")) is None

    def test_different_properties_are_ignored(self, detector) -> None:
        other = make_record("MLS-2", street_number="9", street_name="Elm Rd", zip_code="62711", price=410_000)

        assert detector.compare(make_record("MLS-1"), other) is None

    def test_candidate_id_is_order_independent(self, detector) -> None:
        first, second = make_record("MLS-1"), make_record("MLS-2")

        assert detector.compare(first, second).id == detector.compare(second, first).id

    def test_missing_zip_is_left_out_of_address_score(self, detector) -> None:
        candidate = detector.compare(make_record("MLS-1"), make_record("MLS-2", zip_code=""))

        assert candidate.address_similarity == 1.0


class TestMergeProposal:
    """merge_data built for each candidate."""

    def test_newer_record_is_the_base_and_gaps_are_filled(self, detector) -> None:
        older = make_record("MLS-1", agent_name="Jane Agent")
        newer = make_record("MLS-2", agent_name="", description="", updated=UPDATED + timedelta(days=3))

        merged = detector.compare(older, newer).merge_data

        assert merged.mls_id == "MLS-2"
        assert merged.agent.name == "Jane Agent"
        assert merged.details.description == older.details.description
        assert merged.dates.updated > newer.dates.updated

    def test_media_union_keeps_one_primary(self, detector) -> None:
        shared = "https://photos.example.com/shared.jpg"
        first = make_record("MLS-1", media=[
            Media(url=shared, is_primary=True),
            Media(url="https://photos.example.com/a2.jpg"),
        ])
        second = make_record("MLS-2", updated=UPDATED + timedelta(days=1), media=[
            Media(url=shared),
            Media(url="https://photos.example.com/b2.jpg", is_primary=True),
        ])

        merged = detector.compare(first, second).merge_data

        urls = [m.url for m in merged.media]
        assert len(urls) == len(set(urls)) == 3
        assert sum(1 for m in merged.media if m.is_primary) == 1
        assert merged.media[1].is_primary is True

    def test_tie_breaks_on_completeness(self, detector) -> None:
        sparse = make_record("MLS-1", agent_name="", media=[])
        full = make_record("MLS-2")

        assert detector.compare(sparse, full).merge_data.mls_id == "MLS-2"


class TestFindDuplicates:
    """Batch detection."""

    def test_results_sorted_by_confidence_then_input_order(self, detector) -> None:
        base = make_record("MLS-1")
        near = make_record("MLS-2", street_name="Main Street", price=252_000)
        exact = make_record("MLS-3")

        candidates = detector.find_duplicates([base, near, exact])

        pairs = [(c.source_record.mls_id, c.target_record.mls_id) for c in candidates]
        assert pairs == [("MLS-1", "MLS-3"), ("MLS-1", "MLS-2"), ("MLS-2", "MLS-3")]
        confidences = [c.confidence for c in candidates]
        assert confidences == sorted(confidences, reverse=True)

    def test_blocking_finds_every_pair_brute_force_finds(self, detector) -> None:
        rng = random.Random(7)
        streets = ["Main St", "Main Street", "Oak Ave", "Oak Avenue", "Elm Rd", "Pine Ln"]
        zips = ["62704", "62711", "73301", ""]
        states = ["IL", "TX", ""]
        records = []
        for index in range(60):
            records.append(make_record(
                f"MLS-{index}",
                street_number=str(rng.choice([100, 101, 123])),
                street_name=rng.choice(streets),
                state=rng.choice(states),
                zip_code=rng.choice(zips),
                price=rng.choice([180_000, 199_000, 200_000, 240_000, 250_000, 260_000]),
                bedrooms=rng.choice([2, 3]),
                square_feet=rng.choice([1400, 1500]),
            ))

        blocked = {c.id for c in detector.find_duplicates(records)}
        brute = set()
        for i in range(len(records)):
            for j in range(i + 1, len(records)):
                candidate = detector.compare(records[i], records[j])
                if candidate:
                    brute.add(candidate.id)

        assert brute
        assert blocked == brute

    @pytest.mark.asyncio
    async def test_async_compares_new_records_against_existing(self, detector) -> None:
        new = make_record("MLS-1")
        existing = [make_record("MLS-1"), make_record("MLS-9"), make_record("MLS-8", zip_code="10001", state="NY")]

        candidates = await detector.find_duplicates_async([new], existing=existing)

        assert len(candidates) == 1
        assert candidates[0].target_record.mls_id == "MLS-9"

    @pytest.mark.asyncio
    async def test_async_detection_can_be_cancelled(self) -> None:
        detector = DuplicateDetector(batch_size=1)
        records = [make_record(f"MLS-{i}") for i in range(4)]
        checks = []

        def should_cancel() -> bool:
            checks.append(1)
            return len(checks) > 2

        candidates = await detector.find_duplicates_async(records, should_cancel=should_cancel)

        assert [(c.source_record.mls_id, c.target_record.mls_id) for c in candidates] == [
            ("MLS-0", "MLS-1"), ("MLS-0", "MLS-2")]


class TestResolution:
    """Applying resolutions against a store."""

    @pytest.fixture
    def populated(self, store):
        first, second = make_record("MLS-1"), make_record("MLS-2", street_name="Main Street")
        store.properties[first.record_id] = first
        store.properties[second.record_id] = second
        store.property_meta[first.record_id] = {'sequence': 1, 'merged_into': None}
        store.property_meta[second.record_id] = {'sequence': 2, 'merged_into': None}
        return first, second

    @pytest.mark.asyncio
    async def test_merge_upserts_and_marks_the_other_record(self, store, populated) -> None:
        first, second = populated
        detector = DuplicateDetector(store=store)
        candidate = detector.compare(first, second)

        result = await detector.resolve_duplicate(candidate)

        assert result.success is True
        assert result.action == ResolvedAction.MERGED
        assert result.already_resolved is False
        assert store.property_meta[second.record_id]['merged_into'] == first.record_id
        assert store.candidates[candidate.id].resolved is True
        remaining = await store.list_recent_properties()
        assert [r.mls_id for r in remaining] == ["MLS-1"]

    @pytest.mark.asyncio
    async def test_resolution_is_idempotent(self, store, populated) -> None:
        first, second = populated
        detector = DuplicateDetector(store=store)
        await detector.resolve_duplicate(detector.compare(first, second))
        history_before = list(store.history)
        properties_before = dict(store.properties)

        again = await detector.resolve_duplicate(detector.compare(first, second), SuggestedAction.KEEP_BOTH)

        assert again.success is True
        assert again.already_resolved is True
        assert again.action == ResolvedAction.MERGED
        assert store.history == history_before
        assert store.properties.keys() == properties_before.keys()

    @pytest.mark.asyncio
    async def test_resolving_the_same_object_twice(self, store, populated) -> None:
        detector = DuplicateDetector(store=store)
        candidate = detector.compare(*populated)

        await detector.resolve_duplicate(candidate, SuggestedAction.SKIP)
        second = await detector.resolve_duplicate(candidate)

        assert second.already_resolved is True
        assert second.action == ResolvedAction.SKIPPED

    @pytest.mark.asyncio
    async def test_keep_both_leaves_properties_alone(self, store, populated) -> None:
        first, second = populated
        detector = DuplicateDetector(store=store)

        result = await detector.resolve_duplicate(detector.compare(first, second), SuggestedAction.KEEP_BOTH)

        assert result.action == ResolvedAction.KEPT_BOTH
        assert store.property_meta[second.record_id]['merged_into'] is None

    @pytest.mark.asyncio
    async def test_unknown_action_is_reported(self, detector) -> None:
        candidate = detector.compare(make_record("MLS-1"), make_record("MLS-2"))

        result = await detector.resolve_duplicate(candidate, "explode")

        assert result.success is False
        assert "Unknown action" in result.error_message
        assert candidate.resolved is False

    @pytest.mark.asyncio
    async def test_store_failure_is_reported_not_raised(self) -> None:
        detector = DuplicateDetector(store=FailingResolveStore())
        candidate = detector.compare(make_record("MLS-1"), make_record("MLS-2"))

        result = await detector.resolve_duplicate(candidate, SuggestedAction.KEEP_BOTH)

        assert result.success is False
        assert result.error_message == "database unavailable"
        assert candidate.resolved is False

    @pytest.mark.asyncio
    async def test_batch_resolution_continues_after_failure(self, detector) -> None:
        good = detector.compare(make_record("MLS-1"), make_record("MLS-2"))
        bad = detector.compare(make_record("MLS-3"), make_record("MLS-4"))

        results = await detector.resolve_duplicates([good, bad], "explode")
        assert [r.success for r in results] == [False, False]

        results = await detector.resolve_duplicates([good, bad])
        assert [r.success for r in results] == [True, True]

    @pytest.mark.asyncio
    async def test_resolve_by_id(self, store) -> None:
        detector = DuplicateDetector(store=store)
        candidate = detector.compare(make_record("MLS-1"), make_record("MLS-2"))
        assert await detector.save_candidates([candidate]) == 1
        assert await detector.save_candidates([candidate]) == 0

        result = await detector.resolve_duplicate_by_id(candidate.id, SuggestedAction.KEEP_BOTH)
        missing = await detector.resolve_duplicate_by_id("dup_unknown")

        assert result.success is True
        assert missing.success is False
        assert missing.error_message == "Duplicate candidate not found"
        assert await detector.get_pending_duplicates() == []

    @pytest.mark.asyncio
    async def test_pending_duplicates_ordered_by_confidence(self, store) -> None:
        detector = DuplicateDetector(store=store)
        exact = detector.compare(make_record("MLS-1"), make_record("MLS-2"))
        near = detector.compare(make_record("MLS-3"), make_record("MLS-4", street_name="Main Street", price=252_000))
        await detector.save_candidates([near, exact])

        pending = await detector.get_pending_duplicates()

        assert [c.id for c in pending] == [exact.id, near.id]

    @pytest.mark.asyncio
    async def test_without_store(self, detector) -> None:
        assert await detector.save_candidates([]) == 0
        assert await detector.get_pending_duplicates() == []
        result = await detector.resolve_duplicate_by_id("dup_x")
        assert result.success is False
