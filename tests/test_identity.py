import pytest

from storetrust.models import StoreMetrics
from storetrust.services.heuristic import AnalysisInput, heuristic_analyze_review
from storetrust.services.identity import (
    StoreCandidate,
    StoreValidationError,
    backfill_store_geo,
    create_store,
    dedupe_stores,
    group_duplicates,
    merge_group,
    select_canonical,
)
from tests.fakes import FakePlaces, InMemoryRepository, make_store, place

GANGNAM_LONG = "서울특별시 강남구 테헤란로 123 1층"
GANGNAM_SHORT = "서울 강남구 테헤란로 123"


def _heuristic(review):
    return heuristic_analyze_review(AnalysisInput(rating=review.rating, content=review.content))


async def _seoul_kitchen_pair(repo: InMemoryRepository):
    canonical = await make_store(
        repo,
        "Seoul Kitchen",
        address=GANGNAM_LONG,
        latitude=37.5,
        longitude=127.03,
        external_place_id="place-sk",
        external_review_count=40,
    )
    duplicate = await make_store(repo, "seoul kitchen", address=GANGNAM_SHORT)
    return canonical, duplicate


# ============================================================
# Canonical selection / grouping
# ============================================================


@pytest.mark.asyncio
async def test_select_canonical_prefers_richer_records():
    repo = InMemoryRepository()
    bare = await make_store(repo, "A")
    with_coords = await make_store(repo, "A", latitude=37.5, longitude=127.0)
    with_place = await make_store(repo, "A", latitude=37.5, longitude=127.0, external_place_id="p1")
    most_reviewed = await make_store(
        repo, "A", latitude=37.5, longitude=127.0, external_place_id="p2", external_review_count=50
    )

    assert select_canonical([bare, with_coords]) is with_coords
    assert select_canonical([bare, with_coords, with_place]) is with_place
    assert select_canonical([bare, with_coords, with_place, most_reviewed]) is most_reviewed


@pytest.mark.asyncio
async def test_select_canonical_breaks_ties_by_oldest_id():
    repo = InMemoryRepository()
    first = await make_store(repo, "Twin", external_rating=4.0)
    second = await make_store(repo, "Twin", external_rating=4.0)
    assert select_canonical([second, first]) is first

    higher = await make_store(repo, "Twin", external_rating=4.5)
    assert select_canonical([first, second, higher]) is higher


def test_select_canonical_rejects_empty_group():
    with pytest.raises(ValueError):
        select_canonical([])


@pytest.mark.asyncio
async def test_group_duplicates_pages_through_all_stores():
    repo = InMemoryRepository()
    canonical, duplicate = await _seoul_kitchen_pair(repo)
    await make_store(repo, "Other Place", address="서울 마포구 양화로 45")
    await make_store(repo, "No Address")
    for i in range(25):
        await make_store(repo, f"Filler {i}", address=f"서울 종로구 율곡로 {i + 1}")

    scanned, groups = await group_duplicates(repo, page_size=10)
    assert scanned == 29
    assert len(groups) == 1
    assert groups[0].store_ids == [canonical.id, duplicate.id]
    assert groups[0].canonical is canonical
    assert groups[0].source_ids == [duplicate.id]


# ============================================================
# Merge
# ============================================================


@pytest.mark.asyncio
async def test_dedupe_collapses_seoul_kitchen_and_keeps_review_union():
    repo = InMemoryRepository()
    canonical, duplicate = await _seoul_kitchen_pair(repo)
    other = await make_store(repo, "Other Place", address="서울 마포구 양화로 45")

    r1 = await repo.add_review(store_id=canonical.id, source="external", rating=5, content="맛있어요 직원 친절")
    r2 = await repo.add_review(store_id=canonical.id, source="inapp", rating=4, content="가격 대비 양 많음")
    r3 = await repo.add_review(store_id=duplicate.id, source="inapp", rating=3, content="대기 시간이 길어요")

    await repo.add_analysis(r3, _heuristic(r3))
    await repo.add_user_review(store_id=duplicate.id, rating=3.5, food="good")
    repo.metrics[duplicate.id] = StoreMetrics(store_id=duplicate.id, review_count=1)
    await repo.put_snapshot(duplicate.id, {"x": 1}, repo.clock(), repo.clock())
    await repo.put_snapshot(canonical.id, {"x": 2}, repo.clock(), repo.clock())

    stats = await dedupe_stores(repo_factory=repo.factory, use_lock=False)

    assert stats.groups == 1
    assert stats.merged_groups == 1
    assert stats.removed_stores == 1
    assert stats.repointed_rows == 3
    assert stats.errors == []
    assert set(repo.stores) == {canonical.id, other.id}
    assert {r.id for r in repo.reviews.values() if r.store_id == canonical.id} == {r1.id, r2.id, r3.id}
    assert all(a.store_id == canonical.id for a in repo.analyses.values())
    assert all(u.store_id == canonical.id for u in repo.user_reviews.values())
    assert repo.snapshots == {}
    assert duplicate.id not in repo.metrics
    assert repo.metrics[canonical.id].review_count == 3
    assert repo.metrics[canonical.id].inapp_review_count == 2


@pytest.mark.asyncio
async def test_dedupe_is_idempotent():
    repo = InMemoryRepository()
    canonical, duplicate = await _seoul_kitchen_pair(repo)
    await repo.add_review(store_id=duplicate.id, source="inapp", rating=4, content="좋아요 재방문")

    first = await dedupe_stores(repo_factory=repo.factory, use_lock=False)
    stores_after_first = set(repo.stores)
    reviews_after_first = {r.id: r.store_id for r in repo.reviews.values()}

    second = await dedupe_stores(repo_factory=repo.factory, use_lock=False)
    assert first.merged_groups == 1
    assert second.groups == 0
    assert second.removed_stores == 0
    assert set(repo.stores) == stores_after_first
    assert {r.id: r.store_id for r in repo.reviews.values()} == reviews_after_first


@pytest.mark.asyncio
async def test_merge_group_twice_is_a_noop():
    repo = InMemoryRepository()
    canonical, duplicate = await _seoul_kitchen_pair(repo)
    await repo.add_review(store_id=duplicate.id, source="inapp", rating=4, content="좋아요 재방문")
    _, groups = await group_duplicates(repo)

    first = await merge_group(repo, groups[0])
    second = await merge_group(repo, groups[0])
    assert first.removed_stores == 1
    assert second.removed_stores == 0
    assert second.repointed_rows == 0
    assert set(repo.stores) == {canonical.id}


@pytest.mark.asyncio
async def test_dry_run_writes_nothing():
    repo = InMemoryRepository()
    canonical, duplicate = await _seoul_kitchen_pair(repo)

    stats = await dedupe_stores(dry_run=True, repo_factory=repo.factory)
    assert stats.dry_run is True
    assert stats.groups == 1
    assert stats.preview[0]["canonicalId"] == canonical.id
    assert stats.preview[0]["sourceIds"] == [duplicate.id]
    assert set(repo.stores) == {canonical.id, duplicate.id}


@pytest.mark.asyncio
async def test_missing_table_step_is_skipped_and_merge_completes():
    repo = InMemoryRepository(missing_tables={"user_reviews"})
    canonical, duplicate = await _seoul_kitchen_pair(repo)
    review = await repo.add_review(store_id=duplicate.id, source="inapp", rating=5, content="메뉴 다 맛있어요")

    stats = await dedupe_stores(repo_factory=repo.factory, use_lock=False)
    assert stats.merged_groups == 1
    assert stats.errors == []
    assert any(step.startswith("user_reviews.store_id") for step in stats.skipped_steps)
    assert repo.reviews[review.id].store_id == canonical.id
    assert set(repo.stores) == {canonical.id}


@pytest.mark.asyncio
async def test_failing_group_does_not_abort_batch():
    repo = InMemoryRepository()
    canonical, duplicate = await _seoul_kitchen_pair(repo)
    cafe = await make_store(repo, "Cafe Onion", address="서울 성동구 아차산로9길 8")
    cafe_dup = await make_store(repo, "cafe onion", address="서울특별시 성동구 아차산로9길 8 2층")
    repo.fail_updates_for = {duplicate.id}

    stats = await dedupe_stores(repo_factory=repo.factory, use_lock=False)

    assert stats.groups == 2
    assert stats.merged_groups == 1
    assert len(stats.errors) == 1
    assert stats.errors[0]["storeIds"] == [canonical.id, duplicate.id]
    assert cafe_dup.id not in repo.stores
    assert cafe.id in repo.stores
    assert duplicate.id in repo.stores


@pytest.mark.asyncio
async def test_max_groups_caps_work():
    repo = InMemoryRepository()
    await _seoul_kitchen_pair(repo)
    await make_store(repo, "Cafe Onion", address="서울 성동구 아차산로9길 8")
    await make_store(repo, "cafe onion", address="서울특별시 성동구 아차산로9길 8 2층")

    stats = await dedupe_stores(max_groups=1, repo_factory=repo.factory, use_lock=False)
    assert stats.groups == 1
    assert stats.merged_groups == 1
    assert len(repo.stores) == 3


# ============================================================
# Real-time prevention
# ============================================================


@pytest.mark.asyncio
async def test_create_store_inserts_new_store():
    repo = InMemoryRepository()
    result = await create_store(repo, StoreCandidate(name="  New Place  ", address=" 서울 중구 세종대로 110 "))
    assert result.created is True
    assert result.matched_by is None
    assert result.store.name == "New Place"
    assert result.store.address == "서울 중구 세종대로 110"


@pytest.mark.asyncio
async def test_prevention_matches_by_place_id_first():
    repo = InMemoryRepository()
    by_place = await make_store(repo, "Totally Different", external_place_id="place-1")
    await make_store(repo, "Seoul Kitchen", address=GANGNAM_LONG)

    result = await create_store(
        repo, StoreCandidate(name="Seoul Kitchen", address=GANGNAM_LONG, external_place_id="place-1")
    )
    assert result.created is False
    assert result.matched_by == "place_id"
    assert result.store is by_place


@pytest.mark.asyncio
async def test_prevention_exact_then_normalized():
    repo = InMemoryRepository()
    existing = await make_store(repo, "Seoul Kitchen", address=GANGNAM_LONG)

    exact = await create_store(repo, StoreCandidate(name="Seoul Kitchen", address=GANGNAM_LONG))
    assert (exact.matched_by, exact.store) == ("exact", existing)

    normalized = await create_store(repo, StoreCandidate(name="seoul kitchen.", address=GANGNAM_SHORT))
    assert (normalized.matched_by, normalized.store) == ("normalized", existing)
    assert len(repo.stores) == 1


@pytest.mark.asyncio
async def test_prevention_matches_name_differing_only_by_inner_punctuation():
    repo = InMemoryRepository()
    first = await create_store(repo, StoreCandidate(name="B.B.Q", address=GANGNAM_SHORT))
    second = await create_store(repo, StoreCandidate(name="BBQ", address=GANGNAM_LONG))

    assert second.created is False
    assert second.matched_by == "normalized"
    assert second.store is first.store
    assert len(repo.stores) == 1


@pytest.mark.asyncio
async def test_normalized_match_is_not_hidden_by_common_name_tokens():
    repo = InMemoryRepository()
    for i in range(250):
        await make_store(repo, f"Kitchen {i}", address=f"서울 마포구 양화로 {i + 1}")
    target = await make_store(repo, "Seoul-Kitchen", address=GANGNAM_LONG)

    result = await create_store(repo, StoreCandidate(name="seoulkitchen", address=GANGNAM_SHORT))
    assert (result.matched_by, result.store) == ("normalized", target)


@pytest.mark.asyncio
async def test_renamed_store_is_matched_by_its_new_name():
    repo = InMemoryRepository()
    store = await make_store(repo, "Old Name", address=GANGNAM_LONG)
    await repo.update_store(store, name="Seoul Kitchen")

    result = await create_store(repo, StoreCandidate(name="seoul kitchen", address=GANGNAM_SHORT))
    assert (result.matched_by, result.store) == ("normalized", store)


@pytest.mark.asyncio
async def test_prevention_geo_within_radius():
    repo = InMemoryRepository()
    existing = await make_store(repo, "Seoul Kitchen", latitude=37.5, longitude=127.0)

    near = await create_store(repo, StoreCandidate(name="SeoulKitchen", latitude=37.5003, longitude=127.0))
    assert near.matched_by == "geo"
    assert near.store is existing

    far = await create_store(repo, StoreCandidate(name="Seoul Kitchen", latitude=37.502, longitude=127.0))
    assert far.created is True

    other_name = await create_store(repo, StoreCandidate(name="Busan Kitchen", latitude=37.5001, longitude=127.0))
    assert other_name.created is True


@pytest.mark.asyncio
async def test_match_backfills_missing_coordinates():
    repo = InMemoryRepository()
    existing = await make_store(repo, "Seoul Kitchen", address=GANGNAM_LONG)

    result = await create_store(
        repo, StoreCandidate(name="Seoul Kitchen", address=GANGNAM_LONG, latitude=37.5, longitude=127.03)
    )
    assert result.created is False
    assert (existing.latitude, existing.longitude) == (37.5, 127.03)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "candidate",
    [
        StoreCandidate(name=""),
        StoreCandidate(name="   "),
        StoreCandidate(name="Half Geo", latitude=37.5),
        StoreCandidate(name="Bad Lat", latitude=123.0, longitude=127.0),
        StoreCandidate(name="Bad Rating", external_rating=7.5),
    ],
)
async def test_invalid_candidates_are_rejected_without_writes(candidate):
    repo = InMemoryRepository()
    with pytest.raises(StoreValidationError):
        await create_store(repo, candidate)
    assert repo.stores == {}


# ============================================================
# Geo backfill
# ============================================================


@pytest.mark.asyncio
async def test_backfill_store_geo():
    repo = InMemoryRepository()
    found = await make_store(repo, "Seoul Kitchen", address=GANGNAM_LONG)
    missing = await make_store(repo, "Nowhere Diner")
    located = await make_store(repo, "Already There", latitude=37.1, longitude=127.1)
    places = FakePlaces(
        places={"Seoul Kitchen": place("place-sk", "Seoul Kitchen", 4.4, 210, 37.5, 127.03)}
    )

    stats = await backfill_store_geo(repo, places, limit=10)

    assert stats.scanned == 2
    assert stats.updated == 1
    assert stats.not_found == 1
    assert (found.latitude, found.longitude) == (37.5, 127.03)
    assert found.external_place_id == "place-sk"
    assert found.external_review_count == 210
    assert missing.latitude is None
    assert located.latitude == 37.1
