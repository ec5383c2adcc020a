import pytest

from storetrust.services.aggregation import refresh_store_summary
from storetrust.services.peer_ranking import (
    PeerEntry,
    compute_peer_rank,
    infer_category,
    rank_entries,
    reliability_label,
)
from tests.fakes import FakePlaces, InMemoryRepository, make_store, place

LAT, LNG = 37.5, 127.0


def test_infer_category():
    assert infer_category("Onion Coffee Roasters") == "cafe"
    assert infer_category("성수 베이커리 카페") == "cafe"
    assert infer_category("Seoul Kitchen") == "restaurant"
    assert infer_category("Steak House") == "restaurant"
    # one hit each -> tie goes to restaurant
    assert infer_category("Cafe Pizza") == "restaurant"
    assert infer_category("") == "restaurant"


@pytest.mark.parametrize(
    "rating,count,expected",
    [
        (None, 100, "insufficient_sample"),
        (4.95, 39, "possible_overstatement"),
        (4.85, 19, "possible_overstatement"),
        (4.75, 9, "possible_overstatement"),
        (4.2, 5, "insufficient_sample"),
        (4.9, 400, "stable"),
        (4.5, 150, "stable"),
        (4.85, 150, "ordinary"),
        (4.1, 50, "ordinary"),
    ],
)
def test_reliability_label(rating, count, expected):
    assert reliability_label(rating, count) == expected


def test_rank_entries_orders_by_rating_then_count():
    subject = PeerEntry(name="S", rating=4.5, review_count=100, distance_m=0, store_id=1, is_subject=True)
    entries = [
        subject,
        PeerEntry(name="A", rating=4.5, review_count=200, distance_m=10, store_id=2),
        PeerEntry(name="B", rating=4.7, review_count=10, distance_m=10, store_id=3),
        PeerEntry(name="C", rating=4.1, review_count=999, distance_m=10, store_id=4),
    ]
    ordered, rank = rank_entries(entries)
    assert [e.name for e in ordered] == ["B", "A", "S", "C"]
    assert rank == 3


async def _stable_restaurant(repo, name, rating, count, offset):
    return await make_store(
        repo,
        name,
        latitude=LAT + offset,
        longitude=LNG,
        external_rating=rating,
        external_review_count=count,
    )


@pytest.mark.asyncio
async def test_rank_two_of_five_is_top_forty_percent():
    repo = InMemoryRepository()
    subject = await _stable_restaurant(repo, "Subject Grill", 4.5, 400, 0.0)
    await _stable_restaurant(repo, "Peer One", 4.7, 500, 0.001)
    await _stable_restaurant(repo, "Peer Two", 4.4, 350, 0.002)
    await _stable_restaurant(repo, "Peer Three", 4.3, 320, 0.003)
    await _stable_restaurant(repo, "Peer Four", 4.2, 310, 0.004)
    # excluded: other category, other label, unrated, too far
    await _stable_restaurant(repo, "Peer Cafe Coffee", 4.9, 900, 0.001)
    await _stable_restaurant(repo, "Tiny Sample", 4.0, 12, 0.001)
    await make_store(repo, "Unrated", latitude=LAT + 0.001, longitude=LNG)
    await _stable_restaurant(repo, "Far Away", 4.9, 900, 0.05)
    places = FakePlaces()

    result = await compute_peer_rank(repo, subject, places)

    assert result is not None
    assert result.category == "restaurant"
    assert result.label == "stable"
    assert (result.rank, result.total, result.top_percent) == (2, 5, 40)
    assert result.source == "local"
    assert places.calls["search_nearby"] == 0
    assert [p.name for p in result.peers][:2] == ["Peer One", "Subject Grill"]


@pytest.mark.asyncio
async def test_sparse_local_peers_fall_back_to_nearby_search():
    repo = InMemoryRepository()
    subject = await _stable_restaurant(repo, "Subject Grill", 4.5, 400, 0.0)
    subject.external_place_id = "place-subject"
    await _stable_restaurant(repo, "Peer One", 4.7, 500, 0.001)
    places = FakePlaces(
        nearby=[
            place("place-subject", "Subject Grill", 4.5, 400, LAT, LNG),
            place("ext-1", "Ext Noodles", 4.6, 330, LAT + 0.002, LNG),
            place("ext-2", "Ext Ribs", 4.0, 700, LAT + 0.003, LNG),
            place("ext-3", "Ext Hyped", 4.8, 5, LAT + 0.001, LNG),
            place("ext-4", "Ext Unrated", None, 0, LAT + 0.001, LNG),
        ]
    )

    result = await compute_peer_rank(repo, subject, places)

    assert places.calls["search_nearby"] == 1
    assert result.source == "local+external"
    assert [p.name for p in result.peers] == ["Peer One", "Ext Noodles", "Subject Grill", "Ext Ribs"]
    assert (result.rank, result.total, result.top_percent) == (3, 4, 75)


@pytest.mark.asyncio
async def test_nearby_failure_keeps_local_ranking():
    repo = InMemoryRepository()
    subject = await _stable_restaurant(repo, "Subject Grill", 4.5, 400, 0.0)
    await _stable_restaurant(repo, "Peer One", 4.7, 500, 0.001)

    result = await compute_peer_rank(repo, subject, FakePlaces(fail_nearby=True))

    assert result.source == "local"
    assert (result.rank, result.total, result.top_percent) == (2, 2, 100)


@pytest.mark.asyncio
async def test_lone_subject_ranks_first():
    repo = InMemoryRepository()
    subject = await _stable_restaurant(repo, "Subject Grill", 4.5, 400, 0.0)
    result = await compute_peer_rank(repo, subject, places=None)
    assert (result.rank, result.total, result.top_percent) == (1, 1, 100)


@pytest.mark.asyncio
async def test_no_coordinates_or_rating_gives_no_rank():
    repo = InMemoryRepository()
    no_coords = await make_store(repo, "Nowhere", external_rating=4.5, external_review_count=100)
    unrated = await make_store(repo, "Unrated", latitude=LAT, longitude=LNG)
    assert await compute_peer_rank(repo, no_coords) is None
    assert await compute_peer_rank(repo, unrated) is None


@pytest.mark.asyncio
async def test_summary_rating_used_when_no_external_rating():
    repo = InMemoryRepository()
    subject = await make_store(repo, "House Kitchen", latitude=LAT, longitude=LNG)
    for _ in range(12):
        await repo.add_review(store_id=subject.id, source="inapp", rating=4, content="메뉴 맛있고 직원 친절해요")
    await refresh_store_summary(repo, subject.id)
    result = await compute_peer_rank(repo, subject)
    assert result is not None
    assert result.peers[0].rating == 4.0
    assert result.label == "ordinary"
