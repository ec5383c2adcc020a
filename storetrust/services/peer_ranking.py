"""Peer ranking: where a venue stands among comparable neighbours.

Peers are venues within the peer radius (default 1 km) that share the
subject's inferred category and reliability label and have a rating. Ranking
is by (rating, review count) descending. When fewer than
`peer_min_local_peers` local peers exist, one external nearby search for the
same category tops the list up; if that call fails the local ranking stands.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from storetrust.models import Store, StoreMetrics
from storetrust.services.normalizer import bounding_box, haversine_m, identity_key, name_key
from storetrust.services.rating_trust import round_half_up
from storetrust.settings import get_settings

logger = logging.getLogger("uvicorn.error")

CATEGORY_CAFE = "cafe"
CATEGORY_RESTAURANT = "restaurant"

CAFE_KEYWORDS = [
    "카페",
    "커피",
    "cafe",
    "coffee",
    "베이커리",
    "bakery",
    "디저트",
    "dessert",
    "케이크",
    "cake",
    "도넛",
    "donut",
    "로스터",
    "roaster",
    "티하우스",
    "tea",
    "빵",
]

RESTAURANT_KEYWORDS = [
    "식당",
    "음식점",
    "레스토랑",
    "restaurant",
    "kitchen",
    "키친",
    "국밥",
    "냉면",
    "갈비",
    "삼겹살",
    "고기",
    "치킨",
    "피자",
    "pizza",
    "버거",
    "burger",
    "분식",
    "김밥",
    "국수",
    "초밥",
    "스시",
    "sushi",
    "라멘",
    "ramen",
    "반점",
    "횟집",
    "찌개",
    "족발",
    "보쌈",
    "bbq",
]

LABEL_STABLE = "stable"
LABEL_POSSIBLE_OVERSTATEMENT = "possible_overstatement"
LABEL_ORDINARY = "ordinary"
LABEL_INSUFFICIENT_SAMPLE = "insufficient_sample"

SOURCE_LOCAL = "local"
SOURCE_LOCAL_EXTERNAL = "local+external"


def _keyword_patterns(keywords: list[str]) -> list[re.Pattern[str]]:
    # ASCII keywords start on a word boundary ("tea" must not hit "steak").
    return [re.compile(rf"\b{re.escape(k)}" if k.isascii() else re.escape(k)) for k in keywords]


_CAFE_PATTERNS = _keyword_patterns(CAFE_KEYWORDS)
_RESTAURANT_PATTERNS = _keyword_patterns(RESTAURANT_KEYWORDS)


def infer_category(name: str | None) -> str:
    """cafe vs restaurant by keyword hit count; ties go to restaurant."""
    text = name_key(name)
    cafe_hits = sum(1 for p in _CAFE_PATTERNS if p.search(text))
    restaurant_hits = sum(1 for p in _RESTAURANT_PATTERNS if p.search(text))
    return CATEGORY_CAFE if cafe_hits > restaurant_hits else CATEGORY_RESTAURANT


def reliability_label(rating: float | None, review_count: int) -> str:
    if rating is None:
        return LABEL_INSUFFICIENT_SAMPLE
    if (
        (rating >= 4.9 and review_count < 40)
        or (rating >= 4.8 and review_count < 20)
        or (rating >= 4.7 and review_count < 10)
    ):
        return LABEL_POSSIBLE_OVERSTATEMENT
    if review_count < 10:
        return LABEL_INSUFFICIENT_SAMPLE
    if review_count >= 300 or (review_count >= 120 and rating < 4.8):
        return LABEL_STABLE
    return LABEL_ORDINARY


def effective_rating(store: Store, metrics: StoreMetrics | None = None) -> tuple[float | None, int]:
    """(rating, review_count) used for ranking: external aggregate first, own summary second."""
    if store.external_rating is not None:
        return float(store.external_rating), int(store.external_review_count or 0)
    if metrics is not None and metrics.weighted_rating is not None:
        return float(metrics.weighted_rating), int(metrics.review_count or 0)
    return None, int(store.external_review_count or 0)


@dataclass
class PeerEntry:
    name: str
    rating: float
    review_count: int
    distance_m: float
    store_id: int | None = None
    place_id: str | None = None
    address: str | None = None
    is_subject: bool = False
    source: str = SOURCE_LOCAL

    def sort_key(self) -> tuple:
        # External entries (no store id) sort after local ones on full ties.
        return (
            -self.rating,
            -self.review_count,
            self.store_id is None,
            self.store_id or 0,
            self.place_id or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "storeId": self.store_id,
            "placeId": self.place_id,
            "name": self.name,
            "rating": self.rating,
            "reviewCount": self.review_count,
            "distanceM": round(self.distance_m, 1),
            "isSubject": self.is_subject,
            "source": self.source,
        }


@dataclass
class PeerRank:
    store_id: int
    category: str
    label: str
    rank: int
    total: int
    top_percent: int
    source: str = SOURCE_LOCAL
    peers: list[PeerEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "storeId": self.store_id,
            "category": self.category,
            "label": self.label,
            "rank": self.rank,
            "total": self.total,
            "topPercent": self.top_percent,
            "source": self.source,
            "peers": [p.to_dict() for p in self.peers],
        }


def rank_entries(entries: list[PeerEntry]) -> tuple[list[PeerEntry], int]:
    """Sort peers and return (sorted, 1-based rank of the subject)."""
    ordered = sorted(entries, key=PeerEntry.sort_key)
    for index, entry in enumerate(ordered):
        if entry.is_subject:
            return ordered, index + 1
    raise ValueError("Subject missing from peer list")


def _entry_key(entry: PeerEntry) -> str:
    return identity_key(entry.name, entry.address) or f"id:{entry.store_id}:{entry.place_id}"


async def compute_peer_rank(
    repo,
    subject: Store,
    places=None,
    radius_m: float | None = None,
    min_local_peers: int | None = None,
) -> PeerRank | None:
    """Rank `subject` among comparable nearby venues.

    Returns None when the subject has no coordinates or no rating.
    """
    settings = get_settings()
    radius_m = radius_m or settings.peer_radius_m
    min_local_peers = min_local_peers or settings.peer_min_local_peers

    if not subject.has_coordinates:
        return None
    subject_metrics = await repo.get_metrics(subject.id)
    rating, review_count = effective_rating(subject, subject_metrics)
    if rating is None:
        return None

    category = infer_category(subject.name)
    label = reliability_label(rating, review_count)

    subject_entry = PeerEntry(
        name=subject.name,
        rating=rating,
        review_count=review_count,
        distance_m=0.0,
        store_id=subject.id,
        place_id=subject.external_place_id,
        address=subject.address,
        is_subject=True,
    )
    entries = [subject_entry]
    seen = {_entry_key(subject_entry)}
    seen_place_ids = {subject.external_place_id} if subject.external_place_id else set()

    candidates = await repo.stores_in_box(*bounding_box(subject.latitude, subject.longitude, radius_m))
    metrics = await repo.metrics_for_stores([c.id for c in candidates])
    for store in candidates:
        if store.id == subject.id or not store.has_coordinates:
            continue
        distance = haversine_m(subject.latitude, subject.longitude, store.latitude, store.longitude)
        if distance > radius_m:
            continue
        peer_rating, peer_count = effective_rating(store, metrics.get(store.id))
        if peer_rating is None:
            continue
        if infer_category(store.name) != category or reliability_label(peer_rating, peer_count) != label:
            continue
        entry = PeerEntry(
            name=store.name,
            rating=peer_rating,
            review_count=peer_count,
            distance_m=distance,
            store_id=store.id,
            place_id=store.external_place_id,
            address=store.address,
        )
        key = _entry_key(entry)
        if key in seen:
            continue
        seen.add(key)
        if store.external_place_id:
            seen_place_ids.add(store.external_place_id)
        entries.append(entry)

    source = SOURCE_LOCAL
    if len(entries) - 1 < min_local_peers and places is not None:
        try:
            nearby = await places.search_nearby(subject.latitude, subject.longitude, radius_m, category)
        except Exception as e:
            logger.warning(f"Nearby peer search failed for store {subject.id}: {e}")
            nearby = []
        for place in nearby:
            if place.place_id in seen_place_ids or place.rating is None:
                continue
            if place.latitude is None or place.longitude is None:
                continue
            if reliability_label(place.rating, place.review_count) != label:
                continue
            entry = PeerEntry(
                name=place.name,
                rating=place.rating,
                review_count=place.review_count,
                distance_m=haversine_m(subject.latitude, subject.longitude, place.latitude, place.longitude),
                place_id=place.place_id,
                address=place.address,
                source="external",
            )
            key = _entry_key(entry)
            if key in seen:
                continue
            seen.add(key)
            seen_place_ids.add(place.place_id)
            entries.append(entry)
            source = SOURCE_LOCAL_EXTERNAL

    ordered, rank = rank_entries(entries)
    total = len(ordered)
    return PeerRank(
        store_id=subject.id,
        category=category,
        label=label,
        rank=rank,
        total=total,
        top_percent=round_half_up(rank / total * 100),
        source=source,
        peers=ordered,
    )
