"""In-memory stand-ins for the repository, place client and analyzers."""

import itertools
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from storetrust.models import (
    ExternalReviewCache,
    Review,
    ReviewAnalysis,
    Store,
    StoreDetailSnapshot,
    StoreMetrics,
    UserReview,
)
from storetrust.services.heuristic import AnalysisResult, heuristic_analyze_review
from storetrust.services.normalizer import identity_key
from storetrust.services.places_client import ExternalReview, PlaceResult
from storetrust.stores.repository import Degraded, MissingRelationError, Supported

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemoryRepository:
    """Implements the StoreRepository surface over plain dicts.

    `missing_tables` simulates schema drift: probes for those tables report
    Degraded and any access raises MissingRelationError.
    `fail_updates_for` makes re-pointing rows of the listed source ids fail.
    """

    def __init__(self, clock: FakeClock | None = None, missing_tables: set[str] | None = None):
        self.clock = clock or FakeClock()
        self.missing_tables = set(missing_tables or ())
        self.fail_updates_for: set[int] = set()
        self._ids = itertools.count(1)

        self.stores: dict[int, Store] = {}
        self.reviews: dict[int, Review] = {}
        self.analyses: dict[int, ReviewAnalysis] = {}
        self.user_reviews: dict[int, UserReview] = {}
        self.metrics: dict[int, StoreMetrics] = {}
        self.external_cache: dict[int, ExternalReviewCache] = {}
        self.snapshots: dict[int, StoreDetailSnapshot] = {}

    # ------------------------------------------------------------
    # Session-ish helpers
    # ------------------------------------------------------------

    @asynccontextmanager
    async def factory(self):
        yield self

    @asynccontextmanager
    async def savepoint(self):
        yield

    def _check(self, table_name: str) -> None:
        if table_name in self.missing_tables:
            raise MissingRelationError(f'relation "{table_name}" does not exist', sqlstate="42P01")

    def _table(self, table_name: str) -> dict[int, Any]:
        return {
            "stores": self.stores,
            "reviews": self.reviews,
            "review_analyses": self.analyses,
            "user_reviews": self.user_reviews,
            "store_metrics": self.metrics,
            "external_review_cache": self.external_cache,
            "store_detail_snapshots": self.snapshots,
        }[table_name]

    async def probe(self, table_name: str, columns=()):
        if table_name in self.missing_tables:
            return Degraded(reason=f'{table_name}: relation "{table_name}" does not exist')
        return Supported()

    async def update_where_in(self, table_name: str, key_column: str, ids, values: dict[str, Any]) -> int:
        self._check(table_name)
        ids = set(ids)
        if ids & self.fail_updates_for:
            raise RuntimeError(f"update on {table_name} failed")
        count = 0
        for row in self._table(table_name).values():
            if getattr(row, key_column) in ids:
                for key, value in values.items():
                    setattr(row, key, value)
                count += 1
        return count

    async def delete_where_in(self, table_name: str, key_column: str, ids) -> int:
        self._check(table_name)
        ids = set(ids)
        rows = self._table(table_name)
        doomed = [pk for pk, row in rows.items() if getattr(row, key_column) in ids]
        for pk in doomed:
            del rows[pk]
        return len(doomed)

    # ------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------

    async def get_store(self, store_id: int) -> Store | None:
        return self.stores.get(store_id)

    def _sorted_stores(self) -> list[Store]:
        return [self.stores[k] for k in sorted(self.stores)]

    async def list_stores(self, limit: int = 100, offset: int = 0) -> list[Store]:
        return self._sorted_stores()[offset : offset + limit]

    async def page_stores(self, after_id: int, limit: int) -> list[Store]:
        return [s for s in self._sorted_stores() if s.id > after_id][:limit]

    async def stores_for_geo_backfill(self, limit: int, offset: int = 0, only_missing: bool = True) -> list[Store]:
        stores = self._sorted_stores()
        if only_missing:
            stores = [s for s in stores if s.latitude is None or s.longitude is None]
        return stores[offset : offset + limit]

    async def find_store_by_place_id(self, place_id: str) -> Store | None:
        return next((s for s in self._sorted_stores() if s.external_place_id == place_id), None)

    async def find_store_by_name_address(self, name: str, address: str | None) -> Store | None:
        for store in self._sorted_stores():
            if (store.name or "").strip() != name:
                continue
            stored_address = (store.address or "").strip()
            if (address or "") == stored_address:
                return store
        return None

    async def find_store_by_identity_key(self, key: str) -> Store | None:
        if not key:
            return None
        return next((s for s in self._sorted_stores() if s.identity_key == key), None)

    async def stores_in_box(self, min_lat, max_lat, min_lng, max_lng, limit: int = 500) -> list[Store]:
        return [
            s
            for s in self._sorted_stores()
            if s.latitude is not None
            and s.longitude is not None
            and min_lat <= s.latitude <= max_lat
            and min_lng <= s.longitude <= max_lng
        ][:limit]

    async def add_store(self, **fields: Any) -> Store:
        fields.setdefault("external_review_count", 0)
        fields["identity_key"] = identity_key(fields.get("name"), fields.get("address")) or None
        store = Store(id=next(self._ids), created_at=self.clock(), updated_at=self.clock(), **fields)
        self.stores[store.id] = store
        return store

    async def update_store(self, store: Store, **fields: Any) -> Store:
        for key, value in fields.items():
            setattr(store, key, value)
        if "name" in fields or "address" in fields:
            store.identity_key = identity_key(store.name, store.address) or None
        return store

    # ------------------------------------------------------------
    # Reviews / analyses
    # ------------------------------------------------------------

    async def list_reviews(self, store_id: int) -> list[Review]:
        self._check("reviews")
        return [r for _, r in sorted(self.reviews.items()) if r.store_id == store_id]

    async def add_review(self, **fields: Any) -> Review:
        fields.setdefault("is_disclosed_ad", False)
        fields.setdefault("author_name", None)
        fields.setdefault("published_at", None)
        review = Review(id=next(self._ids), created_at=self.clock(), **fields)
        self.reviews[review.id] = review
        return review

    async def latest_analyses(self, review_ids) -> dict[int, ReviewAnalysis]:
        self._check("review_analyses")
        wanted = set(review_ids)
        latest: dict[int, ReviewAnalysis] = {}
        for row in sorted(self.analyses.values(), key=lambda a: (a.created_at, a.id), reverse=True):
            if row.review_id in wanted:
                latest.setdefault(row.review_id, row)
        return latest

    async def add_analysis(self, review: Review, analysis: AnalysisResult) -> ReviewAnalysis:
        row = ReviewAnalysis(
            id=next(self._ids),
            review_id=review.id,
            store_id=review.store_id,
            model_provider=analysis.provider,
            model_name=analysis.model,
            analysis_version=analysis.version,
            ad_risk=analysis.ad_risk,
            undisclosed_ad_risk=analysis.undisclosed_ad_risk,
            low_quality_risk=analysis.low_quality_risk,
            trust_score=analysis.trust_score,
            confidence=analysis.confidence,
            signals_json="[]",
            reason_summary=analysis.reason_summary,
            created_at=self.clock(),
        )
        self.analyses[row.id] = row
        return row

    async def reviews_needing_analysis(self, version: str, limit: int, force: bool = False) -> list[Review]:
        analysed = {a.review_id for a in self.analyses.values() if a.analysis_version == version}
        reviews = sorted(self.reviews.values(), key=lambda r: (r.created_at, r.id), reverse=True)
        if not force:
            reviews = [r for r in reviews if r.id not in analysed]
        return reviews[:limit]

    # ------------------------------------------------------------
    # User reviews
    # ------------------------------------------------------------

    async def list_user_reviews(self, store_id: int, limit: int = 50) -> list[UserReview]:
        self._check("user_reviews")
        rows = [r for r in self.user_reviews.values() if r.store_id == store_id]
        return sorted(rows, key=lambda r: (r.created_at, r.id), reverse=True)[:limit]

    async def add_user_review(self, **fields: Any) -> UserReview:
        self._check("user_reviews")
        row = UserReview(id=next(self._ids), created_at=self.clock(), **fields)
        self.user_reviews[row.id] = row
        return row

    # ------------------------------------------------------------
    # Summary / caches
    # ------------------------------------------------------------

    async def get_metrics(self, store_id: int) -> StoreMetrics | None:
        self._check("store_metrics")
        return self.metrics.get(store_id)

    async def metrics_for_stores(self, store_ids) -> dict[int, StoreMetrics]:
        self._check("store_metrics")
        return {sid: self.metrics[sid] for sid in store_ids if sid in self.metrics}

    async def upsert_metrics(self, store_id: int, values: dict[str, Any]) -> StoreMetrics:
        self._check("store_metrics")
        row = self.metrics.get(store_id)
        if row is None:
            row = StoreMetrics(store_id=store_id, **values)
            self.metrics[store_id] = row
        else:
            for key, value in values.items():
                setattr(row, key, value)
        return row

    async def get_external_review_cache(self, store_id: int) -> ExternalReviewCache | None:
        self._check("external_review_cache")
        return self.external_cache.get(store_id)

    async def put_external_review_cache(self, store_id: int, payload: Any, now: datetime) -> None:
        self._check("external_review_cache")
        self.external_cache[store_id] = ExternalReviewCache(
            store_id=store_id, payload_json=json.dumps(payload, ensure_ascii=False), updated_at=now
        )

    async def get_snapshot(self, store_id: int) -> StoreDetailSnapshot | None:
        self._check("store_detail_snapshots")
        return self.snapshots.get(store_id)

    async def put_snapshot(self, store_id: int, payload: Any, created_at: datetime, expires_at: datetime) -> None:
        self._check("store_detail_snapshots")
        self.snapshots[store_id] = StoreDetailSnapshot(
            store_id=store_id,
            snapshot_json=json.dumps(payload, ensure_ascii=False, default=str),
            created_at=created_at,
            expires_at=expires_at,
        )

    async def delete_snapshot(self, store_id: int) -> None:
        await self.delete_where_in("store_detail_snapshots", "store_id", [store_id])


class FakePlaces:
    """Place client double. Every call is counted in `calls`."""

    def __init__(
        self,
        places: dict[str, PlaceResult] | None = None,
        nearby: list[PlaceResult] | None = None,
        reviews: dict[str, list[ExternalReview]] | None = None,
        fail_nearby: bool = False,
    ):
        self.places = places or {}
        self.nearby = nearby or []
        self.reviews = reviews or {}
        self.fail_nearby = fail_nearby
        self.calls: dict[str, int] = {"find_place": 0, "search_nearby": 0, "latest_reviews": 0}

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def find_place(self, name, address=None, category=None) -> PlaceResult | None:
        self.calls["find_place"] += 1
        return self.places.get(name)

    async def search_nearby(self, latitude, longitude, radius_m, category=None, max_results=20) -> list[PlaceResult]:
        self.calls["search_nearby"] += 1
        if self.fail_nearby:
            raise RuntimeError("places quota exceeded")
        return list(self.nearby)

    async def latest_reviews(self, place_id, limit=5) -> list[ExternalReview]:
        self.calls["latest_reviews"] += 1
        return list(self.reviews.get(place_id, []))[:limit]


class CountingAnalyzer:
    """Heuristic analyzer that records every input."""

    name = "counting"

    def __init__(self):
        self.inputs = []

    async def analyze(self, data) -> AnalysisResult:
        self.inputs.append(data)
        return heuristic_analyze_review(data)


class FailingAnalyzer:
    name = "failing"

    def __init__(self):
        self.calls = 0

    async def analyze(self, data):
        self.calls += 1
        raise RuntimeError("provider unavailable")


class BackgroundCollector:
    """Replaces spawn_background: keeps coroutines until `run_all`."""

    def __init__(self):
        self.pending: list[tuple[str, Any]] = []

    def __call__(self, coro, name: str):
        self.pending.append((name, coro))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.pending]

    async def run_all(self) -> None:
        pending, self.pending = self.pending, []
        for _, coro in pending:
            await coro

    def discard(self) -> None:
        for _, coro in self.pending:
            coro.close()
        self.pending = []


async def make_store(repo: InMemoryRepository, name: str, **fields: Any) -> Store:
    return await repo.add_store(name=name, **fields)


def place(place_id: str, name: str, rating: float | None, review_count: int, lat: float, lng: float, **kw) -> PlaceResult:
    return PlaceResult(
        place_id=place_id,
        name=name,
        rating=rating,
        review_count=review_count,
        latitude=lat,
        longitude=lng,
        **kw,
    )
