"""Repository over one database session.

All engine services talk to storage through `StoreRepository` so they can be
exercised against an in-memory fake in tests.

Schema drift:
- Missing tables/columns (SQLSTATE 42P01 / 42703) surface as
  `MissingRelationError` from every read, write and flush, never as a generic
  database error.
- Reads of optional tables (snapshots, external review cache, user reviews)
  run in a savepoint, so catching that error keeps the transaction usable.
- `probe(table, columns)` answers up front whether a table (and the listed
  columns) can be used; results are memoized per repository instance.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, column, delete, exists, func, or_, select, table, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from storetrust.models import (
    ExternalReviewCache,
    Review,
    ReviewAnalysis,
    Store,
    StoreDetailSnapshot,
    StoreMetrics,
    UserReview,
)
from storetrust.services.heuristic import AnalysisResult
from storetrust.services.normalizer import identity_key
from storetrust.stores.postgres import get_session

MISSING_RELATION_CODES = {"42P01", "42703"}


class MissingRelationError(RuntimeError):
    """A table or column the statement needs does not exist."""

    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate


@dataclass(frozen=True)
class Supported:
    ok: bool = True


@dataclass(frozen=True)
class Degraded:
    reason: str
    ok: bool = False


ProbeResult = Supported | Degraded


def _sqlstate(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def _raise_missing_relation(exc: DBAPIError) -> None:
    code = _sqlstate(exc)
    if code in MISSING_RELATION_CODES:
        raise MissingRelationError(str(exc.orig), sqlstate=code) from exc


class StoreRepository:
    """Row-level access for stores, reviews, analyses and derived tables."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._probes: dict[tuple[str, tuple[str, ...]], ProbeResult] = {}

    async def _execute(self, stmt, nested: bool = False):
        """Run `stmt`, translating schema-absence errors.

        With `nested`, the statement runs in a savepoint so a caught
        MissingRelationError leaves the outer transaction usable.
        """
        try:
            if nested:
                async with self.session.begin_nested():
                    return await self.session.execute(stmt)
            return await self.session.execute(stmt)
        except DBAPIError as e:
            _raise_missing_relation(e)
            raise

    async def _flush(self) -> None:
        try:
            await self.session.flush()
        except DBAPIError as e:
            _raise_missing_relation(e)
            raise

    async def _get(self, model, key_column, key: int, nested: bool = False):
        result = await self._execute(select(model).where(key_column == key), nested=nested)
        return result.scalar_one_or_none()

    def savepoint(self):
        """Nested transaction: a failure inside rolls back only this unit of work."""
        return self.session.begin_nested()

    # ============================================================
    # Capability probe / generic bulk statements
    # ============================================================

    async def probe(self, table_name: str, columns: Sequence[str] = ()) -> ProbeResult:
        """Check that `table_name` (and `columns`) exist, without touching rows."""
        key = (table_name, tuple(columns))
        if key in self._probes:
            return self._probes[key]

        cols = [column(c) for c in columns] or [column("1")]
        stmt = select(*cols).select_from(table(table_name)).limit(0)
        try:
            async with self.session.begin_nested():
                await self._execute(stmt)
            result: ProbeResult = Supported()
        except MissingRelationError as e:
            result = Degraded(reason=f"{table_name}: {e}")

        self._probes[key] = result
        return result

    async def update_where_in(
        self,
        table_name: str,
        key_column: str,
        ids: Iterable[int],
        values: dict[str, Any],
    ) -> int:
        """UPDATE table SET values WHERE key_column IN ids. Returns row count."""
        ids = list(ids)
        if not ids:
            return 0
        t = table(table_name, column(key_column), *[column(k) for k in values])
        stmt = update(t).where(t.c[key_column].in_(ids)).values(**values)
        async with self.session.begin_nested():
            result = await self._execute(stmt)
        return result.rowcount or 0

    async def delete_where_in(self, table_name: str, key_column: str, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        t = table(table_name, column(key_column))
        stmt = delete(t).where(t.c[key_column].in_(ids))
        async with self.session.begin_nested():
            result = await self._execute(stmt)
        return result.rowcount or 0

    # ============================================================
    # Stores
    # ============================================================

    async def get_store(self, store_id: int) -> Store | None:
        return await self._get(Store, Store.id, store_id)

    async def list_stores(self, limit: int = 100, offset: int = 0) -> list[Store]:
        result = await self._execute(select(Store).order_by(Store.id).limit(limit).offset(offset))
        return list(result.scalars().all())

    async def page_stores(self, after_id: int, limit: int) -> list[Store]:
        """Keyset page of stores ordered by id."""
        result = await self._execute(
            select(Store).where(Store.id > after_id).order_by(Store.id).limit(limit)
        )
        return list(result.scalars().all())

    async def stores_for_geo_backfill(
        self, limit: int, offset: int = 0, only_missing: bool = True
    ) -> list[Store]:
        stmt = select(Store)
        if only_missing:
            stmt = stmt.where(or_(Store.latitude.is_(None), Store.longitude.is_(None)))
        result = await self._execute(stmt.order_by(Store.id).limit(limit).offset(offset))
        return list(result.scalars().all())

    async def find_store_by_place_id(self, place_id: str) -> Store | None:
        result = await self._execute(
            select(Store).where(Store.external_place_id == place_id).order_by(Store.id).limit(1)
        )
        return result.scalar_one_or_none()

    async def find_store_by_name_address(self, name: str, address: str | None) -> Store | None:
        """Exact match on trimmed name and address."""
        stmt = select(Store).where(func.trim(Store.name) == name)
        if address:
            stmt = stmt.where(func.trim(Store.address) == address)
        else:
            stmt = stmt.where(or_(Store.address.is_(None), func.trim(Store.address) == ""))
        result = await self._execute(stmt.order_by(Store.id).limit(1))
        return result.scalar_one_or_none()

    async def find_store_by_identity_key(self, key: str) -> Store | None:
        """Oldest store whose persisted identity key equals `key`."""
        if not key:
            return None
        result = await self._execute(
            select(Store).where(Store.identity_key == key).order_by(Store.id).limit(1)
        )
        return result.scalar_one_or_none()

    async def stores_in_box(
        self,
        min_lat: float,
        max_lat: float,
        min_lng: float,
        max_lng: float,
        limit: int = 500,
    ) -> list[Store]:
        result = await self._execute(
            select(Store)
            .where(
                and_(
                    Store.latitude.between(min_lat, max_lat),
                    Store.longitude.between(min_lng, max_lng),
                )
            )
            .order_by(Store.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def add_store(self, **fields: Any) -> Store:
        fields["identity_key"] = identity_key(fields.get("name"), fields.get("address")) or None
        store = Store(**fields)
        self.session.add(store)
        await self._flush()
        return store

    async def update_store(self, store: Store, **fields: Any) -> Store:
        for key, value in fields.items():
            setattr(store, key, value)
        if "name" in fields or "address" in fields:
            store.identity_key = identity_key(store.name, store.address) or None
        await self._flush()
        return store

    # ============================================================
    # Reviews / analyses
    # ============================================================

    async def list_reviews(self, store_id: int) -> list[Review]:
        result = await self._execute(
            select(Review).where(Review.store_id == store_id).order_by(Review.id)
        )
        return list(result.scalars().all())

    async def add_review(self, **fields: Any) -> Review:
        review = Review(**fields)
        self.session.add(review)
        await self._flush()
        return review

    async def latest_analyses(self, review_ids: Sequence[int]) -> dict[int, ReviewAnalysis]:
        """Most recent analysis per review id."""
        if not review_ids:
            return {}
        result = await self._execute(
            select(ReviewAnalysis)
            .where(ReviewAnalysis.review_id.in_(list(review_ids)))
            .order_by(ReviewAnalysis.review_id, ReviewAnalysis.created_at.desc(), ReviewAnalysis.id.desc())
        )
        latest: dict[int, ReviewAnalysis] = {}
        for row in result.scalars().all():
            latest.setdefault(row.review_id, row)
        return latest

    async def add_analysis(self, review: Review, analysis: AnalysisResult) -> ReviewAnalysis:
        row = ReviewAnalysis(
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
            signals_json=json.dumps(analysis.signals, ensure_ascii=False),
            reason_summary=analysis.reason_summary,
        )
        self.session.add(row)
        await self._flush()
        return row

    async def reviews_needing_analysis(self, version: str, limit: int, force: bool = False) -> list[Review]:
        """Reviews without an analysis for `version` (all reviews when `force`)."""
        stmt = select(Review)
        if not force:
            analysed = exists().where(
                and_(
                    ReviewAnalysis.review_id == Review.id,
                    ReviewAnalysis.analysis_version == version,
                )
            )
            stmt = stmt.where(~analysed)
        result = await self._execute(stmt.order_by(Review.created_at.desc(), Review.id.desc()).limit(limit))
        return list(result.scalars().all())

    # ============================================================
    # User reviews
    # ============================================================

    async def list_user_reviews(self, store_id: int, limit: int = 50) -> list[UserReview]:
        result = await self._execute(
            select(UserReview)
            .where(UserReview.store_id == store_id)
            .order_by(UserReview.created_at.desc(), UserReview.id.desc())
            .limit(limit),
            nested=True,
        )
        return list(result.scalars().all())

    async def add_user_review(self, **fields: Any) -> UserReview:
        row = UserReview(**fields)
        self.session.add(row)
        await self._flush()
        return row

    # ============================================================
    # Summary (store_metrics)
    # ============================================================

    async def get_metrics(self, store_id: int) -> StoreMetrics | None:
        return await self._get(StoreMetrics, StoreMetrics.store_id, store_id)

    async def metrics_for_stores(self, store_ids: Sequence[int]) -> dict[int, StoreMetrics]:
        if not store_ids:
            return {}
        result = await self._execute(select(StoreMetrics).where(StoreMetrics.store_id.in_(list(store_ids))))
        return {m.store_id: m for m in result.scalars().all()}

    async def upsert_metrics(self, store_id: int, values: dict[str, Any]) -> StoreMetrics:
        row = await self.get_metrics(store_id)
        if row is None:
            row = StoreMetrics(store_id=store_id, **values)
            self.session.add(row)
        else:
            for key, value in values.items():
                setattr(row, key, value)
        await self._flush()
        return row

    # ============================================================
    # Derived caches
    # ============================================================

    async def get_external_review_cache(self, store_id: int) -> ExternalReviewCache | None:
        return await self._get(ExternalReviewCache, ExternalReviewCache.store_id, store_id, nested=True)

    async def put_external_review_cache(self, store_id: int, payload: Any, now: datetime) -> None:
        row = await self.get_external_review_cache(store_id)
        payload_json = json.dumps(payload, ensure_ascii=False)
        if row is None:
            self.session.add(ExternalReviewCache(store_id=store_id, payload_json=payload_json, updated_at=now))
        else:
            row.payload_json = payload_json
            row.updated_at = now
        await self._flush()

    async def get_snapshot(self, store_id: int) -> StoreDetailSnapshot | None:
        return await self._get(StoreDetailSnapshot, StoreDetailSnapshot.store_id, store_id, nested=True)

    async def put_snapshot(self, store_id: int, payload: Any, created_at: datetime, expires_at: datetime) -> None:
        row = await self.get_snapshot(store_id)
        snapshot_json = json.dumps(payload, ensure_ascii=False, default=str)
        if row is None:
            self.session.add(
                StoreDetailSnapshot(
                    store_id=store_id,
                    snapshot_json=snapshot_json,
                    created_at=created_at,
                    expires_at=expires_at,
                )
            )
        else:
            row.snapshot_json = snapshot_json
            row.created_at = created_at
            row.expires_at = expires_at
        await self._flush()

    async def delete_snapshot(self, store_id: int) -> None:
        await self.delete_where_in(StoreDetailSnapshot.__tablename__, "store_id", [store_id])


@asynccontextmanager
async def open_repository() -> AsyncGenerator[StoreRepository, None]:
    """Repository bound to a fresh session (commit on success, rollback on error)."""
    async with get_session() as session:
        yield StoreRepository(session)
