"""Identity resolution: duplicate grouping, canonical selection, merge, prevention.

Batch dedupe:
1. Page through stores by id and group by `identity_key(name, address)`
2. Keep groups with >= 2 members (capped at max_groups, encounter order)
3. Pick a canonical per group, merge the rest into it

Merge steps per group (order matters, each step probed first and skipped on
schema absence):
1. Re-point dependent rows (REPOINT_RELATIONS) from source ids to canonical
2. Delete derived rows (DERIVED_RELATIONS) keyed by source ids, plus the
   canonical's own detail snapshot
3. Delete source stores
4. Recompute the canonical summary

Re-pointing is idempotent: running the same merge twice is a no-op.

Real-time prevention (create_store), first hit wins:
place id -> exact name+address -> persisted identity key -> same name token within ~80 m
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any

from storetrust.models import Store
from storetrust.services.aggregation import refresh_store_summary
from storetrust.services.normalizer import (
    bounding_box,
    haversine_m,
    identity_key,
    name_token,
)
from storetrust.services.peer_ranking import infer_category
from storetrust.settings import get_settings
from storetrust.stores.redis import acquire_lock, release_lock
from storetrust.stores.repository import (
    Degraded,
    MissingRelationError,
    StoreRepository,
    open_repository,
)

logger = logging.getLogger("uvicorn.error")

DEDUPE_LOCK_KEY = "dedupe:stores"

RepositoryFactory = Callable[[], AbstractAsyncContextManager[StoreRepository]]


class StoreValidationError(ValueError):
    """Rejected input (nothing was written)."""


class StoreNotFoundError(LookupError):
    def __init__(self, store_id: int):
        super().__init__(f"Store {store_id} not found")
        self.store_id = store_id


class DedupeInProgressError(RuntimeError):
    pass


@dataclass(frozen=True)
class Relation:
    """A table column holding a store id."""

    table: str
    column: str = "store_id"

    def __str__(self) -> str:
        return f"{self.table}.{self.column}"


# Rows owned by a store: re-pointed to the canonical on merge.
REPOINT_RELATIONS: tuple[Relation, ...] = (
    Relation("reviews"),
    Relation("review_analyses"),
    Relation("user_reviews"),
)

# Derived/cached rows: deleted on merge (rebuilt on demand).
DERIVED_RELATIONS: tuple[Relation, ...] = (
    Relation("store_metrics"),
    Relation("external_review_cache"),
    Relation("store_detail_snapshots"),
)

SNAPSHOT_RELATION = Relation("store_detail_snapshots")
STORES_RELATION = Relation("stores", "id")
SUMMARY_RELATION = Relation("store_metrics")


@dataclass
class DuplicateGroup:
    key: str
    stores: list[Store]

    @property
    def store_ids(self) -> list[int]:
        return [s.id for s in self.stores]

    @property
    def canonical(self) -> Store:
        return select_canonical(self.stores)

    @property
    def source_ids(self) -> list[int]:
        canonical_id = self.canonical.id
        return [s.id for s in self.stores if s.id != canonical_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "canonicalId": self.canonical.id,
            "sourceIds": self.source_ids,
            "names": [s.name for s in self.stores],
        }


@dataclass
class GroupMergeResult:
    repointed_rows: int = 0
    removed_stores: int = 0
    skipped_steps: list[str] = field(default_factory=list)


@dataclass
class DedupeStats:
    dry_run: bool = False
    scanned: int = 0
    groups: int = 0
    merged_groups: int = 0
    removed_stores: int = 0
    repointed_rows: int = 0
    skipped_steps: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    preview: list[dict[str, Any]] = field(default_factory=list)


# ============================================================
# Canonical selection / grouping
# ============================================================


def canonical_sort_key(store: Store) -> tuple:
    """Lower sorts first: coords, place id, review count, rating, then oldest id."""
    rating = store.external_rating if store.external_rating is not None else -1.0
    return (
        not store.has_coordinates,
        not store.external_place_id,
        -(store.external_review_count or 0),
        -rating,
        store.id,
    )


def select_canonical(stores: list[Store]) -> Store:
    if not stores:
        raise ValueError("Cannot select a canonical store from an empty group")
    return min(stores, key=canonical_sort_key)


async def group_duplicates(
    repo: StoreRepository,
    max_groups: int | None = None,
    page_size: int | None = None,
) -> tuple[int, list[DuplicateGroup]]:
    """Scan all stores and return (scanned_count, duplicate groups)."""
    settings = get_settings()
    max_groups = max_groups or settings.dedupe_max_groups
    page_size = page_size or settings.dedupe_page_size

    buckets: dict[str, list[Store]] = {}
    scanned = 0
    after_id = 0
    while True:
        page = await repo.page_stores(after_id, page_size)
        if not page:
            break
        for store in page:
            scanned += 1
            key = identity_key(store.name, store.address)
            if key:
                buckets.setdefault(key, []).append(store)
        after_id = page[-1].id
        if len(page) < page_size:
            break

    groups = [DuplicateGroup(key, members) for key, members in buckets.items() if len(members) >= 2]
    return scanned, groups[:max_groups]


# ============================================================
# Merge
# ============================================================


async def _run_step(
    repo: StoreRepository,
    relation: Relation,
    result: GroupMergeResult,
    action: Callable[[], Any],
    extra_columns: tuple[str, ...] = (),
) -> int:
    probe = await repo.probe(relation.table, (relation.column, *extra_columns))
    if isinstance(probe, Degraded):
        result.skipped_steps.append(f"{relation}: {probe.reason}")
        return 0
    try:
        return await action()
    except MissingRelationError as e:
        result.skipped_steps.append(f"{relation}: {e}")
        return 0


async def merge_group(repo: StoreRepository, group: DuplicateGroup) -> GroupMergeResult:
    """Merge one duplicate group into its canonical store."""
    result = GroupMergeResult()
    canonical_id = group.canonical.id
    source_ids = group.source_ids
    if not source_ids:
        return result

    for relation in REPOINT_RELATIONS:
        result.repointed_rows += await _run_step(
            repo,
            relation,
            result,
            lambda r=relation: repo.update_where_in(r.table, r.column, source_ids, {r.column: canonical_id}),
        )

    for relation in DERIVED_RELATIONS:
        await _run_step(
            repo,
            relation,
            result,
            lambda r=relation: repo.delete_where_in(r.table, r.column, source_ids),
        )
    # The canonical's composite view now misses the merged reviews.
    await _run_step(
        repo,
        SNAPSHOT_RELATION,
        result,
        lambda: repo.delete_where_in(SNAPSHOT_RELATION.table, SNAPSHOT_RELATION.column, [canonical_id]),
    )

    result.removed_stores = await _run_step(
        repo,
        STORES_RELATION,
        result,
        lambda: repo.delete_where_in(STORES_RELATION.table, STORES_RELATION.column, source_ids),
    )

    async def _recompute() -> int:
        await refresh_store_summary(repo, canonical_id)
        return 0

    await _run_step(repo, SUMMARY_RELATION, result, _recompute)
    return result


async def merge_duplicate_groups(
    groups: list[DuplicateGroup],
    repo_factory: RepositoryFactory = open_repository,
    max_concurrency: int | None = None,
    stats: DedupeStats | None = None,
) -> DedupeStats:
    """Merge groups with bounded parallelism, one session per group.

    A failing group is recorded in `stats.errors` and never aborts the batch.
    """
    stats = stats or DedupeStats()
    limit = max_concurrency or get_settings().merge_max_concurrency
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _merge(group: DuplicateGroup) -> None:
        async with semaphore:
            try:
                async with repo_factory() as repo:
                    result = await merge_group(repo, group)
            except Exception as e:
                logger.warning(f"[dedupe] group {group.key!r} failed: {e}")
                stats.errors.append({"group": group.key, "storeIds": group.store_ids, "error": str(e)})
                return
        stats.merged_groups += 1
        stats.removed_stores += result.removed_stores
        stats.repointed_rows += result.repointed_rows
        for step in result.skipped_steps:
            if step not in stats.skipped_steps:
                stats.skipped_steps.append(step)

    await asyncio.gather(*[_merge(g) for g in groups])
    return stats


async def dedupe_stores(
    dry_run: bool = False,
    max_groups: int | None = None,
    repo_factory: RepositoryFactory = open_repository,
    use_lock: bool = True,
) -> DedupeStats:
    """Find and merge duplicate stores.

    Raises:
        DedupeInProgressError: Another batch holds the dedupe lock.
    """
    got_lock = False
    if use_lock and not dry_run:
        try:
            got_lock = await acquire_lock(DEDUPE_LOCK_KEY)
        except Exception as e:
            logger.warning(f"[dedupe] Redis lock unavailable, running unlocked: {e}")
            got_lock = None
        if got_lock is False:
            raise DedupeInProgressError("A dedupe batch is already running")

    try:
        async with repo_factory() as repo:
            scanned, groups = await group_duplicates(repo, max_groups=max_groups)

        stats = DedupeStats(dry_run=dry_run, scanned=scanned, groups=len(groups))
        logger.info(f"[dedupe] scanned={scanned} groups={len(groups)} dry_run={dry_run}")
        if dry_run:
            stats.preview = [g.to_dict() for g in groups]
            return stats

        await merge_duplicate_groups(groups, repo_factory=repo_factory, stats=stats)
        logger.info(
            f"[dedupe] merged={stats.merged_groups} removed={stats.removed_stores} "
            f"repointed={stats.repointed_rows} errors={len(stats.errors)}"
        )
        return stats
    finally:
        if got_lock:
            try:
                await release_lock(DEDUPE_LOCK_KEY)
            except Exception as e:
                logger.warning(f"[dedupe] lock release failed: {e}")


# ============================================================
# Real-time duplicate prevention
# ============================================================


@dataclass
class StoreCandidate:
    name: str
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    external_place_id: str | None = None
    external_rating: float | None = None
    external_review_count: int = 0


@dataclass
class CreateStoreResult:
    store: Store
    created: bool
    matched_by: str | None = None


def _validate_candidate(candidate: StoreCandidate) -> StoreCandidate:
    name = (candidate.name or "").strip()
    if not name:
        raise StoreValidationError("Store name is required")
    if (candidate.latitude is None) != (candidate.longitude is None):
        raise StoreValidationError("latitude and longitude must be provided together")
    if candidate.latitude is not None and not -90 <= candidate.latitude <= 90:
        raise StoreValidationError("latitude out of range")
    if candidate.longitude is not None and not -180 <= candidate.longitude <= 180:
        raise StoreValidationError("longitude out of range")
    if candidate.external_rating is not None and not 0 <= candidate.external_rating <= 5:
        raise StoreValidationError("external_rating must be within 0-5")
    address = (candidate.address or "").strip() or None
    place_id = (candidate.external_place_id or "").strip() or None
    return StoreCandidate(
        name=name,
        address=address,
        latitude=candidate.latitude,
        longitude=candidate.longitude,
        external_place_id=place_id,
        external_rating=candidate.external_rating,
        external_review_count=max(0, int(candidate.external_review_count or 0)),
    )


async def find_existing_store(
    repo: StoreRepository,
    candidate: StoreCandidate,
    geo_radius_m: float | None = None,
) -> tuple[Store | None, str | None]:
    """Return (store, matched_by) for the first prevention check that hits."""
    if candidate.external_place_id:
        hit = await repo.find_store_by_place_id(candidate.external_place_id)
        if hit is not None:
            return hit, "place_id"

    if candidate.address:
        hit = await repo.find_store_by_name_address(candidate.name, candidate.address)
        if hit is not None:
            return hit, "exact"

        hit = await repo.find_store_by_identity_key(identity_key(candidate.name, candidate.address))
        if hit is not None:
            return hit, "normalized"

    if candidate.latitude is not None and candidate.longitude is not None:
        radius = geo_radius_m or get_settings().duplicate_geo_radius_m
        token = name_token(candidate.name)
        best: tuple[float, Store] | None = None
        for store in await repo.stores_in_box(*bounding_box(candidate.latitude, candidate.longitude, radius)):
            if not store.has_coordinates or name_token(store.name) != token:
                continue
            distance = haversine_m(candidate.latitude, candidate.longitude, store.latitude, store.longitude)
            if distance <= radius and (best is None or distance < best[0]):
                best = (distance, store)
        if best is not None:
            return best[1], "geo"

    return None, None


async def create_store(repo: StoreRepository, candidate: StoreCandidate) -> CreateStoreResult:
    """Create a store unless an existing record already represents it.

    Raises:
        StoreValidationError: Empty name or malformed coordinates.
    """
    candidate = _validate_candidate(candidate)

    existing, matched_by = await find_existing_store(repo, candidate)
    if existing is not None:
        if not existing.has_coordinates and candidate.latitude is not None:
            await repo.update_store(existing, latitude=candidate.latitude, longitude=candidate.longitude)
        return CreateStoreResult(store=existing, created=False, matched_by=matched_by)

    store = await repo.add_store(
        name=candidate.name,
        address=candidate.address,
        latitude=candidate.latitude,
        longitude=candidate.longitude,
        external_place_id=candidate.external_place_id,
        external_rating=candidate.external_rating,
        external_review_count=candidate.external_review_count,
    )
    return CreateStoreResult(store=store, created=True)


# ============================================================
# Geo backfill
# ============================================================


@dataclass
class GeoBackfillStats:
    scanned: int = 0
    updated: int = 0
    not_found: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


async def backfill_store_geo(
    repo: StoreRepository,
    places,
    limit: int = 100,
    offset: int = 0,
    only_missing: bool = True,
) -> GeoBackfillStats:
    """Fill coordinates / place identity from the place lookup, per-store isolated."""
    stats = GeoBackfillStats()
    stores = await repo.stores_for_geo_backfill(limit=limit, offset=offset, only_missing=only_missing)
    for store in stores:
        stats.scanned += 1
        try:
            place = await places.find_place(store.name, store.address, infer_category(store.name))
        except Exception as e:
            stats.errors.append({"storeId": store.id, "error": str(e)})
            continue
        if place is None or place.latitude is None or place.longitude is None:
            stats.not_found += 1
            continue

        values: dict[str, Any] = {"latitude": place.latitude, "longitude": place.longitude}
        if not store.external_place_id:
            values["external_place_id"] = place.place_id
        if place.rating is not None:
            values["external_rating"] = place.rating
        if place.review_count:
            values["external_review_count"] = max(place.review_count, store.external_review_count or 0)
        await repo.update_store(store, **values)
        stats.updated += 1

    logger.info(f"Geo backfill scanned={stats.scanned} updated={stats.updated} not_found={stats.not_found}")
    return stats
