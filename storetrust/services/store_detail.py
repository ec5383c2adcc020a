"""Composite store detail view (GET /v1/stores/{id}).

Expensive parts (place metadata + photos, latest external reviews with
analyses, peer rank) are cached as a snapshot for 7 days. Cheap local parts
(summary, rating trust, user reviews, in-app average) are recomputed on every
read and overlaid on top of the cached payload.

On a miss the snapshot write and an opportunistic nearby-store import run as
fire-and-forget tasks; neither can fail the read. Collaborator failures
(places, analysis, schema absence) leave the matching part empty.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from storetrust.models import ReviewSource, Store
from storetrust.services.aggregation import StoreSummary, load_store_summary
from storetrust.services.analysis import analysis_to_dict
from storetrust.services.background import spawn_background
from storetrust.services.heuristic import AnalysisInput
from storetrust.services.identity import (
    RepositoryFactory,
    StoreCandidate,
    StoreNotFoundError,
    create_store,
)
from storetrust.services.peer_ranking import compute_peer_rank, effective_rating, infer_category
from storetrust.services.rating_trust import compute_rating_trust_score
from storetrust.services.reviews import resolve_place_id
from storetrust.services.snapshot import SnapshotCache, utc_now
from storetrust.settings import get_settings
from storetrust.stores.repository import MissingRelationError, StoreRepository, open_repository

logger = logging.getLogger("uvicorn.error")


@dataclass
class DetailDeps:
    """Collaborators for detail composition (injected so tests can swap them)."""

    places: Any
    analyzer: Any
    cache_factory: Callable[[StoreRepository], SnapshotCache]
    repo_factory: RepositoryFactory = open_repository
    clock: Callable[[], datetime] = utc_now
    background: Callable[..., Any] = field(default=spawn_background)


def store_to_dict(store: Store) -> dict[str, Any]:
    return {
        "id": store.id,
        "name": store.name,
        "address": store.address,
        "latitude": store.latitude,
        "longitude": store.longitude,
        "externalPlaceId": store.external_place_id,
        "externalRating": store.external_rating,
        "externalReviewCount": store.external_review_count or 0,
        "category": infer_category(store.name),
    }


def rating_trust_for(store: Store, summary: StoreSummary, now: datetime):
    rating = store.external_rating if store.external_rating is not None else summary.weighted_rating
    review_count = max(int(store.external_review_count or 0), summary.review_count)
    signals = [t for t in (summary.latest_external_review_at, summary.last_analyzed_at) if t is not None]
    return compute_rating_trust_score(rating, review_count, max(signals) if signals else None, now=now)


async def local_fields(repo, store: Store, now: datetime) -> dict[str, Any]:
    """Always-fresh, DB-only part of the detail view."""
    summary = await load_store_summary(repo, store)
    try:
        user_reviews = await repo.list_user_reviews(store.id)
    except MissingRelationError:
        user_reviews = []
    user_ratings = [float(r.rating) for r in user_reviews]
    return {
        "summary": summary.to_dict(),
        "ratingTrust": rating_trust_for(store, summary, now).to_dict(),
        "appAverageRating": summary.app_average_rating,
        "userReviewAverage": round(sum(user_ratings) / len(user_ratings), 2) if user_ratings else None,
        "userReviews": [
            {
                "id": r.id,
                "rating": r.rating,
                "food": r.food,
                "price": r.price,
                "service": r.service,
                "space": r.space,
                "waitTime": r.wait_time,
                "comment": r.comment,
                "createdAt": r.created_at.isoformat() if r.created_at else None,
            }
            for r in user_reviews
        ],
    }


# ============================================================
# External reviews (cached in external_review_cache)
# ============================================================


async def get_external_reviews_for_store(
    repo,
    store: Store,
    places,
    analyzer,
    max_age_hours: int | None = None,
    force: bool = False,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Latest external reviews (each analysed), served from cache while fresh."""
    now = now or utc_now()
    max_age = timedelta(hours=max_age_hours or get_settings().external_review_cache_hours)

    cache_supported = True
    if not force:
        try:
            row = await repo.get_external_review_cache(store.id)
        except MissingRelationError:
            row, cache_supported = None, False
        if row is not None and row.updated_at is not None:
            updated = row.updated_at if row.updated_at.tzinfo else row.updated_at.replace(tzinfo=now.tzinfo)
            if now - updated <= max_age:
                payload = json.loads(row.payload_json)
                payload["cached"] = True
                return payload

    place_id = await resolve_place_id(repo, store, places)
    items: list[dict[str, Any]] = []
    if place_id:
        for review in await places.latest_reviews(place_id):
            analysis = await analyzer.analyze(
                AnalysisInput(rating=review.rating, content=review.text, source=ReviewSource.EXTERNAL)
            )
            items.append(
                {
                    "author": review.author,
                    "rating": review.rating,
                    "text": review.text,
                    "publishedAt": review.published_at,
                    "analysis": analysis_to_dict(analysis),
                }
            )

    payload = {"placeId": place_id, "reviews": items, "updatedAt": now.isoformat()}
    if cache_supported and place_id:
        try:
            async with repo.savepoint():
                await repo.put_external_review_cache(store.id, payload, now)
        except MissingRelationError as e:
            logger.warning(f"External review cache unavailable: {e}")
    payload["cached"] = False
    return payload


# ============================================================
# Nearby import (fire-and-forget)
# ============================================================


async def import_nearby_stores(
    repo_factory: RepositoryFactory,
    places,
    latitude: float,
    longitude: float,
    category: str,
    radius_m: float | None = None,
) -> int:
    """Create stores for nearby places through real-time duplicate prevention."""
    radius_m = radius_m or get_settings().peer_radius_m
    nearby = await places.search_nearby(latitude, longitude, radius_m, category)
    created = 0
    async with repo_factory() as repo:
        for place in nearby:
            if not place.name:
                continue
            candidate = StoreCandidate(
                name=place.name,
                address=place.address,
                latitude=place.latitude,
                longitude=place.longitude,
                external_place_id=place.place_id,
                external_rating=place.rating,
                external_review_count=place.review_count,
            )
            try:
                async with repo.savepoint():
                    result = await create_store(repo, candidate)
            except Exception as e:
                logger.warning(f"Nearby import skipped place {place.place_id}: {e}")
                continue
            if result.created:
                created += 1
    logger.info(f"Nearby import near ({latitude:.4f},{longitude:.4f}) created={created} of {len(nearby)}")
    return created


async def _write_snapshot(deps: DetailDeps, store_id: int, payload: dict[str, Any]) -> None:
    async with deps.repo_factory() as repo:
        await deps.cache_factory(repo).put(store_id, payload)
    logger.info(f"[snapshot] stored for store {store_id}")


# ============================================================
# Composite detail
# ============================================================


async def _place_block(repo, store: Store, places) -> dict[str, Any] | None:
    if places is None:
        return None
    place = await places.find_place(store.name, store.address, infer_category(store.name))
    if place is None:
        return None
    fills: dict[str, Any] = {}
    if not store.has_coordinates:
        if place.latitude is not None and place.longitude is not None:
            fills.update(latitude=place.latitude, longitude=place.longitude)
    if not store.external_place_id:
        fills["external_place_id"] = place.place_id
    if fills:
        await repo.update_store(store, **fills)
    return {
        "placeId": place.place_id,
        "name": place.name,
        "address": place.address,
        "rating": place.rating,
        "reviewCount": place.review_count,
        "photos": place.photos,
        "types": place.types,
    }


async def compose_store_detail(repo, store: Store, deps: DetailDeps) -> dict[str, Any]:
    """Full recomputation of the cacheable part of the detail view."""
    try:
        place = await _place_block(repo, store, deps.places)
    except Exception as e:
        logger.warning(f"Place lookup failed for store {store.id}: {e}")
        place = None

    try:
        external = await get_external_reviews_for_store(
            repo, store, deps.places, deps.analyzer, now=deps.clock()
        )
    except Exception as e:
        logger.warning(f"External reviews failed for store {store.id}: {e}")
        external = {"placeId": store.external_place_id, "reviews": [], "cached": False}

    try:
        peer_rank = await compute_peer_rank(repo, store, deps.places)
    except Exception as e:
        logger.warning(f"Peer rank failed for store {store.id}: {e}")
        peer_rank = None

    return {
        "store": store_to_dict(store),
        "place": place,
        "externalReviews": external.get("reviews", []),
        "peerRank": peer_rank.to_dict() if peer_rank else None,
    }


async def get_store_detail(repo, store_id: int, deps: DetailDeps, force_refresh: bool = False) -> dict[str, Any]:
    """Detail view: snapshot hit + fresh local overlay, or full recomputation.

    Raises:
        StoreNotFoundError: Unknown store.
    """
    store = await repo.get_store(store_id)
    if store is None:
        raise StoreNotFoundError(store_id)

    now = deps.clock()
    cache = deps.cache_factory(repo)

    if not force_refresh:
        try:
            entry = await cache.get(store_id)
        except MissingRelationError as e:
            logger.warning(f"[snapshot] cache unavailable: {e}")
            entry = None
        if entry is not None:
            logger.info(f"[snapshot] HIT for store {store_id}")
            payload = dict(entry.payload)
            payload.update(await local_fields(repo, store, now))
            payload["cache"] = {
                "hit": True,
                "createdAt": entry.created_at.isoformat(),
                "expiresAt": entry.expires_at.isoformat(),
            }
            return payload

    logger.info(f"[snapshot] MISS for store {store_id} (force={force_refresh})")
    composite = await compose_store_detail(repo, store, deps)

    deps.background(_write_snapshot(deps, store_id, composite), name=f"snapshot:{store_id}")
    if deps.places is not None and store.has_coordinates:
        deps.background(
            import_nearby_stores(
                deps.repo_factory,
                deps.places,
                store.latitude,
                store.longitude,
                infer_category(store.name),
            ),
            name=f"nearby-import:{store_id}",
        )

    payload = dict(composite)
    payload.update(await local_fields(repo, store, now))
    payload["cache"] = {"hit": False, "createdAt": None, "expiresAt": None}
    return payload


async def list_store_summaries(repo, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
    """Stores with their stored summaries (no recomputation)."""
    stores = await repo.list_stores(limit=limit, offset=offset)
    metrics = await repo.metrics_for_stores([s.id for s in stores])
    items = []
    for store in stores:
        row = metrics.get(store.id)
        rating, review_count = effective_rating(store, row)
        items.append(
            {
                **store_to_dict(store),
                "rating": rating,
                "reviewCount": review_count,
                "summary": StoreSummary.from_metrics(row).to_dict() if row else None,
            }
        )
    return items
