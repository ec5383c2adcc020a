"""Review intake and (re-)analysis.

- create_inapp_review: validate -> persist -> analyze -> persist analysis -> refresh summary
- create_user_review: structured feedback (food/price/service/space/wait_time)
- run_incremental_analysis_batch: analyze reviews missing an analysis for the
  current version (or all with force); one review failing never stops the batch
- import_external_reviews: pull the latest external reviews for a store's place
  and insert the unseen ones

Validation happens before any write, so rejected input has no side effects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from storetrust.models import Review, ReviewSource, Store, UserReview
from storetrust.models.user_review import (
    FOOD_CHOICES,
    PRICE_CHOICES,
    SERVICE_CHOICES,
    SPACE_CHOICES,
    WAIT_TIME_CHOICES,
)
from storetrust.services.aggregation import StoreSummary, refresh_store_summary
from storetrust.services.heuristic import AnalysisInput, AnalysisResult
from storetrust.services.identity import StoreNotFoundError, StoreValidationError
from storetrust.services.normalizer import name_key
from storetrust.services.peer_ranking import infer_category
from storetrust.settings import get_settings

logger = logging.getLogger("uvicorn.error")

MAX_CONTENT_LENGTH = 5000
MAX_COMMENT_LENGTH = 2000
MAX_AUTHOR_LENGTH = 200


def validate_half_step_rating(rating: Any) -> float:
    """0.5-5.0 in 0.5 steps."""
    try:
        value = float(rating)
    except (TypeError, ValueError):
        raise StoreValidationError("rating must be a number") from None
    if not 0.5 <= value <= 5.0:
        raise StoreValidationError("rating must be between 0.5 and 5.0")
    if (value * 2) != int(value * 2):
        raise StoreValidationError("rating must be in 0.5 steps")
    return value


def _validate_choice(field_name: str, value: str | None, choices: tuple[str, ...]) -> str | None:
    if value is None or value == "":
        return None
    if value not in choices:
        raise StoreValidationError(f"{field_name} must be one of {list(choices)}")
    return value


@dataclass
class ReviewSubmission:
    review: Review
    analysis: AnalysisResult
    summary: StoreSummary | None


async def _require_store(repo, store_id: int) -> Store:
    store = await repo.get_store(store_id)
    if store is None:
        raise StoreNotFoundError(store_id)
    return store


async def create_inapp_review(
    repo,
    analyzer,
    store_id: int,
    rating: Any,
    content: str | None,
    author_name: str | None = None,
    is_disclosed_ad: bool = False,
) -> ReviewSubmission:
    """Persist an in-app review with its analysis and return the new summary.

    Raises:
        StoreValidationError: Bad rating or empty content.
        StoreNotFoundError: Unknown store.
    """
    value = validate_half_step_rating(rating)
    text = (content or "").strip()
    if not text:
        raise StoreValidationError("content is required")
    if len(text) > MAX_CONTENT_LENGTH:
        raise StoreValidationError(f"content must be at most {MAX_CONTENT_LENGTH} characters")
    author = (author_name or "").strip()[:MAX_AUTHOR_LENGTH] or None

    await _require_store(repo, store_id)

    review = await repo.add_review(
        store_id=store_id,
        source=ReviewSource.INAPP.value,
        rating=value,
        content=text,
        author_name=author,
        is_disclosed_ad=bool(is_disclosed_ad),
    )
    analysis = await analyzer.analyze(
        AnalysisInput(
            rating=value,
            content=text,
            is_disclosed_ad=bool(is_disclosed_ad),
            source=ReviewSource.INAPP,
        )
    )
    await repo.add_analysis(review, analysis)
    summary = await refresh_store_summary(repo, store_id)
    return ReviewSubmission(review=review, analysis=analysis, summary=summary)


async def create_user_review(
    repo,
    store_id: int,
    rating: Any,
    user_id: str | None = None,
    food: str | None = None,
    price: str | None = None,
    service: str | None = None,
    space: str | None = None,
    wait_time: str | None = None,
    comment: str | None = None,
) -> UserReview:
    value = validate_half_step_rating(rating)
    values = {
        "food": _validate_choice("food", food, FOOD_CHOICES),
        "price": _validate_choice("price", price, PRICE_CHOICES),
        "service": _validate_choice("service", service, SERVICE_CHOICES),
        "space": _validate_choice("space", space, SPACE_CHOICES),
        "wait_time": _validate_choice("wait_time", wait_time, WAIT_TIME_CHOICES),
    }
    text = (comment or "").strip() or None
    if text and len(text) > MAX_COMMENT_LENGTH:
        raise StoreValidationError(f"comment must be at most {MAX_COMMENT_LENGTH} characters")

    await _require_store(repo, store_id)
    return await repo.add_user_review(
        store_id=store_id,
        user_id=(user_id or "").strip() or None,
        rating=value,
        comment=text,
        **values,
    )


# ============================================================
# Incremental re-analysis
# ============================================================


@dataclass
class AnalysisBatchStats:
    scanned: int = 0
    analyzed: int = 0
    failed: int = 0
    stores_refreshed: int = 0
    providers: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)


async def run_incremental_analysis_batch(
    repo,
    analyzer,
    limit: int | None = None,
    force: bool = False,
    version: str | None = None,
) -> AnalysisBatchStats:
    """Analyze reviews lacking a current-version analysis and refresh touched stores."""
    settings = get_settings()
    limit = limit or settings.analysis_batch_limit
    version = version or settings.analysis_version
    stats = AnalysisBatchStats()

    reviews = await repo.reviews_needing_analysis(version=version, limit=limit, force=force)
    touched: set[int] = set()
    for review in reviews:
        stats.scanned += 1
        try:
            analysis = await analyzer.analyze(
                AnalysisInput(
                    rating=review.rating,
                    content=review.content or "",
                    is_disclosed_ad=bool(review.is_disclosed_ad),
                    source=ReviewSource(review.source),
                )
            )
            async with repo.savepoint():
                await repo.add_analysis(review, analysis)
        except Exception as e:
            stats.failed += 1
            stats.errors.append({"reviewId": review.id, "error": str(e)})
            logger.warning(f"[analysis] review {review.id} failed: {e}")
            continue
        stats.analyzed += 1
        stats.providers[analysis.provider] = stats.providers.get(analysis.provider, 0) + 1
        touched.add(review.store_id)

    for store_id in sorted(touched):
        try:
            async with repo.savepoint():
                await refresh_store_summary(repo, store_id)
            stats.stores_refreshed += 1
        except Exception as e:
            stats.errors.append({"storeId": store_id, "error": str(e)})
            logger.warning(f"[analysis] summary refresh failed for store {store_id}: {e}")

    logger.info(
        f"[analysis] scanned={stats.scanned} analyzed={stats.analyzed} "
        f"failed={stats.failed} stores={stats.stores_refreshed}"
    )
    return stats


# ============================================================
# External review import
# ============================================================


@dataclass
class ExternalImportStats:
    store_id: int
    place_id: str | None = None
    fetched: int = 0
    inserted: int = 0
    skipped_existing: int = 0
    summary: StoreSummary | None = None


def review_fingerprint(author: str | None, text: str | None) -> str:
    return f"{name_key(author)}|{name_key((text or '')[:200])}"


def _parse_published_at(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


async def resolve_place_id(repo, store: Store, places) -> str | None:
    """Store's place id, looked up (and remembered) when missing."""
    if store.external_place_id:
        return store.external_place_id
    if places is None:
        return None
    place = await places.find_place(store.name, store.address, infer_category(store.name))
    if place is None:
        return None
    await repo.update_store(store, external_place_id=place.place_id)
    return place.place_id


async def import_external_reviews(repo, places, analyzer, store_id: int) -> ExternalImportStats:
    """Insert unseen latest external reviews as `external` reviews and refresh the summary."""
    store = await _require_store(repo, store_id)
    stats = ExternalImportStats(store_id=store_id)

    place_id = await resolve_place_id(repo, store, places)
    stats.place_id = place_id
    if not place_id:
        return stats

    latest = await places.latest_reviews(place_id)
    stats.fetched = len(latest)

    existing = {
        review_fingerprint(r.author_name, r.content)
        for r in await repo.list_reviews(store_id)
        if r.source == ReviewSource.EXTERNAL.value
    }
    for item in latest:
        fingerprint = review_fingerprint(item.author, item.text)
        if fingerprint in existing:
            stats.skipped_existing += 1
            continue
        existing.add(fingerprint)
        rating = max(1.0, min(5.0, float(round(item.rating))))
        review = await repo.add_review(
            store_id=store_id,
            source=ReviewSource.EXTERNAL.value,
            rating=rating,
            content=item.text,
            author_name=item.author,
            is_disclosed_ad=False,
            published_at=_parse_published_at(item.published_at),
        )
        analysis = await analyzer.analyze(
            AnalysisInput(rating=rating, content=item.text, source=ReviewSource.EXTERNAL)
        )
        await repo.add_analysis(review, analysis)
        stats.inserted += 1

    stats.summary = await refresh_store_summary(repo, store_id)
    logger.info(f"External import store={store_id} fetched={stats.fetched} inserted={stats.inserted}")
    return stats
