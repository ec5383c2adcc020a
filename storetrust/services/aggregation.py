"""Trust aggregation: per-review analyses -> StoreSummary.

Weighting:
- combined = 1 - (1 - adRisk) * (1 - undisclosedAdRisk)
- weight   = max(0.1, trustScore * (1 - combined * 0.8))

weighted_rating = sum(rating * weight) / sum(weight), 2 decimals, kept in [1, 5].
With no reviews the store's external rating is used (when it is a valid 1-5
value), otherwise None.

Reviews without a persisted analysis are scored by the heuristic evaluator on
the fly (nothing is written for them here).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from storetrust.models import Review, ReviewAnalysis, ReviewSource, Store, StoreMetrics
from storetrust.services.heuristic import (
    AnalysisInput,
    clamp01,
    combined_ad_probability,
    heuristic_analyze_review,
    round4,
)

logger = logging.getLogger("uvicorn.error")

MIN_RATING_WEIGHT = 0.1
AD_WEIGHT_PENALTY = 0.8
POSITIVE_RATING = 4.0


@dataclass
class StoreSummary:
    store_id: int
    weighted_rating: float | None
    app_average_rating: float | None
    ad_suspect_ratio: float
    trust_score: float
    positive_ratio: float
    review_count: int
    inapp_review_count: int
    external_review_count: int
    last_analyzed_at: datetime | None = None
    latest_external_review_at: datetime | None = None

    def to_metrics_values(self) -> dict[str, Any]:
        return {
            "weighted_rating": self.weighted_rating,
            "app_average_rating": self.app_average_rating,
            "ad_suspect_ratio": self.ad_suspect_ratio,
            "trust_score": self.trust_score,
            "positive_ratio": self.positive_ratio,
            "review_count": self.review_count,
            "inapp_review_count": self.inapp_review_count,
            "external_review_count": self.external_review_count,
            "last_analyzed_at": self.last_analyzed_at,
            "latest_external_review_at": self.latest_external_review_at,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "storeId": self.store_id,
            "weightedRating": self.weighted_rating,
            "appAverageRating": self.app_average_rating,
            "adSuspectRatio": self.ad_suspect_ratio,
            "trustScore": self.trust_score,
            "positiveRatio": self.positive_ratio,
            "reviewCount": self.review_count,
            "inappReviewCount": self.inapp_review_count,
            "externalReviewCount": self.external_review_count,
            "lastAnalyzedAt": self.last_analyzed_at.isoformat() if self.last_analyzed_at else None,
            "latestExternalReviewAt": (
                self.latest_external_review_at.isoformat() if self.latest_external_review_at else None
            ),
        }

    @classmethod
    def from_metrics(cls, row: StoreMetrics) -> "StoreSummary":
        return cls(
            store_id=row.store_id,
            weighted_rating=row.weighted_rating,
            app_average_rating=row.app_average_rating,
            ad_suspect_ratio=row.ad_suspect_ratio or 0.0,
            trust_score=row.trust_score if row.trust_score is not None else 0.5,
            positive_ratio=row.positive_ratio or 0.0,
            review_count=row.review_count or 0,
            inapp_review_count=row.inapp_review_count or 0,
            external_review_count=row.external_review_count or 0,
            last_analyzed_at=row.last_analyzed_at,
            latest_external_review_at=row.latest_external_review_at,
        )


def rating_weight(trust_score: float, combined: float) -> float:
    """Review weight; never below 0.1 so no review is fully discarded."""
    return max(MIN_RATING_WEIGHT, trust_score * (1 - combined * AD_WEIGHT_PENALTY))


def _valid_external_rating(rating: float | None) -> float | None:
    if rating is None:
        return None
    if 1.0 <= rating <= 5.0:
        return round(float(rating), 2)
    return None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _scores_for(review: Review, analysis: ReviewAnalysis | None) -> tuple[float, float]:
    """(trust_score, combined_ad_probability) for one review."""
    if analysis is not None:
        combined = combined_ad_probability(
            clamp01(analysis.ad_risk), clamp01(analysis.undisclosed_ad_risk)
        )
        return clamp01(analysis.trust_score), combined

    result = heuristic_analyze_review(
        AnalysisInput(
            rating=review.rating,
            content=review.content or "",
            is_disclosed_ad=bool(review.is_disclosed_ad),
            source=ReviewSource(review.source),
        )
    )
    return result.trust_score, combined_ad_probability(result.ad_risk, result.undisclosed_ad_risk)


def compute_store_summary(
    store: Store,
    reviews: Sequence[Review],
    analyses: dict[int, ReviewAnalysis],
) -> StoreSummary:
    """Fold a store's reviews (and their latest analyses) into a StoreSummary."""
    inapp_ratings: list[float] = []
    external_observed = 0
    latest_external: datetime | None = None
    last_analyzed: datetime | None = None

    weight_sum = 0.0
    weighted_sum = 0.0
    positive_weight = 0.0
    combined_sum = 0.0
    trust_sum = 0.0

    for review in reviews:
        analysis = analyses.get(review.id)
        trust, combined = _scores_for(review, analysis)
        weight = rating_weight(trust, combined)

        weight_sum += weight
        weighted_sum += float(review.rating) * weight
        if review.rating >= POSITIVE_RATING:
            positive_weight += weight
        combined_sum += combined
        trust_sum += trust

        if analysis is not None and analysis.created_at is not None:
            created = _as_utc(analysis.created_at)
            if last_analyzed is None or created > last_analyzed:
                last_analyzed = created

        if review.source == ReviewSource.INAPP.value:
            inapp_ratings.append(float(review.rating))
        else:
            external_observed += 1
            seen_at = _as_utc(review.published_at or review.created_at)
            if seen_at is not None and (latest_external is None or seen_at > latest_external):
                latest_external = seen_at

    n = len(reviews)
    if n and weight_sum > 0:
        weighted_rating: float | None = round(min(5.0, max(1.0, weighted_sum / weight_sum)), 2)
        positive_ratio = round4(clamp01(positive_weight / weight_sum))
        ad_suspect_ratio = round4(clamp01(combined_sum / n))
        trust_score = round4(clamp01(trust_sum / n))
    else:
        weighted_rating = _valid_external_rating(store.external_rating)
        positive_ratio = 0.0
        ad_suspect_ratio = 0.0
        trust_score = 0.5

    app_average = round(sum(inapp_ratings) / len(inapp_ratings), 2) if inapp_ratings else None

    return StoreSummary(
        store_id=store.id,
        weighted_rating=weighted_rating,
        app_average_rating=app_average,
        ad_suspect_ratio=ad_suspect_ratio,
        trust_score=trust_score,
        positive_ratio=positive_ratio,
        review_count=n,
        inapp_review_count=len(inapp_ratings),
        external_review_count=max(external_observed, int(store.external_review_count or 0)),
        last_analyzed_at=last_analyzed,
        latest_external_review_at=latest_external,
    )


async def refresh_store_summary(repo, store_id: int) -> StoreSummary | None:
    """Recompute and upsert the store_metrics row. Returns None for unknown stores."""
    store = await repo.get_store(store_id)
    if store is None:
        return None
    reviews = await repo.list_reviews(store_id)
    analyses = await repo.latest_analyses([r.id for r in reviews])
    summary = compute_store_summary(store, reviews, analyses)
    await repo.upsert_metrics(store_id, summary.to_metrics_values())
    return summary


async def load_store_summary(repo, store: Store) -> StoreSummary:
    """Stored summary when present, else computed (not persisted)."""
    row = await repo.get_metrics(store.id)
    if row is not None:
        return StoreSummary.from_metrics(row)
    reviews = await repo.list_reviews(store.id)
    analyses = await repo.latest_analyses([r.id for r in reviews])
    return compute_store_summary(store, reviews, analyses)
