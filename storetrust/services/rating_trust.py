"""Rating Trust Score: confidence in a venue's aggregate rating itself.

Independent of review content. Total (0-100) = sample size (50) + rating
stability (25) + freshness (25). Source agreement is deliberately not scored.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone

LABEL_CERTAIN = "certain"
LABEL_TRUSTWORTHY = "trustworthy"
LABEL_REFERENCE_ONLY = "reference_only"
LABEL_SUSPECT = "suspect"
LABEL_UNRELIABLE = "unreliable"

# (max days since last signal, score)
FRESHNESS_STEPS = [(1, 25), (3, 22), (7, 19), (14, 14), (30, 9)]
FRESHNESS_STALE = 4
FRESHNESS_UNKNOWN = 10
STABILITY_UNKNOWN = 6


@dataclass
class RatingTrustComponent:
    score: int
    max_score: int
    description: str


@dataclass
class RatingTrustScore:
    total: int
    label: str
    sample_size: RatingTrustComponent
    stability: RatingTrustComponent
    freshness: RatingTrustComponent

    def to_dict(self) -> dict:
        def component(c: RatingTrustComponent) -> dict:
            return {"score": c.score, "maxScore": c.max_score, "description": c.description}

        return {
            "totalScore": self.total,
            "label": self.label,
            "breakdown": {
                "sampleSize": component(self.sample_size),
                "stability": component(self.stability),
                "freshness": component(self.freshness),
            },
        }


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def sample_size_score(review_count: int) -> float:
    if review_count <= 0:
        return 0.0
    raw = math.log10(review_count + 1) / math.log10(501) * 50
    return _clamp(raw, 0.0, 50.0)


def stability_score(rating: float | None, review_count: int) -> float:
    if rating is None or review_count <= 0:
        return float(STABILITY_UNKNOWN)
    high_rating = _clamp((rating - 4.2) / 0.8, 0.0, 1.0)
    low_sample = _clamp((40 - review_count) / 40, 0.0, 1.0)
    return _clamp(25 - high_rating * low_sample * 19, 4.0, 25.0)


def _days_since(last_signal_at: datetime, now: datetime) -> float:
    if last_signal_at.tzinfo is None:
        last_signal_at = last_signal_at.replace(tzinfo=timezone.utc)
    return (now - last_signal_at).total_seconds() / 86400


def freshness_score(last_signal_at: datetime | None, now: datetime) -> float:
    if last_signal_at is None:
        return float(FRESHNESS_UNKNOWN)
    days = _days_since(last_signal_at, now)
    for max_days, score in FRESHNESS_STEPS:
        if days <= max_days:
            return float(score)
    return float(FRESHNESS_STALE)


def _sample_size_description(review_count: int) -> str:
    if review_count >= 300:
        return "Very large sample"
    if review_count >= 100:
        return "Large sample"
    if review_count >= 30:
        return "Moderate sample"
    if review_count >= 10:
        return "Small sample"
    if review_count > 0:
        return "Very small sample"
    return "No reviews"


def _stability_description(rating: float | None, review_count: int) -> str:
    if rating is None or review_count <= 0:
        return "Not enough data to judge stability"
    if rating >= 4.8 and review_count < 20:
        return "High rating on a small sample; may swing"
    if rating >= 4.6 and review_count < 40:
        return "High rating, sample not yet sufficient"
    return "Rating pattern looks stable"


def _freshness_description(last_signal_at: datetime | None, now: datetime) -> str:
    if last_signal_at is None:
        return "No update timestamp"
    days = _days_since(last_signal_at, now)
    if days <= 1:
        return "Updated within a day"
    if days <= 7:
        return "Updated within a week"
    if days <= 30:
        return "Updated within a month"
    return "Not updated for a long time"


def trust_label(total: int) -> str:
    if total >= 85:
        return LABEL_CERTAIN
    if total >= 70:
        return LABEL_TRUSTWORTHY
    if total >= 55:
        return LABEL_REFERENCE_ONLY
    if total >= 40:
        return LABEL_SUSPECT
    return LABEL_UNRELIABLE


def compute_rating_trust_score(
    rating: float | None,
    review_count: int,
    last_signal_at: datetime | None = None,
    now: datetime | None = None,
) -> RatingTrustScore:
    """Score how much the aggregate rating itself can be believed.

    Args:
        rating: Aggregate (external) rating, None when unknown.
        review_count: Number of reviews behind the rating.
        last_signal_at: Most recent sync / review timestamp.
        now: Injected clock value (defaults to current UTC time).
    """
    now = now or datetime.now(timezone.utc)
    review_count = max(0, int(review_count or 0))

    sample = sample_size_score(review_count)
    stability = stability_score(rating, review_count)
    freshness = freshness_score(last_signal_at, now)
    total = round_half_up(sample + stability + freshness)

    return RatingTrustScore(
        total=total,
        label=trust_label(total),
        sample_size=RatingTrustComponent(
            round_half_up(sample), 50, _sample_size_description(review_count)
        ),
        stability=RatingTrustComponent(
            round_half_up(stability), 25, _stability_description(rating, review_count)
        ),
        freshness=RatingTrustComponent(
            round_half_up(freshness), 25, _freshness_description(last_signal_at, now)
        ),
    )
