"""SQLAlchemy ORM models.

Models represent database tables:
- stores: Venues (canonical identity records)
- reviews / review_analyses: Reviews and their risk analyses (history kept)
- user_reviews: Structured in-app feedback
- store_metrics: Materialized trust-weighted summary per store
- external_review_cache / store_detail_snapshots: Derived caches
"""

from storetrust.models.store import Store
from storetrust.models.review import Review, ReviewSource
from storetrust.models.review_analysis import ReviewAnalysis
from storetrust.models.store_metrics import StoreMetrics
from storetrust.models.user_review import UserReview
from storetrust.models.external_review_cache import ExternalReviewCache
from storetrust.models.detail_snapshot import StoreDetailSnapshot

__all__ = [
    "Store",
    "Review",
    "ReviewSource",
    "ReviewAnalysis",
    "StoreMetrics",
    "UserReview",
    "ExternalReviewCache",
    "StoreDetailSnapshot",
]
