"""StoreMetrics model (materialized StoreSummary row per store).

Derived data: safe to delete at any time, recomputed from reviews + analyses.
"""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, func
from sqlalchemy.orm import Mapped, mapped_column

from storetrust.stores.postgres import Base


class StoreMetrics(Base):
    __tablename__ = "store_metrics"

    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id"), primary_key=True)

    weighted_rating: Mapped[float | None] = mapped_column(Float)  # [1, 5]
    app_average_rating: Mapped[float | None] = mapped_column(Float)
    ad_suspect_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    trust_score: Mapped[float] = mapped_column(Float, default=0.5)
    positive_ratio: Mapped[float] = mapped_column(Float, default=0.0)

    review_count: Mapped[int] = mapped_column(Integer, default=0)
    inapp_review_count: Mapped[int] = mapped_column(Integer, default=0)
    external_review_count: Mapped[int] = mapped_column(Integer, default=0)

    last_analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    latest_external_review_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
