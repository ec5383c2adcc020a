"""Review model.

Reviews are owned exclusively by one store and are re-pointed (never copied)
when stores are merged.

Rating domains:
- inapp: 0.5-5 in 0.5 steps
- external: 1-5 integer
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storetrust.stores.postgres import Base


class ReviewSource(str, Enum):
    """Where a review came from."""

    EXTERNAL = "external"
    INAPP = "inapp"


class Review(Base):
    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id"), index=True)

    source: Mapped[str] = mapped_column(String(20), index=True)
    rating: Mapped[float] = mapped_column(Float)
    content: Mapped[str] = mapped_column(Text)
    author_name: Mapped[str | None] = mapped_column(String(200))
    is_disclosed_ad: Mapped[bool] = mapped_column(Boolean, default=False)

    # Original publication time for external reviews (None for in-app)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )

    def __repr__(self) -> str:
        return f"<Review {self.id} store={self.store_id} {self.source} {self.rating}>"
