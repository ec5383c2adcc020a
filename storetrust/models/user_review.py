"""UserReview model.

Structured feedback from signed-in app users. Separate from `reviews` so the
structured answers (food/price/service/space/wait_time) stay queryable.
"""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storetrust.stores.postgres import Base

FOOD_CHOICES = ("good", "normal", "bad")
PRICE_CHOICES = ("expensive", "normal", "cheap")
SERVICE_CHOICES = ("good", "normal", "bad")
SPACE_CHOICES = ("enough", "normal", "narrow")
WAIT_TIME_CHOICES = ("short", "normal", "long")


class UserReview(Base):
    __tablename__ = "user_reviews"

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id"), index=True)
    user_id: Mapped[str | None] = mapped_column(String(200), index=True)

    rating: Mapped[float] = mapped_column(Float)  # 0.5-5, 0.5 steps
    food: Mapped[str | None] = mapped_column(String(20))
    price: Mapped[str | None] = mapped_column(String(20))
    service: Mapped[str | None] = mapped_column(String(20))
    space: Mapped[str | None] = mapped_column(String(20))
    wait_time: Mapped[str | None] = mapped_column(String(20))
    comment: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )
