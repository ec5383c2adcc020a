"""Store model.

A Store is a physical venue aggregated from manual entry, place search and
crawled listings. Ids are assigned once and never reused; rows are only
hard-deleted as the source side of a duplicate merge.
"""

from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storetrust.stores.postgres import Base


class Store(Base):
    """Venue record."""

    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(String(300), index=True)
    address: Mapped[str | None] = mapped_column(Text)
    # name_key|address_key, kept in sync by the repository on every write
    identity_key: Mapped[str | None] = mapped_column(Text, index=True)

    # Geolocation (both or neither in practice; geo-backfill fills gaps)
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)

    # External place identity (place-search provider)
    external_place_id: Mapped[str | None] = mapped_column(String(200), index=True)
    external_rating: Mapped[float | None] = mapped_column(Float)
    external_review_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def __repr__(self) -> str:
        return f"<Store {self.id} {self.name!r}>"
