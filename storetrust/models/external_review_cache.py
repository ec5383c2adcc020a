"""ExternalReviewCache model.

Latest externally sourced reviews for a store (with their analyses), cached so
that repeated reads do not call the place provider.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storetrust.stores.postgres import Base


class ExternalReviewCache(Base):
    __tablename__ = "external_review_cache"

    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id"), primary_key=True)
    # JSON-serialized text to keep migrations simple
    payload_json: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        index=True,
    )
