"""StoreDetailSnapshot model.

Cached composite detail view. Never served past `expires_at`; expired rows are
purged lazily on the next miss.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storetrust.stores.postgres import Base


class StoreDetailSnapshot(Base):
    __tablename__ = "store_detail_snapshots"

    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id"), primary_key=True)
    snapshot_json: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
