"""ReviewAnalysis model.

History is retained (one review may have many analyses); only the most recent
row per review is authoritative for aggregation.
"""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storetrust.stores.postgres import Base


class ReviewAnalysis(Base):
    __tablename__ = "review_analyses"

    id: Mapped[int] = mapped_column(primary_key=True)
    review_id: Mapped[int] = mapped_column(ForeignKey("reviews.id"), index=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id"), index=True)

    # Provider meta
    model_provider: Mapped[str] = mapped_column(String(50))  # gemini, openai, heuristic
    model_name: Mapped[str] = mapped_column(String(100))
    analysis_version: Mapped[str] = mapped_column(String(20), default="v1")

    # Scores, all in [0, 1]
    ad_risk: Mapped[float] = mapped_column(Float)
    undisclosed_ad_risk: Mapped[float] = mapped_column(Float)
    low_quality_risk: Mapped[float] = mapped_column(Float)
    trust_score: Mapped[float] = mapped_column(Float)
    confidence: Mapped[float] = mapped_column(Float)

    # Signal tags (JSON array serialized as text)
    signals_json: Mapped[str] = mapped_column(Text, default="[]")
    reason_summary: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )
