"""initial_store_trust_schema

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "1a2b3c4d5e6f"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "stores",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=300), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("identity_key", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("external_place_id", sa.String(length=200), nullable=True),
        sa.Column("external_rating", sa.Float(), nullable=True),
        sa.Column("external_review_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_stores_name"), "stores", ["name"], unique=False)
    op.create_index(op.f("ix_stores_external_place_id"), "stores", ["external_place_id"], unique=False)
    op.create_index(op.f("ix_stores_identity_key"), "stores", ["identity_key"], unique=False)
    # Bounding-box pre-filter for geo duplicate checks and peer search
    op.create_index("ix_stores_lat_lng", "stores", ["latitude", "longitude"], unique=False)

    op.create_table(
        "reviews",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("author_name", sa.String(length=200), nullable=True),
        sa.Column("is_disclosed_ad", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_reviews_store_id"), "reviews", ["store_id"], unique=False)
    op.create_index(op.f("ix_reviews_source"), "reviews", ["source"], unique=False)
    op.create_index(op.f("ix_reviews_created_at"), "reviews", ["created_at"], unique=False)

    op.create_table(
        "review_analyses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("review_id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("model_provider", sa.String(length=50), nullable=False),
        sa.Column("model_name", sa.String(length=100), nullable=False),
        sa.Column("analysis_version", sa.String(length=20), nullable=False),
        sa.Column("ad_risk", sa.Float(), nullable=False),
        sa.Column("undisclosed_ad_risk", sa.Float(), nullable=False),
        sa.Column("low_quality_risk", sa.Float(), nullable=False),
        sa.Column("trust_score", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("signals_json", sa.Text(), nullable=False),
        sa.Column("reason_summary", sa.Text(), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["review_id"], ["reviews.id"]),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_review_analyses_review_id"), "review_analyses", ["review_id"], unique=False)
    op.create_index(op.f("ix_review_analyses_store_id"), "review_analyses", ["store_id"], unique=False)
    op.create_index(op.f("ix_review_analyses_created_at"), "review_analyses", ["created_at"], unique=False)

    op.create_table(
        "user_reviews",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=200), nullable=True),
        sa.Column("rating", sa.Float(), nullable=False),
        sa.Column("food", sa.String(length=20), nullable=True),
        sa.Column("price", sa.String(length=20), nullable=True),
        sa.Column("service", sa.String(length=20), nullable=True),
        sa.Column("space", sa.String(length=20), nullable=True),
        sa.Column("wait_time", sa.String(length=20), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_reviews_store_id"), "user_reviews", ["store_id"], unique=False)
    op.create_index(op.f("ix_user_reviews_user_id"), "user_reviews", ["user_id"], unique=False)
    op.create_index(op.f("ix_user_reviews_created_at"), "user_reviews", ["created_at"], unique=False)

    op.create_table(
        "store_metrics",
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("weighted_rating", sa.Float(), nullable=True),
        sa.Column("app_average_rating", sa.Float(), nullable=True),
        sa.Column("ad_suspect_ratio", sa.Float(), nullable=False),
        sa.Column("trust_score", sa.Float(), nullable=False),
        sa.Column("positive_ratio", sa.Float(), nullable=False),
        sa.Column("review_count", sa.Integer(), nullable=False),
        sa.Column("inapp_review_count", sa.Integer(), nullable=False),
        sa.Column("external_review_count", sa.Integer(), nullable=False),
        sa.Column("last_analyzed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("latest_external_review_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("store_id"),
    )

    op.create_table(
        "external_review_cache",
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("store_id"),
    )
    op.create_index(
        op.f("ix_external_review_cache_updated_at"), "external_review_cache", ["updated_at"], unique=False
    )

    op.create_table(
        "store_detail_snapshots",
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("snapshot_json", sa.Text(), nullable=False),
        _timestamp("created_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("store_id"),
    )
    op.create_index(
        op.f("ix_store_detail_snapshots_expires_at"), "store_detail_snapshots", ["expires_at"], unique=False
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_store_detail_snapshots_expires_at"), table_name="store_detail_snapshots")
    op.drop_table("store_detail_snapshots")
    op.drop_index(op.f("ix_external_review_cache_updated_at"), table_name="external_review_cache")
    op.drop_table("external_review_cache")
    op.drop_table("store_metrics")
    op.drop_index(op.f("ix_user_reviews_created_at"), table_name="user_reviews")
    op.drop_index(op.f("ix_user_reviews_user_id"), table_name="user_reviews")
    op.drop_index(op.f("ix_user_reviews_store_id"), table_name="user_reviews")
    op.drop_table("user_reviews")
    op.drop_index(op.f("ix_review_analyses_created_at"), table_name="review_analyses")
    op.drop_index(op.f("ix_review_analyses_store_id"), table_name="review_analyses")
    op.drop_index(op.f("ix_review_analyses_review_id"), table_name="review_analyses")
    op.drop_table("review_analyses")
    op.drop_index(op.f("ix_reviews_created_at"), table_name="reviews")
    op.drop_index(op.f("ix_reviews_source"), table_name="reviews")
    op.drop_index(op.f("ix_reviews_store_id"), table_name="reviews")
    op.drop_table("reviews")
    op.drop_index("ix_stores_lat_lng", table_name="stores")
    op.drop_index(op.f("ix_stores_identity_key"), table_name="stores")
    op.drop_index(op.f("ix_stores_external_place_id"), table_name="stores")
    op.drop_index(op.f("ix_stores_name"), table_name="stores")
    op.drop_table("stores")
