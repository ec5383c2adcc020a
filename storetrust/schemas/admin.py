"""Request schemas for admin batch endpoints (/v1/admin)."""

from pydantic import BaseModel, Field


class DedupeRequest(BaseModel):
    dry_run: bool = Field(alias="dryRun", default=False)
    max_groups: int | None = Field(alias="maxGroups", default=None, ge=1, le=100000)

    model_config = {"populate_by_name": True}


class BackfillGeoRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    only_missing: bool = Field(alias="onlyMissing", default=True)

    model_config = {"populate_by_name": True}


class AnalyzeReviewsRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=5000)
    force: bool = False

    model_config = {"populate_by_name": True}
