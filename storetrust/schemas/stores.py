"""Request/response schemas for the store endpoints (/v1/stores)."""

from typing import Any

from pydantic import BaseModel, Field


class StoreCreateRequest(BaseModel):
    """New venue candidate (checked against existing records before insert)."""

    name: str = Field(max_length=300)
    address: str | None = Field(default=None, max_length=500)
    latitude: float | None = None
    longitude: float | None = None
    external_place_id: str | None = Field(alias="externalPlaceId", default=None, max_length=200)
    external_rating: float | None = Field(alias="externalRating", default=None)
    external_review_count: int = Field(alias="externalReviewCount", default=0, ge=0)

    model_config = {"populate_by_name": True}


class StoreCreateResponse(BaseModel):
    created: bool
    matched_by: str | None = Field(alias="matchedBy", default=None)
    store: dict[str, Any]

    model_config = {"populate_by_name": True}


class ReviewCreateRequest(BaseModel):
    """In-app review. Rating is 0.5-5.0 in 0.5 steps (validated in the service)."""

    rating: float
    content: str
    author_name: str | None = Field(alias="authorName", default=None)
    is_disclosed_ad: bool = Field(alias="isDisclosedAd", default=False)

    model_config = {"populate_by_name": True}


class ReviewCreateResponse(BaseModel):
    review_id: int = Field(alias="reviewId")
    analysis: dict[str, Any]
    summary: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class UserReviewCreateRequest(BaseModel):
    rating: float
    user_id: str | None = Field(alias="userId", default=None)
    food: str | None = None
    price: str | None = None
    service: str | None = None
    space: str | None = None
    wait_time: str | None = Field(alias="waitTime", default=None)
    comment: str | None = None

    model_config = {"populate_by_name": True}
