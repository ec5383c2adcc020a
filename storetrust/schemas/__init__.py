"""Pydantic schemas for API request/response validation."""

from storetrust.schemas.admin import AnalyzeReviewsRequest, BackfillGeoRequest, DedupeRequest
from storetrust.schemas.common import ErrorDetail, ErrorResponse
from storetrust.schemas.stores import (
    ReviewCreateRequest,
    ReviewCreateResponse,
    StoreCreateRequest,
    StoreCreateResponse,
    UserReviewCreateRequest,
)

__all__ = [
    "AnalyzeReviewsRequest",
    "BackfillGeoRequest",
    "DedupeRequest",
    "ErrorDetail",
    "ErrorResponse",
    "ReviewCreateRequest",
    "ReviewCreateResponse",
    "StoreCreateRequest",
    "StoreCreateResponse",
    "UserReviewCreateRequest",
]
