"""Store endpoints.

GET  /v1/stores                           list with stored summaries
POST /v1/stores                           create (duplicate-checked)
GET  /v1/stores/{id}                      composite detail (?force=true bypasses the snapshot)
POST /v1/stores/{id}/reviews              in-app review (analysed, summary refreshed)
POST /v1/stores/{id}/user-reviews         structured user feedback
GET  /v1/stores/{id}/peer-rank            rank among nearby comparable venues
GET  /v1/stores/{id}/rating-trust         Rating Trust Score
GET  /v1/stores/{id}/external-reviews     latest external reviews (cached)

Validation errors map to 400 VALIDATION_ERROR and unknown stores to 404
STORE_NOT_FOUND (handlers registered in main.create_app).
"""

from typing import Any

from fastapi import APIRouter, Depends, Path, Query, Response

from storetrust.routes.deps import (
    get_analyzer,
    get_detail_deps,
    get_places_client,
    get_repository,
)
from storetrust.schemas import (
    ErrorResponse,
    ReviewCreateRequest,
    ReviewCreateResponse,
    StoreCreateRequest,
    StoreCreateResponse,
    UserReviewCreateRequest,
)
from storetrust.services.aggregation import load_store_summary
from storetrust.services.analysis import analysis_to_dict
from storetrust.services.identity import StoreCandidate, StoreNotFoundError, create_store
from storetrust.services.peer_ranking import compute_peer_rank
from storetrust.services.reviews import create_inapp_review, create_user_review
from storetrust.services.snapshot import utc_now
from storetrust.services.store_detail import (
    get_external_reviews_for_store,
    get_store_detail,
    list_store_summaries,
    rating_trust_for,
    store_to_dict,
)

router = APIRouter(
    responses={
        400: {"model": ErrorResponse, "description": "Validation error"},
        404: {"model": ErrorResponse, "description": "Store not found"},
    }
)


async def _get_store_or_404(repo, store_id: int):
    store = await repo.get_store(store_id)
    if store is None:
        raise StoreNotFoundError(store_id)
    return store


@router.get("")
async def list_stores(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    repo=Depends(get_repository),
) -> dict[str, Any]:
    return {"stores": await list_store_summaries(repo, limit=limit, offset=offset)}


@router.post("", response_model=StoreCreateResponse)
async def create_store_endpoint(
    body: StoreCreateRequest,
    response: Response,
    repo=Depends(get_repository),
) -> StoreCreateResponse:
    """Create a store unless an existing one already represents it.

    Returns 201 when a row was inserted, 200 with `matchedBy` otherwise.
    """
    result = await create_store(
        repo,
        StoreCandidate(
            name=body.name,
            address=body.address,
            latitude=body.latitude,
            longitude=body.longitude,
            external_place_id=body.external_place_id,
            external_rating=body.external_rating,
            external_review_count=body.external_review_count,
        ),
    )
    response.status_code = 201 if result.created else 200
    return StoreCreateResponse(
        created=result.created,
        matched_by=result.matched_by,
        store=store_to_dict(result.store),
    )


@router.get("/{store_id}")
async def get_store(
    store_id: int = Path(description="Store id", ge=1),
    force: bool = Query(default=False, description="Bypass the detail snapshot"),
    repo=Depends(get_repository),
    deps=Depends(get_detail_deps),
) -> dict[str, Any]:
    return await get_store_detail(repo, store_id, deps, force_refresh=force)


@router.post("/{store_id}/reviews", response_model=ReviewCreateResponse, status_code=201)
async def submit_review(
    body: ReviewCreateRequest,
    store_id: int = Path(description="Store id", ge=1),
    repo=Depends(get_repository),
    analyzer=Depends(get_analyzer),
) -> ReviewCreateResponse:
    submission = await create_inapp_review(
        repo,
        analyzer,
        store_id=store_id,
        rating=body.rating,
        content=body.content,
        author_name=body.author_name,
        is_disclosed_ad=body.is_disclosed_ad,
    )
    return ReviewCreateResponse(
        review_id=submission.review.id,
        analysis=analysis_to_dict(submission.analysis),
        summary=submission.summary.to_dict() if submission.summary else None,
    )


@router.post("/{store_id}/user-reviews", status_code=201)
async def submit_user_review(
    body: UserReviewCreateRequest,
    store_id: int = Path(description="Store id", ge=1),
    repo=Depends(get_repository),
) -> dict[str, Any]:
    row = await create_user_review(
        repo,
        store_id=store_id,
        rating=body.rating,
        user_id=body.user_id,
        food=body.food,
        price=body.price,
        service=body.service,
        space=body.space,
        wait_time=body.wait_time,
        comment=body.comment,
    )
    return {"id": row.id, "storeId": row.store_id, "rating": row.rating}


@router.get("/{store_id}/peer-rank")
async def get_peer_rank(
    store_id: int = Path(description="Store id", ge=1),
    repo=Depends(get_repository),
    places=Depends(get_places_client),
) -> dict[str, Any]:
    store = await _get_store_or_404(repo, store_id)
    rank = await compute_peer_rank(repo, store, places)
    return {"storeId": store_id, "peerRank": rank.to_dict() if rank else None}


@router.get("/{store_id}/rating-trust")
async def get_rating_trust(
    store_id: int = Path(description="Store id", ge=1),
    repo=Depends(get_repository),
) -> dict[str, Any]:
    store = await _get_store_or_404(repo, store_id)
    summary = await load_store_summary(repo, store)
    return {"storeId": store_id, "ratingTrust": rating_trust_for(store, summary, utc_now()).to_dict()}


@router.get("/{store_id}/external-reviews")
async def get_external_reviews(
    store_id: int = Path(description="Store id", ge=1),
    max_age_hours: int | None = Query(default=None, alias="maxAgeHours", ge=1, le=24 * 30),
    force: bool = Query(default=False),
    repo=Depends(get_repository),
    places=Depends(get_places_client),
    analyzer=Depends(get_analyzer),
) -> dict[str, Any]:
    store = await _get_store_or_404(repo, store_id)
    payload = await get_external_reviews_for_store(
        repo, store, places, analyzer, max_age_hours=max_age_hours, force=force
    )
    return {"storeId": store_id, **payload}
