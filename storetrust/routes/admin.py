"""Admin batch endpoints (dedupe, geo backfill, re-analysis, external import).

Guarded by CRON_SECRET when configured (`x-cron-secret` header or
`Authorization: Bearer <secret>`). Intended for cron jobs and manual runs.
"""

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path

from storetrust.routes.deps import get_analyzer, get_places_client, get_repository, require_cron_secret
from storetrust.schemas import AnalyzeReviewsRequest, BackfillGeoRequest, DedupeRequest
from storetrust.schemas.common import DEDUPE_IN_PROGRESS, error_body
from storetrust.services.identity import DedupeInProgressError, backfill_store_geo, dedupe_stores
from storetrust.services.reviews import import_external_reviews, run_incremental_analysis_batch

router = APIRouter(dependencies=[Depends(require_cron_secret)])
logger = logging.getLogger("uvicorn.error")


@router.post("/dedupe")
async def trigger_dedupe(request: DedupeRequest | None = None) -> dict[str, Any]:
    """Group duplicate stores and merge each group into its canonical record.

    With `dryRun` the groups are returned without any write.
    """
    request = request or DedupeRequest()
    try:
        stats = await dedupe_stores(dry_run=request.dry_run, max_groups=request.max_groups)
    except DedupeInProgressError as e:
        raise HTTPException(
            status_code=409,
            detail=error_body(DEDUPE_IN_PROGRESS, str(e)),
        )
    return {"success": True, "stats": asdict(stats)}


@router.post("/backfill-geo")
async def trigger_backfill_geo(
    request: BackfillGeoRequest | None = None,
    repo=Depends(get_repository),
    places=Depends(get_places_client),
) -> dict[str, Any]:
    request = request or BackfillGeoRequest()
    stats = await backfill_store_geo(
        repo,
        places,
        limit=request.limit,
        offset=request.offset,
        only_missing=request.only_missing,
    )
    return {"success": True, "stats": asdict(stats)}


@router.post("/analyze-reviews")
async def trigger_analyze_reviews(
    request: AnalyzeReviewsRequest | None = None,
    repo=Depends(get_repository),
    analyzer=Depends(get_analyzer),
) -> dict[str, Any]:
    """Analyze reviews missing a current-version analysis (all with `force`)."""
    request = request or AnalyzeReviewsRequest()
    stats = await run_incremental_analysis_batch(repo, analyzer, limit=request.limit, force=request.force)
    return {"success": True, "stats": asdict(stats)}


@router.post("/stores/{store_id}/import-external-reviews")
async def trigger_import_external_reviews(
    store_id: int = Path(description="Store id", ge=1),
    repo=Depends(get_repository),
    places=Depends(get_places_client),
    analyzer=Depends(get_analyzer),
) -> dict[str, Any]:
    stats = await import_external_reviews(repo, places, analyzer, store_id)
    return {
        "success": True,
        "stats": {
            "storeId": stats.store_id,
            "placeId": stats.place_id,
            "fetched": stats.fetched,
            "inserted": stats.inserted,
            "skippedExisting": stats.skipped_existing,
            "summary": stats.summary.to_dict() if stats.summary else None,
        },
    }
