"""
Enrichment backfill endpoints.

POST /enrich-wines               queue the signed-in user's undescribed wines
POST /process-enrichment-queue   claim and enrich queued wines (internal)
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ..feature_flags import FeatureFlags, get_feature_flags
from ..models import (
    EnrichWinesRequest,
    EnrichWinesResponse,
    ProcessEnrichmentQueueRequest,
    ProcessEnrichmentQueueResponse,
)
from ..services.backfill import EnrichmentBackfill
from .deps import get_backfill, get_current_user_id, require_internal

logger = logging.getLogger(__name__)
router = APIRouter()


async def process_enrichment_in_background(backfill: EnrichmentBackfill) -> None:
    """Run one enrichment cycle after queueing has been answered."""
    try:
        result = await backfill.process_enrichment_queue()
        logger.info(f"Background enrichment run: {result.processed} processed, {result.failed} failed")
    except Exception as e:
        logger.error(f"Background enrichment run failed: {e}", exc_info=True)


@router.post("/enrich-wines", response_model=EnrichWinesResponse)
async def enrich_wines(
    body: EnrichWinesRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    backfill: EnrichmentBackfill = Depends(get_backfill),
    flags: FeatureFlags = Depends(get_feature_flags),
) -> EnrichWinesResponse:
    """Queue the wines in the user's journal that are missing details."""
    if body.action != "enrich":
        raise HTTPException(status_code=400, detail="Invalid action")

    result = backfill.queue_user_wines(user_id)
    if result.queued and flags.feature_process_on_submit:
        background_tasks.add_task(process_enrichment_in_background, backfill)

    return EnrichWinesResponse(
        success=True,
        queued=result.queued,
        skipped=result.skipped,
        message=f"Queued {result.queued} wines for enrichment, {result.skipped} already complete or queued",
    )


@router.post(
    "/process-enrichment-queue",
    response_model=ProcessEnrichmentQueueResponse,
    dependencies=[Depends(require_internal)],
)
async def process_enrichment_queue(
    body: Optional[ProcessEnrichmentQueueRequest] = None,
    backfill: EnrichmentBackfill = Depends(get_backfill),
) -> ProcessEnrichmentQueueResponse:
    """Enrich up to `limit` queued wines (default 5, capped server-side)."""
    if body is not None and body.action != "process":
        raise HTTPException(status_code=400, detail="Invalid action")

    result = await backfill.process_enrichment_queue(body.limit if body else None)
    if result.total == 0:
        message = "No pending enrichment jobs"
    else:
        message = f"Processed {result.processed} enrichment jobs, {result.failed} failed"
    return ProcessEnrichmentQueueResponse(
        success=True,
        processed=result.processed,
        failed=result.failed,
        total=result.total,
        message=message,
    )
