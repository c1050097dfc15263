"""
Internal queue endpoints, called by the scheduler with the service role key.

POST /process-wine-queue  claim and process a batch of pending scans
POST /sweep-wine-queue    requeue stuck or failed jobs
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from ..models import ProcessQueueRequest, ProcessQueueResponse, SweepResponse
from ..services.pipeline import ScanPipeline
from ..services.sweeper import Sweeper
from .deps import get_pipeline, get_sweeper, require_internal

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_internal)])


@router.post("/process-wine-queue", response_model=ProcessQueueResponse)
async def process_wine_queue(
    body: Optional[ProcessQueueRequest] = None,
    pipeline: ScanPipeline = Depends(get_pipeline),
) -> ProcessQueueResponse:
    """Process up to `limit` pending scans (default 5, capped server-side)."""
    result = await pipeline.process_queue(body.limit if body else None)
    return ProcessQueueResponse(
        success=True,
        processed_count=result.processed,
        failed_count=result.failed,
        total=result.total,
    )


@router.post("/sweep-wine-queue", response_model=SweepResponse)
async def sweep_wine_queue(sweeper: Sweeper = Depends(get_sweeper)) -> SweepResponse:
    result = sweeper.run_sweep()
    return SweepResponse(success=True, requeued=len(result.requeued), finalized=len(result.finalized))
