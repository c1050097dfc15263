"""
Scan submission endpoints.

POST /scan           multipart image upload
POST /scan/base64    JSON body with a base64 image
GET  /scan/{job_id}  queue status for the journal banner

Both submit endpoints need a signed-in user, store the image, create the
scan row and enqueue a job. Processing happens asynchronously; when enabled,
one queue run is kicked off in the background after the response.
"""

import base64
import binascii
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Header, HTTPException, UploadFile, status

from ..errors import DuplicateSubmissionError, StorageError, ValidationError
from ..feature_flags import FeatureFlags, get_feature_flags
from ..models import ScanJobStatusResponse, SubmitScanRequest, SubmitScanResponse
from ..services.image_intake import ImageIntake
from ..services.pipeline import ScanPipeline
from ..services.queue_store import QueueStore
from ..services.submission import submit_scan
from ..services.wine_repository import WineRepository
from .deps import (
    get_current_user_id,
    get_image_intake,
    get_pipeline,
    get_queue_store,
    get_wine_repository,
)

logger = logging.getLogger(__name__)
router = APIRouter()

QUEUED_MESSAGE = "Scan queued for processing"


async def process_queue_in_background(pipeline: ScanPipeline) -> None:
    """Run one queue cycle after a submission has been answered."""
    try:
        result = await pipeline.process_queue()
        logger.info(f"Background queue run: {result.processed} processed, {result.failed} failed")
    except Exception as e:
        logger.error(f"Background queue run failed: {e}", exc_info=True)


def decode_base64_image(payload: str) -> bytes:
    """Decode base64 image data, accepting a data: URI prefix."""
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid base64 image data") from None


async def _submit(
    user_id: str,
    image_bytes: bytes,
    content_type: str,
    ocr_text: Optional[str],
    idempotency_key: Optional[str],
    background_tasks: BackgroundTasks,
    intake: ImageIntake,
    queue: QueueStore,
    repository: WineRepository,
    pipeline: ScanPipeline,
    flags: FeatureFlags,
) -> SubmitScanResponse:
    try:
        result = await submit_scan(
            intake,
            queue,
            repository,
            user_id=user_id,
            image_bytes=image_bytes,
            content_type=content_type,
            ocr_text=ocr_text,
            idempotency_key=idempotency_key,
        )
    except DuplicateSubmissionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "Scan already submitted", "queueItemId": e.existing_job_id},
        ) from None
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message) from None
    except StorageError as e:
        logger.error(f"Image upload failed for user {user_id}: {e} ({e.status_code})")
        raise HTTPException(status_code=502, detail="Image upload failed") from None

    if flags.feature_process_on_submit:
        background_tasks.add_task(process_queue_in_background, pipeline)

    return SubmitScanResponse(scanId=result.scan_id, queueItemId=result.job_id, message=QUEUED_MESSAGE)


@router.post("/scan", response_model=SubmitScanResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_scan_upload(
    background_tasks: BackgroundTasks,
    image: UploadFile = File(..., description="Wine label photo"),
    ocr_text: Optional[str] = Form(None, description="On-device OCR text"),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(get_current_user_id),
    intake: ImageIntake = Depends(get_image_intake),
    queue: QueueStore = Depends(get_queue_store),
    repository: WineRepository = Depends(get_wine_repository),
    pipeline: ScanPipeline = Depends(get_pipeline),
    flags: FeatureFlags = Depends(get_feature_flags),
) -> SubmitScanResponse:
    """Submit a label photo as a multipart upload."""
    try:
        image_bytes = await image.read()
    except IOError as e:
        logger.error(f"Failed to read uploaded image: {e}")
        raise HTTPException(status_code=400, detail="Failed to read image file")

    return await _submit(
        user_id,
        image_bytes,
        image.content_type or "image/jpeg",
        ocr_text,
        idempotency_key,
        background_tasks,
        intake,
        queue,
        repository,
        pipeline,
        flags,
    )


@router.post("/scan/base64", response_model=SubmitScanResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_scan_base64(
    body: SubmitScanRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    intake: ImageIntake = Depends(get_image_intake),
    queue: QueueStore = Depends(get_queue_store),
    repository: WineRepository = Depends(get_wine_repository),
    pipeline: ScanPipeline = Depends(get_pipeline),
    flags: FeatureFlags = Depends(get_feature_flags),
) -> SubmitScanResponse:
    """Submit a label photo as base64 JSON (web and native clients)."""
    image_bytes = decode_base64_image(body.image_base64)
    return await _submit(
        user_id,
        image_bytes,
        body.content_type,
        body.ocr_text,
        body.idempotency_key,
        background_tasks,
        intake,
        queue,
        repository,
        pipeline,
        flags,
    )


@router.get("/scan/{job_id}", response_model=ScanJobStatusResponse)
async def get_scan_status(
    job_id: int,
    user_id: str = Depends(get_current_user_id),
    queue: QueueStore = Depends(get_queue_store),
    repository: WineRepository = Depends(get_wine_repository),
) -> ScanJobStatusResponse:
    """Status of a submitted scan; only visible to its owner."""
    job = queue.get(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Scan not found")

    scan = repository.get_scan(job.scan_id) if job.scan_id else None
    return ScanJobStatusResponse(
        queueItemId=job.id,
        scanId=job.scan_id,
        status=job.status.value,
        error_message=job.error_message,
        retry_count=job.retry_count,
        matched_vintage_id=scan["matched_vintage_id"] if scan else None,
    )
