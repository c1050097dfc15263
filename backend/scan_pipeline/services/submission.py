"""
Scan submission: upload the image, record the scan, enqueue the job.

A supplied idempotency key is checked before uploading so a resubmission
does not leave an orphan object in storage. The queue's unique constraint
still decides races between concurrent submissions. When anything after
the upload fails, the scan row and the stored image are removed again.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import DuplicateSubmissionError, StorageError, UnsafeImageUrlError
from ..security import is_valid_image_url
from .image_intake import ImageIntake
from .queue_store import QueueStore
from .wine_repository import WineRepository

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    scan_id: int
    job_id: int
    image_url: str


def default_idempotency_key(image_url: str, ocr_text: Optional[str]) -> str:
    """SHA-256 of image URL and OCR text."""
    return hashlib.sha256(f"{image_url}|{ocr_text or ''}".encode("utf-8")).hexdigest()


async def submit_scan(
    intake: ImageIntake,
    queue: QueueStore,
    repository: WineRepository,
    user_id: str,
    image_bytes: bytes,
    content_type: str = "image/jpeg",
    ocr_text: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> SubmissionResult:
    """
    Store a label photo and queue it for processing.

    Raises:
        DuplicateSubmissionError: idempotency key already used
        ValidationError: bad image, or stored URL fails the fetch policy
        StorageError: upload failed
    """
    if idempotency_key:
        existing = queue.find_by_idempotency_key(idempotency_key)
        if existing is not None:
            raise DuplicateSubmissionError("Scan already submitted", existing_job_id=existing.id)

    stored = await intake.upload(image_bytes, user_id, content_type)
    scan_id = None
    try:
        # The worker fetches this URL later; refuse to queue anything it may not fetch
        if not is_valid_image_url(stored.public_url):
            raise UnsafeImageUrlError("Stored image URL is not allowed")

        ocr_text = ocr_text.strip() if ocr_text and ocr_text.strip() else None
        scan_id = repository.create_scan(user_id, stored.path, stored.public_url, ocr_text)
        job = queue.enqueue(
            user_id=user_id,
            image_url=stored.public_url,
            ocr_text=ocr_text,
            idempotency_key=idempotency_key or default_idempotency_key(stored.public_url, ocr_text),
            scan_id=scan_id,
        )
    except Exception:
        # Lost a race on the key, or the URL or the database was rejected
        if scan_id is not None:
            repository.delete_scan(scan_id)
        await _discard_image(intake, stored.path)
        raise

    logger.info(f"Submitted scan {scan_id} as job {job.id} for user {user_id}")
    return SubmissionResult(scan_id=scan_id, job_id=job.id, image_url=stored.public_url)


async def _discard_image(intake: ImageIntake, path: str) -> None:
    try:
        await intake.delete_object(path)
    except StorageError as e:
        logger.warning(f"Could not delete orphaned image {path}: {e}")
