"""
Cleanup/retry sweeper.

run_sweep() is one stateless pass, meant to be triggered from outside
(cron, the /sweep-wine-queue endpoint, or `scripts/queue_worker.py sweep`):

- 'working' jobs claimed longer ago than the staleness threshold are
  requeued, or permanently failed once they reach the retry cap
- 'failed' jobs older than the age threshold are requeued while under
  the cap; at the cap they stay failed and their last error is rewritten
  as the final retry-exhausted message

cleanup() is the admin data reset for one user (or everything), covering
both the scan queue and the enrichment queue.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import Config
from ..errors import StorageError, ValidationError
from ..models.enums import JobStatus
from .enrichment_queue import EnrichmentQueueStore
from .image_intake import ImageIntake
from .queue_store import QueueStore
from .wine_repository import WineRepository

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    requeued: list[int] = field(default_factory=list)
    finalized: list[int] = field(default_factory=list)


@dataclass
class CleanupResult:
    message: str
    stats: dict[str, int]

    @property
    def total_deleted(self) -> int:
        return sum(self.stats.values())


RETRY_EXHAUSTED_PREFIX = "Processing failed after"


def retry_exhausted_message(retries: int, last_error: Optional[str]) -> str:
    message = f"{RETRY_EXHAUSTED_PREFIX} {retries} retries"
    if last_error:
        message += f": {last_error}"
    else:
        message += ": the job timed out while processing"
    return message


class Sweeper:
    """Requeues stuck or failed scan jobs, up to a retry cap."""

    def __init__(
        self,
        queue: Optional[QueueStore] = None,
        repository: Optional[WineRepository] = None,
        intake: Optional[ImageIntake] = None,
        max_retries: Optional[int] = None,
        stale_after: Optional[timedelta] = None,
        failed_after: Optional[timedelta] = None,
        enrichment_queue: Optional[EnrichmentQueueStore] = None,
    ):
        self.queue = queue or QueueStore()
        self.repository = repository or WineRepository(self.queue.db_path)
        self.enrichment_queue = enrichment_queue or EnrichmentQueueStore(self.queue.db_path)
        self._intake = intake
        self.max_retries = max_retries if max_retries is not None else Config.max_retries()
        self.stale_after = stale_after or timedelta(minutes=Config.sweeper_stale_minutes())
        self.failed_after = failed_after or timedelta(minutes=Config.sweeper_failed_age_minutes())

    @property
    def intake(self) -> ImageIntake:
        if self._intake is None:
            self._intake = ImageIntake()
        return self._intake

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one sweep pass. Safe to run repeatedly or concurrently."""
        now = now or datetime.now(timezone.utc)
        result = SweepResult()

        for job in self.queue.find_stale_working(now - self.stale_after):
            if job.retry_count < self.max_retries:
                if self.queue.requeue(job.id, JobStatus.WORKING, self.max_retries):
                    result.requeued.append(job.id)
                    logger.info(f"[job {job.id}] Stuck in working, requeued (retry {job.retry_count + 1}/{self.max_retries})")
            else:
                message = retry_exhausted_message(self.max_retries, job.error_message)
                if self.queue.finalize_failed(job.id, message):
                    result.finalized.append(job.id)
                    logger.warning(f"[job {job.id}] Permanently failed: {message}")

        for job in self.queue.find_retryable_failed(now - self.failed_after, self.max_retries):
            if self.queue.requeue(job.id, JobStatus.FAILED, self.max_retries):
                result.requeued.append(job.id)
                logger.info(f"[job {job.id}] Failed job requeued (retry {job.retry_count + 1}/{self.max_retries})")

        for job in self.queue.find_exhausted_failed(self.max_retries, RETRY_EXHAUSTED_PREFIX):
            message = retry_exhausted_message(self.max_retries, job.error_message)
            if self.queue.finalize_exhausted(job.id, job.error_message, message):
                result.finalized.append(job.id)
                logger.warning(f"[job {job.id}] Permanently failed: {message}")

        if result.requeued or result.finalized:
            logger.info(f"Sweep: {len(result.requeued)} requeued, {len(result.finalized)} finalized")
        return result

    async def cleanup(self, user_id: Optional[str] = None, delete_all: bool = False) -> CleanupResult:
        """
        Delete a user's queue entries, scans, tastings and stored images,
        or with delete_all, every scan plus the shared wine graph.

        Raises:
            ValidationError: neither user_id nor delete_all given
        """
        if not user_id and not delete_all:
            raise ValidationError("Either user_id or delete_all is required")

        if delete_all:
            stats = {"queue_deleted": self.queue.delete_all()}
            stats["enrichment_queue_deleted"] = self.enrichment_queue.delete_all()
            stats.update(self.repository.delete_all_data())
            message = "All wine data deleted"
        else:
            stats = {"queue_deleted": self.queue.delete_for_user(user_id)}
            stats["enrichment_queue_deleted"] = self.enrichment_queue.delete_for_user(user_id)
            stats.update(self.repository.delete_user_data(user_id))
            stats["storage_objects_deleted"] = await self._delete_images(user_id)
            message = f"Wine data deleted for user {user_id}"

        logger.info(f"Cleanup: {message} {stats}")
        return CleanupResult(message=message, stats=stats)

    async def _delete_images(self, user_id: str) -> int:
        # Storage cleanup is best effort; database rows are already gone
        try:
            return await self.intake.delete_user_objects(user_id)
        except StorageError as e:
            logger.warning(f"Could not delete stored images for user {user_id}: {e}")
            return 0
