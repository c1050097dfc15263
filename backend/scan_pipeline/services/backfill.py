"""
Enrichment backfill for wines already in the graph.

queue_user_wines() queues the vintages in a user's journal whose wine is
missing descriptive fields or grape varietals. process_enrichment_queue()
claims queued vintages and fills their gaps with the enrichment model.

Writes are fill-only. A failed attempt puts the job back to pending until
the retry cap, then leaves it failed. Working jobs older than the stale
threshold are recovered at the start of each run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import Config
from ..errors import PipelineError, ResolutionError
from ..models.enums import JobStatus
from ..models.labels import EnrichmentJob, ExtractedLabel
from .enrichment import EnrichmentEngine
from .enrichment_queue import EnrichmentQueueStore
from .wine_repository import WineRepository

logger = logging.getLogger(__name__)


@dataclass
class BackfillQueueResult:
    queued: int = 0
    skipped: int = 0


@dataclass
class EnrichmentOutcome:
    job_id: int
    success: bool
    filled: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
    final: bool = False


@dataclass
class EnrichmentRunResult:
    processed: int
    failed: int
    total: int
    recovered: int = 0
    outcomes: list[EnrichmentOutcome] = field(default_factory=list)


def clamp_enrichment_limit(limit: Optional[int]) -> int:
    """Default 5 jobs per run, never more than the configured cap."""
    if limit is None:
        return Config.enrichment_queue_default_limit()
    return max(1, min(int(limit), Config.enrichment_queue_max_limit()))


def job_label(job: EnrichmentJob) -> ExtractedLabel:
    """What is already known about a queued wine, shaped for the enrichment prompt."""
    return ExtractedLabel(
        producer=job.producer_name,
        wine_name=job.wine_name,
        confidence=1.0,
        year=job.year,
        region=job.region,
        country=job.country,
        varietals=list(job.existing_varietals),
    )


class EnrichmentBackfill:
    """Queues and enriches persisted wines that are missing data."""

    def __init__(
        self,
        queue: Optional[EnrichmentQueueStore] = None,
        repository: Optional[WineRepository] = None,
        engine: Optional[EnrichmentEngine] = None,
        max_retries: Optional[int] = None,
        stale_after: Optional[timedelta] = None,
    ):
        self.queue = queue or EnrichmentQueueStore()
        self.repository = repository or WineRepository(self.queue.db_path)
        self.engine = engine or EnrichmentEngine()
        self.max_retries = max_retries if max_retries is not None else Config.max_retries()
        self.stale_after = stale_after or timedelta(minutes=Config.sweeper_stale_minutes())

    def queue_user_wines(self, user_id: str, limit: Optional[int] = None) -> BackfillQueueResult:
        """Queue the user's undescribed journal vintages; complete or already queued ones are skipped."""
        result = BackfillQueueResult()
        candidates = self.repository.find_tasted_vintages(
            user_id, limit or Config.enrichment_backfill_scan_limit()
        )
        for item in candidates:
            if not item["needs_enrichment"]:
                result.skipped += 1
                continue
            job = self.queue.enqueue(
                user_id=user_id,
                vintage_id=item["vintage_id"],
                wine_id=item["wine_id"],
                producer_name=item["producer_name"],
                wine_name=item["wine_name"],
                year=item["year"],
                region=item["region"],
                country=item["country"],
                existing_varietals=item["varietals"],
            )
            if job is None:
                result.skipped += 1
            else:
                result.queued += 1

        logger.info(f"Queued {result.queued} wine(s) for enrichment for user {user_id}, {result.skipped} skipped")
        return result

    def _fail(self, job: EnrichmentJob, message: str) -> EnrichmentOutcome:
        status = self.queue.fail(job.id, message, self.max_retries)
        final = status == JobStatus.FAILED
        attempt = "final" if final else f"retry {job.retry_count + 1}/{self.max_retries}"
        logger.warning(f"[enrichment {job.id}] {job.wine_name} failed ({attempt}): {message}")
        return EnrichmentOutcome(job.id, False, error_message=message, final=final)

    async def process_job(self, job: EnrichmentJob) -> EnrichmentOutcome:
        """Enrich one claimed job and write the result fill-only."""
        try:
            existing = self.repository.get_wine(job.wine_id)
            if existing is None:
                raise ResolutionError(f"Wine not found: {job.wine_id}", stage="enrich")
            enriched = await self.engine.enrich_strict(job_label(job), existing)
            filled = self.repository.apply_enrichment(job.wine_id, job.vintage_id, enriched)
        except PipelineError as e:
            return self._fail(job, e.message)
        except Exception as e:
            logger.error(f"[enrichment {job.id}] Unexpected error", exc_info=True)
            return self._fail(job, f"Unexpected error: {e}")

        self.queue.complete(job.id, enriched.to_dict())
        logger.info(f"[enrichment {job.id}] {job.wine_name}: filled {filled or 'nothing'}")
        return EnrichmentOutcome(job.id, True, filled=filled)

    async def process_enrichment_queue(
        self,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EnrichmentRunResult:
        """Recover stale claims, then claim up to `limit` jobs and process them in order."""
        now = now or datetime.now(timezone.utc)
        recovered = self.queue.requeue_stale(now - self.stale_after, self.max_retries)
        if recovered:
            logger.info(f"Recovered {recovered} stale enrichment job(s)")

        jobs = self.queue.claim(clamp_enrichment_limit(limit))
        if not jobs:
            logger.debug("No pending enrichment jobs")
            return EnrichmentRunResult(processed=0, failed=0, total=0, recovered=recovered)

        outcomes = []
        for job in jobs:
            outcomes.append(await self.process_job(job))

        processed = sum(1 for o in outcomes if o.success)
        failed = len(outcomes) - processed
        logger.info(f"Enrichment run finished: {processed} processed, {failed} failed of {len(outcomes)}")
        return EnrichmentRunResult(
            processed=processed,
            failed=failed,
            total=len(outcomes),
            recovered=recovered,
            outcomes=outcomes,
        )
