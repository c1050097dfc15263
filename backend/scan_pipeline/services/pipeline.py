"""
Scan processing pipeline.

One invocation claims a batch of queued jobs and runs each through:

    extract -> enrich -> geocode -> resolve

Each stage is a function (state) -> state. Fatal stages (extract, resolve)
raise StageError and short-circuit the job into 'failed'. Non-fatal stages
(enrich, geocode) return the state unchanged on failure. There are no
inline retries; the sweeper requeues failed and stuck jobs.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from ..config import Config
from ..errors import PipelineError, QueueStateError, StageError
from ..feature_flags import FeatureFlags, get_feature_flags
from ..models.labels import EnrichedWine, ExtractedLabel, GeocodeResult, ScanJob, WineRecord
from .enrichment import EnrichmentEngine
from .geocoder import Geocoder
from .label_extractor import LabelExtractor
from .queue_store import QueueStore
from .wine_repository import ResolutionResult, WineRepository

logger = logging.getLogger(__name__)


@dataclass
class PipelineState:
    """Accumulated result for one job as it moves through the stages."""
    job: ScanJob
    label: Optional[ExtractedLabel] = None
    wine: Optional[EnrichedWine] = None
    existing_wine: Optional[WineRecord] = None
    geocode: Optional[GeocodeResult] = None
    resolution: Optional[ResolutionResult] = None
    warnings: list[str] = field(default_factory=list)

    def processed_data(self) -> dict:
        """JSON result recorded on the completed job."""
        wine = self.wine or (EnrichedWine.from_label(self.label) if self.label else None)
        return {
            "wine": wine.to_dict() if wine else None,
            "geocode": self.geocode.to_dict() if self.geocode else None,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "warnings": list(self.warnings),
        }


@dataclass
class JobOutcome:
    job_id: int
    success: bool
    error_message: Optional[str] = None
    processed_data: Optional[dict] = None
    reused: bool = False


@dataclass
class QueueRunResult:
    processed: int
    failed: int
    total: int
    outcomes: list[JobOutcome] = field(default_factory=list)


Stage = Callable[[PipelineState], Awaitable[PipelineState]]


def clamp_limit(limit: Optional[int]) -> int:
    """Default 5 jobs per run, never more than the configured cap."""
    if limit is None:
        return Config.queue_default_limit()
    return max(1, min(int(limit), Config.queue_max_limit()))


class ScanPipeline:
    """Claims queued scans and turns them into resolved wine rows."""

    def __init__(
        self,
        queue: Optional[QueueStore] = None,
        repository: Optional[WineRepository] = None,
        extractor: Optional[LabelExtractor] = None,
        enrichment: Optional[EnrichmentEngine] = None,
        geocoder: Optional[Geocoder] = None,
        flags: Optional[FeatureFlags] = None,
    ):
        self.flags = flags or get_feature_flags()
        self.queue = queue or QueueStore()
        self.repository = repository or WineRepository(self.queue.db_path)
        self.extractor = extractor or LabelExtractor(flags=self.flags)
        self.enrichment = enrichment or EnrichmentEngine()
        self.geocoder = geocoder or Geocoder()

    # === Stages ===

    async def extract(self, state: PipelineState) -> PipelineState:
        state.label = await self.extractor.extract(state.job.image_url, state.job.ocr_text)
        state.wine = EnrichedWine.from_label(state.label)
        return state

    async def enrich(self, state: PipelineState) -> PipelineState:
        if not self.flags.feature_enrichment:
            return state
        label = state.label
        state.existing_wine = self.repository.find_wine(label.producer, label.wine_name)
        producer = self.repository.find_producer(label.producer)
        state.wine = await self.enrichment.enrich(label, state.existing_wine, producer)
        return state

    async def geocode(self, state: PipelineState) -> PipelineState:
        if not self.flags.feature_geocoding:
            return state
        wine = state.wine
        producer = self.repository.find_producer(wine.producer)
        if producer and producer.get("location_confidence") == "exact":
            # Already pinned at the winery
            return state
        result = await self.geocoder.geocode(
            wine.producer,
            address=wine.producer_address,
            city=wine.producer_city,
            region=wine.region,
            country=wine.country,
        )
        if result is None:
            state.warnings.append("geocoding unavailable")
        state.geocode = result
        return state

    async def resolve(self, state: PipelineState) -> PipelineState:
        job = state.job
        state.resolution = self.repository.resolve(state.wine, state.geocode, scan_id=job.scan_id)
        if self.flags.feature_auto_tasting:
            state.resolution.tasting_id = self.repository.create_tasting(
                job.user_id, state.resolution.vintage_id, job.scan_id
            )
            if state.resolution.tasting_id is None:
                state.warnings.append("tasting not created")
        return state

    def stages(self) -> list[tuple[str, Stage]]:
        return [
            ("extract", self.extract),
            ("enrich", self.enrich),
            ("geocode", self.geocode),
            ("resolve", self.resolve),
        ]

    # === Orchestration ===

    async def run_stages(self, job: ScanJob) -> PipelineState:
        """
        Run all stages for one job.

        Raises:
            StageError: a fatal stage failed
        """
        state = PipelineState(job=job)
        for name, stage in self.stages():
            try:
                state = await stage(state)
            except StageError as e:
                e.job_id = job.id
                e.stage = e.stage or name
                if e.fatal:
                    raise
                logger.warning(f"[job {job.id}] {name} failed, continuing: {e}")
                state.warnings.append(f"{name} failed")
        return state

    def _finish(self, job: ScanJob, processed: Optional[dict] = None, error_message: Optional[str] = None) -> None:
        """Record the terminal state; a job taken back by the sweeper is left alone."""
        try:
            if error_message is None:
                self.queue.complete(job.id, processed or {})
            else:
                self.queue.fail(job.id, error_message)
        except QueueStateError as e:
            logger.warning(f"[job {job.id}] Result not recorded: {e}")

    async def process_job(self, job: ScanJob) -> JobOutcome:
        """Process one claimed (working) job to a terminal state."""
        duplicate = self.queue.find_completed_duplicate(job.image_url, job.ocr_text, exclude_id=job.id)
        if duplicate is not None:
            logger.info(f"[job {job.id}] Reusing result of completed job {duplicate.id}")
            resolution = duplicate.processed_data.get("resolution") or {}
            if job.scan_id is not None and resolution.get("vintage_id"):
                confidence = (duplicate.processed_data.get("wine") or {}).get("confidence")
                self.repository.link_scan(job.scan_id, resolution["vintage_id"], confidence)
            self._finish(job, processed=duplicate.processed_data)
            return JobOutcome(job.id, True, processed_data=duplicate.processed_data, reused=True)

        try:
            state = await self.run_stages(job)
        except PipelineError as e:
            message = f"{e.stage or 'pipeline'}: {e.message}" if isinstance(e, StageError) else e.message
            logger.error(f"[job {job.id}] Processing failed: {message}", exc_info=True)
            self._finish(job, error_message=message)
            return JobOutcome(job.id, False, error_message=message)
        except Exception as e:
            message = f"Unexpected error: {e}"
            logger.error(f"[job {job.id}] Processing failed: {message}", exc_info=True)
            self._finish(job, error_message=message)
            return JobOutcome(job.id, False, error_message=message)

        processed = state.processed_data()
        self._finish(job, processed=processed)
        logger.info(f"[job {job.id}] Completed (vintage {state.resolution.vintage_id})")
        return JobOutcome(job.id, True, processed_data=processed)

    async def process_queue(self, limit: Optional[int] = None) -> QueueRunResult:
        """Claim up to `limit` pending jobs and process them one after another."""
        jobs = self.queue.claim(clamp_limit(limit))
        if not jobs:
            logger.debug("No pending scan jobs")
            return QueueRunResult(processed=0, failed=0, total=0)

        outcomes = []
        for job in jobs:
            outcomes.append(await self.process_job(job))

        processed = sum(1 for o in outcomes if o.success)
        failed = len(outcomes) - processed
        logger.info(f"Queue run finished: {processed} processed, {failed} failed of {len(outcomes)}")
        return QueueRunResult(processed=processed, failed=failed, total=len(outcomes), outcomes=outcomes)
