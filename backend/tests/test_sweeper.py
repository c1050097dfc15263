"""Tests for the retry sweeper and admin cleanup."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from scan_pipeline.errors import ValidationError
from scan_pipeline.models.enums import JobStatus
from scan_pipeline.models.labels import EnrichedWine
from scan_pipeline.services.image_intake import ImageIntake, SupabaseStorage
from scan_pipeline.services.sweeper import Sweeper, retry_exhausted_message

from conftest import IMAGE_URL, SUPABASE_URL


def _later(minutes):
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


@pytest.fixture
def sweeper(queue, repo):
    return Sweeper(
        queue=queue,
        repository=repo,
        max_retries=3,
        stale_after=timedelta(minutes=15),
        failed_after=timedelta(minutes=5),
    )


def _working_job(queue, **kwargs):
    queue.enqueue(user_id=kwargs.pop("user_id", "user-1"), image_url=IMAGE_URL, **kwargs)
    return queue.claim(1)[0]


def test_retry_exhausted_message():
    assert retry_exhausted_message(3, "extract: timeout") == "Processing failed after 3 retries: extract: timeout"
    assert retry_exhausted_message(3, None).startswith("Processing failed after 3 retries: ")


class TestStuckJobs:
    def test_fresh_working_job_is_left_alone(self, sweeper, queue):
        job = _working_job(queue)
        result = sweeper.run_sweep()
        assert result.requeued == [] and result.finalized == []
        assert queue.get(job.id).status == JobStatus.WORKING

    def test_stale_working_job_is_requeued(self, sweeper, queue):
        job = _working_job(queue)
        result = sweeper.run_sweep(now=_later(16))

        assert result.requeued == [job.id]
        stored = queue.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1

    def test_stale_job_at_cap_is_finalized(self, sweeper, queue):
        job = _working_job(queue)
        conn = queue._get_connection()
        conn.execute("UPDATE wines_added SET retry_count = 3 WHERE id = ?", (job.id,))
        conn.commit()

        result = sweeper.run_sweep(now=_later(16))

        assert result.finalized == [job.id]
        stored = queue.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message.startswith("Processing failed after 3 retries")


class TestFailedJobs:
    def _failed_job(self, queue, message="extract: timeout"):
        job = _working_job(queue)
        queue.fail(job.id, message)
        return job

    def test_recent_failure_waits(self, sweeper, queue):
        job = self._failed_job(queue)
        assert sweeper.run_sweep().requeued == []
        assert queue.get(job.id).status == JobStatus.FAILED

    def test_old_failure_is_requeued(self, sweeper, queue):
        job = self._failed_job(queue)
        result = sweeper.run_sweep(now=_later(6))
        assert result.requeued == [job.id]
        assert queue.get(job.id).retry_count == 1

    def test_retry_cap_is_final(self, sweeper, queue):
        job = self._failed_job(queue)
        for attempt in range(3):
            assert sweeper.run_sweep(now=_later(6)).requeued == [job.id]
            claimed = queue.claim(1)[0]
            queue.fail(claimed.id, f"attempt {attempt + 2} failed")

        result = sweeper.run_sweep(now=_later(60))
        assert result.requeued == []
        assert result.finalized == [job.id]
        stored = queue.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.retry_count == 3
        assert stored.error_message == "Processing failed after 3 retries: attempt 4 failed"

        again = sweeper.run_sweep(now=_later(120))
        assert again.requeued == [] and again.finalized == []
        assert queue.get(job.id).error_message == "Processing failed after 3 retries: attempt 4 failed"

    def test_failure_at_cap_is_finalized_without_waiting(self, sweeper, queue):
        job = _working_job(queue)
        conn = queue._get_connection()
        conn.execute("UPDATE wines_added SET retry_count = 3 WHERE id = ?", (job.id,))
        conn.commit()
        queue.fail(job.id, "resolve: database is locked")

        result = sweeper.run_sweep()

        assert result.finalized == [job.id]
        assert queue.get(job.id).error_message == "Processing failed after 3 retries: resolve: database is locked"

    def test_sweep_is_idempotent(self, sweeper, queue):
        job = self._failed_job(queue)
        sweeper.run_sweep(now=_later(6))
        second = sweeper.run_sweep(now=_later(6))
        assert second.requeued == []
        assert queue.get(job.id).retry_count == 1

    def test_completed_jobs_are_never_touched(self, sweeper, queue):
        job = _working_job(queue)
        queue.complete(job.id, {})
        result = sweeper.run_sweep(now=_later(600))
        assert result.requeued == [] and result.finalized == []


class TestCleanup:
    def _intake(self, status=200):
        def handler(request):
            if status != 200:
                return httpx.Response(status, text="storage down")
            if request.method == "POST":
                return httpx.Response(200, json=[{"name": "1.jpg"}])
            return httpx.Response(200, json=[{"name": "user-1/1.jpg"}])

        storage = SupabaseStorage(base_url=SUPABASE_URL, service_key="k", transport=httpx.MockTransport(handler))
        return ImageIntake(storage)

    def _seed(self, queue, repo, user_id):
        scan_id = repo.create_scan(user_id, f"{user_id}/1.jpg", IMAGE_URL)
        queue.enqueue(user_id=user_id, image_url=IMAGE_URL, scan_id=scan_id)
        result = repo.resolve(
            EnrichedWine(producer="Opus One Winery", wine_name="Opus One", confidence=0.9, year=2019),
            scan_id=scan_id,
        )
        repo.create_tasting(user_id, result.vintage_id, scan_id)

    @pytest.mark.asyncio
    async def test_requires_target(self, queue, repo):
        with pytest.raises(ValidationError):
            await Sweeper(queue=queue, repository=repo, intake=self._intake()).cleanup()

    @pytest.mark.asyncio
    async def test_user_cleanup(self, queue, repo):
        self._seed(queue, repo, "user-1")
        self._seed(queue, repo, "user-2")

        result = await Sweeper(queue=queue, repository=repo, intake=self._intake()).cleanup(user_id="user-1")

        assert result.stats == {
            "queue_deleted": 1,
            "enrichment_queue_deleted": 0,
            "tastings_deleted": 1,
            "scans_deleted": 1,
            "storage_objects_deleted": 1,
        }
        assert result.total_deleted == 4
        assert queue.counts_by_status()["pending"] == 1
        assert repo.find_wine("Opus One Winery", "Opus One") is not None

    @pytest.mark.asyncio
    async def test_storage_failure_is_best_effort(self, queue, repo):
        self._seed(queue, repo, "user-1")
        sweeper = Sweeper(queue=queue, repository=repo, intake=self._intake(status=500))

        result = await sweeper.cleanup(user_id="user-1")

        assert result.stats["storage_objects_deleted"] == 0
        assert result.stats["scans_deleted"] == 1

    @pytest.mark.asyncio
    async def test_delete_all(self, queue, repo):
        self._seed(queue, repo, "user-1")
        self._seed(queue, repo, "user-2")

        result = await Sweeper(queue=queue, repository=repo, intake=self._intake()).cleanup(delete_all=True)

        assert result.stats["queue_deleted"] == 2
        assert result.stats["scans_deleted"] == 2
        assert result.stats["tastings_deleted"] == 2
        assert result.stats["producers_deleted"] == 1
        assert repo.find_wine("Opus One Winery", "Opus One") is None
        assert result.message == "All wine data deleted"
