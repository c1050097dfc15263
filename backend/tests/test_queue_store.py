"""Tests for the scan job queue: submission, claiming and status transitions."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from scan_pipeline.errors import DuplicateSubmissionError, QueueStateError
from scan_pipeline.models.enums import JobStatus

from conftest import IMAGE_URL


def _enqueue(queue, n=1, user_id="user-1", **kwargs):
    return [
        queue.enqueue(user_id=user_id, image_url=f"{IMAGE_URL}?n={i}", **kwargs)
        for i in range(n)
    ]


class TestEnqueue:
    def test_new_job_is_pending(self, queue):
        job = queue.enqueue(user_id="user-1", image_url=IMAGE_URL, ocr_text="OPUS ONE 2019", idempotency_key="k1")
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert job.ocr_text == "OPUS ONE 2019"
        assert job.created_at is not None
        assert job.claimed_at is None

    def test_duplicate_idempotency_key(self, queue):
        first = queue.enqueue(user_id="user-1", image_url=IMAGE_URL, idempotency_key="same")
        with pytest.raises(DuplicateSubmissionError) as exc_info:
            queue.enqueue(user_id="user-1", image_url=IMAGE_URL, idempotency_key="same")
        assert exc_info.value.existing_job_id == first.id
        assert queue.counts_by_status()["pending"] == 1

    def test_jobs_without_key_do_not_conflict(self, queue):
        _enqueue(queue, 2)
        assert queue.counts_by_status()["pending"] == 2

    def test_find_by_idempotency_key(self, queue):
        job = queue.enqueue(user_id="user-1", image_url=IMAGE_URL, idempotency_key="abc")
        assert queue.find_by_idempotency_key("abc").id == job.id
        assert queue.find_by_idempotency_key("missing") is None


class TestClaim:
    def test_claims_oldest_first_up_to_limit(self, queue):
        jobs = _enqueue(queue, 4)
        claimed = queue.claim(2)
        assert [j.id for j in claimed] == [jobs[0].id, jobs[1].id]
        assert all(j.status == JobStatus.WORKING for j in claimed)
        assert all(j.claimed_at is not None for j in claimed)

    def test_claimed_jobs_are_not_claimed_again(self, queue):
        _enqueue(queue, 3)
        first = queue.claim(2)
        second = queue.claim(5)
        assert len(second) == 1
        assert second[0].id not in {j.id for j in first}
        assert queue.claim(5) == []

    def test_empty_queue(self, queue):
        assert queue.claim(5) == []

    def test_non_positive_limit(self, queue):
        _enqueue(queue, 1)
        assert queue.claim(0) == []
        assert queue.counts_by_status()["pending"] == 1

    def test_concurrent_claims_never_overlap(self, queue):
        _enqueue(queue, 40)
        claimed: list[int] = []
        lock = threading.Lock()
        errors: list[Exception] = []

        def worker():
            try:
                while True:
                    batch = queue.claim(3)
                    if not batch:
                        return
                    with lock:
                        claimed.extend(j.id for j in batch)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(claimed) == 40
        assert len(set(claimed)) == 40


class TestTransitions:
    def test_complete_records_processed_data(self, queue):
        _enqueue(queue, 1)
        job = queue.claim(1)[0]
        assert queue.complete(job.id, {"resolution": {"vintage_id": 7}}) is True

        stored = queue.get(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.processed_data == {"resolution": {"vintage_id": 7}}
        assert stored.processed_at is not None
        assert stored.error_message is None

    def test_repeated_complete_is_a_noop(self, queue):
        _enqueue(queue, 1)
        job = queue.claim(1)[0]
        queue.complete(job.id, {"a": 1})
        assert queue.complete(job.id, {"a": 2}) is False
        assert queue.get(job.id).processed_data == {"a": 1}

    def test_fail_records_error(self, queue):
        _enqueue(queue, 1)
        job = queue.claim(1)[0]
        assert queue.fail(job.id, "extract: no producer") is True
        stored = queue.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "extract: no producer"

    def test_cannot_complete_pending_job(self, queue):
        job = _enqueue(queue, 1)[0]
        with pytest.raises(QueueStateError):
            queue.complete(job.id, {})
        assert queue.get(job.id).status == JobStatus.PENDING

    def test_cannot_fail_completed_job(self, queue):
        _enqueue(queue, 1)
        job = queue.claim(1)[0]
        queue.complete(job.id, {})
        with pytest.raises(QueueStateError):
            queue.fail(job.id, "late failure")
        assert queue.get(job.id).status == JobStatus.COMPLETED

    def test_missing_job(self, queue):
        with pytest.raises(QueueStateError):
            queue.complete(999, {})


class TestRequeue:
    def test_requeue_working_job(self, queue):
        _enqueue(queue, 1)
        job = queue.claim(1)[0]
        assert queue.requeue(job.id, JobStatus.WORKING, max_retries=3) is True

        stored = queue.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1
        assert stored.claimed_at is None

    def test_requeue_requires_expected_status(self, queue):
        _enqueue(queue, 1)
        job = queue.claim(1)[0]
        assert queue.requeue(job.id, JobStatus.FAILED, max_retries=3) is False
        assert queue.get(job.id).status == JobStatus.WORKING

    def test_requeue_respects_cap(self, queue):
        _enqueue(queue, 1)
        job_id = None
        for attempt in range(3):
            job = queue.claim(1)[0]
            job_id = job.id
            queue.fail(job.id, f"attempt {attempt}")
            assert queue.requeue(job.id, JobStatus.FAILED, max_retries=3) is True

        job = queue.claim(1)[0]
        queue.fail(job.id, "attempt 3")
        assert queue.requeue(job_id, JobStatus.FAILED, max_retries=3) is False
        stored = queue.get(job_id)
        assert stored.status == JobStatus.FAILED
        assert stored.retry_count == 3

    def test_finalize_failed_only_from_working(self, queue):
        pending = _enqueue(queue, 2)[1]
        working = queue.claim(1)[0]
        assert queue.finalize_failed(working.id, "gave up") is True
        assert queue.finalize_failed(pending.id, "gave up") is False
        assert queue.get(working.id).status == JobStatus.FAILED
        assert queue.get(pending.id).status == JobStatus.PENDING


class TestSweeperQueries:
    def test_find_stale_working(self, queue):
        _enqueue(queue, 1)
        job = queue.claim(1)[0]
        now = datetime.now(timezone.utc)
        assert queue.find_stale_working(now - timedelta(minutes=15)) == []
        stale = queue.find_stale_working(now + timedelta(minutes=1))
        assert [j.id for j in stale] == [job.id]

    def test_find_retryable_failed_excludes_capped(self, queue):
        _enqueue(queue, 2)
        first, second = queue.claim(2)
        queue.fail(first.id, "boom")
        queue.fail(second.id, "boom")
        conn = queue._get_connection()
        conn.execute("UPDATE wines_added SET retry_count = 3 WHERE id = ?", (second.id,))
        conn.commit()

        later = datetime.now(timezone.utc) + timedelta(minutes=1)
        found = queue.find_retryable_failed(later, max_retries=3)
        assert [j.id for j in found] == [first.id]


class TestCompletedDuplicate:
    def test_finds_completed_job_with_same_image_and_text(self, queue):
        done = queue.enqueue(user_id="user-1", image_url=IMAGE_URL, ocr_text="OPUS ONE")
        queue.claim(1)
        queue.complete(done.id, {"resolution": {"vintage_id": 1}})
        again = queue.enqueue(user_id="user-2", image_url=IMAGE_URL, ocr_text="OPUS ONE")

        assert queue.find_completed_duplicate(IMAGE_URL, "OPUS ONE", exclude_id=again.id).id == done.id
        assert queue.find_completed_duplicate(IMAGE_URL, "OTHER", exclude_id=again.id) is None
        assert queue.find_completed_duplicate(IMAGE_URL, "OPUS ONE", exclude_id=done.id) is None

    def test_missing_ocr_matches_missing_ocr(self, queue):
        done = queue.enqueue(user_id="user-1", image_url=IMAGE_URL)
        queue.claim(1)
        queue.complete(done.id, {"wine": None})
        assert queue.find_completed_duplicate(IMAGE_URL, None).id == done.id


class TestAdmin:
    def test_counts_and_delete_for_user(self, queue):
        _enqueue(queue, 2, user_id="user-1")
        _enqueue(queue, 1, user_id="user-2")
        queue.claim(1)

        counts = queue.counts_by_status()
        assert counts == {"pending": 2, "working": 1, "completed": 0, "failed": 0}

        assert queue.delete_for_user("user-1") == 2
        assert queue.delete_all() == 1
