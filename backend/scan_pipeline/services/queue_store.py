"""
Scan queue (wines_added table) repository.

Status lifecycle:
    pending -> working        claim()
    working -> completed      complete()
    working -> failed         fail() / finalize_failed()
    failed at the cap         finalize_exhausted() rewrites the last error
    working|failed -> pending requeue()  (sweeper only, retry_count += 1)

claim() is a single conditional UPDATE ... RETURNING statement, so two
workers can never claim the same job.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from ..db import BaseRepository, format_timestamp
from ..errors import DuplicateSubmissionError, QueueStateError
from ..models.enums import JobStatus
from ..models.labels import ScanJob

logger = logging.getLogger(__name__)


class QueueStore(BaseRepository):
    """Durable scan job queue backed by SQLite."""

    def _fetch_one(self, query: str, params: tuple) -> Optional[ScanJob]:
        conn = self._get_connection()
        row = conn.execute(query, params).fetchone()
        return ScanJob.from_row(row) if row else None

    def _fetch_all(self, query: str, params: tuple = ()) -> list[ScanJob]:
        conn = self._get_connection()
        return [ScanJob.from_row(row) for row in conn.execute(query, params).fetchall()]

    # === Submission ===

    def enqueue(
        self,
        user_id: str,
        image_url: str,
        ocr_text: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        scan_id: Optional[int] = None,
    ) -> ScanJob:
        """
        Insert a pending job.

        Raises:
            DuplicateSubmissionError: idempotency_key already used
        """
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO wines_added
                        (user_id, scan_id, image_url, ocr_text, idempotency_key, status, retry_count, created_at)
                    VALUES (?, ?, ?, ?, ?, 'pending', 0, ?)
                    """,
                    (user_id, scan_id, image_url, ocr_text, idempotency_key, format_timestamp()),
                )
                job_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            if idempotency_key and "idempotency_key" in str(e):
                existing = self.find_by_idempotency_key(idempotency_key)
                raise DuplicateSubmissionError(
                    "Scan already submitted",
                    existing_job_id=existing.id if existing else None,
                ) from e
            raise

        logger.info(f"Enqueued job {job_id} for user {user_id}")
        return self.get(job_id)

    def get(self, job_id: int) -> Optional[ScanJob]:
        return self._fetch_one("SELECT * FROM wines_added WHERE id = ?", (job_id,))

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[ScanJob]:
        return self._fetch_one(
            "SELECT * FROM wines_added WHERE idempotency_key = ?",
            (idempotency_key,),
        )

    def find_completed_duplicate(
        self,
        image_url: str,
        ocr_text: Optional[str],
        exclude_id: Optional[int] = None,
    ) -> Optional[ScanJob]:
        """Most recent completed job for the same image and OCR text."""
        return self._fetch_one(
            """
            SELECT * FROM wines_added
            WHERE status = 'completed'
              AND processed_data IS NOT NULL
              AND image_url = ?
              AND COALESCE(ocr_text, '') = ?
              AND id != ?
            ORDER BY processed_at DESC
            LIMIT 1
            """,
            (image_url, ocr_text or "", exclude_id if exclude_id is not None else -1),
        )

    # === Worker operations ===

    def claim(self, limit: int) -> list[ScanJob]:
        """
        Atomically move up to `limit` oldest pending jobs to working.

        Returns:
            The claimed jobs, oldest first. Empty if nothing is pending.
        """
        if limit <= 0:
            return []

        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE wines_added
                SET status = 'working', claimed_at = ?
                WHERE status = 'pending'
                  AND id IN (
                      SELECT id FROM wines_added
                      WHERE status = 'pending'
                      ORDER BY created_at, id
                      LIMIT ?
                  )
                RETURNING *
                """,
                (format_timestamp(), limit),
            )
            rows = cursor.fetchall()

        jobs = sorted((ScanJob.from_row(row) for row in rows), key=lambda j: (j.created_at or "", j.id))
        if jobs:
            logger.info(f"Claimed {len(jobs)} job(s): {[j.id for j in jobs]}")
        return jobs

    def _finish(self, job_id: int, status: JobStatus, assignments: str, params: tuple) -> bool:
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE wines_added
                SET status = ?, {assignments}, processed_at = ?
                WHERE id = ? AND status = 'working'
                """,
                (status.value, *params, format_timestamp(), job_id),
            )
            if cursor.rowcount == 1:
                return True
            row = cursor.execute("SELECT status FROM wines_added WHERE id = ?", (job_id,)).fetchone()

        if row is None:
            raise QueueStateError(f"Job {job_id} not found", job_id=job_id)
        if row["status"] == status.value:
            # Repeated terminal transition
            return False
        raise QueueStateError(
            f"Cannot mark job {job_id} {status.value}: job is {row['status']}",
            job_id=job_id,
        )

    def complete(self, job_id: int, processed_data: dict) -> bool:
        """
        Mark a working job completed with its result.

        Returns:
            True if the job transitioned, False if it was already completed

        Raises:
            QueueStateError: job missing or in another state
        """
        return self._finish(
            job_id,
            JobStatus.COMPLETED,
            "processed_data = ?, error_message = NULL",
            (json.dumps(processed_data, ensure_ascii=False),),
        )

    def fail(self, job_id: int, error_message: str) -> bool:
        """
        Mark a working job failed.

        Returns:
            True if the job transitioned, False if it was already failed
        """
        return self._finish(job_id, JobStatus.FAILED, "error_message = ?", (error_message,))

    # === Sweeper operations ===

    def find_stale_working(self, claimed_before: datetime) -> list[ScanJob]:
        return self._fetch_all(
            """
            SELECT * FROM wines_added
            WHERE status = 'working'
              AND COALESCE(claimed_at, created_at) < ?
            ORDER BY id
            """,
            (format_timestamp(claimed_before),),
        )

    def find_retryable_failed(self, failed_before: datetime, max_retries: int) -> list[ScanJob]:
        return self._fetch_all(
            """
            SELECT * FROM wines_added
            WHERE status = 'failed'
              AND retry_count < ?
              AND COALESCE(processed_at, created_at) < ?
            ORDER BY id
            """,
            (max_retries, format_timestamp(failed_before)),
        )

    def requeue(self, job_id: int, from_status: JobStatus, max_retries: int) -> bool:
        """
        Put a working/failed job back to pending and count the retry.

        Conditional on the job still being in from_status and under the
        retry cap, so overlapping sweeps cannot double-count.
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE wines_added
                SET status = 'pending',
                    retry_count = retry_count + 1,
                    claimed_at = NULL,
                    processed_at = NULL
                WHERE id = ? AND status = ? AND retry_count < ?
                """,
                (job_id, from_status.value, max_retries),
            )
            return cursor.rowcount == 1

    def finalize_failed(self, job_id: int, error_message: str) -> bool:
        """Permanently fail a stuck working job."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE wines_added
                SET status = 'failed', error_message = ?, processed_at = ?
                WHERE id = ? AND status = 'working'
                """,
                (error_message, format_timestamp(), job_id),
            )
            return cursor.rowcount == 1

    def find_exhausted_failed(self, max_retries: int, marker: str) -> list[ScanJob]:
        """Failed jobs at the retry cap whose message does not yet start with marker."""
        return self._fetch_all(
            """
            SELECT * FROM wines_added
            WHERE status = 'failed'
              AND retry_count >= ?
              AND (error_message IS NULL OR substr(error_message, 1, ?) != ?)
            ORDER BY id
            """,
            (max_retries, len(marker), marker),
        )

    def finalize_exhausted(self, job_id: int, previous_message: Optional[str], error_message: str) -> bool:
        """Replace the last error of a failed job at the cap with its final message."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE wines_added
                SET error_message = ?
                WHERE id = ? AND status = 'failed' AND error_message IS ?
                """,
                (error_message, job_id, previous_message),
            )
            return cursor.rowcount == 1

    # === Admin ===

    def delete_for_user(self, user_id: str) -> int:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM wines_added WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    def delete_all(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM wines_added")
            return cursor.rowcount

    def counts_by_status(self) -> dict[str, int]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM wines_added GROUP BY status"
        ).fetchall()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts
