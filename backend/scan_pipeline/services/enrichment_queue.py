"""
Enrichment backfill queue (wines_enrichment_queue table) repository.

Status lifecycle:
    pending -> working             claim()
    working -> completed           complete()
    working -> pending | failed    fail() / requeue_stale()  (retry_count += 1,
                                   failed once the retry cap is reached)

Each vintage has at most one open (pending or working) job; enqueue()
returns None when one already exists.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from ..db import BaseRepository, format_timestamp
from ..models.enums import JobStatus
from ..models.labels import EnrichmentJob

logger = logging.getLogger(__name__)

# Lower than anything a user asks for directly
BULK_PRIORITY = 0


class EnrichmentQueueStore(BaseRepository):
    """Durable queue of persisted wines awaiting enrichment."""

    def _fetch_all(self, query: str, params: tuple = ()) -> list[EnrichmentJob]:
        conn = self._get_connection()
        return [EnrichmentJob.from_row(row) for row in conn.execute(query, params).fetchall()]

    def get(self, job_id: int) -> Optional[EnrichmentJob]:
        jobs = self._fetch_all("SELECT * FROM wines_enrichment_queue WHERE id = ?", (job_id,))
        return jobs[0] if jobs else None

    def enqueue(
        self,
        user_id: str,
        vintage_id: int,
        wine_id: int,
        producer_name: str,
        wine_name: str,
        year: Optional[int] = None,
        region: Optional[str] = None,
        country: Optional[str] = None,
        existing_varietals: Optional[list[str]] = None,
        priority: int = BULK_PRIORITY,
    ) -> Optional[EnrichmentJob]:
        """
        Queue a vintage for enrichment.

        Returns:
            The new pending job, or None if the vintage already has an open job
        """
        now = format_timestamp()
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO wines_enrichment_queue
                        (vintage_id, wine_id, user_id, producer_name, wine_name, year, region,
                         country, existing_varietals, priority, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                    """,
                    (
                        vintage_id,
                        wine_id,
                        user_id,
                        producer_name,
                        wine_name,
                        year,
                        region,
                        country,
                        json.dumps(existing_varietals or [], ensure_ascii=False),
                        priority,
                        now,
                        now,
                    ),
                )
                job_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            if "vintage_id" in str(e):
                logger.debug(f"Vintage {vintage_id} already queued for enrichment")
                return None
            raise
        return self.get(job_id)

    def claim(self, limit: int) -> list[EnrichmentJob]:
        """Atomically move up to `limit` pending jobs to working, highest priority first."""
        if limit <= 0:
            return []

        now = format_timestamp()
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE wines_enrichment_queue
                SET status = 'working', claimed_at = ?, updated_at = ?
                WHERE status = 'pending'
                  AND id IN (
                      SELECT id FROM wines_enrichment_queue
                      WHERE status = 'pending'
                      ORDER BY priority DESC, created_at, id
                      LIMIT ?
                  )
                RETURNING *
                """,
                (now, now, limit),
            )
            rows = cursor.fetchall()

        jobs = sorted(
            (EnrichmentJob.from_row(row) for row in rows),
            key=lambda j: (-j.priority, j.created_at or "", j.id),
        )
        if jobs:
            logger.info(f"Claimed {len(jobs)} enrichment job(s): {[j.id for j in jobs]}")
        return jobs

    def complete(self, job_id: int, enrichment_data: dict) -> bool:
        now = format_timestamp()
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE wines_enrichment_queue
                SET status = 'completed', enrichment_data = ?, error_message = NULL,
                    processed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'working'
                """,
                (json.dumps(enrichment_data, ensure_ascii=False), now, now, job_id),
            )
            return cursor.rowcount == 1

    def fail(self, job_id: int, error_message: str, max_retries: int) -> Optional[JobStatus]:
        """
        Count a failed attempt: back to pending, or failed for good at the cap.

        Returns:
            The job's new status, or None if it was no longer working
        """
        now = format_timestamp()
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE wines_enrichment_queue
                SET retry_count = retry_count + 1,
                    status = CASE WHEN retry_count + 1 >= ? THEN 'failed' ELSE 'pending' END,
                    error_message = ?,
                    claimed_at = NULL,
                    processed_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'working'
                RETURNING status
                """,
                (max_retries, error_message, now, now, job_id),
            )
            row = cursor.fetchone()
        return JobStatus(row["status"]) if row else None

    def requeue_stale(self, claimed_before: datetime, max_retries: int) -> int:
        """Count an attempt against working jobs claimed before the cutoff."""
        now = format_timestamp()
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE wines_enrichment_queue
                SET retry_count = retry_count + 1,
                    status = CASE WHEN retry_count + 1 >= ? THEN 'failed' ELSE 'pending' END,
                    error_message = COALESCE(error_message, 'Enrichment timed out'),
                    claimed_at = NULL,
                    updated_at = ?
                WHERE status = 'working'
                  AND COALESCE(claimed_at, created_at) < ?
                """,
                (max_retries, now, format_timestamp(claimed_before)),
            )
            return cursor.rowcount

    # === Admin ===

    def delete_for_user(self, user_id: str) -> int:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM wines_enrichment_queue WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    def delete_all(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM wines_enrichment_queue")
            return cursor.rowcount

    def counts_by_status(self) -> dict[str, int]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM wines_enrichment_queue GROUP BY status"
        ).fetchall()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts
