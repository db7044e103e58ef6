"""
Durable AI job queue using SQLite.

Stores transcribe/summarize work items for serial background processing
by the worker. Jobs live in the same database as the entries they belong
to and are deleted with them.

Invariants:
- At most one job per (entry, type) is queued or running. enqueue()
  checks for an active duplicate and reports it instead of inserting.
- Claiming is a compare-and-swap: the oldest queued job is moved to
  'running' only if it is still 'queued'. A claimer that loses the race
  gets None and moves on.
- Lifecycle transitions that imply an entry status (enqueue, terminal
  failure, requeue) write the job row and the entry in one transaction.

A requeued job is not claimed again before its retry_after time, which
grows exponentially with the attempt count. Jobs left running longer
than STALE_CLAIM_SECONDS are assumed to belong to a crashed process and
are put back in the queue.

Jobs that exhaust max_attempts are kept with status 'error' rather than
deleted, preserving the last error for diagnosis. Only a fresh enqueue
(an explicit user re-trigger) processes that entry/type again.
"""

import logging
import sqlite3
from typing import Optional

from .database import Database
from .entry_store import EntryStore
from .errors import EntryNotFoundError
from .types import (
    ACTIVE_JOB_STATUSES,
    DEFAULT_MAX_ATTEMPTS,
    JOB_STATUSES,
    JOB_TYPES,
    AiJob,
    EnqueueResult,
    make_id,
    now_ms,
)

logger = logging.getLogger(__name__)

# Running jobs untouched for this long are considered orphaned (process crashed)
STALE_CLAIM_SECONDS = 600  # 10 minutes

# Retry backoff: min(BASE * 2^(attempts-1), MAX) seconds
RETRY_BACKOFF_SECONDS = 30
RETRY_BACKOFF_MAX_SECONDS = 3600


def retry_delay_seconds(attempts: int, base: float = RETRY_BACKOFF_SECONDS) -> float:
    """Backoff before the next attempt, after `attempts` failures."""
    if base <= 0:
        return 0.0
    return min(base * (2 ** (max(attempts, 1) - 1)), RETRY_BACKOFF_MAX_SECONDS)


def _row_to_job(row: sqlite3.Row) -> AiJob:
    return AiJob(
        id=row["id"],
        entry_id=row["entry_id"],
        type=row["type"],
        status=row["status"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        retry_after=row["retry_after"],
    )


class AiJobQueue:
    """
    SQLite-backed queue of AI jobs for one workspace.

    The queue owns the ai_jobs table. Entry status writes go through the
    EntryStore, inside the same Database transaction as the job write.
    """

    def __init__(self, database: Database, entries: EntryStore):
        self._db = database
        self._entries = entries

    def enqueue(self, entry_id: str, job_type: str) -> EnqueueResult:
        """
        Queue a job for an entry.

        If a job for the same (entry_id, job_type) is already queued or
        running, nothing is written and the existing job's id is returned
        with enqueued=False. That is the normal idempotent outcome, not
        an error.

        Otherwise inserts the job and sets the entry to ai_status
        'queued' with error_msg cleared, atomically.
        """
        if job_type not in JOB_TYPES:
            raise ValueError(f"Unknown job type: {job_type!r}")

        with self._db.transaction():
            existing = self._db.query_one(f"""
                SELECT id FROM ai_jobs
                WHERE entry_id = ? AND type = ?
                  AND status IN ({', '.join('?' for _ in ACTIVE_JOB_STATUSES)})
                LIMIT 1
            """, (entry_id, job_type, *ACTIVE_JOB_STATUSES))
            if existing:
                logger.debug(
                    "Skipped enqueue of %s for %s: job %s already active",
                    job_type, entry_id, existing["id"],
                )
                return EnqueueResult(enqueued=False, job_id=existing["id"])

            now = now_ms()
            job_id = make_id("job")
            try:
                self._db.execute("""
                    INSERT INTO ai_jobs
                    (id, entry_id, type, status, attempts, last_error, created_at, updated_at)
                    VALUES (?, ?, ?, 'queued', 0, NULL, ?, ?)
                """, (job_id, entry_id, job_type, now, now))
            except sqlite3.IntegrityError as e:
                # Foreign key: the entry does not exist
                raise EntryNotFoundError(entry_id) from e
            self._entries.update_entry(entry_id, ai_status="queued", error_msg=None)

        logger.info("Queued %s job %s for %s", job_type, job_id, entry_id)
        return EnqueueResult(enqueued=True, job_id=job_id)

    def claim_next_queued_job(self) -> Optional[AiJob]:
        """
        Claim the oldest queued job that is due for processing.

        Jobs still waiting out a retry backoff are skipped. The job moves
        from 'queued' to 'running' via a conditional update. If another
        claimer got there first, the update affects no rows and this
        returns None rather than trying the next job; callers simply call
        again.

        Returns:
            The claimed job (status 'running'), or None
        """
        now = now_ms()
        row = self._db.query_one("""
            SELECT id FROM ai_jobs
            WHERE status = 'queued' AND retry_after <= ?
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
        """, (now,))
        if row is None:
            return None

        cursor = self._db.execute("""
            UPDATE ai_jobs
            SET status = 'running', updated_at = ?
            WHERE id = ? AND status = 'queued'
        """, (now, row["id"]))
        if cursor.rowcount == 0:
            logger.debug("Lost claim race for job %s", row["id"])
            return None

        return self.get_job(row["id"])

    def mark_done(self, job_id: str) -> None:
        """Mark a job finished. Terminal."""
        self._db.execute(
            "UPDATE ai_jobs SET status = 'done', updated_at = ? WHERE id = ?",
            (now_ms(), job_id),
        )

    def requeue_or_fail(
        self,
        job: AiJob,
        error_message: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        *,
        terminal: bool = False,
        retry_backoff: float = RETRY_BACKOFF_SECONDS,
    ) -> str:
        """
        Record a failed attempt.

        Increments the attempt counter. If it reaches max_attempts, or
        terminal is set, the job becomes 'error' and the entry is stamped
        ai_status 'error' with the message. Otherwise the job goes back to
        'queued' and the entry keeps ai_status 'queued' while still
        showing the message. A requeued job is not claimed again until
        its backoff has passed: min(retry_backoff * 2^(attempts-1), 1 hour)
        seconds. A retry_backoff of 0 makes it claimable immediately.

        Returns:
            The job's new status: 'queued' or 'error'
        """
        attempts = job.attempts + 1
        failed = terminal or attempts >= max_attempts
        next_status = "error" if failed else "queued"
        delay = 0.0 if failed else retry_delay_seconds(attempts, retry_backoff)
        now = now_ms()

        with self._db.transaction():
            self._db.execute("""
                UPDATE ai_jobs
                SET status = ?, attempts = ?, last_error = ?, updated_at = ?,
                    retry_after = ?
                WHERE id = ?
            """, (next_status, attempts, error_message, now, now + int(delay * 1000), job.id))
            self._entries.update_entry(
                job.entry_id,
                ai_status="error" if failed else "queued",
                error_msg=error_message,
            )

        if failed:
            logger.warning(
                "Job %s (%s for %s) failed permanently after %d attempt(s): %s",
                job.id, job.type, job.entry_id, attempts, error_message,
            )
        else:
            logger.info(
                "Job %s (%s for %s) failed (attempt %d of %d), retry after %ds: %s",
                job.id, job.type, job.entry_id, attempts, max_attempts, delay, error_message,
            )
        return next_status

    def recover_interrupted(self, stale_after_seconds: float = STALE_CLAIM_SECONDS) -> int:
        """Reset jobs left 'running' by a crashed process back to 'queued'.

        Only jobs whose claim is at least stale_after_seconds old are
        touched; a younger 'running' job may belong to a drain that is
        still working on it in another process or router. The attempt
        counter is left alone: an interrupted run is not a failure.

        Returns count of recovered jobs.
        """
        now = now_ms()
        cursor = self._db.execute("""
            UPDATE ai_jobs
            SET status = 'queued', updated_at = ?
            WHERE status = 'running' AND updated_at <= ?
        """, (now, now - int(stale_after_seconds * 1000)))
        recovered = cursor.rowcount
        if recovered:
            logger.info("Recovered %d stale job claim(s)", recovered)
        return recovered

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[AiJob]:
        row = self._db.query_one("SELECT * FROM ai_jobs WHERE id = ?", (job_id,))
        return _row_to_job(row) if row else None

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        entry_id: Optional[str] = None,
    ) -> list[AiJob]:
        """List jobs, newest first, optionally filtered."""
        if status is not None and status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status!r}")
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if entry_id is not None:
            clauses.append("entry_id = ?")
            params.append(entry_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.query_all(
            f"SELECT * FROM ai_jobs {where} ORDER BY created_at DESC, rowid DESC",
            params,
        )
        return [_row_to_job(row) for row in rows]

    def list_failed(self) -> list[AiJob]:
        """Jobs that exhausted their attempts, oldest first."""
        rows = self._db.query_all("""
            SELECT * FROM ai_jobs WHERE status = 'error'
            ORDER BY created_at ASC, rowid ASC
        """)
        return [_row_to_job(row) for row in rows]

    def count(self, status: str = "queued") -> int:
        """Count jobs in a given status (default: queued)."""
        return self._db.query_one(
            "SELECT COUNT(*) FROM ai_jobs WHERE status = ?", (status,)
        )[0]

    def count_ready(self) -> int:
        """Count queued jobs whose retry backoff has passed."""
        return self._db.query_one(
            "SELECT COUNT(*) FROM ai_jobs WHERE status = 'queued' AND retry_after <= ?",
            (now_ms(),),
        )[0]

    def stats(self) -> dict:
        """Get queue statistics including status breakdown."""
        rows = self._db.query_all(
            "SELECT status, COUNT(*) AS cnt FROM ai_jobs GROUP BY status"
        )
        by_status = {row["status"]: row["cnt"] for row in rows}
        row = self._db.query_one("""
            SELECT COUNT(*) AS total, MAX(attempts) AS max_attempts,
                   MIN(CASE WHEN status = 'queued' THEN created_at END) AS oldest_queued,
                   SUM(CASE WHEN status = 'queued' AND retry_after > ? THEN 1 ELSE 0 END) AS delayed
            FROM ai_jobs
        """, (now_ms(),))
        return {
            **{status: by_status.get(status, 0) for status in JOB_STATUSES},
            "total": row["total"],
            "max_attempts": row["max_attempts"] or 0,
            "oldest_queued": row["oldest_queued"],
            "delayed": row["delayed"] or 0,
            "queue_path": str(self._db.path),
        }
