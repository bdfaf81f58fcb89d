# booking_engine/repositories/sync_job_repository.py
"""
Outbox of calendar sync work.

Bookings, cancellations, OAuth callbacks and the periodic scheduler enqueue
rows here; the calendar_sync job claims and runs them.
"""

from datetime import datetime

from booking_engine.db.helpers import (
    UNIQUE_VIOLATION,
    DatabaseError,
    execute_query,
    fetch_all,
    fetch_one,
    with_db_retry,
)
from booking_engine.db.pool import DatabasePoolManager
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.provider_domain import SyncJob, SyncJobKind, SyncJobStatus

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 500


def dedup_key(kind: SyncJobKind, provider_id: str, event_id: str | None = None) -> str:
    return f"{kind.value}:{provider_id}:{event_id or '-'}"


class SyncJobRepository:
    JOB_COLUMNS = (
        "id, kind, provider_id, event_id, status, attempts, next_run_at, last_error, updated_at"
    )

    def __init__(self, db: DatabasePoolManager):
        self._db = db

    @staticmethod
    def _row_to_job(row: dict | None) -> SyncJob | None:
        if not row:
            return None

        return SyncJob(
            id=str(row["id"]),
            kind=SyncJobKind(row["kind"]),
            provider_id=str(row["provider_id"]),
            event_id=str(row["event_id"]) if row.get("event_id") else None,
            status=SyncJobStatus(row["status"]),
            attempts=row["attempts"],
            next_run_at=row["next_run_at"],
            last_error=row.get("last_error"),
            updated_at=row.get("updated_at"),
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def enqueue(
        self,
        kind: SyncJobKind,
        provider_id: str,
        event_id: str | None = None,
        run_at: datetime | None = None,
    ) -> SyncJob | None:
        """
        Add a pending job. Returns None when an identical job is already pending.
        """
        query = f"""
            INSERT INTO calendar_sync_jobs (kind, provider_id, event_id, dedup_key, next_run_at)
            VALUES (%s, %s, %s, %s, COALESCE(%s, NOW()))
            ON CONFLICT (dedup_key) WHERE status = 'pending' DO NOTHING
            RETURNING {self.JOB_COLUMNS}
        """
        row = await fetch_one(
            self._db,
            query,
            (kind.value, provider_id, event_id, dedup_key(kind, provider_id, event_id), run_at),
        )

        if row:
            logger.info(
                "Sync job enqueued", kind=kind.value, provider_id=provider_id, event_id=event_id
            )
        else:
            logger.debug(
                "Sync job already pending", kind=kind.value, provider_id=provider_id, event_id=event_id
            )
        return self._row_to_job(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def claim_due(
        self, limit: int, now: datetime, stale_before: datetime | None = None
    ) -> list[SyncJob]:
        """
        Atomically move due pending jobs to running. Concurrent workers never share a job.

        Jobs left running since before `stale_before` belong to a worker that
        died or hung; they are claimed again and the lost attempt is counted.
        """
        query = f"""
            UPDATE calendar_sync_jobs
            SET status = 'running', attempts = attempts + 1, updated_at = NOW()
            WHERE id IN (
                SELECT id FROM calendar_sync_jobs
                WHERE (status = 'pending' AND next_run_at <= %s)
                   OR (status = 'running' AND updated_at < %s)
                ORDER BY next_run_at
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {self.JOB_COLUMNS}
        """
        rows = await fetch_all(self._db, query, (now, stale_before, limit))
        return [self._row_to_job(row) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_completed(self, job_id: str) -> None:
        query = """
            UPDATE calendar_sync_jobs
            SET status = 'completed', last_error = NULL, updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(self._db, query, (job_id,))

    async def mark_retry(self, job_id: str, error: str, next_run_at: datetime) -> None:
        """Put the job back in the queue, unless a newer identical job is already waiting."""
        query = """
            UPDATE calendar_sync_jobs
            SET status = 'pending', last_error = %s, next_run_at = %s, updated_at = NOW()
            WHERE id = %s
        """
        try:
            await execute_query(
                self._db, query, ((error or "")[:MAX_ERROR_LENGTH], next_run_at, job_id)
            )
        except DatabaseError as e:
            if e.sqlstate != UNIQUE_VIOLATION:
                raise
            await self.mark_failed(job_id, "superseded by a newer pending job")

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_failed(self, job_id: str, error: str) -> None:
        query = """
            UPDATE calendar_sync_jobs
            SET status = 'failed', last_error = %s, updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(self._db, query, ((error or "")[:MAX_ERROR_LENGTH], job_id))
        logger.warning("Sync job failed", job_id=job_id, error=error)
