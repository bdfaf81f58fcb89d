"""
Calendar Sync Job.

Drains the calendar_sync_jobs outbox: claims due jobs, runs pushes and syncs
with bounded concurrency, and reschedules recoverable failures with
exponential backoff. Each tick also enqueues an incremental sync for every
syncable provider once per sync interval.
"""

import asyncio
from datetime import datetime, timedelta

from booking_engine.config import settings
from booking_engine.container import open_container
from booking_engine.db.helpers import DatabaseError
from booking_engine.errors import CalendarEngineError, ProviderError
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.provider_domain import SyncJob, SyncJobKind, SyncResult
from booking_engine.repositories.interfaces import CalendarProviderStore, SyncJobStore
from booking_engine.services.calendar.sync_service import SyncService
from booking_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

JOB_POLL_SECONDS = 15
JOB_TIMEOUT_SECONDS = 300
# Running rows older than this were abandoned by a crashed or hung worker
STALE_JOB_SECONDS = JOB_TIMEOUT_SECONDS + 60


class CalendarSyncJobError(Exception):
    """Custom exception for sync job runner failures."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def retry_delay(attempts: int, base_seconds: int) -> timedelta:
    """base, 2*base, 4*base ... for attempt 1, 2, 3 ..."""
    return timedelta(seconds=base_seconds * (2 ** max(attempts - 1, 0)))


class CalendarSyncMetrics:
    """Counters for one run of the job."""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self.reset()

    def reset(self):
        self.start_time = self._clock()
        self.providers_enqueued = 0
        self.jobs_claimed = 0
        self.jobs_completed = 0
        self.jobs_retried = 0
        self.jobs_failed = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_failure(self, job: SyncJob, error: str, retried: bool):
        if retried:
            self.jobs_retried += 1
        else:
            self.jobs_failed += 1

        self.errors.append(
            {
                "job_id": job.id,
                "kind": job.kind.value,
                "provider_id": job.provider_id,
                "error": error,
                "retried": retried,
            }
        )
        logger.warning(
            "Sync job attempt failed",
            job_id=job.id,
            kind=job.kind.value,
            provider_id=job.provider_id,
            attempts=job.attempts,
            error=error,
            retried=retried,
            job_run="calendar_sync",
        )

    def finalize(self):
        self.total_duration_seconds = (self._clock() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "calendar_sync",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "providers_enqueued": self.providers_enqueued,
            "jobs_claimed": self.jobs_claimed,
            "jobs_completed": self.jobs_completed,
            "jobs_retried": self.jobs_retried,
            "jobs_failed": self.jobs_failed,
            "errors_count": len(self.errors),
        }


class CalendarSyncJob:
    """
    Background runner for calendar pushes and syncs.

    Safe to run in several processes at once: jobs are claimed with
    FOR UPDATE SKIP LOCKED and provider work is serialized by the sync lock.
    """

    def __init__(
        self,
        sync_service: SyncService,
        job_store: SyncJobStore,
        provider_store: CalendarProviderStore,
        clock: Clock = utc_now,
        *,
        batch_size: int = settings.SYNC_JOB_BATCH_SIZE,
        max_attempts: int = settings.SYNC_JOB_MAX_ATTEMPTS,
        base_backoff_seconds: int = settings.SYNC_JOB_BASE_BACKOFF_SECONDS,
        max_concurrent: int = settings.SYNC_MAX_CONCURRENT_JOBS,
        interval_minutes: int = settings.SYNC_INTERVAL_MINUTES,
    ):
        self._sync = sync_service
        self._jobs = job_store
        self._providers = provider_store
        self._clock = clock
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.base_backoff_seconds = base_backoff_seconds
        self.max_concurrent = max_concurrent
        self.interval_minutes = interval_minutes

        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_enqueue_time: datetime | None = None
        self.job_metrics = CalendarSyncMetrics(clock)

    async def run_once(self) -> dict:
        """
        Run a single iteration: periodic enqueue, then drain one batch.

        Raises:
            CalendarSyncJobError: the queue itself could not be read
        """
        if self.is_running:
            logger.warning("Calendar sync job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            await self._enqueue_periodic_syncs()

            now = self._clock()
            jobs = await self._jobs.claim_due(
                self.batch_size, now, stale_before=now - timedelta(seconds=STALE_JOB_SECONDS)
            )
            self.job_metrics.jobs_claimed = len(jobs)

            if jobs:
                semaphore = asyncio.Semaphore(self.max_concurrent)
                await asyncio.gather(
                    *(self._run_job_with_semaphore(semaphore, job) for job in jobs)
                )

            self.job_metrics.finalize()
            self.last_run_time = self._clock()
            metrics = self.job_metrics.to_dict()

            if jobs:
                logger.info("Calendar sync job completed", **metrics)
            return metrics

        except DatabaseError as e:
            logger.error("Calendar sync job failed", error=str(e), error_type=type(e).__name__)
            raise CalendarSyncJobError(
                f"Calendar sync job failed: {e}", operation="run_once"
            ) from e

        finally:
            self.is_running = False

    async def _enqueue_periodic_syncs(self) -> None:
        now = self._clock()
        if self.last_enqueue_time and now - self.last_enqueue_time < timedelta(
            minutes=self.interval_minutes
        ):
            return

        providers = await self._providers.list_syncable()
        for provider in providers:
            if await self._jobs.enqueue(SyncJobKind.INCREMENTAL_SYNC, provider.id):
                self.job_metrics.providers_enqueued += 1

        self.last_enqueue_time = now
        logger.debug(
            "Periodic syncs enqueued",
            providers=len(providers),
            enqueued=self.job_metrics.providers_enqueued,
        )

    async def _run_job_with_semaphore(self, semaphore: asyncio.Semaphore, job: SyncJob) -> None:
        async with semaphore:
            await self._run_job(job)

    async def _run_job(self, job: SyncJob) -> None:
        try:
            await asyncio.wait_for(self._execute(job), timeout=JOB_TIMEOUT_SECONDS)

        except TimeoutError:
            await self._handle_failure(job, f"Timed out after {JOB_TIMEOUT_SECONDS}s", True)
            return

        except (CalendarEngineError, CalendarSyncJobError) as e:
            await self._handle_failure(job, str(e), e.recoverable)
            return

        except DatabaseError as e:
            await self._handle_failure(job, str(e), e.recoverable)
            return

        except Exception as e:
            await self._handle_failure(job, f"Unexpected error: {type(e).__name__}: {e}", True)
            return

        await self._jobs.mark_completed(job.id)
        self.job_metrics.jobs_completed += 1

    async def _execute(self, job: SyncJob) -> None:
        if job.kind == SyncJobKind.PUSH_EVENT:
            if job.event_id is None:
                raise CalendarSyncJobError("push_event job without an event id", recoverable=False)
            await self._sync.push_event(job.provider_id, job.event_id)
            return

        if job.kind == SyncJobKind.FULL_SYNC:
            result = await self._sync.full_sync(job.provider_id)
        else:
            result = await self._sync.incremental_sync(job.provider_id)
        self._raise_for_result(result)

    @staticmethod
    def _raise_for_result(result: SyncResult) -> None:
        if result.success:
            return
        # Provider switched off or gone: nothing left to do for this job
        if result.skipped and not result.recoverable:
            return
        raise ProviderError(
            result.error or "Sync failed",
            provider_id=result.provider_id,
            recoverable=result.recoverable,
        )

    async def _handle_failure(self, job: SyncJob, error: str, recoverable: bool) -> None:
        try:
            if recoverable and job.attempts < self.max_attempts:
                next_run_at = self._clock() + retry_delay(job.attempts, self.base_backoff_seconds)
                await self._jobs.mark_retry(job.id, error, next_run_at)
                self.job_metrics.record_failure(job, error, retried=True)
            else:
                await self._jobs.mark_failed(job.id, error)
                self.job_metrics.record_failure(job, error, retried=False)
        except DatabaseError as db_error:
            # Job stays 'running' until claim_due reclaims it as stale
            logger.error(
                "Failed to record sync job outcome",
                job_id=job.id,
                error=str(db_error),
            )

    def get_job_status(self) -> dict:
        return {
            "job_name": "calendar_sync",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": self.interval_minutes,
            "batch_size": self.batch_size,
            "max_concurrent": self.max_concurrent,
            "max_attempts": self.max_attempts,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        """Unhealthy when no run finished within twice the poll interval."""
        now = self._clock()
        overdue_threshold = timedelta(seconds=JOB_POLL_SECONDS * 2)
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold

        health_status = {
            "healthy": not is_overdue,
            "service": "calendar_sync_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
        }
        if is_overdue:
            health_status["warning"] = (
                f"Job overdue by {(now - self.last_run_time).total_seconds():.0f} seconds"
            )
        return health_status


async def start_calendar_sync_scheduler() -> None:
    """
    Poll the outbox forever.

    Intended to run in its own process via `python -m booking_engine.jobs.worker calendar_sync`.
    """
    logger.info(
        "Starting calendar sync scheduler",
        poll_seconds=JOB_POLL_SECONDS,
        interval_minutes=settings.SYNC_INTERVAL_MINUTES,
    )

    async with open_container(settings) as container:
        job = CalendarSyncJob(container.sync, container.jobs, container.providers)

        while True:
            try:
                await job.run_once()
                await asyncio.sleep(JOB_POLL_SECONDS)

            except KeyboardInterrupt:
                logger.info("Calendar sync scheduler stopped by user")
                break
            except CalendarSyncJobError as e:
                logger.error("Error in calendar sync scheduler", error=str(e))
                # Back off before retrying to avoid tight error loops
                await asyncio.sleep(60)


async def run_calendar_sync_once() -> None:
    """Single pass, for cron-style invocation."""
    async with open_container(settings) as container:
        job = CalendarSyncJob(container.sync, container.jobs, container.providers)
        metrics = await job.run_once()
        logger.info("Calendar sync pass finished", **metrics)
