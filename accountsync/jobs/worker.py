"""
Durable Jobs Worker

Executes sync and token-refresh jobs from the Postgres-backed `sync_job`
queue on a bounded pool of claim loops.
"""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Any
from uuid import uuid4

import structlog

from accountsync.config import Settings, get_settings
from accountsync.db.client import close_db, close_db_pool, init_db
from accountsync.jobs.handlers import (
    JOB_HANDLERS,
    JobHandler,
    SyncServices,
    bootstrap_schedules,
    provider_for_job,
)
from accountsync.jobs.queue import ClaimedJob, JobStatus, compute_backoff_seconds
from accountsync.kernel.errors import (
    AuthFailedError,
    NotConnectedError,
    RateLimitedError,
    RefreshError,
    SyncError,
)
from accountsync.monitoring import configure_logging, get_metrics, maybe_start_metrics_server

logger = structlog.get_logger()


class JobsWorker:
    def __init__(
        self,
        services: SyncServices,
        *,
        settings: Settings | None = None,
        handlers: dict[str, JobHandler] | None = None,
    ) -> None:
        self.services = services
        self.settings = settings or services.settings or get_settings()
        self.handlers = handlers or JOB_HANDLERS
        self.job_queue = services.job_queue
        self.worker_id = f"sync-worker:{uuid4()}"
        self._shutdown = asyncio.Event()

    async def run_forever(self) -> None:
        concurrency = max(1, int(self.settings.job_worker_concurrency))
        logger.info(
            "Jobs worker starting",
            worker_id=self.worker_id,
            concurrency=concurrency,
            lease_seconds=self.settings.job_worker_lease_seconds,
        )

        reaper_task = asyncio.create_task(self._reap_expired_running_jobs())
        loops = [asyncio.create_task(self._claim_loop(slot)) for slot in range(concurrency)]
        try:
            await asyncio.gather(*loops)
        finally:
            for task in loops:
                task.cancel()
            reaper_task.cancel()
            await asyncio.gather(reaper_task, *loops, return_exceptions=True)
            logger.info("Jobs worker stopped", worker_id=self.worker_id)

    async def shutdown(self) -> None:
        self._shutdown.set()

    async def _claim_loop(self, slot: int) -> None:
        poll_interval = self.settings.job_worker_poll_interval_seconds
        while not self._shutdown.is_set():
            try:
                job = await self.job_queue.claim_next(
                    worker_id=self.worker_id,
                    lease_seconds=self.settings.job_worker_lease_seconds,
                )
            except Exception as exc:
                logger.warning(
                    "Failed to claim job (will retry)",
                    worker_id=self.worker_id,
                    slot=slot,
                    error=str(exc),
                )
                await asyncio.sleep(poll_interval)
                continue
            if not job:
                await asyncio.sleep(poll_interval)
                continue

            # Never crash the claim loop because of a single job.
            try:
                await self.execute_claimed_job(job)
            except Exception as exc:
                logger.error(
                    "Unhandled exception executing job",
                    worker_id=self.worker_id,
                    job_id=job.id,
                    job_type=job.job_type,
                    error=str(exc),
                )

    async def _reap_expired_running_jobs(self) -> None:
        """Requeue jobs left in 'running' by a crashed worker once their lease expires."""
        interval = max(5, int(self.settings.job_worker_reaper_interval_seconds))
        limit = int(max(1, self.settings.job_worker_reaper_limit))

        while not self._shutdown.is_set():
            try:
                requeued = await self.job_queue.requeue_expired_running_jobs(limit=limit)
                if requeued:
                    logger.warning(
                        "Requeued expired running jobs",
                        worker_id=self.worker_id,
                        count=requeued,
                    )
            except Exception as exc:
                logger.warning(
                    "Failed to requeue expired running jobs",
                    worker_id=self.worker_id,
                    error=str(exc),
                )

            await asyncio.sleep(interval)

    async def execute_claimed_job(self, job: ClaimedJob) -> JobStatus:
        started = time.monotonic()
        metrics = get_metrics()
        logger.info(
            "Executing job",
            job_id=job.id,
            job_type=job.job_type,
            principal_id=job.principal_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )

        lease_task = asyncio.create_task(self._lease_heartbeat(job.id))
        try:
            result = await self._dispatch(job)
        except Exception as exc:
            status = await self._handle_failure(job, exc)
            metrics.track_job(job.job_type, status.value, time.monotonic() - started)
            return status
        finally:
            lease_task.cancel()
            await asyncio.gather(lease_task, return_exceptions=True)

        try:
            await self.job_queue.mark_succeeded(job_id=job.id, result=result or {})
        except Exception as exc:
            # The reaper makes the job runnable again once the lease expires.
            logger.error(
                "Failed to mark job succeeded",
                worker_id=self.worker_id,
                job_id=job.id,
                job_type=job.job_type,
                error=str(exc),
            )
        duration = time.monotonic() - started
        metrics.track_job(job.job_type, JobStatus.SUCCEEDED.value, duration)
        logger.info(
            "Job succeeded",
            job_id=job.id,
            job_type=job.job_type,
            duration_seconds=duration,
        )
        return JobStatus.SUCCEEDED

    async def _handle_failure(self, job: ClaimedJob, exc: Exception) -> JobStatus:
        retryable = exc.retryable if isinstance(exc, SyncError) else True
        retry_after = exc.retry_after if isinstance(exc, RateLimitedError) else None
        if isinstance(exc, AuthFailedError):
            retryable = await self._refresh_after_auth_failure(job)

        backoff_seconds = compute_backoff_seconds(attempt=job.attempts, retry_after=retry_after)
        error = f"{exc.code}: {exc.message}" if isinstance(exc, SyncError) else str(exc)
        try:
            status = await self.job_queue.mark_failed(
                job_id=job.id,
                error=error,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                backoff_seconds=backoff_seconds,
                retryable=retryable,
            )
        except Exception as mark_exc:
            logger.error(
                "Failed to mark job failed",
                worker_id=self.worker_id,
                job_id=job.id,
                job_type=job.job_type,
                error=str(mark_exc),
            )
            return JobStatus.FAILED

        log = logger.warning if status == JobStatus.QUEUED else logger.error
        log(
            "Job failed" if status == JobStatus.QUEUED else "Job dead-lettered",
            job_id=job.id,
            job_type=job.job_type,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            retryable=retryable,
            backoff_seconds=backoff_seconds if status == JobStatus.QUEUED else None,
            error=error,
        )
        return status

    async def _refresh_after_auth_failure(self, job: ClaimedJob) -> bool:
        """Force a token refresh after a 401; False when retrying cannot help."""
        provider = provider_for_job(job)
        principal_id = job.payload.get("principal_id") or job.principal_id
        if provider is None or not principal_id:
            return False
        try:
            await self.services.token_manager.refresh_now(str(principal_id), provider)
        except RefreshError as exc:
            logger.warning(
                "Forced token refresh failed",
                job_id=job.id,
                principal_id=principal_id,
                provider=provider.value,
                kind=exc.kind.value,
            )
            return not exc.is_terminal
        except NotConnectedError:
            return False
        return True

    async def _lease_heartbeat(self, job_id: str) -> None:
        interval = max(5.0, self.settings.job_worker_lease_seconds / 3)
        while not self._shutdown.is_set():
            await asyncio.sleep(interval)
            try:
                ok = await self.job_queue.extend_lease(
                    job_id=job_id,
                    worker_id=self.worker_id,
                    lease_seconds=self.settings.job_worker_lease_seconds,
                )
            except Exception as exc:
                logger.warning(
                    "Failed to extend lease",
                    worker_id=self.worker_id,
                    job_id=job_id,
                    error=str(exc),
                )
                return
            if not ok:
                return

    async def _dispatch(self, job: ClaimedJob) -> dict[str, Any] | None:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            raise SyncError(
                code="job.unknown_type",
                message=f"Unknown job type: {job.job_type}",
                retryable=False,
            )
        return await handler(self.services, job)


async def _run() -> None:
    settings = get_settings()
    configure_logging()
    maybe_start_metrics_server(settings.metrics_port, component="sync-worker")
    await init_db()
    services = SyncServices.from_settings(settings)
    await bootstrap_schedules(services)
    worker = JobsWorker(services, settings=settings)

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(worker.shutdown()))

    try:
        await worker.run_forever()
    finally:
        if services.notifier is not None:
            await services.notifier.aclose()
        await close_db_pool()
        await close_db()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
