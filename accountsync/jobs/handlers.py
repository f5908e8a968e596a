"""
Sync Job Handlers

Job types, their scheduling entry points and the handler bodies the worker
dispatches to. Every sync handler runs under the concurrency guard for its
(principal, source, operation) key; a run that finds the lock held is
discarded.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import httpx
import structlog

from accountsync.accounts.models import Provider, SourceType
from accountsync.accounts.store import AccountStore, PostgresAccountStore
from accountsync.config import Settings, get_settings
from accountsync.connectors.auth.oauth2 import get_oauth_manager
from accountsync.connectors.auth.token_manager import TOKEN_REFRESH_JOB, TokenLifecycleManager
from accountsync.connectors.base.connector import BaseConnector, ConnectorRegistry
from accountsync.connectors.base.state import SyncMode
from accountsync.connectors.sources import GmailConnector, HubSpotConnector  # noqa: F401
from accountsync.jobs.locks import ConcurrencyGuard, PostgresConcurrencyGuard, lock_key
from accountsync.jobs.queue import ClaimedJob, EnqueueJobRequest, JobHandle, JobQueue, PostgresJobQueue
from accountsync.kernel.time import Clock, utc_now
from accountsync.storage.checkpoints import CheckpointRepository, PostgresCheckpointRepository
from accountsync.storage.records import PostgresRecordStore, RecordStore
from accountsync.sync.indexing import IndexingNotifier, get_indexing_notifier
from accountsync.sync.orchestrator import SyncOrchestrator, SyncPlan, SyncStatus

logger = structlog.get_logger()

HISTORICAL_EMAIL_SYNC_JOB = "email.historical_sync"
EMAIL_SYNC_JOB = "email.sync"
HUBSPOT_SYNC_JOB = "hubspot.sync"

SYNC_JOB_SOURCES: dict[str, SourceType] = {
    HISTORICAL_EMAIL_SYNC_JOB: SourceType.GMAIL,
    EMAIL_SYNC_JOB: SourceType.GMAIL,
    HUBSPOT_SYNC_JOB: SourceType.HUBSPOT,
}


@dataclass
class SyncServices:
    """Collaborators shared by every handler in a worker process."""

    account_store: AccountStore
    record_store: RecordStore
    checkpoints: CheckpointRepository
    job_queue: JobQueue
    guard: ConcurrencyGuard
    token_manager: TokenLifecycleManager
    notifier: IndexingNotifier | None = None
    settings: Settings | None = None
    clock: Clock = utc_now
    http_client: httpx.AsyncClient | None = None

    def __post_init__(self) -> None:
        if self.settings is None:
            self.settings = get_settings()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SyncServices":
        """Postgres-backed services for the worker process."""
        settings = settings or get_settings()
        if not settings.token_encryption_key:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY must be set to read stored tokens")

        account_store = PostgresAccountStore(settings.token_encryption_key)
        job_queue = PostgresJobQueue()
        guard = PostgresConcurrencyGuard()
        token_manager = TokenLifecycleManager(
            account_store=account_store,
            oauth_manager=get_oauth_manager(),
            job_queue=job_queue,
            guard=guard,
            settings=settings,
        )
        return cls(
            account_store=account_store,
            record_store=PostgresRecordStore(),
            checkpoints=PostgresCheckpointRepository(),
            job_queue=job_queue,
            guard=guard,
            token_manager=token_manager,
            notifier=get_indexing_notifier(),
            settings=settings,
        )

    def connector(self, source_type: SourceType) -> BaseConnector:
        return ConnectorRegistry.create(
            source_type,
            http_client=self.http_client,
            timeout=self.settings.provider_timeout_seconds,
        )

    def orchestrator(self, source_type: SourceType) -> SyncOrchestrator:
        return SyncOrchestrator(
            connector=self.connector(source_type),
            token_manager=self.token_manager,
            account_store=self.account_store,
            record_store=self.record_store,
            checkpoints=self.checkpoints,
            job_queue=self.job_queue,
            notifier=self.notifier,
            settings=self.settings,
            clock=self.clock,
        )


def sync_plans(settings: Settings) -> dict[str, SyncPlan]:
    return {
        HISTORICAL_EMAIL_SYNC_JOB: SyncPlan(
            job_type=HISTORICAL_EMAIL_SYNC_JOB,
            mode=SyncMode.BACKFILL,
            max_records=settings.historical_sync_max_records,
            max_attempts=settings.historical_sync_max_attempts,
            continuation_unique_ttl_seconds=settings.historical_sync_unique_seconds,
        ),
        EMAIL_SYNC_JOB: SyncPlan(
            job_type=EMAIL_SYNC_JOB,
            mode=SyncMode.INCREMENTAL,
            continuation_unique_ttl_seconds=settings.email_sync_unique_seconds,
        ),
        HUBSPOT_SYNC_JOB: SyncPlan(
            job_type=HUBSPOT_SYNC_JOB,
            mode=SyncMode.INCREMENTAL,
            continuation_unique_ttl_seconds=settings.hubspot_sync_unique_seconds,
        ),
    }


# =============================================================================
# Scheduling
# =============================================================================


async def _enqueue_sync(
    services: SyncServices,
    job_type: str,
    principal_id: str,
    *,
    unique_key: str,
    unique_ttl_seconds: int,
    run_at: datetime | None = None,
) -> JobHandle:
    plan = sync_plans(services.settings)[job_type]
    handle = await services.job_queue.enqueue(
        EnqueueJobRequest(
            job_type=job_type,
            payload={"principal_id": principal_id},
            principal_id=principal_id,
            run_at=run_at,
            max_attempts=plan.max_attempts,
            unique_key=unique_key,
            unique_ttl_seconds=unique_ttl_seconds,
        )
    )
    logger.info(
        "Sync scheduled",
        job_type=job_type,
        principal_id=principal_id,
        job_id=handle.id,
        run_at=handle.run_at,
        deduplicated=handle.deduplicated,
    )
    return handle


async def schedule_historical_email_sync(services: SyncServices, principal_id: str) -> JobHandle:
    return await _enqueue_sync(
        services,
        HISTORICAL_EMAIL_SYNC_JOB,
        principal_id,
        unique_key=f"{HISTORICAL_EMAIL_SYNC_JOB}:{principal_id}",
        unique_ttl_seconds=services.settings.historical_sync_unique_seconds,
    )


async def schedule_email_sync(services: SyncServices, principal_id: str) -> JobHandle:
    return await _enqueue_sync(
        services,
        EMAIL_SYNC_JOB,
        principal_id,
        unique_key=f"{EMAIL_SYNC_JOB}:{principal_id}",
        unique_ttl_seconds=services.settings.email_sync_unique_seconds,
    )


async def schedule_hubspot_sync(services: SyncServices, principal_id: str) -> JobHandle:
    return await _enqueue_sync(
        services,
        HUBSPOT_SYNC_JOB,
        principal_id,
        unique_key=f"{HUBSPOT_SYNC_JOB}:{principal_id}",
        unique_ttl_seconds=services.settings.hubspot_sync_unique_seconds,
    )


async def schedule_token_refresh(
    services: SyncServices,
    principal_id: str,
    provider: Provider,
) -> JobHandle:
    return await services.token_manager.schedule_now(principal_id, provider)


async def schedule_recurring_sync(services: SyncServices, job_type: str, principal_id: str) -> JobHandle:
    """Queue the next periodic incremental run, one interval from now."""
    settings = services.settings
    interval = (
        settings.email_sync_interval_seconds
        if job_type == EMAIL_SYNC_JOB
        else settings.hubspot_sync_interval_seconds
    )
    return await _enqueue_sync(
        services,
        job_type,
        principal_id,
        unique_key=f"{job_type}:recurring:{principal_id}",
        unique_ttl_seconds=interval,
        run_at=services.clock() + timedelta(seconds=interval),
    )


async def on_provider_connected(
    services: SyncServices,
    principal_id: str,
    provider: Provider,
) -> list[JobHandle]:
    """Kick off token checks and the first syncs for a freshly connected provider."""
    # A reconnect replaces the rejected grant.
    await services.account_store.clear_reauth_required(principal_id, provider)
    handles = [await schedule_token_refresh(services, principal_id, provider)]
    if provider == Provider.GOOGLE:
        handles.append(await schedule_historical_email_sync(services, principal_id))
        handles.append(await schedule_email_sync(services, principal_id))
    else:
        handles.append(await schedule_hubspot_sync(services, principal_id))
    return handles


async def bootstrap_schedules(services: SyncServices) -> int:
    """
    Make sure every connected principal has a pending token check and
    incremental sync. Run at worker startup; uniqueness keys make it idempotent.
    """
    scheduled = 0
    for provider in Provider:
        for principal_id in await services.account_store.list_connected(provider):
            await schedule_token_refresh(services, principal_id, provider)
            if provider == Provider.GOOGLE:
                await schedule_email_sync(services, principal_id)
            else:
                await schedule_hubspot_sync(services, principal_id)
            scheduled += 1
    logger.info("Bootstrapped sync schedules", principals=scheduled)
    return scheduled


# =============================================================================
# Handlers
# =============================================================================


def _principal_id(job: ClaimedJob) -> str:
    principal_id = job.payload.get("principal_id") or job.principal_id
    if not principal_id:
        raise ValueError(f"Job {job.id} ({job.job_type}) has no principal_id")
    return str(principal_id)


async def run_sync_job(services: SyncServices, job: ClaimedJob) -> dict[str, Any]:
    """Handler for the three sync job types."""
    principal_id = _principal_id(job)
    source_type = SYNC_JOB_SOURCES[job.job_type]
    plan = sync_plans(services.settings)[job.job_type]
    payload = {**job.payload, "principal_id": principal_id}
    is_continuation = bool(payload.get("cursor_token") or payload.get("total_synced"))

    principal = await services.account_store.get_principal(principal_id)
    if principal is None or not principal.is_connected(source_type.provider):
        logger.info(
            "Sync skipped; source not connected",
            job_type=job.job_type,
            principal_id=principal_id,
        )
        return {"skipped": True, "reason": "not_connected"}

    if plan.mode == SyncMode.BACKFILL and principal.historical_email_sync_completed and not is_continuation:
        return {"skipped": True, "reason": "already_completed"}

    # The next periodic run is queued up front so a failed run does not end the cadence.
    if plan.mode == SyncMode.INCREMENTAL and not is_continuation:
        await schedule_recurring_sync(services, job.job_type, principal_id)

    key = lock_key(principal_id, source_type.value, job.job_type)
    async with services.guard.hold(
        key, services.settings.sync_lock_ttl_seconds, renew=True
    ) as handle:
        if handle is None:
            return {"skipped": True, "reason": "locked"}
        outcome = await services.orchestrator(source_type).run(payload, plan)

    result = outcome.to_dict()
    if outcome.status == SyncStatus.COMPLETED:
        logger.info(
            "Sync completed",
            job_type=job.job_type,
            principal_id=principal_id,
            total_synced=outcome.checkpoint.total_synced,
        )
    return result


async def run_token_refresh_job(services: SyncServices, job: ClaimedJob) -> dict[str, Any]:
    principal_id = _principal_id(job)
    provider = Provider(job.payload.get("provider"))
    result = await services.token_manager.run_check(principal_id, provider)
    return result.to_dict()


JobHandler = Callable[[SyncServices, ClaimedJob], Awaitable[dict[str, Any]]]

JOB_HANDLERS: dict[str, JobHandler] = {
    HISTORICAL_EMAIL_SYNC_JOB: run_sync_job,
    EMAIL_SYNC_JOB: run_sync_job,
    HUBSPOT_SYNC_JOB: run_sync_job,
    TOKEN_REFRESH_JOB: run_token_refresh_job,
}


def provider_for_job(job: ClaimedJob) -> Provider | None:
    """The provider whose token a job uses, for forced refreshes on 401."""
    source_type = SYNC_JOB_SOURCES.get(job.job_type)
    if source_type is not None:
        return source_type.provider
    raw = job.payload.get("provider")
    return Provider(raw) if raw else None
