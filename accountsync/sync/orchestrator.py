"""
Sync Orchestrator

Drives one execution of a resumable sync for a principal/source:

    NOT_STARTED -> RUNNING -> CONTINUING | COMPLETED | FAILED

Each execution walks pages until the record budget is reached, the provider
runs out of pages, or the hand-off threshold is hit. On hand-off the
checkpoint is persisted first and a continuation job is enqueued carrying
the cursor, the running total and the oldest-seen marker.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from accountsync.accounts.models import Principal
from accountsync.accounts.store import AccountStore
from accountsync.config import Settings, get_settings
from accountsync.connectors.auth.token_manager import TokenLifecycleManager
from accountsync.connectors.base.connector import BaseConnector
from accountsync.connectors.base.records import Page
from accountsync.connectors.base.state import SyncCheckpoint, SyncMode
from accountsync.jobs.queue import EnqueueJobRequest, JobHandle, JobQueue
from accountsync.kernel.errors import NotConnectedError
from accountsync.kernel.time import Clock, utc_now
from accountsync.monitoring.metrics import get_metrics
from accountsync.storage.checkpoints import CheckpointRepository
from accountsync.storage.records import RecordStore
from accountsync.sync.dedup import DeduplicationFilter
from accountsync.sync.indexing import IndexingNotifier
from accountsync.sync.pipeline import FetchParseStorePipeline

logger = structlog.get_logger()


class SyncStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncPlan:
    """How one job type runs: mode, record budget and continuation job."""

    job_type: str
    mode: SyncMode
    max_records: int | None = None
    max_attempts: int = 5
    continuation_unique_ttl_seconds: int | None = None

    @property
    def bounded(self) -> bool:
        return self.max_records is not None


@dataclass
class SyncOutcome:
    status: SyncStatus
    checkpoint: SyncCheckpoint
    pages: int = 0
    records_synced: int = 0
    record_errors: int = 0
    continuation: JobHandle | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "pages": self.pages,
            "records_synced": self.records_synced,
            "record_errors": self.record_errors,
            "total_synced": self.checkpoint.total_synced,
            "continuation_job_id": self.continuation.id if self.continuation else None,
        }


class SyncOrchestrator:
    """
    Runs one principal/source sync execution.

    Fetch, auth and store errors propagate to the job runner; by then the
    checkpoint as of the last completed batch has been saved.
    """

    def __init__(
        self,
        *,
        connector: BaseConnector,
        token_manager: TokenLifecycleManager,
        account_store: AccountStore,
        record_store: RecordStore,
        checkpoints: CheckpointRepository,
        job_queue: JobQueue,
        notifier: IndexingNotifier | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = settings or get_settings()
        self.connector = connector
        self.token_manager = token_manager
        self.account_store = account_store
        self.record_store = record_store
        self.checkpoints = checkpoints
        self.job_queue = job_queue
        self.dedup = DeduplicationFilter(record_store)
        self.pipeline = FetchParseStorePipeline(connector, record_store, notifier)
        self.page_size = settings.sync_page_size
        self.handoff_pages = max(1, settings.sync_handoff_pages)
        self.report_every = max(1, settings.sync_report_every)
        self.inter_page_delay = settings.sync_inter_page_delay_seconds
        self.lookback_days = settings.incremental_lookback_days
        self._clock = clock
        self._sleep = sleep

    @property
    def source_type(self):
        return self.connector.source_type

    async def run(self, args: dict[str, Any], plan: SyncPlan) -> SyncOutcome:
        started = time.monotonic()
        metrics = get_metrics()
        source = self.source_type.value
        checkpoint: SyncCheckpoint | None = None

        try:
            checkpoint = await self.load_checkpoint(args, plan.mode)
            outcome = await self._run(checkpoint, plan)
        except Exception as exc:
            metrics.track_sync_run(
                source,
                plan.mode.value,
                SyncStatus.FAILED.value,
                time.monotonic() - started,
            )
            logger.error(
                "Sync execution failed",
                principal_id=args.get("principal_id"),
                source_type=source,
                mode=plan.mode.value,
                total_synced=checkpoint.total_synced if checkpoint else None,
                error=str(exc),
            )
            raise

        metrics.track_sync_run(
            source,
            plan.mode.value,
            outcome.status.value,
            time.monotonic() - started,
            outcome.records_synced,
        )
        logger.info(
            "Sync execution finished",
            principal_id=checkpoint.principal_id,
            source_type=source,
            mode=plan.mode.value,
            status=outcome.status.value,
            pages=outcome.pages,
            records_synced=outcome.records_synced,
            total_synced=checkpoint.total_synced,
        )
        return outcome

    async def load_checkpoint(self, args: dict[str, Any], mode: SyncMode) -> SyncCheckpoint:
        """
        Build the checkpoint for this execution from the job args.

        A stored, unfinished checkpoint that is at least as far along as the
        args wins, so a retried execution resumes after its last saved batch.
        """
        checkpoint = SyncCheckpoint.from_job_args(args, source_type=self.source_type, mode=mode)
        stored = await self.checkpoints.get(checkpoint.principal_id, self.source_type, mode)
        if (
            stored is not None
            and not stored.completed
            and stored.is_resume
            and stored.total_synced >= checkpoint.total_synced
        ):
            logger.info(
                "Resuming from stored checkpoint",
                principal_id=checkpoint.principal_id,
                source_type=self.source_type.value,
                mode=mode.value,
                total_synced=stored.total_synced,
            )
            return stored
        return checkpoint

    async def resolve_since(self, principal: Principal) -> datetime | None:
        """
        Lower bound for an incremental listing.

        Latest stored marker, else the last sync time, else the connection
        time, else a fixed lookback. Mutable sources with nothing stored yet
        take the full listing (None).
        """
        capabilities = self.connector.capabilities
        if not capabilities.supports_modified_since:
            return None
        if capabilities.mutable_records:
            if await self.record_store.count(principal.id, self.source_type) == 0:
                return None

        latest = await self.record_store.latest_synced_marker(principal.id, self.source_type)
        if latest is not None:
            return latest
        last_synced = principal.last_synced_at.get(self.source_type)
        if last_synced is not None:
            return last_synced
        connected_at = principal.connected_at(self.source_type)
        if connected_at is not None:
            return connected_at
        return self._clock() - timedelta(days=self.lookback_days)

    async def _run(self, checkpoint: SyncCheckpoint, plan: SyncPlan) -> SyncOutcome:
        principal_id = checkpoint.principal_id
        principal = await self.account_store.get_principal(principal_id)
        if principal is None or not principal.is_connected(self.source_type.provider):
            raise NotConnectedError(principal_id, self.source_type.provider.value)

        if plan.mode == SyncMode.INCREMENTAL and not checkpoint.is_resume:
            checkpoint.since = await self.resolve_since(principal)

        outcome = SyncOutcome(status=SyncStatus.RUNNING, checkpoint=checkpoint)

        if plan.bounded and checkpoint.total_synced >= plan.max_records:
            return await self._complete(outcome, plan)

        mutable = self.connector.capabilities.mutable_records
        provider = self.source_type.provider

        while True:
            page_size = self.page_size
            if plan.bounded:
                page_size = min(page_size, plan.max_records - checkpoint.total_synced)

            token = await self.token_manager.ensure_valid_token(principal_id, provider)
            page: Page = await self.connector.list_ids(
                token,
                checkpoint.cursor_token,
                page_size,
                since=checkpoint.since,
            )
            outcome.pages += 1

            if page.is_empty and not page.next_cursor:
                return await self._complete(outcome, plan)

            candidates = page.ids[:page_size]
            new_ids = await self.dedup.filter_new(
                principal_id,
                self.source_type,
                candidates,
                mutable=mutable,
            )
            report = await self.pipeline.run_batch(principal_id, token, new_ids)

            previous_total = checkpoint.total_synced
            checkpoint.record_batch(
                synced=report.synced,
                dates=report.marker_dates,
                next_cursor=page.next_cursor,
            )
            await self.checkpoints.save(checkpoint)
            outcome.records_synced += report.synced
            outcome.record_errors += len(report.errors)

            logger.debug(
                "Sync batch stored",
                principal_id=principal_id,
                source_type=self.source_type.value,
                page=outcome.pages,
                candidates=len(candidates),
                new=len(new_ids),
                synced=report.synced,
                errors=len(report.errors),
                total_synced=checkpoint.total_synced,
            )

            auth_error = report.auth_error
            if auth_error is not None:
                raise auth_error

            budget_reached = plan.bounded and checkpoint.total_synced >= plan.max_records
            if budget_reached or not page.next_cursor:
                return await self._complete(outcome, plan)

            crossed_report = (
                checkpoint.total_synced // self.report_every > previous_total // self.report_every
            )
            if outcome.pages >= self.handoff_pages or crossed_report:
                outcome.continuation = await self._enqueue_continuation(checkpoint, plan)
                outcome.status = SyncStatus.CONTINUING
                return outcome

            if self.inter_page_delay > 0:
                await self._sleep(self.inter_page_delay)

    async def _enqueue_continuation(self, checkpoint: SyncCheckpoint, plan: SyncPlan) -> JobHandle:
        handle = await self.job_queue.enqueue(
            EnqueueJobRequest(
                job_type=plan.job_type,
                payload=checkpoint.to_job_args(),
                principal_id=checkpoint.principal_id,
                max_attempts=plan.max_attempts,
                unique_key=f"{plan.job_type}:continue:{checkpoint.principal_id}",
                unique_ttl_seconds=plan.continuation_unique_ttl_seconds,
            )
        )
        logger.info(
            "Sync continuation enqueued",
            principal_id=checkpoint.principal_id,
            source_type=self.source_type.value,
            job_id=handle.id,
            total_synced=checkpoint.total_synced,
        )
        return handle

    async def _complete(self, outcome: SyncOutcome, plan: SyncPlan) -> SyncOutcome:
        checkpoint = outcome.checkpoint
        checkpoint.mark_completed()
        await self.checkpoints.save(checkpoint)

        if plan.mode == SyncMode.BACKFILL:
            await self.account_store.mark_historical_sync_completed(checkpoint.principal_id)
        else:
            await self.account_store.mark_synced(
                checkpoint.principal_id,
                self.source_type,
                self._clock(),
            )

        outcome.status = SyncStatus.COMPLETED
        return outcome
