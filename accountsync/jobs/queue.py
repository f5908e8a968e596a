"""Durable background job queue (in-memory and Postgres-backed)."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog

from accountsync.db import client as db_client
from accountsync.kernel.time import Clock, utc_now

logger = structlog.get_logger()


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class EnqueueJobRequest:
    job_type: str
    payload: dict[str, Any]
    principal_id: str | None = None
    run_at: datetime | None = None
    max_attempts: int = 5
    unique_key: str | None = None
    unique_ttl_seconds: int | None = None


@dataclass(frozen=True)
class JobHandle:
    """What `enqueue` returns. `deduplicated` is set when an existing queued job was reused."""

    id: str
    job_type: str
    run_at: datetime
    deduplicated: bool = False


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    job_type: str
    principal_id: str | None
    run_at: datetime
    attempts: int
    max_attempts: int
    payload: dict[str, Any]


def compute_backoff_seconds(*, attempt: int, retry_after: float | None = None) -> int:
    # attempt=1 -> 2s, attempt=2 -> 4s, attempt=3 -> 8s; provider hint wins when larger
    backoff = min(300, max(2, 2 ** attempt))
    if retry_after is not None:
        backoff = max(backoff, int(retry_after + 0.999))
    return backoff


class JobQueue(ABC):
    """
    Job runner storage.

    Uniqueness: a request with `unique_key` reuses a still-queued job with the
    same key created within `unique_ttl_seconds`, so repeated "schedule now"
    calls collapse into one effective run.
    """

    @abstractmethod
    async def enqueue(self, request: EnqueueJobRequest) -> JobHandle:
        ...

    @abstractmethod
    async def claim_next(self, *, worker_id: str, lease_seconds: int) -> ClaimedJob | None:
        ...

    @abstractmethod
    async def mark_succeeded(self, *, job_id: str, result: dict[str, Any] | None = None) -> None:
        ...

    @abstractmethod
    async def mark_failed(
        self,
        *,
        job_id: str,
        error: str,
        attempts: int,
        max_attempts: int,
        backoff_seconds: int,
        retryable: bool = True,
    ) -> JobStatus:
        """Requeue with backoff, or dead-letter once attempts run out (or the error is final)."""

    @abstractmethod
    async def extend_lease(self, *, job_id: str, worker_id: str, lease_seconds: int) -> bool:
        ...

    @abstractmethod
    async def requeue_expired_running_jobs(self, *, limit: int = 500) -> int:
        """Requeue jobs whose worker died mid-run (lease expired)."""


@dataclass
class _JobRow:
    id: str
    job_type: str
    principal_id: str | None
    payload: dict[str, Any]
    run_at: datetime
    created_at: datetime
    max_attempts: int
    unique_key: str | None
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    locked_by: str | None = None
    lease_until: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] = field(default_factory=dict)


class InMemoryJobQueue(JobQueue):
    """Process-local queue for tests and single-process runs."""

    def __init__(self, *, clock: Clock = utc_now):
        self._clock = clock
        self._jobs: dict[str, _JobRow] = {}
        self._lock = asyncio.Lock()

    @property
    def jobs(self) -> list[_JobRow]:
        return list(self._jobs.values())

    def queued(self, job_type: str | None = None) -> list[_JobRow]:
        return [
            job
            for job in self._jobs.values()
            if job.status == JobStatus.QUEUED and (job_type is None or job.job_type == job_type)
        ]

    async def enqueue(self, request: EnqueueJobRequest) -> JobHandle:
        now = self._clock()
        async with self._lock:
            if request.unique_key:
                existing = self._find_unique(request, now)
                if existing is not None:
                    return JobHandle(
                        id=existing.id,
                        job_type=existing.job_type,
                        run_at=existing.run_at,
                        deduplicated=True,
                    )

            row = _JobRow(
                id=str(uuid4()),
                job_type=request.job_type,
                principal_id=request.principal_id,
                payload=dict(request.payload),
                run_at=request.run_at or now,
                created_at=now,
                max_attempts=max(1, request.max_attempts),
                unique_key=request.unique_key,
            )
            self._jobs[row.id] = row
        return JobHandle(id=row.id, job_type=row.job_type, run_at=row.run_at)

    def _find_unique(self, request: EnqueueJobRequest, now: datetime) -> _JobRow | None:
        window_start = now - timedelta(seconds=request.unique_ttl_seconds or 0)
        for job in self._jobs.values():
            if (
                job.unique_key == request.unique_key
                and job.status == JobStatus.QUEUED
                and (request.unique_ttl_seconds is None or job.created_at > window_start)
            ):
                return job
        return None

    async def claim_next(self, *, worker_id: str, lease_seconds: int) -> ClaimedJob | None:
        now = self._clock()
        async with self._lock:
            runnable = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.status == JobStatus.QUEUED and job.run_at <= now
                ),
                key=lambda job: (job.run_at, job.created_at),
            )
            if not runnable:
                return None
            job = runnable[0]
            job.status = JobStatus.RUNNING
            job.locked_by = worker_id
            job.lease_until = now + timedelta(seconds=max(5, lease_seconds))
            job.attempts += 1
            return ClaimedJob(
                id=job.id,
                job_type=job.job_type,
                principal_id=job.principal_id,
                run_at=job.run_at,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                payload=dict(job.payload),
            )

    async def mark_succeeded(self, *, job_id: str, result: dict[str, Any] | None = None) -> None:
        job = self._jobs[job_id]
        job.status = JobStatus.SUCCEEDED
        job.lease_until = None
        job.last_error = None
        job.result = result or {}

    async def mark_failed(
        self,
        *,
        job_id: str,
        error: str,
        attempts: int,
        max_attempts: int,
        backoff_seconds: int,
        retryable: bool = True,
    ) -> JobStatus:
        job = self._jobs[job_id]
        status = JobStatus.QUEUED if retryable and attempts < max_attempts else JobStatus.FAILED
        job.status = status
        job.last_error = error
        job.lease_until = None
        job.locked_by = None
        if status == JobStatus.QUEUED:
            job.run_at = self._clock() + timedelta(seconds=max(1, backoff_seconds))
        return status

    async def extend_lease(self, *, job_id: str, worker_id: str, lease_seconds: int) -> bool:
        job = self._jobs.get(job_id)
        if not job or job.status != JobStatus.RUNNING or job.locked_by != worker_id:
            return False
        job.lease_until = self._clock() + timedelta(seconds=max(5, lease_seconds))
        return True

    async def requeue_expired_running_jobs(self, *, limit: int = 500) -> int:
        now = self._clock()
        count = 0
        for job in self._jobs.values():
            if count >= limit:
                break
            if job.status == JobStatus.RUNNING and job.lease_until and job.lease_until < now:
                exhausted = job.attempts >= job.max_attempts
                job.status = JobStatus.FAILED if exhausted else JobStatus.QUEUED
                job.lease_until = None
                job.locked_by = None
                job.last_error = job.last_error or "Lease expired"
                if not exhausted:
                    job.run_at = now
                count += 1
        return count


class PostgresJobQueue(JobQueue):
    """Queue on the `sync_job` table, claimed with FOR UPDATE SKIP LOCKED."""

    def __init__(self, *, clock: Clock = utc_now):
        self._clock = clock

    async def enqueue(self, request: EnqueueJobRequest) -> JobHandle:
        job_id = str(uuid4())
        now = self._clock()
        run_at = request.run_at or now

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if request.unique_key:
                    # Serialize concurrent enqueues of the same key.
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))",
                        request.unique_key,
                    )
                    window_start = (
                        now - timedelta(seconds=request.unique_ttl_seconds)
                        if request.unique_ttl_seconds is not None
                        else None
                    )
                    existing = await conn.fetchrow(
                        """
                        SELECT id::text AS id, run_at
                        FROM sync_job
                        WHERE unique_key = $1
                          AND status = 'queued'
                          AND ($2::timestamptz IS NULL OR created_at > $2::timestamptz)
                        ORDER BY created_at DESC
                        LIMIT 1
                        """,
                        request.unique_key,
                        window_start,
                    )
                    if existing:
                        return JobHandle(
                            id=str(existing["id"]),
                            job_type=request.job_type,
                            run_at=existing["run_at"],
                            deduplicated=True,
                        )

                await conn.execute(
                    """
                    INSERT INTO sync_job (
                        id, job_type, principal_id, status, run_at, attempts,
                        max_attempts, unique_key, payload, created_at, updated_at
                    )
                    VALUES ($1, $2, $3, 'queued', $4, 0, $5, $6, $7, $8, $8)
                    """,
                    job_id,
                    request.job_type,
                    request.principal_id,
                    run_at,
                    int(max(1, request.max_attempts)),
                    request.unique_key,
                    request.payload,
                    now,
                )

        return JobHandle(id=job_id, job_type=request.job_type, run_at=run_at)

    async def claim_next(self, *, worker_id: str, lease_seconds: int) -> ClaimedJob | None:
        now = self._clock()
        lease_until = now + timedelta(seconds=max(5, lease_seconds))

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE sync_job
                SET status = 'running',
                    locked_by = $1,
                    lease_until = $2,
                    attempts = attempts + 1,
                    started_at = COALESCE(started_at, $3),
                    updated_at = $3
                WHERE id = (
                    SELECT j.id
                    FROM sync_job j
                    WHERE j.status = 'queued'
                      AND j.run_at <= $3
                    ORDER BY j.run_at ASC, j.created_at ASC
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                RETURNING
                    id::text AS id,
                    job_type,
                    principal_id,
                    run_at,
                    attempts,
                    max_attempts,
                    payload
                """,
                worker_id,
                lease_until,
                now,
            )

        if not row:
            return None

        return ClaimedJob(
            id=str(row["id"]),
            job_type=row["job_type"],
            principal_id=row["principal_id"],
            run_at=row["run_at"],
            attempts=int(row["attempts"] or 0),
            max_attempts=int(row["max_attempts"] or 5),
            payload=row["payload"] or {},
        )

    async def mark_succeeded(self, *, job_id: str, result: dict[str, Any] | None = None) -> None:
        now = self._clock()
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE sync_job
                SET status = 'succeeded',
                    completed_at = $2,
                    lease_until = NULL,
                    result = $3,
                    last_error = NULL,
                    updated_at = $2
                WHERE id = $1
                """,
                job_id,
                now,
                result or {},
            )

    async def mark_failed(
        self,
        *,
        job_id: str,
        error: str,
        attempts: int,
        max_attempts: int,
        backoff_seconds: int,
        retryable: bool = True,
    ) -> JobStatus:
        now = self._clock()
        status = JobStatus.QUEUED if retryable and attempts < max_attempts else JobStatus.FAILED
        next_run_at = now + timedelta(seconds=max(1, backoff_seconds))

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE sync_job
                SET status = $2,
                    completed_at = CASE WHEN $2 = 'failed' THEN $3::timestamptz ELSE NULL END,
                    lease_until = NULL,
                    locked_by = NULL,
                    last_error = $4,
                    run_at = CASE WHEN $2 = 'queued' THEN $5::timestamptz ELSE run_at END,
                    updated_at = $3::timestamptz
                WHERE id = $1
                """,
                job_id,
                status.value,
                now,
                error,
                next_run_at,
            )
        return status

    async def extend_lease(self, *, job_id: str, worker_id: str, lease_seconds: int) -> bool:
        now = self._clock()
        lease_until = now + timedelta(seconds=max(5, lease_seconds))
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            updated = await conn.execute(
                """
                UPDATE sync_job
                SET lease_until = $3,
                    updated_at = $2
                WHERE id = $1
                  AND status = 'running'
                  AND locked_by = $4
                """,
                job_id,
                now,
                lease_until,
                worker_id,
            )
        # asyncpg returns strings like "UPDATE 1"
        return str(updated).endswith(" 1")

    async def requeue_expired_running_jobs(self, *, limit: int = 500) -> int:
        now = self._clock()
        safe_limit = int(max(1, limit))

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                WITH expired AS (
                    SELECT id
                    FROM sync_job
                    WHERE status = 'running'
                      AND lease_until IS NOT NULL
                      AND lease_until < $2::timestamptz
                    ORDER BY lease_until ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE sync_job j
                SET status = CASE WHEN j.attempts >= j.max_attempts THEN 'failed' ELSE 'queued' END,
                    completed_at = CASE WHEN j.attempts >= j.max_attempts THEN $2::timestamptz ELSE NULL END,
                    lease_until = NULL,
                    locked_by = NULL,
                    last_error = COALESCE(j.last_error, 'Lease expired'),
                    run_at = CASE WHEN j.attempts >= j.max_attempts THEN j.run_at ELSE $2::timestamptz END,
                    updated_at = $2::timestamptz
                FROM expired
                WHERE j.id = expired.id
                RETURNING j.id::text
                """,
                safe_limit,
                now,
            )

        return len(rows or [])
