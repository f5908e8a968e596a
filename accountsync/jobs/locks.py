"""
Concurrency Guard

Time-boxed uniqueness locks keyed by principal, source and operation. At most
one sync or refresh run holds a key; a second acquire while the lock is
unexpired is rejected and the duplicate run is discarded.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator
from uuid import uuid4

import structlog

from accountsync.db import client as db_client
from accountsync.kernel.time import Clock, utc_now

logger = structlog.get_logger()


def lock_key(principal_id: str, source: str, operation: str) -> str:
    return f"{operation}:{source}:{principal_id}"


@dataclass(frozen=True)
class LockHandle:
    key: str
    token: str
    expires_at: datetime


class ConcurrencyGuard(ABC):
    @abstractmethod
    async def acquire(self, key: str, ttl_seconds: int) -> LockHandle | None:
        """Take the lock, or return None when an unexpired holder exists."""

    @abstractmethod
    async def release(self, handle: LockHandle) -> None:
        """Release if still held by `handle` (expired-and-retaken locks are left alone)."""

    @abstractmethod
    async def extend(self, handle: LockHandle, ttl_seconds: int) -> bool:
        """Push the expiry out while `handle` still owns the lock."""

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl_seconds: int,
        *,
        renew: bool = False,
    ) -> AsyncIterator[LockHandle | None]:
        """
        Usage:
            async with guard.hold(key, 900) as handle:
                if handle is None:
                    return  # duplicate run

        With `renew=True` the lock is extended every third of its TTL until
        the block exits, so long runs never outlive it.
        """
        handle = await self.acquire(key, ttl_seconds)
        if handle is None:
            logger.info("Concurrency lock busy", lock_key=key)
        renewer = None
        if handle is not None and renew:
            renewer = asyncio.create_task(self._renew_loop(handle, ttl_seconds))
        try:
            yield handle
        finally:
            if renewer is not None:
                renewer.cancel()
                await asyncio.gather(renewer, return_exceptions=True)
            if handle is not None:
                await self.release(handle)

    async def _renew_loop(self, handle: LockHandle, ttl_seconds: int) -> None:
        interval = max(1.0, ttl_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            try:
                ok = await self.extend(handle, ttl_seconds)
            except Exception as exc:
                logger.warning("Failed to extend lock", lock_key=handle.key, error=str(exc))
                return
            if not ok:
                logger.warning("Lock lost before the run finished", lock_key=handle.key)
                return


class InMemoryConcurrencyGuard(ConcurrencyGuard):
    def __init__(self, *, clock: Clock = utc_now):
        self._clock = clock
        self._locks: dict[str, LockHandle] = {}
        self._mutex = asyncio.Lock()

    async def acquire(self, key: str, ttl_seconds: int) -> LockHandle | None:
        now = self._clock()
        async with self._mutex:
            current = self._locks.get(key)
            if current is not None and current.expires_at > now:
                return None
            handle = LockHandle(
                key=key,
                token=str(uuid4()),
                expires_at=now + timedelta(seconds=max(1, ttl_seconds)),
            )
            self._locks[key] = handle
            return handle

    async def release(self, handle: LockHandle) -> None:
        async with self._mutex:
            current = self._locks.get(handle.key)
            if current is not None and current.token == handle.token:
                del self._locks[handle.key]

    async def extend(self, handle: LockHandle, ttl_seconds: int) -> bool:
        async with self._mutex:
            current = self._locks.get(handle.key)
            if current is None or current.token != handle.token:
                return False
            self._locks[handle.key] = LockHandle(
                key=handle.key,
                token=handle.token,
                expires_at=self._clock() + timedelta(seconds=max(1, ttl_seconds)),
            )
            return True

    def is_held(self, key: str) -> bool:
        current = self._locks.get(key)
        return current is not None and current.expires_at > self._clock()


class PostgresConcurrencyGuard(ConcurrencyGuard):
    """Locks in the `sync_lock` table; an expired row is taken over in place."""

    def __init__(self, *, clock: Clock = utc_now):
        self._clock = clock

    async def acquire(self, key: str, ttl_seconds: int) -> LockHandle | None:
        now = self._clock()
        token = str(uuid4())
        expires_at = now + timedelta(seconds=max(1, ttl_seconds))

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            acquired = await conn.fetchval(
                """
                INSERT INTO sync_lock (lock_key, token, expires_at, acquired_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (lock_key) DO UPDATE
                SET token = EXCLUDED.token,
                    expires_at = EXCLUDED.expires_at,
                    acquired_at = EXCLUDED.acquired_at
                WHERE sync_lock.expires_at <= EXCLUDED.acquired_at
                RETURNING token
                """,
                key,
                token,
                expires_at,
                now,
            )

        if acquired != token:
            return None
        return LockHandle(key=key, token=token, expires_at=expires_at)

    async def release(self, handle: LockHandle) -> None:
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM sync_lock WHERE lock_key = $1 AND token = $2",
                handle.key,
                handle.token,
            )

    async def extend(self, handle: LockHandle, ttl_seconds: int) -> bool:
        expires_at = self._clock() + timedelta(seconds=max(1, ttl_seconds))
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            updated = await conn.execute(
                """
                UPDATE sync_lock
                SET expires_at = $3
                WHERE lock_key = $1 AND token = $2
                """,
                handle.key,
                handle.token,
                expires_at,
            )
        return str(updated).endswith(" 1")
