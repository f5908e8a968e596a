"""
Indexing Notifications

After a record is stored, the indexing collaborator is told about it.
Notifications are fire-and-forget: failures are logged and never reach the
sync path.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import httpx
import structlog

from accountsync.config import get_settings
from accountsync.connectors.base.records import RecordKind

logger = structlog.get_logger()


class IndexingNotifier(ABC):
    @abstractmethod
    async def notify(self, principal_id: str, record_kind: RecordKind, record_id: str) -> None:
        ...

    async def aclose(self) -> None:
        return None


class NullIndexingNotifier(IndexingNotifier):
    async def notify(self, principal_id: str, record_kind: RecordKind, record_id: str) -> None:
        return None


class WebhookIndexingNotifier(IndexingNotifier):
    """POSTs `{principal_id, record_kind, record_id}` to the indexing service."""

    def __init__(
        self,
        url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self._http_client = http_client
        self._timeout = timeout

    async def notify(self, principal_id: str, record_kind: RecordKind, record_id: str) -> None:
        body = {
            "principal_id": principal_id,
            "record_kind": record_kind.value,
            "record_id": record_id,
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.url, json=body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Indexing notification failed",
                principal_id=principal_id,
                record_kind=record_kind.value,
                record_id=record_id,
                error=str(exc),
            )


class BackgroundIndexingNotifier(IndexingNotifier):
    """
    Hands each notification to a background task so a slow indexer never
    stretches a sync batch. `aclose` waits for in-flight notifications.
    """

    def __init__(self, inner: IndexingNotifier):
        self.inner = inner
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def notify(self, principal_id: str, record_kind: RecordKind, record_id: str) -> None:
        task = asyncio.create_task(self._deliver(principal_id, record_kind, record_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, principal_id: str, record_kind: RecordKind, record_id: str) -> None:
        try:
            await self.inner.notify(principal_id, record_kind, record_id)
        except Exception as exc:
            logger.warning(
                "Indexing notification raised",
                principal_id=principal_id,
                record_kind=record_kind.value,
                record_id=record_id,
                error=str(exc),
            )

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.inner.aclose()


def get_indexing_notifier() -> IndexingNotifier:
    url = get_settings().indexing_webhook_url
    if not url:
        return NullIndexingNotifier()
    return BackgroundIndexingNotifier(WebhookIndexingNotifier(url))
