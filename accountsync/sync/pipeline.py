"""
Fetch-Parse-Store Pipeline

For each new record id: one authenticated detail call, a pure parse into the
canonical record, an idempotent upsert and an indexing notification. One
record's failure is collected in the batch report and never aborts the batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from accountsync.accounts.models import OAuthToken
from accountsync.connectors.base.connector import BaseConnector
from accountsync.connectors.base.records import (
    CanonicalRecord,
    ExternalId,
    RawRecord,
    StoredRecord,
)
from accountsync.kernel.errors import AuthFailedError, SyncError
from accountsync.monitoring.metrics import get_metrics
from accountsync.storage.records import RecordStore
from accountsync.sync.indexing import IndexingNotifier, NullIndexingNotifier

logger = structlog.get_logger()


@dataclass
class BatchReport:
    successes: list[StoredRecord] = field(default_factory=list)
    errors: list[tuple[str, Exception]] = field(default_factory=list)

    @property
    def synced(self) -> int:
        return len(self.successes)

    @property
    def marker_dates(self) -> list[datetime]:
        return [s.record.marker_date for s in self.successes if s.record.marker_date is not None]

    @property
    def auth_error(self) -> AuthFailedError | None:
        for _, error in self.errors:
            if isinstance(error, AuthFailedError):
                return error
        return None


class FetchParseStorePipeline:
    def __init__(
        self,
        connector: BaseConnector,
        record_store: RecordStore,
        notifier: IndexingNotifier | None = None,
    ):
        self.connector = connector
        self.record_store = record_store
        self.notifier = notifier or NullIndexingNotifier()

    async def fetch_record(self, token: OAuthToken, source_id: str) -> RawRecord:
        return await self.connector.get_record(token, source_id)

    def parse_record(self, raw: RawRecord) -> CanonicalRecord:
        return self.connector.parse_record(raw)

    async def store_record(self, principal_id: str, record: CanonicalRecord) -> StoredRecord:
        stored = await self.record_store.upsert(principal_id, record)
        try:
            await self.notifier.notify(principal_id, record.kind, stored.local_id)
        except Exception as exc:
            logger.warning(
                "Indexing notification raised",
                principal_id=principal_id,
                source_id=record.source_id,
                error=str(exc),
            )
        return stored

    async def run_batch(
        self,
        principal_id: str,
        token: OAuthToken,
        ids: list[ExternalId],
    ) -> BatchReport:
        report = BatchReport()
        source_type = self.connector.source_type.value

        for external_id in ids:
            try:
                raw = await self.fetch_record(token, external_id.source_id)
                record = self.parse_record(raw)
                stored = await self.store_record(principal_id, record)
            except Exception as exc:
                code = exc.code if isinstance(exc, SyncError) else type(exc).__name__
                logger.warning(
                    "Record sync failed",
                    principal_id=principal_id,
                    source_type=source_type,
                    source_id=external_id.source_id,
                    error_code=code,
                    error=str(exc),
                )
                get_metrics().track_record_failure(source_type, code)
                report.errors.append((external_id.source_id, exc))
                continue
            report.successes.append(stored)

        return report
