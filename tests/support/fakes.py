"""In-process connectors and wiring helpers for sync tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

from accountsync.accounts.models import OAuthToken, Principal, Provider, SourceType
from accountsync.accounts.store import InMemoryAccountStore
from accountsync.config import Settings
from accountsync.connectors.auth.token_manager import TokenLifecycleManager
from accountsync.connectors.base.connector import BaseConnector, ConnectorCapabilities
from accountsync.connectors.base.records import (
    Contact,
    EmailMessage,
    ExternalId,
    Page,
    RawRecord,
    RecordKind,
)
from accountsync.jobs.handlers import SyncServices
from accountsync.jobs.locks import InMemoryConcurrencyGuard
from accountsync.jobs.queue import InMemoryJobQueue
from accountsync.storage.checkpoints import InMemoryCheckpointRepository
from accountsync.storage.records import InMemoryRecordStore

MAILBOX_NEWEST = datetime(2025, 12, 31, 12, 0, tzinfo=timezone.utc)


def make_pages(pages: int, per_page: int, *, prefix: str = "m") -> list[list[str]]:
    """Ids numbered from 1; a higher number means an older record."""
    return [
        [f"{prefix}{page * per_page + i + 1}" for i in range(per_page)]
        for page in range(pages)
    ]


def record_date(source_id: str) -> datetime:
    return MAILBOX_NEWEST - timedelta(minutes=int(source_id.lstrip("mc")))


class FakeMailConnector(BaseConnector):
    """Serves pre-built pages; the cursor is the next page index."""

    source_type = SourceType.GMAIL
    provider = Provider.GOOGLE
    record_kind = RecordKind.MESSAGE
    capabilities = ConnectorCapabilities(mutable_records=False, supports_modified_since=True)

    def __init__(
        self,
        pages: list[list[str]] | None = None,
        *,
        failures: dict[str, Exception] | None = None,
    ):
        super().__init__()
        self.pages = pages or []
        self.failures = failures or {}
        self.list_calls: list[dict[str, Any]] = []
        self.fetched: list[str] = []

    async def list_ids(self, token, cursor, page_size, *, since=None) -> Page:
        self.list_calls.append(
            {"cursor": cursor, "page_size": page_size, "since": since, "token": token.access_token}
        )
        index = int(cursor) if cursor else 0
        if index >= len(self.pages):
            return Page()
        ids = [self._external_id(source_id) for source_id in self.pages[index][:page_size]]
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return Page(ids=ids, next_cursor=next_cursor)

    def _external_id(self, source_id: str) -> ExternalId:
        return ExternalId(source_id=source_id)

    async def get_record(self, token, source_id) -> RawRecord:
        self.fetched.append(source_id)
        if source_id in self.failures:
            raise self.failures[source_id]
        return RawRecord(
            source_type=self.source_type,
            source_id=source_id,
            payload={"id": source_id, "date": record_date(source_id).isoformat()},
        )

    def parse_record(self, raw: RawRecord) -> EmailMessage:
        return EmailMessage(
            source_id=raw.source_id,
            subject=f"Subject {raw.source_id}",
            date=datetime.fromisoformat(raw.payload["date"]),
        )


class FakeContactConnector(FakeMailConnector):
    """Mutable records: every listed id carries an epoch-millis modification stamp."""

    source_type = SourceType.HUBSPOT
    provider = Provider.HUBSPOT
    record_kind = RecordKind.CONTACT
    capabilities = ConnectorCapabilities(mutable_records=True, supports_modified_since=True)

    def _external_id(self, source_id: str) -> ExternalId:
        millis = int(record_date(source_id).timestamp() * 1000)
        return ExternalId(source_id=source_id, last_modified=str(millis))

    async def get_record(self, token, source_id) -> RawRecord:
        raw = await super().get_record(token, source_id)
        raw.payload["lastmodifieddate"] = self._external_id(source_id).last_modified
        return raw

    def parse_record(self, raw: RawRecord) -> Contact:
        return Contact(
            source_id=raw.source_id,
            email=f"{raw.source_id}@example.com",
            last_modified_at=raw.payload["lastmodifieddate"],
        )


def connected_principal(
    principal_id: str = "p1",
    *,
    now: datetime,
    providers: tuple[Provider, ...] = (Provider.GOOGLE, Provider.HUBSPOT),
    expires_in: timedelta = timedelta(hours=1),
) -> Principal:
    return Principal(
        id=principal_id,
        email=f"{principal_id}@example.com",
        tokens={
            provider: OAuthToken(
                provider=provider,
                access_token=f"access-{provider.value}",
                refresh_token=f"refresh-{provider.value}",
                expires_at=now + expires_in,
                connected_at=now - timedelta(days=10),
            )
            for provider in providers
        },
    )


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"sync_inter_page_delay_seconds": 0}
    values.update(overrides)
    return Settings(**values)


def in_memory_services(
    clock,
    *,
    principals: list[Principal] | None = None,
    settings: Settings | None = None,
    oauth_manager: Any = None,
) -> SyncServices:
    settings = settings or make_settings()
    account_store = InMemoryAccountStore(principals or [])
    job_queue = InMemoryJobQueue(clock=clock)
    guard = InMemoryConcurrencyGuard(clock=clock)
    token_manager = TokenLifecycleManager(
        account_store=account_store,
        oauth_manager=oauth_manager or MagicMock(),
        job_queue=job_queue,
        guard=guard,
        clock=clock,
        settings=settings,
    )
    return SyncServices(
        account_store=account_store,
        record_store=InMemoryRecordStore(clock=clock),
        checkpoints=InMemoryCheckpointRepository(),
        job_queue=job_queue,
        guard=guard,
        token_manager=token_manager,
        settings=settings,
        clock=clock,
    )
