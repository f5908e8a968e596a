"""
Base Connector Abstract Class

The provider-facing interface used by the walker and the pipeline:
list one page of ids, fetch one record, parse it into a canonical record.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, ClassVar

import httpx
import structlog

from accountsync.accounts.models import OAuthToken, Provider, SourceType
from accountsync.connectors.base.records import CanonicalRecord, Page, RawRecord, RecordKind
from accountsync.connectors.http import DEFAULT_TIMEOUT_SECONDS

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConnectorCapabilities:
    """Describes what a connector can do."""

    # Records change after creation and carry a modification stamp
    mutable_records: bool = False
    supports_modified_since: bool = False
    default_page_size: int = 100


class BaseConnector(ABC):
    """
    Abstract base class for provider connectors.

    Each connector must define:
    - source_type / provider / record_kind
    - list_ids: one page of record ids for a cursor
    - get_record: one authenticated detail call
    - parse_record: pure payload -> canonical record

    Connectors never retry; failures surface as the typed fetch errors.
    """

    source_type: ClassVar[SourceType]
    provider: ClassVar[Provider]
    record_kind: ClassVar[RecordKind]
    capabilities: ClassVar[ConnectorCapabilities] = ConnectorCapabilities()

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._http_client = http_client
        self._timeout = timeout

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    @abstractmethod
    async def list_ids(
        self,
        token: OAuthToken,
        cursor: str | None,
        page_size: int,
        *,
        since: datetime | None = None,
    ) -> Page:
        """
        Fetch one page of record ids.

        Args:
            token: Valid access token
            cursor: Provider page token, None for the first page
            page_size: Maximum ids per page
            since: Only records created/modified after this instant
        """

    @abstractmethod
    async def get_record(self, token: OAuthToken, source_id: str) -> RawRecord:
        """Fetch one record's full payload."""

    @abstractmethod
    def parse_record(self, raw: RawRecord) -> CanonicalRecord:
        """Transform a provider payload into a canonical record. Pure."""


class ConnectorRegistry:
    """
    Registry for connector implementations.

    Used as a decorator:
        @ConnectorRegistry.register
        class GmailConnector(BaseConnector):
            ...
    """

    _connectors: dict[SourceType, type[BaseConnector]] = {}

    @classmethod
    def register(cls, connector_class: type[BaseConnector]) -> type[BaseConnector]:
        source_type = connector_class.__dict__.get("source_type")
        if source_type is None:
            raise ValueError(
                f"Connector {connector_class.__name__} must define source_type"
            )
        cls._connectors[SourceType(source_type)] = connector_class
        logger.debug("Registered connector", source_type=SourceType(source_type).value)
        return connector_class

    @classmethod
    def get(cls, source_type: SourceType) -> type[BaseConnector] | None:
        return cls._connectors.get(source_type)

    @classmethod
    def create(cls, source_type: SourceType, **kwargs) -> BaseConnector:
        connector_class = cls.get(source_type)
        if connector_class is None:
            raise ValueError(f"No connector registered for {source_type}")
        return connector_class(**kwargs)
