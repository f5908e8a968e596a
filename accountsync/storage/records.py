"""
Record Store

Idempotent storage of canonical records keyed by
(principal_id, source_type, source_id). The same table doubles as the
sourceId -> localId index used for deduplication.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from uuid import uuid4

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from accountsync.accounts.models import SourceType
from accountsync.connectors.base.records import (
    CanonicalRecord,
    ExternalRecordRef,
    StoredRecord,
)
from accountsync.db.client import get_db_session
from accountsync.kernel.errors import StoreError
from accountsync.kernel.time import Clock, coerce_utc, utc_now

logger = structlog.get_logger()


class RecordStore(ABC):
    """Abstract base class for the local record store."""

    @abstractmethod
    async def upsert(self, principal_id: str, record: CanonicalRecord) -> StoredRecord:
        """
        Insert or replace a record.

        Storing the same (principal_id, source_id) twice leaves one record
        with the latest content and the same local id.

        Raises:
            StoreError: the write failed
        """

    @abstractmethod
    async def existing_ids(
        self,
        principal_id: str,
        source_type: SourceType,
        source_ids: list[str],
    ) -> set[str]:
        """The subset of `source_ids` already stored."""

    @abstractmethod
    async def modified_markers(
        self,
        principal_id: str,
        source_type: SourceType,
        source_ids: list[str],
    ) -> dict[str, str | None]:
        """Stored `last_modified` per id, for ids already stored."""

    @abstractmethod
    async def latest_synced_marker(
        self,
        principal_id: str,
        source_type: SourceType,
    ) -> datetime | None:
        """Newest record date (or modification date) stored for the source."""

    @abstractmethod
    async def count(self, principal_id: str, source_type: SourceType) -> int:
        ...


class InMemoryRecordStore(RecordStore):
    """In-memory record storage for development/testing."""

    def __init__(self, *, clock: Clock = utc_now):
        self._clock = clock
        self._records: dict[tuple[str, SourceType, str], StoredRecord] = {}

    def get(self, principal_id: str, source_type: SourceType, source_id: str) -> StoredRecord | None:
        return self._records.get((principal_id, source_type, source_id))

    def refs(self, principal_id: str) -> list[ExternalRecordRef]:
        return [
            ExternalRecordRef(
                principal_id=stored.principal_id,
                source_type=stored.record.source_type,
                source_id=stored.source_id,
                local_id=stored.local_id,
                last_modified_at=stored.record.last_modified,
            )
            for stored in self._records.values()
            if stored.principal_id == principal_id
        ]

    async def upsert(self, principal_id: str, record: CanonicalRecord) -> StoredRecord:
        key = (principal_id, record.source_type, record.source_id)
        existing = self._records.get(key)
        stored = StoredRecord(
            principal_id=principal_id,
            local_id=existing.local_id if existing else str(uuid4()),
            record=record,
            synced_at=self._clock(),
        )
        self._records[key] = stored
        return stored

    async def existing_ids(
        self,
        principal_id: str,
        source_type: SourceType,
        source_ids: list[str],
    ) -> set[str]:
        return {
            source_id
            for source_id in source_ids
            if (principal_id, source_type, source_id) in self._records
        }

    async def modified_markers(
        self,
        principal_id: str,
        source_type: SourceType,
        source_ids: list[str],
    ) -> dict[str, str | None]:
        markers: dict[str, str | None] = {}
        for source_id in source_ids:
            stored = self._records.get((principal_id, source_type, source_id))
            if stored is not None:
                markers[source_id] = stored.record.last_modified
        return markers

    async def latest_synced_marker(
        self,
        principal_id: str,
        source_type: SourceType,
    ) -> datetime | None:
        dates = [
            coerce_utc(stored.record.marker_date)
            for (pid, stype, _), stored in self._records.items()
            if pid == principal_id and stype == source_type and stored.record.marker_date
        ]
        return max(dates) if dates else None

    async def count(self, principal_id: str, source_type: SourceType) -> int:
        return sum(
            1 for (pid, stype, _) in self._records if pid == principal_id and stype == source_type
        )


class PostgresRecordStore(RecordStore):
    """Records in the `synced_record` table."""

    def __init__(self, *, clock: Clock = utc_now):
        self._clock = clock

    async def upsert(self, principal_id: str, record: CanonicalRecord) -> StoredRecord:
        now = self._clock()
        try:
            async with get_db_session() as session:
                result = await session.execute(
                    text(
                        """
                        INSERT INTO synced_record (
                            id, principal_id, source_type, source_id, kind,
                            payload, record_date, last_modified_at,
                            synced_at, created_at
                        ) VALUES (
                            :id, :principal_id, :source_type, :source_id, :kind,
                            CAST(:payload AS jsonb), :record_date, :last_modified_at,
                            :now, :now
                        )
                        ON CONFLICT (principal_id, source_type, source_id)
                        DO UPDATE SET
                            kind = EXCLUDED.kind,
                            payload = EXCLUDED.payload,
                            record_date = EXCLUDED.record_date,
                            last_modified_at = EXCLUDED.last_modified_at,
                            synced_at = EXCLUDED.synced_at
                        RETURNING id::text AS id, synced_at
                        """
                    ),
                    {
                        "id": str(uuid4()),
                        "principal_id": principal_id,
                        "source_type": record.source_type.value,
                        "source_id": record.source_id,
                        "kind": record.kind.value,
                        "payload": json.dumps(record.model_dump(mode="json")),
                        "record_date": record.marker_date,
                        "last_modified_at": record.last_modified,
                        "now": now,
                    },
                )
                row = result.mappings().one()
        except SQLAlchemyError as exc:
            logger.error(
                "Record upsert failed",
                principal_id=principal_id,
                source_type=record.source_type.value,
                source_id=record.source_id,
                error=str(exc),
            )
            raise StoreError(f"Failed to store record {record.source_id}") from exc

        return StoredRecord(
            principal_id=principal_id,
            local_id=row["id"],
            record=record,
            synced_at=row["synced_at"],
        )

    async def existing_ids(
        self,
        principal_id: str,
        source_type: SourceType,
        source_ids: list[str],
    ) -> set[str]:
        if not source_ids:
            return set()
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT source_id
                    FROM synced_record
                    WHERE principal_id = :principal_id
                      AND source_type = :source_type
                      AND source_id = ANY(:source_ids)
                    """
                ),
                {
                    "principal_id": principal_id,
                    "source_type": source_type.value,
                    "source_ids": list(source_ids),
                },
            )
            return {row[0] for row in result.fetchall()}

    async def modified_markers(
        self,
        principal_id: str,
        source_type: SourceType,
        source_ids: list[str],
    ) -> dict[str, str | None]:
        if not source_ids:
            return {}
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT source_id, last_modified_at
                    FROM synced_record
                    WHERE principal_id = :principal_id
                      AND source_type = :source_type
                      AND source_id = ANY(:source_ids)
                    """
                ),
                {
                    "principal_id": principal_id,
                    "source_type": source_type.value,
                    "source_ids": list(source_ids),
                },
            )
            return {row["source_id"]: row["last_modified_at"] for row in result.mappings().all()}

    async def latest_synced_marker(
        self,
        principal_id: str,
        source_type: SourceType,
    ) -> datetime | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT MAX(record_date)
                    FROM synced_record
                    WHERE principal_id = :principal_id
                      AND source_type = :source_type
                    """
                ),
                {"principal_id": principal_id, "source_type": source_type.value},
            )
            value = result.scalar()
        return coerce_utc(value) if value else None

    async def count(self, principal_id: str, source_type: SourceType) -> int:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT COUNT(*)
                    FROM synced_record
                    WHERE principal_id = :principal_id
                      AND source_type = :source_type
                    """
                ),
                {"principal_id": principal_id, "source_type": source_type.value},
            )
            return int(result.scalar() or 0)
