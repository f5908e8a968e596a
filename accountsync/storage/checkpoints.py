"""
Checkpoint Repository

Persists SyncCheckpoint per (principal, source, mode) to PostgreSQL
(sync_checkpoint table). A checkpoint is written after every batch, so a
retried execution resumes from the last completed batch.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog
from sqlalchemy import text

from accountsync.accounts.models import SourceType
from accountsync.connectors.base.state import SyncCheckpoint, SyncMode
from accountsync.db.client import get_db_session

logger = structlog.get_logger()


class CheckpointRepository(ABC):
    @abstractmethod
    async def get(
        self,
        principal_id: str,
        source_type: SourceType,
        mode: SyncMode,
    ) -> SyncCheckpoint | None:
        ...

    @abstractmethod
    async def save(self, checkpoint: SyncCheckpoint) -> None:
        ...


class InMemoryCheckpointRepository(CheckpointRepository):
    def __init__(self) -> None:
        self._checkpoints: dict[tuple[str, SourceType, SyncMode], SyncCheckpoint] = {}
        self.saves: list[SyncCheckpoint] = []

    async def get(
        self,
        principal_id: str,
        source_type: SourceType,
        mode: SyncMode,
    ) -> SyncCheckpoint | None:
        checkpoint = self._checkpoints.get((principal_id, source_type, mode))
        return checkpoint.model_copy(deep=True) if checkpoint else None

    async def save(self, checkpoint: SyncCheckpoint) -> None:
        snapshot = checkpoint.model_copy(deep=True)
        self._checkpoints[(checkpoint.principal_id, checkpoint.source_type, checkpoint.mode)] = snapshot
        self.saves.append(snapshot)


class PostgresCheckpointRepository(CheckpointRepository):
    """Database-backed checkpoint storage."""

    async def get(
        self,
        principal_id: str,
        source_type: SourceType,
        mode: SyncMode,
    ) -> SyncCheckpoint | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT cursor_token, oldest_seen_marker, total_synced,
                           completed, since, updated_at
                    FROM sync_checkpoint
                    WHERE principal_id = :principal_id
                      AND source_type = :source_type
                      AND mode = :mode
                    """
                ),
                {
                    "principal_id": principal_id,
                    "source_type": source_type.value,
                    "mode": mode.value,
                },
            )
            row = result.mappings().first()

        if not row:
            return None

        return SyncCheckpoint(
            principal_id=principal_id,
            source_type=source_type,
            mode=mode,
            cursor_token=row.get("cursor_token"),
            oldest_seen_marker=row.get("oldest_seen_marker"),
            total_synced=row.get("total_synced") or 0,
            completed=bool(row.get("completed")),
            since=row.get("since"),
            updated_at=row["updated_at"],
        )

    async def save(self, checkpoint: SyncCheckpoint) -> None:
        """Insert or update the checkpoint row."""
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO sync_checkpoint (
                        principal_id, source_type, mode, cursor_token,
                        oldest_seen_marker, total_synced, completed, since,
                        created_at, updated_at
                    ) VALUES (
                        :principal_id, :source_type, :mode, :cursor_token,
                        :oldest_seen_marker, :total_synced, :completed, :since,
                        :updated_at, :updated_at
                    )
                    ON CONFLICT (principal_id, source_type, mode)
                    DO UPDATE SET
                        cursor_token = EXCLUDED.cursor_token,
                        oldest_seen_marker = EXCLUDED.oldest_seen_marker,
                        total_synced = EXCLUDED.total_synced,
                        completed = EXCLUDED.completed,
                        since = EXCLUDED.since,
                        updated_at = EXCLUDED.updated_at
                    """
                ),
                {
                    "principal_id": checkpoint.principal_id,
                    "source_type": checkpoint.source_type.value,
                    "mode": checkpoint.mode.value,
                    "cursor_token": checkpoint.cursor_token,
                    "oldest_seen_marker": checkpoint.oldest_seen_marker,
                    "total_synced": checkpoint.total_synced,
                    "completed": checkpoint.completed,
                    "since": checkpoint.since,
                    "updated_at": checkpoint.updated_at,
                },
            )
            await session.commit()

        logger.debug(
            "Checkpoint saved",
            principal_id=checkpoint.principal_id,
            source_type=checkpoint.source_type.value,
            mode=checkpoint.mode.value,
            total_synced=checkpoint.total_synced,
            completed=checkpoint.completed,
        )

