"""
Sync Checkpoint

Durable progress for one principal/source backfill or catch-up, passed
between execution units as job arguments and persisted before a
continuation is enqueued.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from accountsync.accounts.models import SourceType
from accountsync.kernel.time import coerce_utc, isoformat_z, parse_iso8601, utc_now


class SyncMode(str, Enum):
    BACKFILL = "backfill"
    INCREMENTAL = "incremental"


class SyncCheckpoint(BaseModel):
    """
    Checkpoint state for a single principal/source.

    `total_synced` only moves forward and `oldest_seen_marker` only moves back.
    """

    principal_id: str
    source_type: SourceType
    mode: SyncMode = SyncMode.INCREMENTAL

    # Opaque provider page token
    cursor_token: str | None = None
    oldest_seen_marker: datetime | None = None
    total_synced: int = 0
    completed: bool = False

    # Incremental runs only: lower bound for modified-since listings
    since: datetime | None = None

    updated_at: datetime = Field(default_factory=utc_now)

    class Config:
        """Pydantic config."""
        extra = "allow"

    @field_validator("total_synced")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("total_synced must be >= 0")
        return value

    def record_batch(
        self,
        *,
        synced: int,
        dates: list[datetime],
        next_cursor: str | None,
    ) -> None:
        """Advance after a batch: add successes, lower the marker, move the cursor."""
        self.total_synced += max(0, synced)
        if dates:
            oldest = min(coerce_utc(d) for d in dates)
            if self.oldest_seen_marker is None or oldest < self.oldest_seen_marker:
                self.oldest_seen_marker = oldest
        self.cursor_token = next_cursor
        self.updated_at = utc_now()

    def mark_completed(self) -> None:
        self.completed = True
        self.updated_at = utc_now()

    def to_job_args(self) -> dict[str, Any]:
        """Continuation payload: `{principal_id, cursor_token, total_synced, oldest_seen_marker}`."""
        args: dict[str, Any] = {
            "principal_id": self.principal_id,
            "source_type": self.source_type.value,
            "cursor_token": self.cursor_token,
            "total_synced": self.total_synced,
            "oldest_seen_marker": (
                isoformat_z(self.oldest_seen_marker) if self.oldest_seen_marker else None
            ),
        }
        if self.since is not None:
            args["since"] = isoformat_z(self.since)
        return args

    @classmethod
    def from_job_args(
        cls,
        args: dict[str, Any],
        *,
        source_type: SourceType,
        mode: SyncMode = SyncMode.INCREMENTAL,
    ) -> "SyncCheckpoint":
        """Resume from job args; `{principal_id}` alone starts fresh."""
        principal_id = args.get("principal_id")
        if not principal_id:
            raise ValueError("Sync job args missing principal_id")

        oldest = args.get("oldest_seen_marker")
        since = args.get("since")
        return cls(
            principal_id=str(principal_id),
            source_type=SourceType(args.get("source_type") or source_type),
            mode=mode,
            cursor_token=args.get("cursor_token") or None,
            total_synced=int(args.get("total_synced") or 0),
            oldest_seen_marker=parse_iso8601(oldest) if isinstance(oldest, str) else oldest,
            since=parse_iso8601(since) if isinstance(since, str) else since,
        )

    @property
    def is_resume(self) -> bool:
        return self.cursor_token is not None or self.total_synced > 0
