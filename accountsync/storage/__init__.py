"""Local persistence for synced records and sync checkpoints."""

from accountsync.storage.checkpoints import (
    CheckpointRepository,
    InMemoryCheckpointRepository,
    PostgresCheckpointRepository,
)
from accountsync.storage.records import (
    InMemoryRecordStore,
    PostgresRecordStore,
    RecordStore,
)

__all__ = [
    "CheckpointRepository",
    "InMemoryCheckpointRepository",
    "PostgresCheckpointRepository",
    "RecordStore",
    "InMemoryRecordStore",
    "PostgresRecordStore",
]
