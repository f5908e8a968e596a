"""
Deduplication Filter

Drops candidate ids that are already stored. Immutable sources are deduped
by presence alone; mutable sources keep a stored id when the remote
modification stamp is strictly newer than the stored one.
"""

from __future__ import annotations

import structlog

from accountsync.accounts.models import SourceType
from accountsync.connectors.base.records import ExternalId, parse_modified_marker
from accountsync.storage.records import RecordStore

logger = structlog.get_logger()


def is_newer(remote: str | None, stored: str | None) -> bool:
    """True when `remote` is strictly newer, or when either stamp is unusable."""
    remote_at = parse_modified_marker(remote)
    stored_at = parse_modified_marker(stored)
    if remote_at is None or stored_at is None:
        return True
    return remote_at > stored_at


class DeduplicationFilter:
    def __init__(self, record_store: RecordStore):
        self.record_store = record_store

    async def filter_new(
        self,
        principal_id: str,
        source_type: SourceType,
        candidates: list[ExternalId],
        *,
        mutable: bool = False,
    ) -> list[ExternalId]:
        """
        Return the candidates that still need syncing, in input order.

        Repeated ids within one page are collapsed to the first occurrence.
        """
        if not candidates:
            return []

        seen: set[str] = set()
        unique: list[ExternalId] = []
        for candidate in candidates:
            if candidate.source_id not in seen:
                seen.add(candidate.source_id)
                unique.append(candidate)

        source_ids = [candidate.source_id for candidate in unique]

        if mutable:
            stored = await self.record_store.modified_markers(principal_id, source_type, source_ids)
            kept = [
                candidate
                for candidate in unique
                if candidate.source_id not in stored
                or is_newer(candidate.last_modified, stored[candidate.source_id])
            ]
        else:
            existing = await self.record_store.existing_ids(principal_id, source_type, source_ids)
            kept = [candidate for candidate in unique if candidate.source_id not in existing]

        logger.debug(
            "Deduplicated page",
            principal_id=principal_id,
            source_type=source_type.value,
            candidates=len(candidates),
            kept=len(kept),
        )
        return kept
