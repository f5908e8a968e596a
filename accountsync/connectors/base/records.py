"""
Record Models

Wire-level references (ExternalId, Page, RawRecord) and the canonical,
provider-agnostic records stored locally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from accountsync.accounts.models import SourceType
from accountsync.kernel.time import from_epoch_millis, parse_iso8601


class RecordKind(str, Enum):
    MESSAGE = "message"
    CONTACT = "contact"


@dataclass(frozen=True)
class ExternalId:
    """A provider record id, plus `last_modified` for mutable sources."""

    source_id: str
    last_modified: str | None = None


@dataclass(frozen=True)
class Page:
    """One page from a provider listing."""

    ids: list[ExternalId] = field(default_factory=list)
    next_cursor: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.ids


@dataclass(frozen=True)
class RawRecord:
    """Provider payload for one record, as fetched."""

    source_type: SourceType
    source_id: str
    payload: dict[str, Any]


class CanonicalRecord(BaseModel):
    """Parsed record, unique per (principal_id, source_id)."""

    source_type: SourceType
    source_id: str
    kind: RecordKind

    class Config:
        """Pydantic config."""
        extra = "allow"

    @property
    def marker_date(self) -> datetime | None:
        """Date that feeds the checkpoint's oldest-seen marker."""
        return None

    @property
    def last_modified(self) -> str | None:
        return None


class EmailMessage(CanonicalRecord):
    kind: RecordKind = RecordKind.MESSAGE
    source_type: SourceType = SourceType.GMAIL

    thread_id: str | None = None
    subject: str = ""
    from_name: str | None = None
    from_email: str | None = None
    to_emails: list[str] = Field(default_factory=list)
    cc_emails: list[str] = Field(default_factory=list)
    body: str = ""
    snippet: str = ""
    labels: list[str] = Field(default_factory=list)
    date: datetime
    # Set when the date came from the lossy year/now fallback
    date_is_fallback: bool = False

    @property
    def marker_date(self) -> datetime | None:
        return None if self.date_is_fallback else self.date


class Contact(CanonicalRecord):
    kind: RecordKind = RecordKind.CONTACT
    source_type: SourceType = SourceType.HUBSPOT

    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    notes_last_contacted: str | None = None
    notes_last_updated: str | None = None
    notes_next_activity_date: str | None = None
    last_modified_at: str | None = None

    @property
    def full_name(self) -> str | None:
        return " ".join(filter(None, [self.first_name, self.last_name])) or None

    @property
    def last_modified(self) -> str | None:
        return self.last_modified_at

    @property
    def marker_date(self) -> datetime | None:
        return parse_modified_marker(self.last_modified_at)


class StoredRecord(BaseModel):
    """A canonical record after upsert, with its local identity."""

    principal_id: str
    local_id: str
    record: CanonicalRecord
    synced_at: datetime

    @property
    def source_id(self) -> str:
        return self.record.source_id


class ExternalRecordRef(BaseModel):
    """sourceId -> localId mapping used for deduplication."""

    principal_id: str
    source_type: SourceType
    source_id: str
    local_id: str
    last_modified_at: str | None = None


def parse_modified_marker(value: Any) -> datetime | None:
    """Parse a provider modification stamp (epoch millis or ISO 8601); None if unusable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    if raw.isdigit():
        try:
            return from_epoch_millis(raw)
        except (ValueError, OverflowError, OSError):
            return None
    try:
        return parse_iso8601(raw)
    except ValueError:
        return None
