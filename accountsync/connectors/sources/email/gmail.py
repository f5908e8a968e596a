"""
Gmail Connector

Lists and fetches mailbox messages through the Gmail REST API.
Incremental listings filter with an `after:YYYY/MM/DD` search query.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from accountsync.accounts.models import OAuthToken, Provider, SourceType
from accountsync.connectors.base.connector import (
    BaseConnector,
    ConnectorCapabilities,
    ConnectorRegistry,
)
from accountsync.connectors.base.records import (
    EmailMessage,
    ExternalId,
    Page,
    RawRecord,
    RecordKind,
)
from accountsync.connectors.http import decode_json, send_request
from accountsync.connectors.parsing import (
    extract_body,
    header_map,
    parse_address_list,
    parse_email_address,
    parse_message_date,
)
from accountsync.kernel.errors import MalformedResponseError
from accountsync.kernel.time import Clock, utc_now

logger = structlog.get_logger()

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"


def gmail_after_query(since: datetime) -> str:
    return f"after:{since.strftime('%Y/%m/%d')}"


@ConnectorRegistry.register
class GmailConnector(BaseConnector):
    """
    Gmail data source connector.

    Messages are immutable once delivered, so presence alone deduplicates.
    """

    source_type = SourceType.GMAIL
    provider = Provider.GOOGLE
    record_kind = RecordKind.MESSAGE

    capabilities = ConnectorCapabilities(
        mutable_records=False,
        supports_modified_since=True,
        default_page_size=100,
    )

    def __init__(self, *args: Any, base_url: str = GMAIL_BASE_URL, clock: Clock = utc_now, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    async def list_ids(
        self,
        token: OAuthToken,
        cursor: str | None,
        page_size: int,
        *,
        since: datetime | None = None,
    ) -> Page:
        params: dict[str, Any] = {"maxResults": page_size}
        if cursor:
            params["pageToken"] = cursor
        if since is not None:
            params["q"] = gmail_after_query(since)

        async with self._client() as client:
            response = await send_request(
                client,
                "GET",
                f"{self._base_url}/messages",
                access_token=token.access_token or "",
                connector_type=self.source_type.value,
                operation="list_messages",
                params=params,
            )
        data = decode_json(response, operation="list_messages")

        ids = []
        for ref in data.get("messages") or []:
            message_id = ref.get("id") if isinstance(ref, dict) else None
            if not message_id:
                raise MalformedResponseError("Gmail message reference without id")
            ids.append(ExternalId(source_id=str(message_id)))

        return Page(ids=ids, next_cursor=data.get("nextPageToken") or None)

    async def get_record(self, token: OAuthToken, source_id: str) -> RawRecord:
        async with self._client() as client:
            response = await send_request(
                client,
                "GET",
                f"{self._base_url}/messages/{source_id}",
                access_token=token.access_token or "",
                connector_type=self.source_type.value,
                operation="get_message",
                params={"format": "full"},
            )
        data = decode_json(response, operation="get_message")
        return RawRecord(source_type=self.source_type, source_id=source_id, payload=data)

    def parse_record(self, raw: RawRecord) -> EmailMessage:
        """Parse Gmail message into an EmailMessage."""
        msg = raw.payload
        message_id = msg.get("id") or raw.source_id
        if not message_id:
            raise MalformedResponseError("Gmail message without id")

        payload = msg.get("payload")
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"Gmail message {message_id} has no payload")

        headers = header_map(payload)
        from_name, from_email = parse_email_address(headers.get("from"))
        date, date_is_fallback = parse_message_date(
            headers.get("date"),
            internal_date=msg.get("internalDate"),
            now=self._clock(),
        )
        if date_is_fallback:
            logger.info(
                "Message date fell back",
                source_id=message_id,
                date_header=headers.get("date"),
            )

        return EmailMessage(
            source_id=str(message_id),
            thread_id=msg.get("threadId"),
            subject=headers.get("subject", ""),
            from_name=from_name,
            from_email=from_email,
            to_emails=parse_address_list(headers.get("to")),
            cc_emails=parse_address_list(headers.get("cc")),
            body=extract_body(payload),
            snippet=msg.get("snippet", ""),
            labels=list(msg.get("labelIds") or []),
            date=date,
            date_is_fallback=date_is_fallback,
        )
