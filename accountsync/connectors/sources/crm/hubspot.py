"""
HubSpot CRM Connector

Lists and fetches contacts. Full listings page through
`/crm/v3/objects/contacts`; incremental listings use the search endpoint
with a `lastmodifieddate >= since` filter.
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
    Contact,
    ExternalId,
    Page,
    RawRecord,
    RecordKind,
)
from accountsync.connectors.http import decode_json, send_request
from accountsync.kernel.errors import MalformedResponseError
from accountsync.kernel.time import to_epoch_millis

logger = structlog.get_logger()

HUBSPOT_BASE_URL = "https://api.hubapi.com"

CONTACT_PROPERTIES = [
    "email",
    "firstname",
    "lastname",
    "phone",
    "company",
    "notes_last_contacted",
    "notes_last_updated",
    "notes_next_activity_date",
    "lastmodifieddate",
]


def _last_modified(result: dict[str, Any]) -> str | None:
    props = result.get("properties") or {}
    value = props.get("lastmodifieddate") or result.get("updatedAt")
    return str(value) if value not in (None, "") else None


@ConnectorRegistry.register
class HubSpotConnector(BaseConnector):
    """
    HubSpot contacts connector.

    Contacts are mutable: each listed id carries its `lastmodifieddate` so
    the deduplication filter can compare it with the stored value.
    """

    source_type = SourceType.HUBSPOT
    provider = Provider.HUBSPOT
    record_kind = RecordKind.CONTACT

    capabilities = ConnectorCapabilities(
        mutable_records=True,
        supports_modified_since=True,
        default_page_size=100,
    )

    def __init__(self, *args: Any, base_url: str = HUBSPOT_BASE_URL, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._base_url = base_url.rstrip("/")

    async def list_ids(
        self,
        token: OAuthToken,
        cursor: str | None,
        page_size: int,
        *,
        since: datetime | None = None,
    ) -> Page:
        async with self._client() as client:
            if since is None:
                params: dict[str, Any] = {
                    "limit": page_size,
                    "properties": ",".join(CONTACT_PROPERTIES),
                }
                if cursor:
                    params["after"] = cursor
                response = await send_request(
                    client,
                    "GET",
                    f"{self._base_url}/crm/v3/objects/contacts",
                    access_token=token.access_token or "",
                    connector_type=self.source_type.value,
                    operation="list_contacts",
                    params=params,
                )
                operation = "list_contacts"
            else:
                body: dict[str, Any] = {
                    "filterGroups": [
                        {
                            "filters": [
                                {
                                    "propertyName": "lastmodifieddate",
                                    "operator": "GTE",
                                    "value": str(to_epoch_millis(since)),
                                }
                            ]
                        }
                    ],
                    "sorts": [{"propertyName": "lastmodifieddate", "direction": "ASCENDING"}],
                    "properties": CONTACT_PROPERTIES,
                    "limit": page_size,
                }
                if cursor:
                    body["after"] = cursor
                response = await send_request(
                    client,
                    "POST",
                    f"{self._base_url}/crm/v3/objects/contacts/search",
                    access_token=token.access_token or "",
                    connector_type=self.source_type.value,
                    operation="search_contacts",
                    json=body,
                )
                operation = "search_contacts"

        data = decode_json(response, operation=operation)

        ids = []
        for result in data.get("results") or []:
            contact_id = result.get("id") if isinstance(result, dict) else None
            if not contact_id:
                raise MalformedResponseError("HubSpot contact without id")
            ids.append(ExternalId(source_id=str(contact_id), last_modified=_last_modified(result)))

        paging = data.get("paging") or {}
        next_link = paging.get("next") or {}
        after = next_link.get("after")
        return Page(ids=ids, next_cursor=str(after) if after else None)

    async def get_record(self, token: OAuthToken, source_id: str) -> RawRecord:
        async with self._client() as client:
            response = await send_request(
                client,
                "GET",
                f"{self._base_url}/crm/v3/objects/contacts/{source_id}",
                access_token=token.access_token or "",
                connector_type=self.source_type.value,
                operation="get_contact",
                params={"properties": ",".join(CONTACT_PROPERTIES)},
            )
        data = decode_json(response, operation="get_contact")
        return RawRecord(source_type=self.source_type, source_id=source_id, payload=data)

    def parse_record(self, raw: RawRecord) -> Contact:
        """Convert a HubSpot contact payload to a Contact."""
        result = raw.payload
        contact_id = result.get("id") or raw.source_id
        if not contact_id:
            raise MalformedResponseError("HubSpot contact without id")
        props = result.get("properties")
        if not isinstance(props, dict):
            raise MalformedResponseError(f"HubSpot contact {contact_id} has no properties")

        return Contact(
            source_id=str(contact_id),
            email=props.get("email"),
            first_name=props.get("firstname"),
            last_name=props.get("lastname"),
            phone=props.get("phone"),
            company=props.get("company"),
            notes_last_contacted=props.get("notes_last_contacted"),
            notes_last_updated=props.get("notes_last_updated"),
            notes_next_activity_date=props.get("notes_next_activity_date"),
            last_modified_at=_last_modified(result),
        )
