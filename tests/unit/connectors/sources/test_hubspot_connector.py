"""Unit tests for HubSpotConnector."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from accountsync.accounts.models import OAuthToken, Provider, SourceType
from accountsync.connectors.base.connector import ConnectorRegistry
from accountsync.connectors.base.records import RawRecord
from accountsync.connectors.sources.crm.hubspot import CONTACT_PROPERTIES, HubSpotConnector
from accountsync.kernel.errors import MalformedResponseError, RateLimitedError

pytestmark = pytest.mark.unit

TOKEN = OAuthToken(provider=Provider.HUBSPOT, access_token="h-access")


def connector_with(handler, seen: list) -> HubSpotConnector:
    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return HubSpotConnector(http_client=httpx.AsyncClient(transport=httpx.MockTransport(recording)))


def contact_result(contact_id: str, modified: str = "1735689600000") -> dict:
    return {
        "id": contact_id,
        "properties": {
            "email": f"{contact_id}@example.com",
            "firstname": "Dana",
            "lastname": "Lee",
            "lastmodifieddate": modified,
        },
        "updatedAt": "2025-01-01T00:00:00Z",
    }


def test_registered_as_mutable():
    assert ConnectorRegistry.get(SourceType.HUBSPOT) is HubSpotConnector
    assert HubSpotConnector.capabilities.mutable_records is True


@pytest.mark.asyncio
async def test_full_listing_uses_list_endpoint():
    seen: list[httpx.Request] = []
    connector = connector_with(
        lambda request: httpx.Response(
            200,
            json={
                "results": [contact_result("101"), contact_result("102", "1735776000000")],
                "paging": {"next": {"after": "102"}},
            },
        ),
        seen,
    )

    page = await connector.list_ids(TOKEN, "100", 25)

    assert [(ref.source_id, ref.last_modified) for ref in page.ids] == [
        ("101", "1735689600000"),
        ("102", "1735776000000"),
    ]
    assert page.next_cursor == "102"
    [request] = seen
    assert request.method == "GET"
    assert request.url.path == "/crm/v3/objects/contacts"
    assert request.url.params["limit"] == "25"
    assert request.url.params["after"] == "100"
    assert request.url.params["properties"] == ",".join(CONTACT_PROPERTIES)


@pytest.mark.asyncio
async def test_incremental_listing_uses_search_filter():
    seen: list[httpx.Request] = []
    connector = connector_with(lambda request: httpx.Response(200, json={"results": []}), seen)
    since = datetime(2025, 1, 1, tzinfo=timezone.utc)

    page = await connector.list_ids(TOKEN, None, 100, since=since)

    assert page.is_empty
    assert page.next_cursor is None
    [request] = seen
    assert request.method == "POST"
    assert request.url.path == "/crm/v3/objects/contacts/search"
    body = json.loads(request.content)
    [group] = body["filterGroups"]
    assert group["filters"] == [
        {"propertyName": "lastmodifieddate", "operator": "GTE", "value": "1735689600000"}
    ]
    assert body["sorts"] == [{"propertyName": "lastmodifieddate", "direction": "ASCENDING"}]
    assert body["limit"] == 100
    assert "after" not in body


@pytest.mark.asyncio
async def test_updated_at_used_when_property_missing():
    result = contact_result("7")
    del result["properties"]["lastmodifieddate"]
    connector = connector_with(lambda request: httpx.Response(200, json={"results": [result]}), [])

    page = await connector.list_ids(TOKEN, None, 10)

    assert page.ids[0].last_modified == "2025-01-01T00:00:00Z"


@pytest.mark.asyncio
async def test_rate_limited_listing():
    connector = connector_with(
        lambda request: httpx.Response(429, headers={"Retry-After": "10"}),
        [],
    )

    with pytest.raises(RateLimitedError) as exc_info:
        await connector.list_ids(TOKEN, None, 10)

    assert exc_info.value.retry_after == 10.0


@pytest.mark.asyncio
async def test_get_record():
    seen: list[httpx.Request] = []
    connector = connector_with(lambda request: httpx.Response(200, json=contact_result("55")), seen)

    raw = await connector.get_record(TOKEN, "55")

    assert raw.payload["id"] == "55"
    assert seen[0].url.path == "/crm/v3/objects/contacts/55"


def test_parse_record():
    connector = HubSpotConnector()

    contact = connector.parse_record(
        RawRecord(source_type=SourceType.HUBSPOT, source_id="55", payload=contact_result("55"))
    )

    assert contact.email == "55@example.com"
    assert contact.full_name == "Dana Lee"
    assert contact.last_modified == "1735689600000"
    assert contact.marker_date == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_parse_record_without_properties():
    connector = HubSpotConnector()

    with pytest.raises(MalformedResponseError):
        connector.parse_record(
            RawRecord(source_type=SourceType.HUBSPOT, source_id="55", payload={"id": "55"})
        )
