"""Unit tests for indexing notifications."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from accountsync.connectors.base.records import RecordKind
from accountsync.sync.indexing import (
    BackgroundIndexingNotifier,
    IndexingNotifier,
    NullIndexingNotifier,
    WebhookIndexingNotifier,
    get_indexing_notifier,
)

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_webhook_posts_record_reference():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = WebhookIndexingNotifier("https://indexer.test/notify", http_client=client)
        await notifier.notify("p1", RecordKind.CONTACT, "local-1")

    assert seen == [{"principal_id": "p1", "record_kind": "contact", "record_id": "local-1"}]


@pytest.mark.asyncio
async def test_webhook_failure_is_logged_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = WebhookIndexingNotifier("https://indexer.test/notify", http_client=client)
        await notifier.notify("p1", RecordKind.MESSAGE, "local-1")


def test_factory_without_url_returns_null_notifier():
    with patch("accountsync.sync.indexing.get_settings") as settings:
        settings.return_value.indexing_webhook_url = None
        assert isinstance(get_indexing_notifier(), NullIndexingNotifier)

        settings.return_value.indexing_webhook_url = "https://indexer.test/notify"
        notifier = get_indexing_notifier()

    assert isinstance(notifier, BackgroundIndexingNotifier)
    assert isinstance(notifier.inner, WebhookIndexingNotifier)
    assert notifier.inner.url == "https://indexer.test/notify"


@pytest.mark.asyncio
async def test_background_notify_returns_before_delivery():
    release = asyncio.Event()
    delivered = []

    class SlowNotifier(IndexingNotifier):
        async def notify(self, principal_id, record_kind, record_id):
            await release.wait()
            delivered.append(record_id)

    notifier = BackgroundIndexingNotifier(SlowNotifier())

    await notifier.notify("p1", RecordKind.MESSAGE, "local-1")
    await notifier.notify("p1", RecordKind.MESSAGE, "local-2")

    assert delivered == []
    assert notifier.pending == 2

    release.set()
    await notifier.aclose()

    assert sorted(delivered) == ["local-1", "local-2"]
    assert notifier.pending == 0


@pytest.mark.asyncio
async def test_background_delivery_errors_are_contained():
    inner = AsyncMock(spec=IndexingNotifier)
    inner.notify.side_effect = RuntimeError("indexer down")
    notifier = BackgroundIndexingNotifier(inner)

    await notifier.notify("p1", RecordKind.CONTACT, "local-1")
    await notifier.aclose()

    inner.notify.assert_awaited_once_with("p1", RecordKind.CONTACT, "local-1")
    inner.aclose.assert_awaited_once()
