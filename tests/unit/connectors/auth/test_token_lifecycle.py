"""
Unit tests for TokenLifecycleManager.

Refresh decisions, next-check scheduling, terminal failures and the
refresh lock.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from accountsync.accounts.models import OAuthToken, Provider
from accountsync.accounts.store import InMemoryAccountStore
from accountsync.connectors.auth.token_manager import (
    TOKEN_REFRESH_JOB,
    RefreshPolicy,
    TokenLifecycleManager,
    TokenState,
    needs_refresh,
    next_check_delay,
)
from accountsync.jobs.locks import InMemoryConcurrencyGuard, lock_key
from accountsync.jobs.queue import InMemoryJobQueue
from accountsync.kernel.errors import NotConnectedError, RefreshError, RefreshErrorKind
from tests.support.fakes import connected_principal, make_settings

pytestmark = pytest.mark.unit

GOOGLE_POLICY = RefreshPolicy(
    threshold_seconds=300,
    safety_margin_seconds=300,
    floor_delay_seconds=60,
    default_delay_seconds=3300,
    retry_delay_seconds=300,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def oauth_manager():
    manager = MagicMock()
    manager.refresh_tokens = AsyncMock()
    return manager


def build(fake_clock, oauth_manager, *, expires_in=timedelta(hours=1)):
    principal = connected_principal(
        "p1",
        now=fake_clock.now(),
        providers=(Provider.GOOGLE,),
        expires_in=expires_in,
    )
    store = InMemoryAccountStore([principal])
    queue = InMemoryJobQueue(clock=fake_clock.now)
    guard = InMemoryConcurrencyGuard(clock=fake_clock.now)
    manager = TokenLifecycleManager(
        account_store=store,
        oauth_manager=oauth_manager,
        job_queue=queue,
        guard=guard,
        clock=fake_clock.now,
        settings=make_settings(),
    )
    return manager, store, queue, guard


def refreshed(fake_clock, *, expires_in=timedelta(hours=1)) -> OAuthToken:
    return OAuthToken(
        provider=Provider.GOOGLE,
        access_token="new-access",
        refresh_token="refresh-google",
        expires_at=fake_clock.now() + expires_in,
        connected_at=fake_clock.now() - timedelta(days=10),
        last_refreshed_at=fake_clock.now(),
    )


# =============================================================================
# needs_refresh / next_check_delay
# =============================================================================


class TestRefreshDecision:
    def test_expiring_inside_threshold(self, fake_clock):
        token = OAuthToken(provider=Provider.GOOGLE, expires_at=fake_clock.now() + timedelta(seconds=250))
        assert needs_refresh(token, 300, now=fake_clock.now()) is True

    def test_comfortably_valid(self, fake_clock):
        token = OAuthToken(provider=Provider.GOOGLE, expires_at=fake_clock.now() + timedelta(seconds=1000))
        assert needs_refresh(token, 300, now=fake_clock.now()) is False

    def test_threshold_boundary_is_not_due(self, fake_clock):
        token = OAuthToken(provider=Provider.GOOGLE, expires_at=fake_clock.now() + timedelta(seconds=300))
        assert needs_refresh(token, 300, now=fake_clock.now()) is False

    def test_already_expired(self, fake_clock):
        token = OAuthToken(provider=Provider.GOOGLE, expires_at=fake_clock.now() - timedelta(seconds=5))
        assert needs_refresh(token, 300, now=fake_clock.now()) is True

    def test_unknown_expiry_is_due(self, fake_clock):
        assert needs_refresh(OAuthToken(provider=Provider.HUBSPOT), 600, now=fake_clock.now()) is True

    def test_next_check_is_expiry_minus_margin(self, fake_clock):
        token = OAuthToken(provider=Provider.GOOGLE, expires_at=fake_clock.now() + timedelta(hours=1))
        assert next_check_delay(token, GOOGLE_POLICY, now=fake_clock.now()) == 3300

    def test_next_check_never_below_floor(self, fake_clock):
        token = OAuthToken(provider=Provider.GOOGLE, expires_at=fake_clock.now() + timedelta(seconds=200))
        assert next_check_delay(token, GOOGLE_POLICY, now=fake_clock.now()) == 60

    def test_next_check_default_without_expiry(self, fake_clock):
        assert next_check_delay(None, GOOGLE_POLICY, now=fake_clock.now()) == 3300


# =============================================================================
# run_check
# =============================================================================


@pytest.mark.asyncio
async def test_valid_token_schedules_next_check_without_refresh(fake_clock, oauth_manager):
    manager, _, queue, _ = build(fake_clock, oauth_manager)

    result = await manager.run_check("p1", Provider.GOOGLE)

    assert result.state == TokenState.VALID
    assert result.refreshed is False
    oauth_manager.refresh_tokens.assert_not_awaited()
    [job] = queue.queued(TOKEN_REFRESH_JOB)
    assert job.run_at == fake_clock.now() + timedelta(seconds=3300)
    assert job.payload == {"principal_id": "p1", "provider": "google"}


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_persisted(fake_clock, oauth_manager):
    manager, store, queue, _ = build(fake_clock, oauth_manager, expires_in=timedelta(seconds=250))
    oauth_manager.refresh_tokens.return_value = refreshed(fake_clock)

    result = await manager.run_check("p1", Provider.GOOGLE)

    assert result.state == TokenState.VALID
    assert result.refreshed is True
    principal = await store.get_principal("p1")
    assert principal.tokens[Provider.GOOGLE].access_token == "new-access"
    [job] = queue.queued(TOKEN_REFRESH_JOB)
    assert job.run_at == fake_clock.now() + timedelta(seconds=3300)


@pytest.mark.asyncio
async def test_invalid_grant_is_terminal_and_stops_scheduling(fake_clock, oauth_manager):
    manager, store, queue, _ = build(fake_clock, oauth_manager, expires_in=timedelta(seconds=250))
    oauth_manager.refresh_tokens.side_effect = RefreshError(RefreshErrorKind.INVALID_GRANT, status_code=400)

    result = await manager.run_check("p1", Provider.GOOGLE)

    assert result.state == TokenState.TERMINAL_NEEDS_REAUTH
    assert result.error.kind == RefreshErrorKind.INVALID_GRANT
    principal = await store.get_principal("p1")
    assert principal.needs_reauth(Provider.GOOGLE)
    assert principal.tokens[Provider.GOOGLE].access_token == "access-google"
    assert queue.queued() == []

    # Later checks stop without calling the provider.
    oauth_manager.refresh_tokens.reset_mock()
    again = await manager.run_check("p1", Provider.GOOGLE)
    assert again.state == TokenState.TERMINAL_NEEDS_REAUTH
    oauth_manager.refresh_tokens.assert_not_awaited()


@pytest.mark.asyncio
async def test_transient_failure_schedules_retry(fake_clock, oauth_manager):
    manager, store, queue, _ = build(fake_clock, oauth_manager, expires_in=timedelta(seconds=250))
    oauth_manager.refresh_tokens.side_effect = RefreshError(RefreshErrorKind.API_ERROR, status_code=503)

    result = await manager.run_check("p1", Provider.GOOGLE)

    assert result.state == TokenState.EXPIRING_SOON
    assert result.error.is_terminal is False
    [job] = queue.queued(TOKEN_REFRESH_JOB)
    assert job.run_at == fake_clock.now() + timedelta(seconds=300)
    principal = await store.get_principal("p1")
    assert not principal.needs_reauth(Provider.GOOGLE)


@pytest.mark.asyncio
async def test_check_skipped_while_refresh_lock_held(fake_clock, oauth_manager):
    manager, _, queue, guard = build(fake_clock, oauth_manager, expires_in=timedelta(seconds=250))
    await guard.acquire(lock_key("p1", "google", "token_refresh"), 60)

    result = await manager.run_check("p1", Provider.GOOGLE)

    assert result.skipped is True
    oauth_manager.refresh_tokens.assert_not_awaited()
    # The cadence continues: a retry check is queued after the retry delay.
    [job] = queue.queued(TOKEN_REFRESH_JOB)
    assert job.run_at == fake_clock.now() + timedelta(seconds=300)
    assert result.next_check.id == job.id


@pytest.mark.asyncio
async def test_not_connected_provider_stops(fake_clock, oauth_manager):
    manager, _, queue, _ = build(fake_clock, oauth_manager)

    result = await manager.run_check("p1", Provider.HUBSPOT)

    assert result.state == TokenState.NOT_CONNECTED
    assert queue.queued() == []


# =============================================================================
# refresh / ensure_valid_token
# =============================================================================


@pytest.mark.asyncio
async def test_refresh_keeps_later_expiry(fake_clock, oauth_manager):
    manager, store, _, _ = build(fake_clock, oauth_manager, expires_in=timedelta(hours=2))
    oauth_manager.refresh_tokens.return_value = refreshed(fake_clock, expires_in=timedelta(minutes=30))

    token = await manager.refresh("p1", Provider.GOOGLE)

    assert token.expires_at == fake_clock.now() + timedelta(hours=2)
    assert token.access_token == "new-access"


@pytest.mark.asyncio
async def test_refresh_never_clears_known_expiry(fake_clock, oauth_manager):
    manager, store, _, _ = build(fake_clock, oauth_manager, expires_in=timedelta(minutes=20))
    oauth_manager.refresh_tokens.return_value = refreshed(fake_clock).model_copy(update={"expires_at": None})

    token = await manager.refresh("p1", Provider.GOOGLE)

    assert token.expires_at == fake_clock.now() + timedelta(minutes=20)
    principal = await store.get_principal("p1")
    assert principal.tokens[Provider.GOOGLE].expires_at == token.expires_at


@pytest.mark.asyncio
async def test_refresh_now_returns_none_when_locked(fake_clock, oauth_manager):
    manager, _, _, guard = build(fake_clock, oauth_manager)
    await guard.acquire(lock_key("p1", "google", "token_refresh"), 60)

    assert await manager.refresh_now("p1", Provider.GOOGLE) is None


@pytest.mark.asyncio
async def test_ensure_valid_token_refreshes_inline(fake_clock, oauth_manager):
    manager, _, _, _ = build(fake_clock, oauth_manager, expires_in=timedelta(seconds=100))
    oauth_manager.refresh_tokens.return_value = refreshed(fake_clock)

    token = await manager.ensure_valid_token("p1", Provider.GOOGLE)

    assert token.access_token == "new-access"


@pytest.mark.asyncio
async def test_ensure_valid_token_rejects_reauth_required(fake_clock, oauth_manager):
    manager, store, _, _ = build(fake_clock, oauth_manager)
    await store.mark_reauth_required("p1", Provider.GOOGLE, fake_clock.now())

    with pytest.raises(RefreshError) as exc_info:
        await manager.ensure_valid_token("p1", Provider.GOOGLE)

    assert exc_info.value.is_terminal


@pytest.mark.asyncio
async def test_unknown_principal(fake_clock, oauth_manager):
    manager, _, _, _ = build(fake_clock, oauth_manager)

    with pytest.raises(NotConnectedError):
        await manager.ensure_valid_token("missing", Provider.GOOGLE)


# =============================================================================
# Scheduling
# =============================================================================


@pytest.mark.asyncio
async def test_schedule_now_twice_yields_one_run(fake_clock, oauth_manager):
    manager, _, queue, _ = build(fake_clock, oauth_manager)

    first = await manager.schedule_now("p1", Provider.GOOGLE)
    fake_clock.advance(timedelta(seconds=30))
    second = await manager.schedule_now("p1", Provider.GOOGLE)

    assert second.id == first.id
    assert second.deduplicated is True
    assert len(queue.queued(TOKEN_REFRESH_JOB)) == 1


@pytest.mark.asyncio
async def test_schedule_now_after_ttl_creates_new_run(fake_clock, oauth_manager):
    manager, _, queue, _ = build(fake_clock, oauth_manager)

    first = await manager.schedule_now("p1", Provider.GOOGLE)
    fake_clock.advance(timedelta(seconds=301))
    second = await manager.schedule_now("p1", Provider.GOOGLE)

    assert second.id != first.id
