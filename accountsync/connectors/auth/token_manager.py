"""
Token Lifecycle Manager

Keeps provider access tokens valid: decides when a refresh is due, performs
it under the principal's refresh lock, and schedules the next check (or a
retry). Terminal refresh failures flag the principal for reauthentication and
stop the refresh cadence until the account is reconnected.

    VALID -> EXPIRING_SOON -> REFRESHING -> VALID
                                         -> TERMINAL_NEEDS_REAUTH
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from accountsync.accounts.models import OAuthToken, Principal, Provider
from accountsync.accounts.store import AccountStore
from accountsync.config import Settings, get_settings
from accountsync.connectors.auth.oauth2 import OAuth2Manager
from accountsync.jobs.locks import ConcurrencyGuard, lock_key
from accountsync.jobs.queue import EnqueueJobRequest, JobHandle, JobQueue
from accountsync.kernel.errors import (
    NotConnectedError,
    RefreshError,
    RefreshErrorKind,
    RequestFailedError,
)
from accountsync.kernel.time import Clock, seconds_until, utc_now
from accountsync.monitoring.metrics import get_metrics

logger = structlog.get_logger()

TOKEN_REFRESH_JOB = "token.refresh"


class TokenState(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    REFRESHING = "refreshing"
    TERMINAL_NEEDS_REAUTH = "terminal_needs_reauth"
    NOT_CONNECTED = "not_connected"


@dataclass(frozen=True)
class RefreshPolicy:
    """Per-provider refresh cadence."""

    threshold_seconds: int
    safety_margin_seconds: int
    floor_delay_seconds: int
    default_delay_seconds: int
    retry_delay_seconds: int


def default_policies(settings: Settings | None = None) -> dict[Provider, RefreshPolicy]:
    settings = settings or get_settings()
    return {
        Provider.GOOGLE: RefreshPolicy(
            threshold_seconds=settings.google_refresh_threshold_seconds,
            safety_margin_seconds=settings.google_refresh_safety_margin_seconds,
            floor_delay_seconds=settings.google_refresh_floor_delay_seconds,
            default_delay_seconds=settings.google_refresh_default_delay_seconds,
            retry_delay_seconds=settings.token_refresh_retry_delay_seconds,
        ),
        Provider.HUBSPOT: RefreshPolicy(
            threshold_seconds=settings.hubspot_refresh_threshold_seconds,
            safety_margin_seconds=settings.hubspot_refresh_safety_margin_seconds,
            floor_delay_seconds=settings.hubspot_refresh_floor_delay_seconds,
            default_delay_seconds=settings.hubspot_refresh_default_delay_seconds,
            retry_delay_seconds=settings.token_refresh_retry_delay_seconds,
        ),
    }


def needs_refresh(
    token: OAuthToken,
    threshold_seconds: int,
    *,
    now: datetime | None = None,
) -> bool:
    """True when the expiry is unknown, inside the threshold, or already past."""
    if token.expires_at is None:
        return True
    return seconds_until(token.expires_at, now=now or utc_now()) < threshold_seconds


def next_check_delay(token: OAuthToken | None, policy: RefreshPolicy, *, now: datetime) -> int:
    """Seconds until the next refresh check."""
    if token is None or token.expires_at is None:
        return policy.default_delay_seconds
    remaining = int(seconds_until(token.expires_at, now=now))
    return max(remaining - policy.safety_margin_seconds, policy.floor_delay_seconds)


@dataclass(frozen=True)
class TokenCheckResult:
    principal_id: str
    provider: Provider
    state: TokenState
    refreshed: bool = False
    next_check: JobHandle | None = None
    error: RefreshError | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "provider": self.provider.value,
            "state": self.state.value,
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "next_check_job_id": self.next_check.id if self.next_check else None,
            "next_check_at": self.next_check.run_at.isoformat() if self.next_check else None,
            "error": self.error.to_dict() if self.error else None,
        }


class TokenLifecycleManager:
    """Owns every write to OAuth tokens."""

    def __init__(
        self,
        *,
        account_store: AccountStore,
        oauth_manager: OAuth2Manager,
        job_queue: JobQueue,
        guard: ConcurrencyGuard,
        policies: dict[Provider, RefreshPolicy] | None = None,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.account_store = account_store
        self.oauth_manager = oauth_manager
        self.job_queue = job_queue
        self.guard = guard
        self.policies = policies or default_policies(settings)
        self._clock = clock
        self._lock_ttl = settings.token_refresh_lock_ttl_seconds
        self._unique_ttl = settings.token_refresh_unique_seconds

    def policy_for(self, provider: Provider) -> RefreshPolicy:
        return self.policies[provider]

    def needs_refresh(self, token: OAuthToken, threshold_seconds: int | None = None) -> bool:
        if threshold_seconds is None:
            threshold_seconds = self.policy_for(token.provider).threshold_seconds
        return needs_refresh(token, threshold_seconds, now=self._clock())

    def state_of(self, principal: Principal, provider: Provider) -> TokenState:
        if principal.needs_reauth(provider):
            return TokenState.TERMINAL_NEEDS_REAUTH
        token = principal.token_for(provider)
        if token is None or not token.is_connected:
            return TokenState.NOT_CONNECTED
        if self.needs_refresh(token):
            return TokenState.EXPIRING_SOON
        return TokenState.VALID

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, principal_id: str, provider: Provider) -> OAuthToken:
        """
        Exchange the refresh token and persist the result.

        Callers hold the principal's refresh lock. On failure the stored token
        is left untouched; terminal failures flag the principal for reauth.
        """
        principal = await self._load(principal_id)
        token = principal.token_for(provider)
        if token is None or not token.is_connected:
            raise NotConnectedError(principal_id, provider.value)
        if principal.needs_reauth(provider):
            raise RefreshError(RefreshErrorKind.INVALID_GRANT, "Reauthentication required")

        now = self._clock()
        metrics = get_metrics()
        try:
            new_token = await self.oauth_manager.refresh_tokens(token, now=now)
        except RefreshError as exc:
            metrics.track_token_refresh(provider.value, exc.kind.value)
            if exc.is_terminal:
                await self.account_store.mark_reauth_required(principal_id, provider, now)
                logger.warning(
                    "Token refresh rejected; reauthentication required",
                    principal_id=principal_id,
                    provider=provider.value,
                    kind=exc.kind.value,
                )
            else:
                logger.warning(
                    "Token refresh failed",
                    principal_id=principal_id,
                    provider=provider.value,
                    kind=exc.kind.value,
                    status_code=exc.status_code,
                )
            raise

        if token.expires_at is not None and (
            new_token.expires_at is None or new_token.expires_at < token.expires_at
        ):
            logger.warning(
                "Provider returned an earlier expiry; keeping the later one",
                principal_id=principal_id,
                provider=provider.value,
            )
            new_token = new_token.model_copy(update={"expires_at": token.expires_at})

        await self.account_store.save_token(principal_id, new_token)
        metrics.track_token_refresh(provider.value, "success")
        return new_token

    async def refresh_now(self, principal_id: str, provider: Provider) -> OAuthToken | None:
        """Refresh under the principal's refresh lock; None when another refresh holds it."""
        key = lock_key(principal_id, provider.value, "token_refresh")
        async with self.guard.hold(key, self._lock_ttl) as handle:
            if handle is None:
                return None
            return await self.refresh(principal_id, provider)

    async def ensure_valid_token(self, principal_id: str, provider: Provider) -> OAuthToken:
        """Return a usable token for the sync path, refreshing in-line when due."""
        principal = await self._load(principal_id)
        if principal.needs_reauth(provider):
            raise RefreshError(RefreshErrorKind.INVALID_GRANT, "Reauthentication required")
        token = principal.token_for(provider)
        if token is None or not token.is_connected:
            raise NotConnectedError(principal_id, provider.value)
        if not self.needs_refresh(token):
            return token

        refreshed = await self.refresh_now(principal_id, provider)
        if refreshed is not None:
            return refreshed

        # Another worker is refreshing; the current token is fine until it expires.
        if token.expires_at is not None and token.expires_at > self._clock() and token.access_token:
            return token
        raise RequestFailedError("Token refresh in progress")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_next_check(
        self,
        principal_id: str,
        provider: Provider,
        token: OAuthToken | None = None,
    ) -> JobHandle:
        now = self._clock()
        if token is None:
            principal = await self._load(principal_id)
            token = principal.token_for(provider)
        delay = next_check_delay(token, self.policy_for(provider), now=now)
        return await self._enqueue_check(principal_id, provider, now + timedelta(seconds=delay))

    async def schedule_retry(self, principal_id: str, provider: Provider) -> JobHandle:
        now = self._clock()
        delay = self.policy_for(provider).retry_delay_seconds
        return await self._enqueue_check(principal_id, provider, now + timedelta(seconds=delay))

    async def schedule_now(self, principal_id: str, provider: Provider) -> JobHandle:
        return await self._enqueue_check(principal_id, provider, self._clock())

    async def _enqueue_check(
        self,
        principal_id: str,
        provider: Provider,
        run_at: datetime,
    ) -> JobHandle:
        handle = await self.job_queue.enqueue(
            EnqueueJobRequest(
                job_type=TOKEN_REFRESH_JOB,
                payload={"principal_id": principal_id, "provider": provider.value},
                principal_id=principal_id,
                run_at=run_at,
                unique_key=f"{TOKEN_REFRESH_JOB}:{provider.value}:{principal_id}",
                unique_ttl_seconds=self._unique_ttl,
            )
        )
        logger.debug(
            "Scheduled token check",
            principal_id=principal_id,
            provider=provider.value,
            run_at=run_at,
            deduplicated=handle.deduplicated,
        )
        return handle

    # ------------------------------------------------------------------
    # Job body
    # ------------------------------------------------------------------

    async def run_check(self, principal_id: str, provider: Provider) -> TokenCheckResult:
        """Refresh if due, then schedule the next check (or a retry)."""
        principal = await self._load(principal_id)
        state = self.state_of(principal, provider)

        if state in (TokenState.NOT_CONNECTED, TokenState.TERMINAL_NEEDS_REAUTH):
            logger.info(
                "Token check stopped",
                principal_id=principal_id,
                provider=provider.value,
                state=state.value,
            )
            return TokenCheckResult(principal_id=principal_id, provider=provider, state=state)

        key = lock_key(principal_id, provider.value, "token_refresh")
        async with self.guard.hold(key, self._lock_ttl) as handle:
            if handle is None:
                # The lock holder (usually an in-line refresh) never reschedules.
                retry = await self.schedule_retry(principal_id, provider)
                return TokenCheckResult(
                    principal_id=principal_id,
                    provider=provider,
                    state=state,
                    next_check=retry,
                    skipped=True,
                )

            if state == TokenState.VALID:
                next_check = await self.schedule_next_check(
                    principal_id, provider, principal.token_for(provider)
                )
                return TokenCheckResult(
                    principal_id=principal_id,
                    provider=provider,
                    state=TokenState.VALID,
                    next_check=next_check,
                )

            logger.info(
                "Refreshing token",
                principal_id=principal_id,
                provider=provider.value,
                state=TokenState.REFRESHING.value,
            )
            try:
                token = await self.refresh(principal_id, provider)
            except RefreshError as exc:
                if exc.is_terminal:
                    return TokenCheckResult(
                        principal_id=principal_id,
                        provider=provider,
                        state=TokenState.TERMINAL_NEEDS_REAUTH,
                        error=exc,
                    )
                retry = await self.schedule_retry(principal_id, provider)
                return TokenCheckResult(
                    principal_id=principal_id,
                    provider=provider,
                    state=TokenState.EXPIRING_SOON,
                    next_check=retry,
                    error=exc,
                )

            next_check = await self.schedule_next_check(principal_id, provider, token)
            return TokenCheckResult(
                principal_id=principal_id,
                provider=provider,
                state=TokenState.VALID,
                refreshed=True,
                next_check=next_check,
            )

    async def _load(self, principal_id: str) -> Principal:
        principal = await self.account_store.get_principal(principal_id)
        if principal is None:
            raise NotConnectedError(principal_id, "any")
        return principal
