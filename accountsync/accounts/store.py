"""
Account Store

Read/write access to principals' OAuth token fields and sync timestamps.
Tokens are encrypted at rest with Fernet.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

import structlog
from cryptography.fernet import Fernet
from sqlalchemy import text

from accountsync.accounts.models import OAuthToken, Principal, Provider, SourceType
from accountsync.db.client import get_db_session

logger = structlog.get_logger()

_LAST_SYNCED_COLUMNS = {
    SourceType.GMAIL: "gmail_last_synced_at",
    SourceType.HUBSPOT: "hubspot_last_synced_at",
}


class AccountStore(ABC):
    """
    Abstract base class for principal account storage.

    Only the token lifecycle manager writes tokens; the orchestrator writes
    sync timestamps and flags.
    """

    @abstractmethod
    async def get_principal(self, principal_id: str) -> Principal | None:
        """Load a principal with all of its provider tokens."""

    @abstractmethod
    async def save_token(self, principal_id: str, token: OAuthToken) -> None:
        """Persist a principal's token for `token.provider`."""

    @abstractmethod
    async def mark_reauth_required(
        self,
        principal_id: str,
        provider: Provider,
        at: datetime,
    ) -> None:
        """Flag that the user must reconnect the provider."""

    @abstractmethod
    async def clear_reauth_required(self, principal_id: str, provider: Provider) -> None:
        """Drop the reauth flag once the user has reconnected."""

    @abstractmethod
    async def mark_synced(self, principal_id: str, source: SourceType, at: datetime) -> None:
        """Stamp `<source>_last_synced_at`."""

    @abstractmethod
    async def mark_historical_sync_completed(self, principal_id: str) -> None:
        """Record that the bounded mailbox backfill finished."""

    @abstractmethod
    async def list_connected(self, provider: Provider) -> list[str]:
        """Principal ids holding a connection for the provider."""


class InMemoryAccountStore(AccountStore):
    """In-memory account storage for development/testing."""

    def __init__(self, principals: list[Principal] | None = None):
        self._principals: dict[str, Principal] = {}
        for principal in principals or []:
            self.add_principal(principal)

    def add_principal(self, principal: Principal) -> None:
        self._principals[principal.id] = principal.model_copy(deep=True)

    async def get_principal(self, principal_id: str) -> Principal | None:
        principal = self._principals.get(principal_id)
        return principal.model_copy(deep=True) if principal else None

    async def save_token(self, principal_id: str, token: OAuthToken) -> None:
        principal = self._require(principal_id)
        principal.tokens[token.provider] = token.model_copy(deep=True)
        logger.debug(
            "Stored tokens",
            principal_id=principal_id,
            provider=token.provider.value,
            expires_at=token.expires_at,
        )

    async def mark_reauth_required(
        self,
        principal_id: str,
        provider: Provider,
        at: datetime,
    ) -> None:
        self._require(principal_id).reauth_required[provider] = at

    async def clear_reauth_required(self, principal_id: str, provider: Provider) -> None:
        self._require(principal_id).reauth_required.pop(provider, None)

    async def mark_synced(self, principal_id: str, source: SourceType, at: datetime) -> None:
        self._require(principal_id).last_synced_at[source] = at

    async def mark_historical_sync_completed(self, principal_id: str) -> None:
        self._require(principal_id).historical_email_sync_completed = True

    async def list_connected(self, provider: Provider) -> list[str]:
        return sorted(
            principal.id
            for principal in self._principals.values()
            if principal.is_connected(provider) and not principal.needs_reauth(provider)
        )

    def _require(self, principal_id: str) -> Principal:
        principal = self._principals.get(principal_id)
        if principal is None:
            raise KeyError(f"Unknown principal: {principal_id}")
        return principal


class PostgresAccountStore(AccountStore):
    """
    PostgreSQL-backed account storage.

    Tokens live in `principal_oauth_token`, one row per (principal, provider).
    """

    def __init__(self, encryption_key: bytes | str):
        self._fernet = Fernet(encryption_key)

    def _encrypt(self, data: str | None) -> bytes | None:
        return self._fernet.encrypt(data.encode()) if data else None

    def _decrypt(self, data: bytes | None) -> str | None:
        return self._fernet.decrypt(bytes(data)).decode() if data else None

    async def get_principal(self, principal_id: str) -> Principal | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT id, email, gmail_last_synced_at, hubspot_last_synced_at,
                           historical_email_sync_completed
                    FROM principal
                    WHERE id = :principal_id
                    """
                ),
                {"principal_id": principal_id},
            )
            row = result.mappings().first()
            if not row:
                return None

            token_rows = await session.execute(
                text(
                    """
                    SELECT provider, access_token_encrypted, refresh_token_encrypted,
                           token_type, expires_at, connected_at, last_refreshed_at,
                           reauth_required_at, scopes
                    FROM principal_oauth_token
                    WHERE principal_id = :principal_id
                    """
                ),
                {"principal_id": principal_id},
            )
            tokens = token_rows.mappings().all()

        principal = Principal(
            id=row["id"],
            email=row.get("email"),
            historical_email_sync_completed=bool(row.get("historical_email_sync_completed")),
        )
        for source, column in _LAST_SYNCED_COLUMNS.items():
            if row.get(column):
                principal.last_synced_at[source] = row[column]

        for token_row in tokens:
            provider = Provider(token_row["provider"])
            principal.tokens[provider] = OAuthToken(
                provider=provider,
                access_token=self._decrypt(token_row.get("access_token_encrypted")),
                refresh_token=self._decrypt(token_row.get("refresh_token_encrypted")),
                token_type=token_row.get("token_type") or "Bearer",
                expires_at=token_row.get("expires_at"),
                connected_at=token_row.get("connected_at"),
                last_refreshed_at=token_row.get("last_refreshed_at"),
                scopes=token_row.get("scopes") or [],
            )
            if token_row.get("reauth_required_at"):
                principal.reauth_required[provider] = token_row["reauth_required_at"]

        return principal

    async def save_token(self, principal_id: str, token: OAuthToken) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO principal_oauth_token (
                        principal_id, provider, access_token_encrypted, refresh_token_encrypted,
                        token_type, expires_at, connected_at, last_refreshed_at, scopes, updated_at
                    ) VALUES (
                        :principal_id, :provider, :access_token, :refresh_token,
                        :token_type, :expires_at, :connected_at, :last_refreshed_at, :scopes, NOW()
                    )
                    ON CONFLICT (principal_id, provider) DO UPDATE SET
                        access_token_encrypted = EXCLUDED.access_token_encrypted,
                        refresh_token_encrypted = COALESCE(
                            EXCLUDED.refresh_token_encrypted,
                            principal_oauth_token.refresh_token_encrypted
                        ),
                        token_type = EXCLUDED.token_type,
                        expires_at = EXCLUDED.expires_at,
                        connected_at = COALESCE(principal_oauth_token.connected_at, EXCLUDED.connected_at),
                        last_refreshed_at = EXCLUDED.last_refreshed_at,
                        scopes = EXCLUDED.scopes,
                        updated_at = NOW()
                    """
                ),
                {
                    "principal_id": principal_id,
                    "provider": token.provider.value,
                    "access_token": self._encrypt(token.access_token),
                    "refresh_token": self._encrypt(token.refresh_token),
                    "token_type": token.token_type,
                    "expires_at": token.expires_at,
                    "connected_at": token.connected_at,
                    "last_refreshed_at": token.last_refreshed_at,
                    "scopes": token.scopes,
                },
            )

        logger.debug(
            "Stored tokens in PostgreSQL",
            principal_id=principal_id,
            provider=token.provider.value,
        )

    async def mark_reauth_required(
        self,
        principal_id: str,
        provider: Provider,
        at: datetime,
    ) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    UPDATE principal_oauth_token
                    SET reauth_required_at = :at, updated_at = NOW()
                    WHERE principal_id = :principal_id AND provider = :provider
                    """
                ),
                {"principal_id": principal_id, "provider": provider.value, "at": at},
            )

    async def clear_reauth_required(self, principal_id: str, provider: Provider) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    UPDATE principal_oauth_token
                    SET reauth_required_at = NULL, updated_at = NOW()
                    WHERE principal_id = :principal_id AND provider = :provider
                    """
                ),
                {"principal_id": principal_id, "provider": provider.value},
            )
        logger.info("Cleared reauth flag", principal_id=principal_id, provider=provider.value)

    async def mark_synced(self, principal_id: str, source: SourceType, at: datetime) -> None:
        column = _LAST_SYNCED_COLUMNS[source]
        async with get_db_session() as session:
            await session.execute(
                text(f"UPDATE principal SET {column} = :at WHERE id = :principal_id"),
                {"principal_id": principal_id, "at": at},
            )

    async def mark_historical_sync_completed(self, principal_id: str) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    "UPDATE principal SET historical_email_sync_completed = TRUE "
                    "WHERE id = :principal_id"
                ),
                {"principal_id": principal_id},
            )

    async def list_connected(self, provider: Provider) -> list[str]:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT principal_id
                    FROM principal_oauth_token
                    WHERE provider = :provider
                      AND connected_at IS NOT NULL
                      AND reauth_required_at IS NULL
                    ORDER BY principal_id
                    """
                ),
                {"provider": provider.value},
            )
            return [row.principal_id for row in result.fetchall()]
