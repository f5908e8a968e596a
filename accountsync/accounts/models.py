"""
Account models.

A Principal is owned by the product's account layer; the sync engine only
reads and writes its provider tokens, connection timestamps and sync flags.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Provider(str, Enum):
    """OAuth providers issuing the credentials."""

    GOOGLE = "google"
    HUBSPOT = "hubspot"


class SourceType(str, Enum):
    """Record sources the engine syncs."""

    GMAIL = "gmail"
    HUBSPOT = "hubspot"

    @property
    def provider(self) -> Provider:
        return SOURCE_PROVIDERS[self]


SOURCE_PROVIDERS: dict[SourceType, Provider] = {
    SourceType.GMAIL: Provider.GOOGLE,
    SourceType.HUBSPOT: Provider.HUBSPOT,
}


class OAuthToken(BaseModel):
    """OAuth credentials for one principal and provider."""

    provider: Provider
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None
    connected_at: datetime | None = None
    last_refreshed_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)

    class Config:
        """Pydantic config."""
        extra = "allow"

    @property
    def is_connected(self) -> bool:
        return self.connected_at is not None and bool(self.access_token or self.refresh_token)


class Principal(BaseModel):
    """The account whose provider data is synced."""

    id: str
    email: str | None = None

    tokens: dict[Provider, OAuthToken] = Field(default_factory=dict)

    # Providers whose refresh token was rejected; cleared on reconnection
    reauth_required: dict[Provider, datetime] = Field(default_factory=dict)

    last_synced_at: dict[SourceType, datetime] = Field(default_factory=dict)
    historical_email_sync_completed: bool = False

    class Config:
        """Pydantic config."""
        extra = "allow"

    def token_for(self, provider: Provider) -> OAuthToken | None:
        return self.tokens.get(provider)

    def is_connected(self, provider: Provider) -> bool:
        token = self.tokens.get(provider)
        return token is not None and token.is_connected

    def connected_at(self, source: SourceType) -> datetime | None:
        token = self.tokens.get(source.provider)
        return token.connected_at if token else None

    def needs_reauth(self, provider: Provider) -> bool:
        return provider in self.reauth_required
