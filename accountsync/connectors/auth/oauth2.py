"""
OAuth2 Manager

Refresh-token exchange for the supported providers. Login and redirect flows
live in the product's web layer.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog
from pydantic import BaseModel

from accountsync.accounts.models import OAuthToken, Provider
from accountsync.config import get_settings
from accountsync.connectors.http import DEFAULT_TIMEOUT_SECONDS
from accountsync.kernel.errors import RefreshError, RefreshErrorKind
from accountsync.kernel.time import utc_now

logger = structlog.get_logger()


class OAuth2ProviderConfig(BaseModel):
    """Configuration for an OAuth2 provider."""

    provider: Provider
    client_id: str
    client_secret: str
    token_url: str
    default_expires_in: int = 3600


# Pre-configured provider settings
PROVIDER_TOKEN_URLS: dict[Provider, str] = {
    Provider.GOOGLE: "https://oauth2.googleapis.com/token",
    Provider.HUBSPOT: "https://api.hubapi.com/oauth/v1/token",
}

# Documented access-token lifetimes, used when a response omits expires_in
PROVIDER_DEFAULT_EXPIRES_IN: dict[Provider, int] = {
    Provider.GOOGLE: 3600,
    Provider.HUBSPOT: 1800,
}


class OAuth2Manager:
    """
    Exchanges refresh tokens for new access tokens.

    Usage:
        manager = OAuth2Manager()
        manager.configure_provider(Provider.GOOGLE, client_id="...", client_secret="...")
        new_token = await manager.refresh_tokens(token)
    """

    def __init__(
        self,
        provider_configs: dict[Provider, OAuth2ProviderConfig] | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._configs: dict[Provider, OAuth2ProviderConfig] = {
            provider: OAuth2ProviderConfig(
                provider=provider,
                client_id="",
                client_secret="",
                token_url=token_url,
                default_expires_in=PROVIDER_DEFAULT_EXPIRES_IN[provider],
            )
            for provider, token_url in PROVIDER_TOKEN_URLS.items()
        }
        self._configs.update(provider_configs or {})
        self._http_client = http_client
        self._timeout = timeout

    def configure_provider(
        self,
        provider: Provider,
        client_id: str,
        client_secret: str,
        token_url: str | None = None,
    ) -> None:
        if provider not in self._configs:
            raise ValueError(f"Unknown provider: {provider}")
        config = self._configs[provider]
        self._configs[provider] = config.model_copy(
            update={
                "client_id": client_id,
                "client_secret": client_secret,
                "token_url": token_url or config.token_url,
            }
        )
        logger.info("Configured OAuth provider", provider=provider.value)

    async def refresh_tokens(
        self,
        token: OAuthToken,
        *,
        now: datetime | None = None,
    ) -> OAuthToken:
        """
        Refresh an access token using its refresh token.

        Returns the new token. The stored refresh token is kept unless the
        provider rotates it.

        Raises:
            RefreshError: classified by `RefreshErrorKind`
        """
        provider = token.provider
        config = self._get_config(provider)

        if not token.refresh_token:
            raise RefreshError(RefreshErrorKind.NO_REFRESH_TOKEN)

        data = {
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        }

        try:
            if self._http_client is not None:
                response = await self._post(self._http_client, config.token_url, data)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, config.token_url, data)
        except httpx.TransportError as exc:
            raise RefreshError(
                RefreshErrorKind.REQUEST_FAILED,
                f"Token endpoint unreachable: {exc.__class__.__name__}",
            ) from exc

        _raise_for_refresh_status(response)

        try:
            token_data = response.json()
        except ValueError as exc:
            raise RefreshError(
                RefreshErrorKind.MALFORMED_RESPONSE,
                status_code=response.status_code,
            ) from exc

        new_token = self._parse_token_response(token, token_data, now=now or utc_now())

        logger.info(
            "Tokens refreshed",
            provider=provider.value,
            expires_at=new_token.expires_at,
            rotated_refresh_token=new_token.refresh_token != token.refresh_token,
        )
        return new_token

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        data: dict[str, str],
    ) -> httpx.Response:
        return await client.post(
            url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=self._timeout,
        )

    def _get_config(self, provider: Provider) -> OAuth2ProviderConfig:
        """Get provider configuration."""
        if provider not in self._configs:
            raise ValueError(f"Unknown provider: {provider}")
        return self._configs[provider]

    def _parse_token_response(
        self,
        previous: OAuthToken,
        data: Any,
        *,
        now: datetime,
    ) -> OAuthToken:
        """Parse token response from provider."""
        if not isinstance(data, dict) or not data.get("access_token"):
            raise RefreshError(
                RefreshErrorKind.MALFORMED_RESPONSE,
                "Token response is missing access_token",
            )

        expires_in = data.get("expires_in")
        if expires_in is None:
            expires_in = self._get_config(previous.provider).default_expires_in
            logger.warning(
                "Token response has no expires_in; assuming provider default",
                provider=previous.provider.value,
                expires_in=expires_in,
            )
        try:
            expires_at = now + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError) as exc:
            raise RefreshError(
                RefreshErrorKind.MALFORMED_RESPONSE,
                "Token response has a non-numeric expires_in",
            ) from exc

        return previous.model_copy(
            update={
                "access_token": data["access_token"],
                # Preserve refresh token if not returned
                "refresh_token": data.get("refresh_token") or previous.refresh_token,
                "token_type": data.get("token_type", previous.token_type),
                "expires_at": expires_at,
                "last_refreshed_at": now,
            }
        )


def _raise_for_refresh_status(response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    if status == 400:
        try:
            error_code = (response.json() or {}).get("error")
        except (ValueError, AttributeError):
            error_code = None
        if error_code == "invalid_grant":
            raise RefreshError(
                RefreshErrorKind.INVALID_GRANT,
                "Refresh token expired or revoked",
                status_code=status,
            )
        raise RefreshError(RefreshErrorKind.BAD_REQUEST, status_code=status)
    if status == 401:
        raise RefreshError(RefreshErrorKind.AUTH_FAILED, status_code=status)
    if status == 429:
        raise RefreshError(RefreshErrorKind.RATE_LIMITED, status_code=status)
    raise RefreshError(RefreshErrorKind.API_ERROR, status_code=status)


# Global OAuth2 manager instance
_oauth_manager: OAuth2Manager | None = None


def get_oauth_manager() -> OAuth2Manager:
    """Get the global OAuth2 manager, configured from settings."""
    global _oauth_manager
    if _oauth_manager is None:
        settings = get_settings()
        _oauth_manager = OAuth2Manager(timeout=settings.provider_timeout_seconds)
        if settings.google_client_id:
            _oauth_manager.configure_provider(
                Provider.GOOGLE,
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
            )
        if settings.hubspot_client_id:
            _oauth_manager.configure_provider(
                Provider.HUBSPOT,
                client_id=settings.hubspot_client_id,
                client_secret=settings.hubspot_client_secret,
            )
    return _oauth_manager
