"""
HTTP helpers for provider connectors.

Maps transport failures and non-2xx responses onto the sync error taxonomy.
There is no retry here: the job runner owns retries across invocations.
"""

from __future__ import annotations

from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog

from accountsync.kernel.errors import (
    ApiError,
    AuthFailedError,
    FetchError,
    MalformedResponseError,
    RateLimitedError,
    RequestFailedError,
)
from accountsync.kernel.time import utc_now
from accountsync.monitoring.metrics import get_metrics

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 30.0


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (retry_at - utc_now()).total_seconds())


def raise_for_provider_status(response: httpx.Response) -> None:
    """Raise the typed error matching a non-2xx provider response."""
    status = response.status_code
    if status < 400:
        return
    if status == 401:
        raise AuthFailedError()
    if status == 429:
        raise RateLimitedError(retry_after=parse_retry_after(response.headers.get("Retry-After")))
    raise ApiError(status, meta={"body": response.text[:500]})


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    access_token: str,
    connector_type: str,
    operation: str,
    **kwargs: Any,
) -> httpx.Response:
    """
    Make one bearer-authenticated provider request.

    Raises AuthFailedError, RateLimitedError, ApiError or RequestFailedError.
    """
    headers = dict(kwargs.pop("headers", None) or {})
    headers["Authorization"] = f"Bearer {access_token}"

    try:
        response = await client.request(method, url, headers=headers, **kwargs)
        raise_for_provider_status(response)
        return response
    except httpx.TransportError as exc:
        error: FetchError = RequestFailedError(f"{operation} failed: {exc.__class__.__name__}")
        _record_failure(connector_type, operation, error, url)
        raise error from exc
    except FetchError as exc:
        _record_failure(connector_type, operation, exc, url)
        raise


def decode_json(response: httpx.Response, *, operation: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise MalformedResponseError(f"{operation} returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedResponseError(f"{operation} returned a non-object JSON body")
    return data


def _record_failure(connector_type: str, operation: str, error: FetchError, url: str) -> None:
    get_metrics().track_provider_error(connector_type, operation, error.code)
    logger.warning(
        "Provider request failed",
        connector_type=connector_type,
        operation=operation,
        code=error.code,
        status_code=getattr(error, "status_code", None),
        url=url,
    )
