from __future__ import annotations

import re
from enum import Enum
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class SyncError(Exception):
    """Base typed error for the sync engine.

    - Stable `code` for programmatic handling (job results, metrics labels).
    - `retryable` tells the job runner whether another attempt can help.
    - Optional `meta` payload for debugging.
    """

    retryable: bool = False

    def __init__(
        self,
        *,
        code: str,
        message: str,
        retryable: bool | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        self.meta = dict(meta or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.meta:
            payload["meta"] = self.meta
        return payload


class FetchError(SyncError):
    """A provider call failed (page listing or record detail)."""


class AuthFailedError(FetchError):
    """The provider rejected the access token (HTTP 401).

    Not retried as-is: the job runner schedules a token refresh first.
    """

    retryable = True

    def __init__(self, message: str = "Provider rejected access token", **kwargs: Any) -> None:
        super().__init__(code="provider.auth_failed", message=message, **kwargs)


class ApiError(FetchError):
    """Non-2xx provider response other than 401."""

    def __init__(self, status_code: int, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", status_code == 408 or status_code >= 500)
        super().__init__(
            code="provider.api_error",
            message=message or f"Provider returned HTTP {status_code}",
            **kwargs,
        )
        self.status_code = int(status_code)


class RateLimitedError(ApiError):
    """HTTP 429. `retry_after` is the provider hint in seconds, when given."""

    def __init__(self, retry_after: float | None = None, **kwargs: Any) -> None:
        super().__init__(429, "Provider rate limit exceeded", retryable=True, **kwargs)
        self.code = "provider.rate_limited"
        self.retry_after = retry_after


class RequestFailedError(FetchError):
    """Network failure or timeout talking to the provider."""

    retryable = True

    def __init__(self, message: str = "Provider request failed", **kwargs: Any) -> None:
        super().__init__(code="provider.request_failed", message=message, **kwargs)


class MalformedResponseError(SyncError):
    """A provider payload could not be decoded or lacks required fields."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(code="provider.malformed_response", message=message, **kwargs)


class StoreError(SyncError):
    """Local persistence failed."""

    retryable = True

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(code="store.write_failed", message=message, **kwargs)


class NotConnectedError(SyncError):
    """The principal has no usable connection for the provider."""

    def __init__(self, principal_id: str, provider: str) -> None:
        super().__init__(
            code="account.not_connected",
            message=f"Principal {principal_id} is not connected to {provider}",
            meta={"principal_id": principal_id, "provider": provider},
        )


class RefreshErrorKind(str, Enum):
    INVALID_GRANT = "invalid_grant"
    NO_REFRESH_TOKEN = "no_refresh_token"
    BAD_REQUEST = "bad_request"
    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"
    REQUEST_FAILED = "request_failed"
    MALFORMED_RESPONSE = "malformed_response"


TERMINAL_REFRESH_ERRORS = frozenset(
    {RefreshErrorKind.INVALID_GRANT, RefreshErrorKind.NO_REFRESH_TOKEN}
)


class RefreshError(SyncError):
    """Exchanging a refresh token failed.

    Terminal kinds mean the user has to reconnect the account.
    """

    def __init__(
        self,
        kind: RefreshErrorKind,
        message: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            code=f"token.{kind.value}",
            message=message or f"Token refresh failed: {kind.value}",
            retryable=kind not in TERMINAL_REFRESH_ERRORS,
            meta={"status_code": status_code} if status_code is not None else None,
        )
        self.kind = kind
        self.status_code = status_code

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_REFRESH_ERRORS
