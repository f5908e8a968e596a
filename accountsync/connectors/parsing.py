"""
Pure parsing helpers shared by provider connectors.

Header maps, "Name <email>" addresses, MIME body extraction and
best-effort dates. Nothing here does I/O.
"""

from __future__ import annotations

import base64
import binascii
import re
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

from accountsync.kernel.time import UTC, coerce_utc, from_epoch_millis, parse_iso8601

_ANGLE_ADDRESS_RE = re.compile(r"^(.+?)\s*<(.+)>$")
_YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def header_map(payload: dict[str, Any]) -> dict[str, str]:
    """Lowercased header name -> value (last one wins)."""
    headers: dict[str, str] = {}
    for header in payload.get("headers") or []:
        name = header.get("name")
        if name:
            headers[name.lower()] = header.get("value") or ""
    return headers


def parse_email_address(raw: str | None) -> tuple[str | None, str | None]:
    """
    Split `"Name" <email>` into (name, email).

    Without the angle-bracket form the raw string is used as both.
    """
    if raw is None:
        return None, None
    value = raw.strip()
    if not value:
        return None, None
    match = _ANGLE_ADDRESS_RE.match(value)
    if not match:
        return value, value
    name = match.group(1).strip().strip('"').strip("'").strip()
    email = match.group(2).strip()
    return name or email, email


def parse_address_list(raw: str | None) -> list[str]:
    """Emails from a comma-separated header value."""
    if not raw:
        return []
    emails = []
    for part in _split_addresses(raw):
        _, email = parse_email_address(part)
        if email:
            emails.append(email)
    return emails


def _split_addresses(raw: str) -> list[str]:
    # Commas inside quoted display names do not separate addresses.
    parts, current, quoted = [], [], False
    for char in raw:
        if char == '"':
            quoted = not quoted
        if char == "," and not quoted:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


def decode_base64url(data: str | None) -> str:
    """Decode a base64url body; "" when it cannot be decoded."""
    if not data:
        return ""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, ValueError, UnicodeError):
        return ""


def _find_part_body(payload: dict[str, Any], mime_type: str) -> str:
    for part in payload.get("parts") or []:
        if part.get("mimeType") == mime_type:
            text = decode_base64url((part.get("body") or {}).get("data"))
            if text:
                return text
        if part.get("parts"):
            nested = _find_part_body(part, mime_type)
            if nested:
                return nested
    return ""


def html_to_text(html: str) -> str:
    return _WHITESPACE_RE.sub(" ", _TAG_RE.sub(" ", html)).strip()


def extract_body(payload: dict[str, Any]) -> str:
    """
    Extract the message body.

    Direct body data first, then multipart: text/plain anywhere in the tree,
    else text/html (tags stripped).
    """
    direct = decode_base64url((payload.get("body") or {}).get("data"))
    if direct:
        if payload.get("mimeType") == "text/html":
            return html_to_text(direct)
        return direct

    plain = _find_part_body(payload, "text/plain")
    if plain:
        return plain

    html = _find_part_body(payload, "text/html")
    return html_to_text(html) if html else ""


def parse_message_date(
    date_header: str | None,
    *,
    internal_date: str | int | None = None,
    now: datetime,
) -> tuple[datetime, bool]:
    """
    Best-effort message date.

    Returns (date, is_fallback). Order: RFC 2822 header, ISO 8601 header,
    provider internal date, Jan 1 of a bare year in the header, now. The last
    two are lossy and flagged.
    """
    value = (date_header or "").strip()
    if value:
        try:
            return coerce_utc(parsedate_to_datetime(value)), False
        except (TypeError, ValueError, IndexError):
            pass
        try:
            return parse_iso8601(value), False
        except ValueError:
            pass

    if internal_date not in (None, ""):
        try:
            return from_epoch_millis(internal_date), False
        except (TypeError, ValueError, OverflowError):
            pass

    year_match = _YEAR_RE.search(value)
    if year_match:
        return datetime(int(year_match.group(1)), 1, 1, tzinfo=UTC), True

    return coerce_utc(now), True
