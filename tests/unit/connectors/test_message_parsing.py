"""Unit tests for the pure parsing helpers."""

import base64
from datetime import datetime, timezone

import pytest

from accountsync.connectors.parsing import (
    decode_base64url,
    extract_body,
    header_map,
    parse_address_list,
    parse_email_address,
    parse_message_date,
)

pytestmark = pytest.mark.unit

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


# =============================================================================
# Addresses
# =============================================================================


class TestAddresses:
    def test_name_and_angle_address(self):
        assert parse_email_address('"Alice Smith" <alice@example.com>') == (
            "Alice Smith",
            "alice@example.com",
        )

    def test_bare_address_is_used_for_both(self):
        assert parse_email_address("bob@example.com") == ("bob@example.com", "bob@example.com")

    def test_empty_angle_name_falls_back_to_email(self):
        assert parse_email_address('"" <carol@example.com>') == (
            "carol@example.com",
            "carol@example.com",
        )

    def test_missing(self):
        assert parse_email_address(None) == (None, None)
        assert parse_email_address("   ") == (None, None)

    def test_address_list_respects_quoted_commas(self):
        raw = '"Smith, Alice" <alice@example.com>, bob@example.com'
        assert parse_address_list(raw) == ["alice@example.com", "bob@example.com"]

    def test_empty_address_list(self):
        assert parse_address_list("") == []

    def test_header_map_lowercases_names(self):
        payload = {"headers": [{"name": "Subject", "value": "Hi"}, {"name": "FROM", "value": "a@b.c"}]}
        assert header_map(payload) == {"subject": "Hi", "from": "a@b.c"}


# =============================================================================
# Bodies
# =============================================================================


class TestBodies:
    def test_direct_body(self):
        assert extract_body({"mimeType": "text/plain", "body": {"data": b64("hello there")}}) == "hello there"

    def test_direct_html_body_is_stripped(self):
        payload = {"mimeType": "text/html", "body": {"data": b64("<p>Hi <b>you</b></p>")}}
        assert extract_body(payload) == "Hi you"

    def test_plain_part_preferred_over_html(self):
        payload = {
            "mimeType": "multipart/alternative",
            "body": {},
            "parts": [
                {"mimeType": "text/html", "body": {"data": b64("<p>html</p>")}},
                {"mimeType": "text/plain", "body": {"data": b64("plain")}},
            ],
        }
        assert extract_body(payload) == "plain"

    def test_nested_plain_part(self):
        payload = {
            "mimeType": "multipart/mixed",
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [{"mimeType": "text/plain", "body": {"data": b64("nested")}}],
                },
            ],
        }
        assert extract_body(payload) == "nested"

    def test_html_only_multipart(self):
        payload = {"parts": [{"mimeType": "text/html", "body": {"data": b64("<div>only html</div>")}}]}
        assert extract_body(payload) == "only html"

    def test_no_body(self):
        assert extract_body({"mimeType": "multipart/mixed", "parts": []}) == ""

    def test_body_that_is_not_utf8(self):
        data = base64.urlsafe_b64encode(b"\xff\xfe").decode().rstrip("=")
        assert decode_base64url(data) == ""


# =============================================================================
# Dates
# =============================================================================


class TestDates:
    def test_rfc2822_header(self):
        date, fallback = parse_message_date("Mon, 2 Jun 2025 10:00:00 +0200", now=NOW)
        assert date == datetime(2025, 6, 2, 8, 0, tzinfo=timezone.utc)
        assert fallback is False

    def test_iso_header(self):
        date, fallback = parse_message_date("2025-06-02T08:00:00Z", now=NOW)
        assert date == datetime(2025, 6, 2, 8, 0, tzinfo=timezone.utc)
        assert fallback is False

    def test_internal_date_when_header_unparsable(self):
        date, fallback = parse_message_date("not a date", internal_date="1700000000000", now=NOW)
        assert date == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        assert fallback is False

    def test_bare_year_is_lossy(self):
        date, fallback = parse_message_date("sometime in 2019", now=NOW)
        assert date == datetime(2019, 1, 1, tzinfo=timezone.utc)
        assert fallback is True

    def test_nothing_usable_falls_back_to_now(self):
        date, fallback = parse_message_date(None, now=NOW)
        assert date == NOW
        assert fallback is True
