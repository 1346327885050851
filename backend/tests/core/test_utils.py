"""
Tests for core utilities.
"""

from datetime import UTC, datetime

import pytest
from django.test import RequestFactory

from apps.core.utils import get_client_ip, parse_version_header, resolve_now


class TestParseVersionHeader:
    @pytest.mark.parametrize("raw,expected", [("3", 3), ('"3"', 3), ('W/"12"', 12), (" 4 ", 4)])
    def test_accepted_forms(self, raw, expected):
        assert parse_version_header(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", '"v3"', "*"])
    def test_rejected_forms(self, raw):
        assert parse_version_header(raw) is None


class TestGetClientIp:
    def test_first_forwarded_address(self):
        request = RequestFactory().get("/", HTTP_X_FORWARDED_FOR="203.0.113.5, 10.0.0.1")

        assert get_client_ip(request) == "203.0.113.5"

    def test_falls_back_to_remote_addr(self):
        request = RequestFactory().get("/", REMOTE_ADDR="192.0.2.1")

        assert get_client_ip(request) == "192.0.2.1"


class TestResolveNow:
    def test_pinned_clock(self):
        pinned = datetime(2024, 1, 1, tzinfo=UTC)

        assert resolve_now(pinned) is pinned

    def test_defaults_to_aware_now(self):
        assert resolve_now().tzinfo is not None
