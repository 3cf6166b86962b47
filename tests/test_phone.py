"""Tests for phone number helpers."""

from __future__ import annotations

import pytest

from campaign_bridge.core.phone import format_e164, normalize_for_match


class TestPhoneHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("5551234567", "+15551234567"),
            ("(555) 123-4567", "+15551234567"),
            ("15551234567", "+15551234567"),
            ("+1 555 123 4567", "+15551234567"),
            ("+4915112345678", "+4915112345678"),
            ("+0123456789", None),
            ("12345", None),
            ("", None),
            (None, None),
        ],
    )
    def test_format_e164(self, raw, expected):
        assert format_e164(raw) == expected

    def test_normalize_for_match(self):
        assert normalize_for_match("+15551234567") == normalize_for_match("5551234567")
        assert normalize_for_match(None) == ""
