"""Tests for the phone and email normalizers."""
from __future__ import annotations

import logging

import pytest

from commaudit.normalization.email_normalizer import normalize_email
from commaudit.normalization.phone_normalizer import normalize_phone


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw",
        ["(212) 555-1234", "212-555-1234", "212.555.1234", "+1 212 555 1234", "+12125551234"],
    )
    def test_us_formats_normalize_to_e164(self, raw):
        assert normalize_phone(raw) == "+12125551234"

    def test_default_region_applies_without_prefix(self):
        assert normalize_phone("07400 123456", default_region="GB") == "+447400123456"

    @pytest.mark.parametrize("raw", [None, "", "   ", "not a phone", "123"])
    def test_unparseable_returns_none(self, raw):
        assert normalize_phone(raw) is None

    def test_raw_value_never_logged(self, caplog):
        with caplog.at_level(logging.DEBUG):
            normalize_phone("call me maybe 555")
        assert "call me maybe" not in caplog.text


class TestNormalizeEmail:
    def test_lowercases_and_strips(self):
        assert normalize_email("  Director@Example.ORG ") == "director@example.org"

    def test_display_name_form(self):
        assert normalize_email("Jane Doe <Jane@Example.org>") == "jane@example.org"

    @pytest.mark.parametrize(
        "raw", [None, "", "plainaddress", "a@b", "two@@example.org", "sp ace@example.org"]
    )
    def test_invalid_returns_none(self, raw):
        assert normalize_email(raw) is None

    def test_overlong_address_rejected(self):
        assert normalize_email("a" * 320 + "@example.org") is None
