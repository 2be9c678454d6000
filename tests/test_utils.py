"""
Tests for hashing and time helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from retain.utils.hashing import calculate_content_hash, rule_hash
from retain.utils.time import ensure_utc, parse_timestamp


class TestContentHash:
    """Tests for calculate_content_hash."""

    def test_hash_is_sha256_hex(self):
        digest = calculate_content_hash("hello")

        assert len(digest) == 64
        assert digest == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"

    def test_str_and_bytes_hash_the_same(self):
        assert calculate_content_hash("héllo") == calculate_content_hash("héllo".encode("utf-8"))

    def test_rule_hash_ignores_surrounding_whitespace(self):
        assert rule_hash("  Always run the tests  ") == rule_hash("Always run the tests")

    def test_rule_hash_is_case_sensitive(self):
        assert rule_hash("Always run the tests") != rule_hash("always run the tests")


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_iso_with_z_suffix(self):
        parsed = parse_timestamp("2025-10-16T19:12:28.024Z")

        assert parsed == datetime(2025, 10, 16, 19, 12, 28, 24000, tzinfo=timezone.utc)

    def test_naive_iso_is_utc(self):
        parsed = parse_timestamp("2025-01-01T00:00:00")

        assert parsed.tzinfo is not None
        assert parsed.utcoffset() == timedelta(0)

    def test_offset_is_converted_to_utc(self):
        parsed = parse_timestamp("2025-01-01T02:00:00+02:00")

        assert parsed == datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
        assert parsed.utcoffset() == timedelta(0)

    def test_epoch_seconds_and_milliseconds(self):
        expected = datetime(2025, 1, 1, tzinfo=timezone.utc)

        assert parse_timestamp(1735689600) == expected
        assert parse_timestamp(1735689600000) == expected

    def test_empty_values(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_invalid_string_raises(self):
        with pytest.raises(ValueError, match="Invalid timestamp format"):
            parse_timestamp("yesterday-ish")


class TestEnsureUtc:
    """Tests for ensure_utc."""

    def test_naive_gets_utc(self):
        value = ensure_utc(datetime(2025, 1, 1, 12, 0))

        assert value.tzinfo == timezone.utc
        assert value.hour == 12

    def test_aware_is_converted(self):
        tz = timezone(timedelta(hours=-5))
        value = ensure_utc(datetime(2025, 1, 1, 7, 0, tzinfo=tz))

        assert value == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert value.tzinfo == timezone.utc
