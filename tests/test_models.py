"""Tests for logbridge/models.py"""

from datetime import datetime, timezone

from logbridge.models import (
    SessionMetadata,
    entry_from_dict,
    entry_to_dict,
    is_metadata_record,
    iso_now,
    parse_timestamp,
)


class TestTimestamps:
    def test_iso_now_format(self):
        ts = iso_now(datetime(2024, 1, 15, 10, 30, 0, 123456, tzinfo=timezone.utc))
        assert ts == "2024-01-15T10:30:00.123Z"

    def test_parse_roundtrip(self):
        parsed = parse_timestamp("2024-01-15T10:30:00.123Z")
        assert parsed == datetime(2024, 1, 15, 10, 30, 0, 123000, tzinfo=timezone.utc)

    def test_parse_malformed(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None


class TestEntryDicts:
    def test_unenriched_entry_has_no_derived_keys(self, make_entry):
        out = entry_to_dict(make_entry())
        assert set(out) == {"timestamp", "type", "level", "source", "data"}

    def test_empty_context_values_dropped(self, make_entry):
        out = entry_to_dict(make_entry(context={"url": None, "method": "GET"}))
        assert out["context"] == {"method": "GET"}

    def test_from_dict_ignores_derived_fields_except_screenshot(self):
        entry = entry_from_dict({
            "timestamp": "2024-01-15T10:30:00.000Z",
            "type": "console",
            "level": "error",
            "source": "app.js:3",
            "data": {"message": "boom"},
            "id": "stale",
            "severity": 1,
            "hasScreenshot": True,
        })
        assert entry.id is None
        assert entry.severity is None
        assert entry.has_screenshot is True
        assert entry.enriched is False


class TestSessionMetadata:
    def test_to_from_dict(self, metadata):
        record = metadata.to_dict()
        assert record["session_start"] == "2024-01-15T10:29:59.000Z"
        assert record["schema_version"] == "1.0"
        assert is_metadata_record(record)
        assert SessionMetadata.from_dict(record) == metadata

    def test_entry_is_not_metadata(self):
        assert not is_metadata_record({"session_start": "x", "type": "console"})
        assert not is_metadata_record([1, 2])
