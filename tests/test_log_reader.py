"""Tests for logbridge/log_reader.py"""

import json
import os

import pytest

from logbridge.enrichment import Enricher
from logbridge.errors import ParseError, RecordValidationError
from logbridge.log_reader import IncrementalLogReader, decode_record, match_object, parse_log_file
from logbridge.log_writer import StructuredLogWriter
from logbridge.models import entry_to_dict
from logbridge.validator import LogEntryValidator


def _record(i, level="info", **extra):
    record = {
        "timestamp": f"2024-01-15T10:30:{i:02d}.000Z",
        "type": "console",
        "level": level,
        "source": "browser_console",
        "data": {"message": f"message {i}", "nested": {"braces": "{not a record}"}},
    }
    record.update(extra)
    return record


def _pretty(record):
    return json.dumps(record, indent=2) + "\n"


@pytest.fixture
def written_log(tmp_path, metadata, make_entry):
    """A complete session written by the real writer: 3 entries plus footer."""
    path = tmp_path / "session.log"
    writer = StructuredLogWriter(str(path), metadata)
    writer.open()
    enricher = Enricher()
    for i in range(3):
        writer.append(enricher.enrich(make_entry(
            level="error" if i == 1 else "info",
            data={"message": f"message {i}"},
            timestamp=f"2024-01-15T10:30:0{i}.000Z",
        )))
    writer.close()
    return path


class TestMatchObject:
    def test_complete(self):
        buf = b'{"a": {"b": "}"}}\n'
        assert match_object(buf, 0) == ("complete", 17)

    def test_escaped_quote_in_string(self):
        buf = b'{"a": "say \\"}\\" now"}'
        status, end = match_object(buf, 0)
        assert status == "complete"
        assert end == len(buf)

    def test_incomplete(self):
        buf = b'{\n  "a": 1,\n'
        assert match_object(buf, 0) == ("incomplete", len(buf))

    def test_broken_by_new_record(self):
        buf = b'{\n  "a": 1,\n{\n  "b": 2\n}\n'
        status, index = match_object(buf, 0)
        assert status == "broken"
        assert buf[index:index + 1] == b"{"

    def test_array_element_at_column_zero(self):
        buf = json.dumps({"data": {"items": [{"a": 1}, {"b": [{"c": 2}]}]}}, indent=0).encode()
        assert b"\n{" in buf
        assert match_object(buf, 0) == ("complete", len(buf))

    def test_string_broken_by_new_record(self):
        buf = b'{\n"a": "unterminated\n{\n"b": 2\n}\n'
        status, index = match_object(buf, 0)
        assert status == "broken"
        assert buf[index:] == b'{\n"b": 2\n}\n'


class TestDecodeRecord:
    def test_valid_entry(self):
        record = decode_record(json.dumps(_record(1)).encode(), LogEntryValidator())
        assert record["level"] == "info"

    def test_metadata_skips_entry_validation(self):
        raw = json.dumps({"session_start": "2024-01-15T10:29:59.000Z", "log_level": "standard"}).encode()
        assert decode_record(raw, LogEntryValidator())["log_level"] == "standard"

    def test_malformed_json(self):
        with pytest.raises(ParseError):
            decode_record(b'{"timestamp": ', LogEntryValidator())

    def test_non_object(self):
        with pytest.raises(ParseError):
            decode_record(b"[1, 2]", LogEntryValidator())

    def test_missing_required_field(self):
        record = _record(1)
        del record["source"]
        with pytest.raises(RecordValidationError):
            decode_record(json.dumps(record).encode(), LogEntryValidator())


class TestRoundTrip:
    def test_writer_output_reads_back(self, written_log):
        parsed = parse_log_file(str(written_log))
        assert parsed.parse_errors == 0
        assert parsed.metadata is not None
        assert parsed.metadata.session_start == "2024-01-15T10:29:59.000Z"
        assert [e.data["message"] for e in parsed.entries] == ["message 0", "message 1", "message 2"]
        assert parsed.statistics.total == 3
        assert parsed.statistics.error_count == 1

    def test_reenrichment_matches_written_fields(self, written_log):
        parsed = parse_log_file(str(written_log))
        lines = written_log.read_text()
        for entry in parsed.entries:
            assert f'"id": "{entry.id}"' in lines
            assert entry.severity in (2, 4)

    def test_single_line_and_pretty_records_mix(self, tmp_path):
        path = tmp_path / "mixed.log"
        path.write_text(
            "# header\n"
            + json.dumps(_record(1)) + "\n"
            + _pretty(_record(2))
            + "---\n"
            + json.dumps(_record(3)) + "\n"
        )
        parsed = parse_log_file(str(path))
        assert parsed.parse_errors == 0
        assert parsed.metadata is None
        assert len(parsed.entries) == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            parse_log_file(str(tmp_path / "missing.log"))


class TestRecovery:
    def test_missing_required_fields_skipped(self, tmp_path):
        path = tmp_path / "session.log"
        bad = _record(2)
        del bad["source"]
        path.write_text(_pretty(_record(1)) + _pretty(bad) + _pretty(_record(3)))
        parsed = parse_log_file(str(path))
        assert len(parsed.entries) == 2
        assert parsed.parse_errors == 1
        assert parsed.validation_errors == 1

    def test_compact_multiline_record(self, tmp_path):
        path = tmp_path / "session.log"
        compact = json.dumps(_record(2, data={"message": "batch", "items": [{"a": 1}, {"a": 2}]}), indent=0)
        path.write_text(_pretty(_record(1)) + compact + "\n" + _pretty(_record(3)))
        parsed = parse_log_file(str(path))
        assert parsed.parse_errors == 0
        assert [e.timestamp[-6:] for e in parsed.entries] == ["01.000Z", "02.000Z", "03.000Z"]
        assert parsed.entries[1].data["items"] == [{"a": 1}, {"a": 2}]

    def test_invalid_json_skipped(self, tmp_path):
        path = tmp_path / "session.log"
        path.write_text(_pretty(_record(1)) + '{"timestamp": oops}\n' + _pretty(_record(3)))
        parsed = parse_log_file(str(path))
        assert len(parsed.entries) == 2
        assert parsed.parse_errors == 1

    def test_interrupted_record_recovers_at_next(self, tmp_path):
        path = tmp_path / "session.log"
        truncated = _pretty(_record(1)).rsplit("}", 2)[0]
        path.write_text(truncated + "\n" + _pretty(_record(2)) + _pretty(_record(3)))
        parsed = parse_log_file(str(path))
        assert [e.timestamp for e in parsed.entries] == ["2024-01-15T10:30:02.000Z", "2024-01-15T10:30:03.000Z"]
        assert parsed.parse_errors == 1

    def test_truncated_tail_counts_one_error(self, tmp_path):
        path = tmp_path / "session.log"
        tail = _pretty(_record(3))
        path.write_text(_pretty(_record(1)) + _pretty(_record(2)) + tail[: len(tail) // 2])
        parsed = parse_log_file(str(path))
        assert len(parsed.entries) == 2
        assert parsed.parse_errors == 1

    def test_junk_line_counted(self, tmp_path):
        path = tmp_path / "session.log"
        path.write_text("garbage\n" + _pretty(_record(1)))
        parsed = parse_log_file(str(path))
        assert len(parsed.entries) == 1
        assert parsed.parse_errors == 1


class TestIncrementalScan:
    def test_rescan_without_changes_is_idempotent(self, written_log):
        reader = IncrementalLogReader(str(written_log))
        first = reader.scan()
        assert len(first) == 3
        offset = reader.offset
        assert reader.scan() == []
        assert reader.offset == offset
        assert len(reader.entries) == 3

    def test_append_k_records(self, tmp_path):
        path = tmp_path / "session.log"
        path.write_text(_pretty(_record(1)))
        reader = IncrementalLogReader(str(path))
        assert len(reader.scan()) == 1

        with open(path, "a") as f:
            for i in range(2, 6):
                f.write(_pretty(_record(i)))
        new_entries = reader.scan()
        assert [e.timestamp for e in new_entries] == [f"2024-01-15T10:30:{i:02d}.000Z" for i in range(2, 6)]
        assert len(reader.entries) == 5
        assert reader.parse_errors == 0

    def test_partial_record_held_until_complete(self, tmp_path):
        path = tmp_path / "session.log"
        text = _pretty(_record(1))
        half = len(text) // 2
        path.write_text(text[:half])
        reader = IncrementalLogReader(str(path))
        assert reader.scan() == []
        assert reader.offset == 0
        assert reader.parse_errors == 0

        with open(path, "a") as f:
            f.write(text[half:])
        assert len(reader.scan()) == 1
        assert reader.offset == len(text.encode())

    def test_truncated_file_rescans_from_start(self, tmp_path):
        path = tmp_path / "session.log"
        path.write_text(_pretty(_record(1)) + _pretty(_record(2)))
        reader = IncrementalLogReader(str(path))
        assert len(reader.scan()) == 2

        with open(path, "w") as f:
            f.write(_pretty(_record(9)))
        entries = reader.scan()
        assert [e.timestamp for e in entries] == ["2024-01-15T10:30:09.000Z"]
        assert len(reader.entries) == 1
        assert reader.resets == 1

    def test_replaced_file_rescans_from_start(self, tmp_path):
        path = tmp_path / "session.log"
        path.write_text(_pretty(_record(1)))
        reader = IncrementalLogReader(str(path))
        reader.scan()

        replacement = tmp_path / "session.log.new"
        replacement.write_text(_pretty(_record(7)) + _pretty(_record(8)))
        os.replace(replacement, path)
        reader.scan()
        assert [e.timestamp for e in reader.entries] == ["2024-01-15T10:30:07.000Z", "2024-01-15T10:30:08.000Z"]
        assert reader.resets == 1

    def test_entries_are_enriched(self, tmp_path):
        path = tmp_path / "session.log"
        path.write_text(_pretty(_record(1, level="warn")))
        reader = IncrementalLogReader(str(path))
        entry = reader.scan()[0]
        assert entry.severity == 3
        assert entry.category == "console_warning"
        assert entry_to_dict(entry)["summary"] == "message 1"
