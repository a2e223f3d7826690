"""Incremental reader for structured session logs.

The reader scans raw bytes with a small bracket-matching state machine so that
it can pick up where it left off as the file grows. Only completed records
move the committed offset forward; a record still being written is left
for the next scan.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field

from logbridge.enrichment import Enricher
from logbridge.errors import ParseError, RecordValidationError
from logbridge.models import LogEntry, SessionMetadata, entry_from_dict, is_metadata_record
from logbridge.stats import LogStatistics, compute_statistics
from logbridge.validator import LogEntryValidator

logger = logging.getLogger(__name__)

_LBRACE = ord("{")
_RBRACE = ord("}")
_LBRACKET = ord("[")
_RBRACKET = ord("]")
_COMMA = ord(",")
_COLON = ord(":")
_QUOTE = ord('"')
_BACKSLASH = ord("\\")
_NEWLINE = ord("\n")
_WHITESPACE = b" \t\r\n"

_SEPARATOR = b"---"
_COMMENT = b"#"

_COMPLETE = "complete"
_BROKEN = "broken"
_INCOMPLETE = "incomplete"


def _nests_here(container: int, last: int | None) -> bool:
    if container == _LBRACKET:
        return last in (_LBRACKET, _COMMA)
    return last == _COLON


def match_object(buf: bytes, start: int) -> tuple[str, int]:
    """Scan a JSON object beginning at ``buf[start] == '{'``.

    Returns ``(status, index)``:
      complete   -> index just past the closing brace
      broken     -> index of a ``{`` at column 0 that cannot be a nested
                    value (not an array element, not after a key), taken
                    as the start of the next record
      incomplete -> len(buf), the object runs past the end of the buffer
    """
    stack = []
    in_string = False
    escape = False
    last = None
    n = len(buf)
    i = start
    while i < n:
        c = buf[i]
        if (c == _LBRACE and stack and buf[i - 1] == _NEWLINE
                and (in_string or not _nests_here(stack[-1], last))):
            return _BROKEN, i
        if in_string:
            if escape:
                escape = False
            elif c == _BACKSLASH:
                escape = True
            elif c == _QUOTE:
                in_string = False
        elif c == _QUOTE:
            in_string = True
        elif c == _LBRACE or c == _LBRACKET:
            stack.append(c)
        elif c == _RBRACE or c == _RBRACKET:
            if stack:
                stack.pop()
            if not stack:
                return _COMPLETE, i + 1
        if not in_string and c not in _WHITESPACE:
            last = c
        i += 1
    return _INCOMPLETE, n


def decode_record(raw: bytes, validator: LogEntryValidator) -> dict:
    """Decode one complete record. Metadata records skip entry validation."""
    try:
        record = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ParseError(str(e)) from e
    if not isinstance(record, dict):
        raise ParseError("record is not an object")
    if not is_metadata_record(record):
        validator.check(record)
    return record


class IncrementalLogReader:
    """Tails one session log file, exposing metadata, entries and counters.

    ``scan()`` returns only the entries completed since the previous scan.
    Scans are serialized. If the file shrinks or is replaced the reader
    starts over from offset 0.
    """

    def __init__(self, path: str, enricher: Enricher | None = None,
                 validator: LogEntryValidator | None = None):
        self.path = path
        self.enricher = enricher or Enricher()
        self.validator = validator or LogEntryValidator()
        self._lock = threading.Lock()
        self._reset_state()
        self._inode: int | None = None
        self.resets = 0

    def _reset_state(self):
        self._offset = 0
        self._entries: list[LogEntry] = []
        self._metadata: SessionMetadata | None = None
        self.parse_errors = 0
        self.validation_errors = 0

    # -- snapshot accessors ----------------------------------------------

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    @property
    def metadata(self) -> SessionMetadata | None:
        return self._metadata

    def statistics(self) -> LogStatistics:
        return compute_statistics(self.entries)

    # -- scanning -----------------------------------------------------------

    def scan(self, final: bool = False) -> list[LogEntry]:
        """Read newly appended bytes and return the entries they completed.

        With ``final=True`` a trailing partial record is counted as one parse
        error instead of being held back for the next scan.
        """
        with self._lock:
            try:
                st = os.stat(self.path)
            except FileNotFoundError:
                logger.debug("Log file not found: %s", self.path)
                return []

            if self._inode is not None and st.st_ino != self._inode:
                logger.info("Log file replaced, rescanning from start: %s", self.path)
                self._reset_state()
                self.resets += 1
            elif st.st_size < self._offset:
                logger.info("Log file truncated, rescanning from start: %s", self.path)
                self._reset_state()
                self.resets += 1
            self._inode = st.st_ino

            if st.st_size == self._offset and not final:
                return []

            with open(self.path, "rb") as f:
                f.seek(self._offset)
                buf = f.read()

            new_entries: list[LogEntry] = []
            consumed = self._scan_buffer(buf, final, new_entries)
            self._offset += consumed
            self._entries.extend(new_entries)

        if new_entries:
            logger.debug("Scanned %d new entries from %s", len(new_entries), self.path)
        return new_entries

    def _scan_buffer(self, buf: bytes, final: bool, out: list[LogEntry]) -> int:
        """Consume complete records from ``buf``. Returns the committed byte count."""
        n = len(buf)
        pos = committed = 0
        while pos < n:
            nl = buf.find(b"\n", pos)
            line_end = n if nl == -1 else nl
            stripped = buf[pos:line_end].strip()

            if not stripped.startswith(b"{"):
                if nl == -1 and not final:
                    break
                if stripped and stripped != _SEPARATOR and not stripped.startswith(_COMMENT):
                    self._parse_error("unrecognized line %r" % stripped[:40])
                pos = committed = min(line_end + 1, n)
                continue

            start = buf.index(b"{", pos)
            status, end = match_object(buf, start)
            if status == _COMPLETE:
                self._handle_record(buf[start:end], out)
                pos = committed = end
            elif status == _BROKEN:
                self._parse_error("record interrupted at byte %d" % (self._offset + end))
                pos = committed = end
            else:
                if final:
                    self._parse_error("truncated trailing record")
                    committed = n
                break
        return committed

    def _parse_error(self, reason: str) -> None:
        self.parse_errors += 1
        logger.debug("Parse error in %s: %s", self.path, reason)

    def _handle_record(self, raw: bytes, out: list[LogEntry]) -> None:
        try:
            record = decode_record(raw, self.validator)
        except RecordValidationError as e:
            self.validation_errors += 1
            self._parse_error("invalid record: %s" % e)
            return
        except ParseError as e:
            self._parse_error(str(e))
            return

        if is_metadata_record(record):
            if self._metadata is None and not self._entries and not out:
                try:
                    self._metadata = SessionMetadata.from_dict(record)
                except (KeyError, TypeError) as e:
                    self._parse_error("bad session metadata: %s" % e)
            return

        out.append(self.enricher.enrich(entry_from_dict(record)))


@dataclass
class ParsedLog:
    metadata: SessionMetadata | None
    entries: list[LogEntry] = field(default_factory=list)
    statistics: LogStatistics = field(default_factory=LogStatistics)
    parse_errors: int = 0
    validation_errors: int = 0


def parse_log_file(path: str, enricher: Enricher | None = None) -> ParsedLog:
    """One-shot load of a whole log file. Raises FileNotFoundError if missing."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Log file not found: {path}")
    reader = IncrementalLogReader(path, enricher=enricher)
    reader.scan(final=True)
    entries = reader.entries
    return ParsedLog(
        metadata=reader.metadata,
        entries=entries,
        statistics=compute_statistics(entries),
        parse_errors=reader.parse_errors,
        validation_errors=reader.validation_errors,
    )
