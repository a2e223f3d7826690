"""Derived statistics and filter predicates over enriched log entries."""

import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable

from logbridge.enrichment import status_code
from logbridge.models import LogEntry, entry_to_dict, parse_timestamp


@dataclass
class LogStatistics:
    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_level: dict[str, int] = field(default_factory=dict)
    start: str | None = None
    end: str | None = None
    duration_ms: int | None = None
    error_count: int = 0
    warning_count: int = 0
    performance_issues: int = 0
    network_failures: int = 0

    def to_dict(self) -> dict:
        time_range = {"start": self.start, "end": self.end}
        if self.duration_ms is not None:
            time_range["duration"] = self.duration_ms
        return {
            "total": self.total,
            "byType": dict(self.by_type),
            "byLevel": dict(self.by_level),
            "timeRange": time_range,
            "errorCount": self.error_count,
            "warningCount": self.warning_count,
            "performanceIssues": self.performance_issues,
            "networkFailures": self.network_failures,
        }


def compute_statistics(entries: Iterable[LogEntry]) -> LogStatistics:
    """Fold the entry set into statistics. Safe to recompute on every reload."""
    type_counter = Counter()
    level_counter = Counter()
    stats = LogStatistics()

    for entry in entries:
        stats.total += 1
        type_counter[entry.type] += 1
        level_counter[entry.level] += 1

        if entry.level == "error":
            stats.error_count += 1
        elif entry.level == "warn":
            stats.warning_count += 1

        if entry.type == "performance" and (entry.severity or 0) >= 3:
            stats.performance_issues += 1
        if entry.type == "network" and (status_code(entry) or 0) >= 400:
            stats.network_failures += 1

        if stats.start is None or entry.timestamp < stats.start:
            stats.start = entry.timestamp
        if stats.end is None or entry.timestamp > stats.end:
            stats.end = entry.timestamp

    stats.by_type = dict(type_counter)
    stats.by_level = dict(level_counter)

    start_dt, end_dt = parse_timestamp(stats.start), parse_timestamp(stats.end)
    if start_dt is not None and end_dt is not None:
        stats.duration_ms = int((end_dt - start_dt).total_seconds() * 1000)
    return stats


def format_statistics_text(stats: LogStatistics, parse_errors: int = 0) -> str:
    """Human-readable statistics summary."""
    lines = [f"Total entries: {stats.total}"]
    if stats.start:
        lines.append(f"Time range:    {stats.start} .. {stats.end} ({stats.duration_ms or 0} ms)")
    lines.append(f"Errors:        {stats.error_count}")
    lines.append(f"Warnings:      {stats.warning_count}")
    lines.append(f"Network fails: {stats.network_failures}")
    lines.append(f"Perf issues:   {stats.performance_issues}")
    lines.append(f"Parse errors:  {parse_errors}")
    lines.append("")

    lines.append("By type:")
    for name, count in sorted(stats.by_type.items(), key=lambda kv: -kv[1]):
        lines.append(f"  {name:12s} {count}")
    lines.append("")

    lines.append("By level:")
    for name, count in sorted(stats.by_level.items(), key=lambda kv: -kv[1]):
        lines.append(f"  {name:12s} {count}")
    return "\n".join(lines)


# -- filters --------------------------------------------------------------

def filter_by_type(entry: LogEntry, types: Iterable[str]) -> bool:
    return entry.type in types


def filter_by_level(entry: LogEntry, levels: Iterable[str]) -> bool:
    return entry.level in levels


def filter_by_severity(entry: LogEntry, min_severity: int) -> bool:
    return (entry.severity or 1) >= min_severity


def filter_by_time_range(entry: LogEntry, start: str | None, end: str | None) -> bool:
    """True if the entry falls within [start, end] (either bound may be open)."""
    ts = parse_timestamp(entry.timestamp)
    if ts is None:
        return False
    start_dt = parse_timestamp(start) if start else None
    end_dt = parse_timestamp(end) if end else None
    if start_dt is not None and ts < start_dt:
        return False
    if end_dt is not None and ts > end_dt:
        return False
    return True


def filter_by_search(entry: LogEntry, term: str) -> bool:
    """Case-insensitive match over summary, data, source and context."""
    searchable = json.dumps(
        {
            "summary": entry.summary,
            "data": entry.data,
            "source": entry.source,
            "context": entry.context,
        },
        default=str,
    ).lower()
    return term.lower() in searchable


def _as_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return list(value)


def build_filter_chain(types=None, levels=None, min_severity=None, start=None,
                       end=None, search=None) -> Callable[[LogEntry], bool]:
    """Combine the active filters into a single predicate that ANDs them."""
    predicates = []

    type_list = _as_list(types)
    if type_list:
        predicates.append(lambda e, t=type_list: filter_by_type(e, t))

    level_list = _as_list(levels)
    if level_list:
        predicates.append(lambda e, l=level_list: filter_by_level(e, l))

    if min_severity:
        predicates.append(lambda e, s=int(min_severity): filter_by_severity(e, s))

    if start or end:
        predicates.append(lambda e: filter_by_time_range(e, start, end))

    if search:
        predicates.append(lambda e, k=search: filter_by_search(e, k))

    if not predicates:
        return lambda entry: True

    def combined(entry: LogEntry) -> bool:
        return all(p(entry) for p in predicates)

    return combined


def query_entries(entries: list[LogEntry], limit: int | None = None, offset: int = 0,
                  **filters) -> dict:
    """Filter then paginate. Returns the page plus the total match count."""
    predicate = build_filter_chain(**filters)
    matched = [e for e in entries if predicate(e)]
    offset = max(0, int(offset or 0))
    page = matched[offset:] if limit is None else matched[offset:offset + max(0, int(limit))]
    return {
        "total": len(matched),
        "offset": offset,
        "limit": limit,
        "entries": [entry_to_dict(e) for e in page],
    }
