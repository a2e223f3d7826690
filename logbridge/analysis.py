"""Read-only analyses over a session log for the assistant-facing tools.

Errors are grouped by category plus a normalized message pattern, so that
repeats of one failure with different ids, line numbers or URLs count as one
group.
"""

import re
from collections import Counter

from logbridge.enrichment import status_code
from logbridge.errors import InvalidRequestError
from logbridge.models import LogEntry, entry_to_dict
from logbridge.stats import build_filter_chain, compute_statistics

CONTEXT_WINDOW = 3
PATTERN_LIMIT = 100
MATCH_MARGIN = 30
DEFAULT_FAILURE_STATUSES = (400, 401, 403, 404, 500, 502, 503, 504)

_PATTERN_RULES = (
    (re.compile(r":\d+:\d+"), ":N:N"),
    (re.compile(r"https?://\S+"), "URL"),
    (re.compile(r"(['\"`])[^'\"`]+\1"), '"VALUE"'),
    (re.compile(r"\d+"), "N"),
)


def error_pattern(message: str) -> str:
    pattern = message or ""
    for regex, replacement in _PATTERN_RULES:
        pattern = regex.sub(replacement, pattern)
    return pattern[:PATTERN_LIMIT] or "Unknown error"


def is_failure(entry: LogEntry) -> bool:
    if entry.level == "error" or entry.type == "error":
        return True
    return entry.type == "network" and (status_code(entry) or 0) >= 400


def _brief(entry: LogEntry) -> dict:
    return {
        "timestamp": entry.timestamp,
        "type": entry.type,
        "level": entry.level,
        "summary": entry.summary,
    }


def find_errors(entries: list[LogEntry], categories=None, start=None, end=None,
                include_context: bool = True) -> dict:
    """Group failures by category and pattern, most severe and frequent first."""
    in_range = build_filter_chain(start=start, end=end)
    wanted = set(categories or ())
    groups: dict[tuple, dict] = {}
    by_category = Counter()

    for index, entry in enumerate(entries):
        if not is_failure(entry) or not in_range(entry):
            continue
        category = entry.category or entry.type
        if wanted and category not in wanted:
            continue

        key = (category, error_pattern(entry.summary or ""))
        group = groups.get(key)
        if group is None:
            group = groups[key] = {
                "category": category,
                "pattern": key[1],
                "count": 0,
                "severity": 0,
                "firstSeen": entry.timestamp,
                "lastSeen": entry.timestamp,
                "hasScreenshot": False,
                "entries": [],
            }
        by_category[category] += 1
        group["count"] += 1
        group["severity"] = max(group["severity"], entry.severity or 1)
        group["lastSeen"] = entry.timestamp
        group["hasScreenshot"] = group["hasScreenshot"] or bool(entry.has_screenshot)

        item = entry_to_dict(entry)
        if include_context:
            item["surrounding"] = {
                "before": [_brief(e) for e in entries[max(0, index - CONTEXT_WINDOW):index]],
                "after": [_brief(e) for e in entries[index + 1:index + 1 + CONTEXT_WINDOW]],
            }
        group["entries"].append(item)

    ordered = sorted(groups.values(), key=lambda g: (-g["severity"], -g["count"]))
    return {
        "totalErrors": sum(g["count"] for g in ordered),
        "uniquePatterns": len(ordered),
        "critical": sum(1 for g in ordered if g["severity"] >= 5),
        "highSeverity": sum(1 for g in ordered if g["severity"] >= 4),
        "byCategory": dict(by_category),
        "groups": ordered,
    }


def network_failures(entries: list[LogEntry], status_codes=None, start=None) -> dict:
    """Failed requests: listed HTTP statuses plus requests that never completed."""
    statuses = set(status_codes or DEFAULT_FAILURE_STATUSES)
    in_window = build_filter_chain(start=start)
    requests_seen = 0
    failures = []

    for entry in entries:
        if not in_window(entry):
            continue
        data = entry.data if isinstance(entry.data, dict) else {}
        context = entry.context or {}
        if entry.type == "network":
            requests_seen += 1
            if status_code(entry) not in statuses:
                continue
        elif entry.source != "network_failure":
            continue
        failures.append({
            "timestamp": entry.timestamp,
            "method": data.get("method") or context.get("method") or "UNKNOWN",
            "url": data.get("url") or context.get("url"),
            "status": status_code(entry),
            "error": None if entry.type == "network" else data.get("message"),
            "responseBody": data.get("responseBody"),
            "severity": entry.severity,
        })

    return {
        "totalRequests": requests_seen,
        "failureCount": len(failures),
        "statusCodes": sorted(statuses),
        "failures": failures,
    }


def health_score(entries: list[LogEntry]) -> float:
    """100 minus penalties for error, warning, network failure and slow-performance rates."""
    stats = compute_statistics(entries)
    if not stats.total:
        return 100.0
    score = 100.0
    score -= stats.error_count / stats.total * 200
    score -= stats.warning_count / stats.total * 50
    score -= stats.network_failures / stats.total * 100
    score -= stats.performance_issues / stats.total * 50
    return round(max(0.0, min(100.0, score)), 1)


def health_grade(score: float) -> str:
    for floor, grade in ((90, "A"), (80, "B"), (70, "C"), (60, "D")):
        if score >= floor:
            return grade
    return "F"


def log_summary(entries: list[LogEntry], parse_errors: int = 0) -> dict:
    score = health_score(entries)
    errors = find_errors(entries, include_context=False)
    severities = Counter(e.severity or 1 for e in entries)
    return {
        "health": {"score": score, "grade": health_grade(score)},
        "statistics": compute_statistics(entries).to_dict(),
        "severity": {str(level): severities.get(level, 0) for level in range(1, 6)},
        "topErrors": [
            {"category": g["category"], "pattern": g["pattern"], "count": g["count"], "severity": g["severity"]}
            for g in errors["groups"][:5]
        ],
        "parseErrors": parse_errors,
    }


def search_logs(entries: list[LogEntry], pattern: str, max_results: int = 10) -> dict:
    """Case-insensitive regex search over summary, message, url and source."""
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise InvalidRequestError(f"Invalid search pattern {pattern!r}: {e}") from e

    matches = []
    total = 0
    for entry in entries:
        data = entry.data if isinstance(entry.data, dict) else {"message": entry.data}
        text = " ".join(str(v) for v in (entry.summary, data.get("message"), data.get("url"), entry.source) if v)
        found = regex.search(text)
        if found is None:
            continue
        total += 1
        if len(matches) < max_results:
            item = _brief(entry)
            item["source"] = entry.source
            item["match"] = text[max(0, found.start() - MATCH_MARGIN):found.end() + MATCH_MARGIN]
            matches.append(item)

    return {
        "pattern": pattern,
        "totalMatches": total,
        "truncated": total > len(matches),
        "matches": matches,
    }
