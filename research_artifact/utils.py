"""Shared helpers for artifact ids, timestamps, scores, and string lists."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

ID_NUMBER_RE = re.compile(r"^[A-Z]+(\d+)$")

TEST_SCORE_FIELDS = ("likelihood_ratio", "cost", "speed", "ambiguity")


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def parse_iso_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning None when unparseable.

    Accepts a trailing ``Z`` for UTC. Naive timestamps are treated as UTC so
    that comparisons between parsed values never raise.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def id_number(item_id: str) -> Optional[int]:
    """Numeric suffix of an item id (``H12`` -> 12), or None."""
    match = ID_NUMBER_RE.match(item_id or "")
    if not match:
        return None
    return int(match.group(1))


def id_sort_key(item_id: str) -> tuple:
    """Sort key placing numbered ids first, in numeric order."""
    number = id_number(item_id)
    if number is not None:
        return (0, number, "")
    return (1, 0, item_id)


def next_id(prefix: str, existing_ids: Iterable[str]) -> str:
    """Next sequential id for a prefix: max numeric suffix + 1, starting at 1.

    Ids that do not match ``<prefix><digits>`` are ignored, so killed items
    still reserve their numbers and ids are never reused.
    """
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    highest = 0
    for existing in existing_ids:
        match = pattern.match(existing or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}{highest + 1}"


def is_string_list(value: Any) -> bool:
    """True for a list whose elements are all strings (empty lists count)."""
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def union_string_lists(existing: Any, incoming: Any) -> list[str]:
    """Ordered set-union of two lists, keeping only string elements.

    Existing order is preserved and new values are appended in the order
    they arrive.
    """
    merged: list[str] = []
    seen: set[str] = set()
    for source in (existing, incoming):
        if not isinstance(source, list):
            continue
        for value in source:
            if isinstance(value, str) and value not in seen:
                seen.add(value)
                merged.append(value)
    return merged


def total_score(score: Any) -> float:
    """Sum of the four 0-3 test sub-scores; missing sub-scores count as 0.

    Accepts a ScoreBreakdown model, a plain dict, or None.
    """
    if score is None:
        return 0
    if hasattr(score, "model_dump"):
        score = score.model_dump()
    if not isinstance(score, dict):
        return 0
    total = 0
    for name in TEST_SCORE_FIELDS:
        value = score.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total += value
    return total


def truncate(value: Any, max_length: int) -> Any:
    """Truncate long strings for display; other values pass through."""
    if isinstance(value, str) and len(value) > max_length:
        return value[:max_length] + "..."
    return value
