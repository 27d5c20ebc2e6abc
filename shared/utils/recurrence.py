from __future__ import annotations

import json
import re
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from shared.runtime.errors import ValidationError
from shared.utils.clock import Clock

VALID_PATTERNS = ("daily", "weekly")

# 0=Sunday .. 6=Saturday
DAY_INDEX = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}

_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


# ======================================================================
# Parsing
# ======================================================================

def parse_time_of_day(value: Any) -> Optional[Tuple[int, int]]:
    if not isinstance(value, str):
        return None
    match = _TIME_RE.match(value.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def _day_entries(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                loaded = json.loads(text)
            except ValueError:
                return [text]
            return loaded if isinstance(loaded, list) else [loaded]
        return [part.strip() for part in text.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _day_index(entry: Any) -> Optional[int]:
    if isinstance(entry, bool):
        return None
    if isinstance(entry, int):
        return entry if 0 <= entry <= 6 else None
    if isinstance(entry, str):
        text = entry.strip().lower()
        if text.isdigit():
            idx = int(text)
            return idx if 0 <= idx <= 6 else None
        return DAY_INDEX.get(text)
    return None


def normalize_weekdays(value: Any) -> FrozenSet[int]:
    """
    Accepts day names (any case), integers 0..6, or a JSON / comma separated
    string of either. Unknown entries are dropped.
    """
    days = set()
    for entry in _day_entries(value):
        idx = _day_index(entry)
        if idx is not None:
            days.add(idx)
    return frozenset(days)


# ======================================================================
# Validation
# ======================================================================

def validate_recurring_config(config: Dict[str, Any]) -> List[str]:
    errors: List[str] = []

    if not is_truthy(config.get("recurring_enabled")):
        return errors

    pattern = config.get("recurring_pattern")
    if not pattern:
        errors.append("Recurring pattern is required")
    elif pattern not in VALID_PATTERNS:
        errors.append("Recurring pattern must be daily or weekly")

    time_of_day = config.get("recurring_time")
    if not time_of_day:
        errors.append("Recurring time is required")
    elif parse_time_of_day(time_of_day) is None:
        errors.append("Recurring time must be in HH:MM format")

    if pattern == "weekly":
        entries = _day_entries(config.get("recurring_days"))
        if not entries:
            errors.append("Weekly schedule requires at least one day selected")
        else:
            invalid = [str(e) for e in entries if _day_index(e) is None]
            if invalid:
                errors.append(f"Invalid days: {', '.join(invalid)}")

    return errors


def ensure_valid_recurring_config(config: Dict[str, Any]) -> None:
    errors = validate_recurring_config(config)
    if errors:
        raise ValidationError(errors)


def is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# ======================================================================
# Next run
# ======================================================================

def next_run(
    pattern: Optional[str],
    time_of_day: Optional[str],
    weekdays: Iterable[Any] | str | None,
    reference: datetime,
    clock: Clock,
) -> Optional[datetime]:
    """
    Soonest instant strictly after `reference` matching the pattern, computed
    in the clock's civil timezone. Returns None for unknown patterns, bad
    times, or a weekly pattern with no eligible days.
    """
    if pattern not in VALID_PATTERNS:
        return None

    parsed = parse_time_of_day(time_of_day)
    if parsed is None:
        return None
    hour, minute = parsed

    days = normalize_weekdays(weekdays) if pattern == "weekly" else None
    if pattern == "weekly" and not days:
        return None

    start_day = clock.civil(reference).date
    # Eight days covers a full week plus the reference day itself
    for offset in range(8):
        day = start_day + timedelta(days=offset)
        if days is not None and (day.weekday() + 1) % 7 not in days:
            continue
        candidate = clock.at(day, hour, minute)
        if candidate > reference:
            return candidate

    return None


def next_run_for(record: Dict[str, Any], reference: datetime, clock: Clock) -> Optional[datetime]:
    """next_run() driven by a template record's recurrence fields."""
    return next_run(
        record.get("recurring_pattern"),
        record.get("recurring_time"),
        record.get("recurring_days"),
        reference,
        clock,
    )
