from __future__ import annotations

from typing import Any, Mapping, Optional

from shared.utils.clock import parse_instant


def _positive_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def duration_seconds(stream: Mapping[str, Any]) -> Optional[int]:
    """
    Target runtime of a stream in seconds, or None for "run until the
    input ends".

    Priority (first positive candidate wins):
    1) stream_duration_minutes
    2) stream_duration_hours
    3) end_time - schedule_time
    4) legacy `duration` (minutes)
    """
    minutes = _positive_number(stream.get("stream_duration_minutes"))
    if minutes is not None:
        return int(round(minutes * 60))

    hours = _positive_number(stream.get("stream_duration_hours"))
    if hours is not None:
        return int(round(hours * 3600))

    start = parse_instant(stream.get("schedule_time"))
    end = parse_instant(stream.get("end_time"))
    if start is not None and end is not None:
        window = (end - start).total_seconds()
        if window > 0:
            return int(window)

    legacy = _positive_number(stream.get("duration"))
    if legacy is not None:
        return int(round(legacy * 60))

    return None


def format_duration(seconds: Optional[int]) -> str:
    if seconds is None:
        return "unlimited"
    return f"{seconds / 60:.1f} minutes ({seconds} seconds)"
