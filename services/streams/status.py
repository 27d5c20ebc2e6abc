from __future__ import annotations

from typing import Any, Mapping

from shared.utils.recurrence import VALID_PATTERNS, is_truthy

STREAM_STATUSES = ("offline", "scheduled", "live")


def is_recurring(stream: Mapping[str, Any]) -> bool:
    return (
        stream.get("schedule_type") in VALID_PATTERNS
        and is_truthy(stream.get("recurring_enabled"))
    )


def status_after_stop(stream: Mapping[str, Any]) -> str:
    """
    Recurring streams are re-armed for their next start; one-off
    streams go idle.
    """
    return "scheduled" if is_recurring(stream) else "offline"
