"""
Civil-time adapter for the fixed scheduling timezone.

All schedule comparisons happen in one civil timezone (Asia/Jakarta by
default). The tz database is the primary source; when it is unavailable the
adapter degrades to a fixed UTC offset and says so once in the log.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.logging.logger import get_logger

log = get_logger("shared.clock")

DEFAULT_TIMEZONE = "Asia/Jakarta"
DEFAULT_FALLBACK_OFFSET_HOURS = 7


@dataclass(frozen=True)
class CivilTime:
    year: int
    month: int
    day: int
    hour: int
    minute: int
    # 0=Sunday .. 6=Saturday
    weekday: int

    @property
    def minutes_of_day(self) -> int:
        return self.hour * 60 + self.minute

    @property
    def date(self) -> date:
        return date(self.year, self.month, self.day)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_instant(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or datetime into an aware UTC datetime.
    Naive values are treated as UTC. Anything unparsable returns None.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_instant(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class Clock:
    def __init__(
        self,
        tz_name: str = DEFAULT_TIMEZONE,
        *,
        fallback_offset_hours: int = DEFAULT_FALLBACK_OFFSET_HOURS,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.tz_name = tz_name
        self._now_fn = now_fn or _utcnow
        self._tz, self.degraded = self._resolve_zone(tz_name, fallback_offset_hours)

    @staticmethod
    def _resolve_zone(tz_name: str, offset_hours: int) -> tuple[tzinfo, bool]:
        try:
            return ZoneInfo(tz_name), False
        except (ZoneInfoNotFoundError, ValueError) as e:
            log.warning(
                f"Timezone database lookup failed for {tz_name} ({e}); "
                f"using fixed UTC{offset_hours:+d} offset"
            )
            return timezone(timedelta(hours=offset_hours)), True

    @property
    def tz(self) -> tzinfo:
        return self._tz

    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return self._now_fn().astimezone(timezone.utc)

    def local(self, instant: datetime) -> datetime:
        return instant.astimezone(self._tz)

    def civil(self, instant: Optional[datetime] = None) -> CivilTime:
        local = self.local(instant if instant is not None else self.now())
        return CivilTime(
            year=local.year,
            month=local.month,
            day=local.day,
            hour=local.hour,
            minute=local.minute,
            weekday=(local.weekday() + 1) % 7,
        )

    def minutes_of_day(self, instant: Optional[datetime] = None) -> int:
        return self.civil(instant).minutes_of_day

    def at(self, day: date, hour: int, minute: int) -> datetime:
        """Aware UTC instant for a civil date + time of day."""
        local = datetime(day.year, day.month, day.day, hour, minute, tzinfo=self._tz)
        return local.astimezone(timezone.utc)

    def same_civil_date(self, a: Optional[datetime], b: Optional[datetime]) -> bool:
        if a is None or b is None:
            return False
        return self.civil(a).date == self.civil(b).date
