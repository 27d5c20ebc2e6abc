from __future__ import annotations

import re
from datetime import datetime
from typing import Dict, Optional

from shared.utils.clock import Clock

DAY_NAMES = ("Minggu", "Senin", "Selasa", "Rabu", "Kamis", "Jumat", "Sabtu")

MONTH_NAMES = (
    "Januari", "Februari", "Maret", "April", "Mei", "Juni",
    "Juli", "Agustus", "September", "Oktober", "November", "Desember",
)

_TOKEN_RE = re.compile(r"\{(\w+)\}")


def placeholder_values(instant: datetime, clock: Clock) -> Dict[str, str]:
    local = clock.local(instant)
    civil = clock.civil(instant)

    dd = f"{local.day:02d}"
    mm = f"{local.month:02d}"
    yyyy = f"{local.year:04d}"
    hh = f"{local.hour:02d}"
    mi = f"{local.minute:02d}"

    return {
        "date": f"{dd}/{mm}/{yyyy}",
        "time": f"{hh}:{mi}",
        "day": DAY_NAMES[civil.weekday],
        "month": MONTH_NAMES[local.month - 1],
        "year": yyyy,
        "datetime": f"{dd}/{mm}/{yyyy} {hh}:{mi}",
        "iso": f"{yyyy}-{mm}-{dd}",
        "DD": dd,
        "MM": mm,
        "YYYY": yyyy,
        "HH": hh,
        "mm": mi,
    }


def render_placeholders(text: Optional[str], instant: datetime, clock: Clock) -> str:
    """
    Replace `{token}` placeholders with the civil date/time of `instant`.
    Unknown tokens are left untouched.
    """
    if not text:
        return text or ""

    values = placeholder_values(instant, clock)
    return _TOKEN_RE.sub(lambda m: values.get(m.group(1), m.group(0)), text)
