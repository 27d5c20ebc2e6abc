from __future__ import annotations

import signal
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from shared.runtime.errors import ProcessCrash

# Exit codes (negative = killed by signal) treated as crashes
CRASH_SIGNALS = frozenset({
    signal.SIGSEGV,
    signal.SIGABRT,
    signal.SIGBUS,
    signal.SIGILL,
    signal.SIGFPE,
})


@dataclass
class RuntimeShadow:
    """
    Non-authoritative bookkeeping for one running relay process.
    Exists only while the process is believed alive.
    """
    stream_id: str
    process: Any
    pid: int
    started_at: datetime
    expected_end: Optional[datetime] = None
    duration: Optional[int] = None
    user_id: Optional[str] = None

    def remaining_seconds(self, now: datetime) -> Optional[float]:
        if self.expected_end is None:
            return None
        return (self.expected_end - now).total_seconds()


@dataclass(frozen=True)
class ProcessExit:
    stream_id: str
    shadow: RuntimeShadow = field(compare=False)
    returncode: Optional[int]

    @property
    def signal(self) -> Optional[int]:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    @property
    def crashed(self) -> bool:
        sig = self.signal
        if sig is not None:
            return sig in CRASH_SIGNALS
        return bool(self.returncode)

    def as_error(self) -> ProcessCrash:
        return ProcessCrash(self.stream_id, self.returncode)


@dataclass
class StartResult:
    ok: bool
    reason: Optional[str] = None
    pid: Optional[int] = None


@dataclass
class StopResult:
    ok: bool
    reason: Optional[str] = None
