from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from shared.logging.logger import get_logger
from shared.utils.clock import Clock

log = get_logger("services.streams.termination")

ExpireCallback = Callable[[str], Awaitable[object]]


class TerminationScheduler:
    """
    Redundant stop timer per running stream.

    The relay process already carries its own `-t` limit; this side
    channel stops a stream when its deadline passes regardless, and a
    watchdog loop catches timers that never fired.
    """

    def __init__(
        self,
        on_expire: ExpireCallback,
        *,
        clock: Optional[Clock] = None,
        check_interval: float = 60.0,
        overdue_seconds: float = 30.0,
    ):
        self._on_expire = on_expire
        self._clock = clock or Clock()
        self._check_interval = check_interval
        self._overdue = timedelta(seconds=overdue_seconds)

        self._timers: Dict[str, asyncio.Task] = {}
        self._deadlines: Dict[str, datetime] = {}
        self._watchdog: Optional[asyncio.Task] = None

    # ------------------------------------------------------------

    def schedule(self, stream_id: str, minutes: float) -> datetime:
        self.cancel(stream_id)

        deadline = self._clock.now() + timedelta(minutes=minutes)
        self._deadlines[stream_id] = deadline
        self._timers[stream_id] = asyncio.create_task(
            self._fire_after(stream_id, max(0.0, minutes * 60))
        )
        log.info(f"[{stream_id}] Termination scheduled in {minutes:.1f} minutes")
        return deadline

    def cancel(self, stream_id: str) -> bool:
        self._deadlines.pop(stream_id, None)
        timer = self._timers.pop(stream_id, None)
        if timer is None:
            return False
        if not timer.done() and timer is not asyncio.current_task():
            timer.cancel()
        log.debug(f"[{stream_id}] Termination cancelled")
        return True

    def deadline(self, stream_id: str) -> Optional[datetime]:
        return self._deadlines.get(stream_id)

    def scheduled_ids(self) -> list[str]:
        return list(self._deadlines)

    # ------------------------------------------------------------

    async def _fire_after(self, stream_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        log.info(f"[{stream_id}] Termination deadline reached; stopping stream")
        self._timers.pop(stream_id, None)
        self._deadlines.pop(stream_id, None)
        await self._expire(stream_id)

    async def _expire(self, stream_id: str) -> None:
        try:
            await self._on_expire(stream_id)
        except Exception:
            log.exception(f"[{stream_id}] Scheduled termination failed")

    # ------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------

    async def check_overdue(self) -> list[str]:
        now = self._clock.now()
        overdue = [
            stream_id for stream_id, deadline in list(self._deadlines.items())
            if now - deadline > self._overdue
        ]
        for stream_id in overdue:
            log.warning(f"[{stream_id}] Stream overdue past its deadline; forcing stop")
            self.cancel(stream_id)
            await self._expire(stream_id)
        return overdue

    async def start(self) -> None:
        if self._watchdog:
            return
        self._watchdog = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            await self.check_overdue()

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        if self._watchdog:
            tasks.append(self._watchdog)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._deadlines.clear()
        self._watchdog = None
