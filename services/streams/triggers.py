from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from shared.config.system import TriggerSettings
from shared.logging.logger import get_logger
from shared.storage.state_store import StateStore
from shared.utils.clock import Clock, parse_instant
from shared.utils.recurrence import normalize_weekdays, parse_time_of_day
from services.streams.status import is_recurring
from services.streams.supervisor import StreamSupervisor

log = get_logger("services.streams.triggers")


class StreamStartTrigger:
    """
    Starts streams whose status is `scheduled` when their time comes.

    - One-off streams start once `schedule_time` is (nearly) reached
    - Daily / weekly streams start within a short window after
      `recurring_time` on an eligible day
    - A per-stream cooldown prevents double starts from adjacent polls
    """

    def __init__(
        self,
        store: StateStore,
        supervisor: StreamSupervisor,
        *,
        clock: Optional[Clock] = None,
        settings: Optional[TriggerSettings] = None,
    ):
        self._store = store
        self._supervisor = supervisor
        self._clock = clock or Clock()
        self._settings = settings or TriggerSettings()

        # stream_id -> last trigger instant
        self._recently_triggered: Dict[str, datetime] = {}
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------

    def _cooling_down(self, stream_id: str, now: datetime) -> bool:
        last = self._recently_triggered.get(stream_id)
        cooldown = timedelta(minutes=self._settings.trigger_cooldown_minutes)
        return last is not None and now - last < cooldown

    def _prune(self, now: datetime) -> None:
        max_age = timedelta(minutes=self._settings.trigger_cooldown_minutes * 2)
        for stream_id in [s for s, ts in self._recently_triggered.items() if now - ts > max_age]:
            del self._recently_triggered[stream_id]

    def should_trigger(self, stream: Mapping[str, Any], now: datetime) -> bool:
        if stream.get("status") != "scheduled":
            return False

        if is_recurring(stream):
            parsed = parse_time_of_day(stream.get("recurring_time"))
            if parsed is None:
                return False

            civil = self._clock.civil(now)
            if stream.get("schedule_type") == "weekly":
                days = normalize_weekdays(stream.get("schedule_days"))
                if civil.weekday not in days:
                    return False

            diff = civil.minutes_of_day - (parsed[0] * 60 + parsed[1])
            return 0 <= diff <= self._settings.trigger_window_minutes

        scheduled = parse_instant(stream.get("schedule_time"))
        if scheduled is None:
            return False
        diff = (now - scheduled).total_seconds()
        return (
            -self._settings.one_off_early_seconds
            <= diff
            <= self._settings.one_off_catch_up_minutes * 60
        )

    async def check_once(self) -> List[str]:
        now = self._clock.now()
        self._prune(now)
        started: List[str] = []

        for stream in self._store.find_streams(status="scheduled"):
            stream_id = str(stream.get("id"))
            try:
                if self._cooling_down(stream_id, now):
                    continue
                if self._supervisor.is_active(stream_id):
                    continue
                if not self.should_trigger(stream, now):
                    continue

                log.info(f"[{stream_id}] Scheduled start reached; starting stream")
                self._recently_triggered[stream_id] = now
                result = await self._supervisor.start_stream(stream_id)
                if result.ok:
                    started.append(stream_id)
                else:
                    log.error(f"[{stream_id}] Scheduled start failed: {result.reason}")
                    if not is_recurring(stream):
                        # one-off streams may retry on the next poll
                        self._recently_triggered.pop(stream_id, None)
            except Exception:
                log.exception(f"[{stream_id}] Scheduled start check failed")

        return started

    # ------------------------------------------------------------

    async def start(self) -> None:
        if self._task:
            return
        log.info(f"Stream start trigger polling every {self._settings.poll_interval_seconds}s")
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            try:
                await self.check_once()
            except Exception:
                log.exception("Stream start trigger cycle failed")
            await asyncio.sleep(self._settings.poll_interval_seconds)

    async def shutdown(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
