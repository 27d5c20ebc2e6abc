from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Set

from services.broadcasts.executor import BroadcastExecutor, ExecutionResult
from shared.config.system import ScheduleSettings
from shared.logging.logger import get_logger
from shared.storage.state_store import StateStore
from shared.utils.clock import Clock, parse_instant
from shared.utils.recurrence import normalize_weekdays, next_run_for, parse_time_of_day

log = get_logger("core.scheduler")

# Decisions returned by ScheduleEngine.evaluate()
LOCKED = "locked"
COOLDOWN = "cooldown"
RAN_TODAY = "ran_today"
NOT_TODAY = "not_today"
NO_TIME = "no_time"
DUE = "due"
EARLY = "early"
MISSED = "missed"
OVERDUE = "overdue"
STALE = "stale"
WAITING = "waiting"

EXECUTE_DECISIONS = (DUE, EARLY, MISSED, OVERDUE)


class ScheduleEngine:
    """
    Polls recurring broadcast templates and executes the ones that are due.

    Per template, per poll:
    - skip when an execution is in flight or ran within the cooldown
    - skip on a weekday the weekly pattern does not cover
    - execute inside the grace window after the scheduled time of day, or
      inside the narrow early window just before it
    - otherwise execute when next_run_at is overdue within the catch-up
      ceiling; beyond it, push next_run_at into the future instead

    Executions are dispatched as tasks so one slow template never holds up
    the rest of the poll. The executor's lock set keeps them single-flight.
    """

    def __init__(
        self,
        store: StateStore,
        executor: BroadcastExecutor,
        *,
        clock: Optional[Clock] = None,
        settings: Optional[ScheduleSettings] = None,
    ):
        self._store = store
        self._executor = executor
        self._clock = clock or Clock()
        self._settings = settings or ScheduleSettings()

        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

        # --------------------------------------------------
        # METRICS (READ-ONLY)
        # --------------------------------------------------
        self._metrics = {
            "polls": 0,
            "dispatched": 0,
            "refreshed": 0,
            "errors": 0,
        }

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    # ------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------

    def _within_cooldown(self, template: Mapping[str, Any], now: datetime) -> bool:
        last_run = parse_instant(template.get("last_run_at"))
        if last_run is None:
            return False
        return now - last_run < timedelta(minutes=self._settings.cooldown_minutes)

    def _ran_today(self, template: Mapping[str, Any], now: datetime) -> bool:
        return self._clock.same_civil_date(parse_instant(template.get("last_run_at")), now)

    def _today_eligible(self, template: Mapping[str, Any], now: datetime) -> bool:
        pattern = template.get("recurring_pattern")
        if pattern == "daily":
            return True
        if pattern == "weekly":
            days = normalize_weekdays(template.get("recurring_days"))
            return self._clock.civil(now).weekday in days
        return False

    def _minutes_past_schedule(self, template: Mapping[str, Any], now: datetime) -> Optional[int]:
        parsed = parse_time_of_day(template.get("recurring_time"))
        if parsed is None:
            return None
        return self._clock.minutes_of_day(now) - (parsed[0] * 60 + parsed[1])

    def _next_run_decision(self, template: Mapping[str, Any], now: datetime) -> str:
        next_run_at = parse_instant(template.get("next_run_at"))
        if next_run_at is None:
            return WAITING
        overdue = int((now - next_run_at).total_seconds() // 60)
        if 0 < overdue <= self._settings.catch_up_ceiling_minutes:
            return OVERDUE
        if overdue > self._settings.catch_up_ceiling_minutes:
            return STALE
        return WAITING

    def evaluate(self, template: Mapping[str, Any], now: datetime) -> str:
        template_id = str(template.get("id"))

        if self._executor.locks.held(template_id):
            return LOCKED
        if self._within_cooldown(template, now):
            return COOLDOWN
        if not self._today_eligible(template, now):
            return NOT_TODAY

        diff = self._minutes_past_schedule(template, now)
        if diff is None:
            return NO_TIME

        if not self._ran_today(template, now):
            if 0 <= diff <= self._settings.grace_window_minutes:
                return DUE
            if -self._settings.early_window_minutes <= diff < 0:
                return EARLY

        return self._next_run_decision(template, now)

    def evaluate_missed(self, template: Mapping[str, Any], now: datetime) -> str:
        """
        Startup variant: the time-of-day window stretches to the catch-up
        ceiling so an occurrence missed while the process was down still runs.
        """
        if self._within_cooldown(template, now):
            return COOLDOWN
        if self._ran_today(template, now):
            return RAN_TODAY

        if self._today_eligible(template, now):
            diff = self._minutes_past_schedule(template, now)
            if diff is not None and 0 <= diff <= self._settings.catch_up_ceiling_minutes:
                return MISSED

        return self._next_run_decision(template, now)

    # ------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------

    def _refresh_next_run(self, template: Mapping[str, Any], now: datetime) -> None:
        template_id = str(template.get("id"))
        upcoming = next_run_for(dict(template), now, self._clock)
        if upcoming is None:
            return
        self._store.update_next_run(template_id, upcoming)
        self._metrics["refreshed"] += 1
        log.info(
            f"[{template_id}] next_run_at too old "
            f"(> {self._settings.catch_up_ceiling_minutes} min); moved to {upcoming.isoformat()}"
        )

    def _dispatch(self, template_id: str, trigger: str) -> asyncio.Task:
        task = asyncio.create_task(self._execute(template_id, trigger))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        self._metrics["dispatched"] += 1
        return task

    async def _execute(self, template_id: str, trigger: str) -> Optional[ExecutionResult]:
        try:
            result = await self._executor.execute(template_id, trigger=trigger)
        except Exception:
            log.exception(f"[{template_id}] Execution crashed")
            return None
        if result.attempted and not result.ok:
            log.error(f"[{template_id}] Execution ended with {result.code}: {result.message}")
        return result

    async def poll_once(self) -> List[str]:
        """One poll cycle. Returns the ids dispatched for execution."""
        self._metrics["polls"] += 1
        now = self._clock.now()
        civil = self._clock.civil(now)

        try:
            templates = self._store.find_recurring_templates()
        except Exception:
            self._metrics["errors"] += 1
            log.exception("Failed to load recurring templates")
            return []

        if not templates:
            return []

        log.info(
            f"Check: {civil.date.isoformat()} {civil.hour:02d}:{civil.minute:02d} "
            f"{self._clock.tz_name} | {len(templates)} templates"
        )

        dispatched: List[str] = []
        for template in templates:
            template_id = str(template.get("id"))
            try:
                decision = self.evaluate(template, now)
                if decision in EXECUTE_DECISIONS:
                    log.info(f"[{template_id}] EXEC ({decision})")
                    self._dispatch(template_id, decision)
                    dispatched.append(template_id)
                elif decision == STALE:
                    self._refresh_next_run(template, now)
            except Exception:
                self._metrics["errors"] += 1
                log.exception(f"[{template_id}] Error processing template")

        return dispatched

    async def catch_up_missed(self) -> List[str]:
        """Run every occurrence missed while the process was down."""
        now = self._clock.now()
        executed: List[str] = []

        try:
            templates = self._store.find_recurring_templates()
        except Exception:
            log.exception("Failed to load recurring templates for catch-up")
            return executed

        log.info(f"Startup catch-up over {len(templates)} recurring templates")
        for template in templates:
            template_id = str(template.get("id"))
            try:
                decision = self.evaluate_missed(template, now)
                if decision in EXECUTE_DECISIONS:
                    log.info(f"[{template_id}] Missed schedule detected ({decision}); executing")
                    result = await self._execute(template_id, f"catch-up:{decision}")
                    if result is not None and result.attempted:
                        executed.append(template_id)
                elif decision == STALE:
                    self._refresh_next_run(template, now)
            except Exception:
                log.exception(f"[{template_id}] Catch-up failed")

        if executed:
            log.info(f"Executed {len(executed)} missed schedules")
        return executed

    async def wait_idle(self) -> None:
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def start(self) -> None:
        if self._task:
            return
        log.info(
            f"Schedule engine starting (poll every {self._settings.poll_interval_seconds}s, "
            f"first poll after {self._settings.initial_delay_seconds}s)"
        )
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        await self.catch_up_missed()
        await asyncio.sleep(self._settings.initial_delay_seconds)
        while True:
            try:
                await self.poll_once()
            except Exception:
                log.exception("Schedule poll failed")
            await asyncio.sleep(self._settings.poll_interval_seconds)

    async def shutdown(self) -> None:
        log.info("Schedule engine shutdown initiated")

        tasks = [t for t in [self._task, *self._inflight] if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._task = None
        self._inflight.clear()
        log.info("Schedule engine shutdown complete")
