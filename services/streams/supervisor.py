from __future__ import annotations

import asyncio
import os
import re
from collections import deque
from datetime import timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from shared.config.system import SupervisorSettings
from shared.logging.logger import get_logger
from shared.runtime.errors import ResourceMissing
from shared.runtime.quotas import LiveLimitExceeded, LiveLimitPolicy
from shared.storage.state_store import StateStore
from shared.utils.clock import Clock, format_instant
from services.streams.duration import duration_seconds, format_duration
from services.streams.models import ProcessExit, RuntimeShadow, StartResult, StopResult
from services.streams.monitors import StreamMonitor, is_endpoint_error
from services.streams.relay import RelayLauncher
from services.streams.status import status_after_stop
from services.streams.termination import TerminationScheduler

log = get_logger("services.streams.supervisor")

MAX_LOG_LINES = 50

_LINE_SPLIT = re.compile(r"[\r\n]+")
_PROGRESS_PREFIXES = ("frame=", "size=")


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class StreamSupervisor:
    """
    Owns one relay child process per live stream.

    Responsibilities:
    - Start / stop relay processes and persist the resulting status
    - Restart crashed processes a bounded number of times
    - Detect processes that vanished without an exit notice
    - Keep per-stream bookkeeping bounded over long uptimes

    All runtime maps belong to this instance. Process exits arrive as
    ProcessExit events on one queue and are applied by one consumer task.
    """

    def __init__(
        self,
        store: StateStore,
        launcher: RelayLauncher,
        *,
        limits: Optional[LiveLimitPolicy] = None,
        clock: Optional[Clock] = None,
        settings: Optional[SupervisorSettings] = None,
        is_alive: Callable[[int], bool] = pid_alive,
    ):
        self._store = store
        self._launcher = launcher
        self._limits = limits
        self._clock = clock or Clock()
        self._settings = settings or SupervisorSettings()
        self._is_alive = is_alive

        self._termination: Optional[TerminationScheduler] = None
        self._monitors: List[StreamMonitor] = []

        # stream_id -> runtime shadow (only while believed running)
        self._shadows: Dict[str, RuntimeShadow] = {}
        # stream_id -> recent output lines
        self._logs: Dict[str, Deque[str]] = {}
        # stream_id -> crash restarts used in the current run
        self._retry_counts: Dict[str, int] = {}
        # stream ids a caller asked to stop
        self._manual_stops: Set[str] = set()
        # stream_id -> pending delayed restart (cancellable token)
        self._restart_tasks: Dict[str, asyncio.Task] = {}
        # stream_id -> stderr reader
        self._pumps: Dict[str, asyncio.Task] = {}
        # stream_id -> single-flight guard for start/stop
        self._locks: Dict[str, asyncio.Lock] = {}

        self._events: asyncio.Queue[ProcessExit] = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(
        self,
        *,
        termination: Optional[TerminationScheduler] = None,
        monitors: Iterable[StreamMonitor] = (),
    ) -> None:
        if termination is not None:
            self._termination = termination
        self._monitors.extend(monitors)

    # ------------------------------------------------------------------
    # Read-only visibility
    # ------------------------------------------------------------------

    def is_active(self, stream_id: str) -> bool:
        return str(stream_id) in self._shadows

    def active_stream_ids(self) -> List[str]:
        return list(self._shadows)

    def shadow(self, stream_id: str) -> Optional[RuntimeShadow]:
        return self._shadows.get(str(stream_id))

    def get_logs(self, stream_id: str) -> List[str]:
        return list(self._logs.get(str(stream_id), ()))

    def retry_count(self, stream_id: str) -> int:
        return self._retry_counts.get(str(stream_id), 0)

    def has_pending_restart(self, stream_id: str) -> bool:
        task = self._restart_tasks.get(str(stream_id))
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Lifecycle (loops)
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        log.info(
            "Stream supervisor starting "
            f"(health={self._settings.health_check_interval_seconds}s, "
            f"cleanup={self._settings.cleanup_interval_seconds}s)"
        )
        self._tasks = [
            asyncio.create_task(self._consume_exits()),
            asyncio.create_task(self._health_loop()),
            asyncio.create_task(self._cleanup_loop()),
        ]

    async def shutdown(self, *, stop_streams: bool = True) -> None:
        if stop_streams:
            await self.stop_all(reason="shutdown")

        pending = list(self._restart_tasks.values()) + list(self._pumps.values()) + self._tasks
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        self._restart_tasks.clear()
        self._pumps.clear()
        self._tasks = []
        log.info("Stream supervisor stopped")

    async def stop_all(self, *, reason: str = "manual stop") -> None:
        for stream_id in list(self._shadows) + list(self._restart_tasks):
            try:
                await self.stop_stream(stream_id, reason=reason)
            except Exception:
                log.exception(f"[{stream_id}] Failed to stop stream")

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _lock_for(self, stream_id: str) -> asyncio.Lock:
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[stream_id] = lock
        return lock

    async def start_stream(self, stream_id: Any, *, restart: bool = False) -> StartResult:
        stream_id = str(stream_id)
        async with self._lock_for(stream_id):
            return await self._start_locked(stream_id, restart)

    async def _start_locked(self, stream_id: str, restart: bool) -> StartResult:
        if stream_id in self._shadows:
            return StartResult(False, "Stream is already running")

        stream = self._store.find_stream(stream_id)
        if stream is None:
            return StartResult(False, "Stream not found")

        if not restart:
            self._cancel_restart(stream_id)
            self._retry_counts[stream_id] = 0
        self._manual_stops.discard(stream_id)

        if self._limits is not None:
            try:
                self._limits.check(stream.get("user_id"), exclude_stream_id=stream_id)
            except LiveLimitExceeded as e:
                return StartResult(False, str(e))

        duration = duration_seconds(stream)
        try:
            args = self._launcher.prepare(stream, duration)
        except ResourceMissing as e:
            log.error(f"[{stream_id}] Cannot start stream: {e}")
            return StartResult(False, str(e))

        log.info(
            f"[{stream_id}] Starting stream with command: "
            f"ffmpeg {self._mask(' '.join(args), stream)}"
        )
        log.info(f"[{stream_id}] Duration limit: {format_duration(duration)}")

        try:
            process = await self._launcher.spawn(args)
        except OSError as e:
            log.error(f"[{stream_id}] Failed to spawn relay process: {e}")
            return StartResult(False, f"Failed to start relay process: {e}")

        started_at = self._clock.now()
        self._logs.setdefault(stream_id, deque(maxlen=MAX_LOG_LINES))
        self._add_log(stream_id, f"Relay process spawned (pid={process.pid})")
        self._pumps[stream_id] = asyncio.create_task(self._pump_output(stream_id, process))

        waiter = asyncio.create_task(process.wait())
        done, _ = await asyncio.wait({waiter}, timeout=self._settings.start_confirm_seconds)
        if waiter in done:
            code = waiter.result()
            self._add_log(stream_id, f"Relay process exited during start (code={code})")
            log.error(f"[{stream_id}] Relay process exited before confirmation (code={code})")
            self._launcher.cleanup(stream_id)
            return StartResult(False, f"Relay process failed to start (code={code})")

        expected_end = started_at + timedelta(seconds=duration) if duration else None
        shadow = RuntimeShadow(
            stream_id=stream_id,
            process=process,
            pid=process.pid,
            started_at=started_at,
            expected_end=expected_end,
            duration=duration,
            user_id=stream.get("user_id"),
        )
        self._shadows[stream_id] = shadow
        waiter.add_done_callback(lambda task: self._post_exit(shadow, task))

        self._store.update_status(stream_id, "live", started_at)
        log.info(f"[{stream_id}] Relay process confirmed (pid={process.pid})")

        self._attach_ancillary(stream, shadow)
        return StartResult(True, pid=process.pid)

    @staticmethod
    def _mask(text: str, stream: Dict[str, Any]) -> str:
        key = stream.get("stream_key")
        return text.replace(key, "****") if key else text

    def _attach_ancillary(self, stream: Dict[str, Any], shadow: RuntimeShadow) -> None:
        stream_id = shadow.stream_id

        if self._termination is not None and shadow.duration:
            try:
                self._termination.schedule(stream_id, shadow.duration / 60)
            except Exception:
                log.exception(f"[{stream_id}] Failed to schedule termination")

        for monitor in self._monitors:
            try:
                monitor.watch(stream, shadow.expected_end)
            except Exception:
                log.exception(f"[{stream_id}] Failed to start {monitor.name} monitor")

    def _detach_ancillary(self, stream_id: str) -> None:
        if self._termination is not None:
            try:
                self._termination.cancel(stream_id)
            except Exception:
                log.exception(f"[{stream_id}] Failed to cancel termination")

        for monitor in self._monitors:
            try:
                monitor.unwatch(stream_id)
            except Exception:
                log.exception(f"[{stream_id}] Failed to stop {monitor.name} monitor")

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _add_log(self, stream_id: str, message: str) -> None:
        ring = self._logs.setdefault(stream_id, deque(maxlen=MAX_LOG_LINES))
        ring.append(f"[{format_instant(self._clock.now())}] {message}")

    async def _pump_output(self, stream_id: str, process: Any) -> None:
        reader = getattr(process, "stderr", None)
        if reader is None:
            return

        buffer = ""
        while True:
            chunk = await reader.read(4096)
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="ignore")
            parts = _LINE_SPLIT.split(buffer)
            buffer = parts.pop()
            for line in parts:
                self._handle_output(stream_id, line.strip())

        if buffer.strip():
            self._handle_output(stream_id, buffer.strip())

    def _handle_output(self, stream_id: str, line: str) -> None:
        if not line:
            return

        if not line.startswith(_PROGRESS_PREFIXES):
            self._add_log(stream_id, line)

        if is_endpoint_error(line):
            log.warning(f"[{stream_id}] Endpoint error from relay: {line}")
            self._add_log(stream_id, f"WARNING endpoint error detected: {line}")

        if stream_id not in self._shadows:
            return
        for monitor in self._monitors:
            try:
                monitor.observe(stream_id, line)
            except Exception:
                log.exception(f"[{stream_id}] {monitor.name} monitor failed on output")

    # ------------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------------

    def _post_exit(self, shadow: RuntimeShadow, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if task.exception() is not None:
            log.error(f"[{shadow.stream_id}] Waiting on relay process failed: {task.exception()}")
            code = None
        else:
            code = task.result()
        self._events.put_nowait(ProcessExit(shadow.stream_id, shadow, code))

    async def _consume_exits(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle_exit(event)
            except Exception:
                log.exception(f"[{event.stream_id}] Exit handling failed")

    async def handle_exit(self, event: ProcessExit) -> None:
        stream_id = event.stream_id
        shadow = event.shadow

        if self._shadows.get(stream_id) is not shadow:
            log.debug(f"[{stream_id}] Ignoring exit of a superseded relay process (pid={shadow.pid})")
            return

        del self._shadows[stream_id]
        self._add_log(
            stream_id,
            f"Stream ended with code {event.returncode}, signal: {event.signal}",
        )
        log.info(f"[{stream_id}] Relay exited (code={event.returncode}, signal={event.signal})")

        now = self._clock.now()

        if stream_id in self._manual_stops:
            self._finalize(stream_id, shadow, "manual stop", event.returncode)
            return

        if shadow.expected_end is not None and now >= shadow.expected_end:
            self._finalize(stream_id, shadow, "duration reached", event.returncode)
            return

        remaining = shadow.remaining_seconds(now)
        retries = self._retry_counts.get(stream_id, 0)

        if event.crashed:
            crash = event.as_error()
            self._add_log(stream_id, str(crash))
            if remaining is not None and remaining < self._settings.safety_floor_seconds:
                self._finalize(stream_id, shadow, "crashed near end of duration", event.returncode)
                return
            if retries >= self._settings.max_retry_attempts:
                log.error(f"[{stream_id}] Crash restart limit reached ({retries}); giving up")
                self._finalize(stream_id, shadow, "crash retries exhausted", event.returncode)
                return

            self._retry_counts[stream_id] = retries + 1
            self._detach_ancillary(stream_id)
            self._schedule_restart(stream_id, retries + 1)
            return

        self._finalize(stream_id, shadow, "process exited", event.returncode)

    def _finalize(
        self,
        stream_id: str,
        shadow: Optional[RuntimeShadow],
        reason: str,
        returncode: Optional[int],
    ) -> str:
        """Terminal path shared by every exit: reconcile status and forget the run."""
        self._manual_stops.discard(stream_id)
        self._retry_counts.pop(stream_id, None)
        self._launcher.cleanup(stream_id)
        self._detach_ancillary(stream_id)

        stream = self._store.find_stream(stream_id)
        status = status_after_stop(stream) if stream else "offline"
        if stream is not None:
            self._store.update_status(stream_id, status)

        ended_at = self._clock.now()
        self._store.append_history({
            "stream_id": stream_id,
            "user_id": (stream or {}).get("user_id"),
            "title": (stream or {}).get("title"),
            "started_at": format_instant(shadow.started_at) if shadow else (stream or {}).get("start_time"),
            "ended_at": format_instant(ended_at),
            "duration_seconds": (
                int((ended_at - shadow.started_at).total_seconds()) if shadow else None
            ),
            "reason": reason,
            "returncode": returncode,
            "status_after": status,
        })

        self._add_log(stream_id, f"Stream stop reason: {reason}")
        log.info(f"[{stream_id}] Stream stopped ({reason}); status -> {status}")
        return status

    # ------------------------------------------------------------------
    # Crash restarts
    # ------------------------------------------------------------------

    def _schedule_restart(self, stream_id: str, attempt: int) -> None:
        delay = self._settings.restart_delay_seconds
        log.warning(
            f"[{stream_id}] Relay crashed; restart {attempt}/{self._settings.max_retry_attempts} "
            f"in {delay}s"
        )
        self._add_log(stream_id, f"Restart attempt {attempt} scheduled in {delay}s")
        self._cancel_restart(stream_id)
        self._restart_tasks[stream_id] = asyncio.create_task(
            self._restart_after_delay(stream_id)
        )

    def _cancel_restart(self, stream_id: str) -> bool:
        task = self._restart_tasks.pop(stream_id, None)
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        return True

    async def _restart_after_delay(self, stream_id: str) -> None:
        await asyncio.sleep(self._settings.restart_delay_seconds)

        if self._restart_tasks.get(stream_id) is asyncio.current_task():
            del self._restart_tasks[stream_id]

        if stream_id in self._manual_stops:
            log.info(f"[{stream_id}] Restart skipped: stream was stopped")
            return

        try:
            result = await self.start_stream(stream_id, restart=True)
        except Exception:
            log.exception(f"[{stream_id}] Restart raised")
            result = StartResult(False, "restart raised")

        if result.ok:
            log.info(f"[{stream_id}] Restarted after crash (pid={result.pid})")
            return

        if result.reason == "Stream is already running":
            return

        log.error(f"[{stream_id}] Restart failed: {result.reason}")
        self._finalize(stream_id, None, f"restart failed: {result.reason}", None)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop_stream(self, stream_id: Any, *, reason: str = "manual stop") -> StopResult:
        stream_id = str(stream_id)
        async with self._lock_for(stream_id):
            self._manual_stops.add(stream_id)
            restart_cancelled = self._cancel_restart(stream_id)

            shadow = self._shadows.pop(stream_id, None)
            if shadow is not None:
                code = await self._terminate(shadow)
                self._finalize(stream_id, shadow, reason, code)
                return StopResult(True)

            stream = self._store.find_stream(stream_id)
            if stream is None:
                self._manual_stops.discard(stream_id)
                return StopResult(False, "Stream not found")

            if stream.get("status") == "live":
                # The runtime lost its handle (e.g. restarted) but the relay may survive
                killed = await self._launcher.kill_by_token(stream.get("stream_key") or "")
                log.info(
                    f"[{stream_id}] No tracked process; orphan kill "
                    f"{'succeeded' if killed else 'found nothing'}"
                )
                self._finalize(stream_id, None, reason, None)
                return StopResult(True)

            self._manual_stops.discard(stream_id)
            if restart_cancelled:
                self._finalize(stream_id, None, reason, None)
                return StopResult(True)
            return StopResult(True, "Stream is not running")

    async def _terminate(self, shadow: RuntimeShadow) -> Optional[int]:
        process = shadow.process
        if process.returncode is not None:
            return process.returncode

        try:
            process.terminate()
        except ProcessLookupError:
            return process.returncode

        try:
            return await asyncio.wait_for(process.wait(), self._settings.stop_grace_seconds)
        except asyncio.TimeoutError:
            log.warning(f"[{shadow.stream_id}] Relay ignored SIGTERM; sending SIGKILL")

        try:
            process.kill()
        except ProcessLookupError:
            pass
        return await process.wait()

    async def restart_stream(self, stream_id: Any) -> StartResult:
        await self.stop_stream(stream_id, reason="reconnect")
        return await self.start_stream(stream_id)

    # ------------------------------------------------------------------
    # Health check / status sync
    # ------------------------------------------------------------------

    async def check_health(self) -> List[str]:
        vanished = []
        for stream_id, shadow in list(self._shadows.items()):
            try:
                if self._is_alive(shadow.pid):
                    continue
                if self._shadows.get(stream_id) is not shadow:
                    continue
                log.warning(f"[{stream_id}] Relay pid {shadow.pid} is gone without an exit notice")
                del self._shadows[stream_id]
                self._finalize(stream_id, shadow, "process vanished", None)
                vanished.append(stream_id)
            except Exception:
                log.exception(f"[{stream_id}] Health check failed")
        return vanished

    async def sync_stream_statuses(self) -> None:
        for stream in self._store.find_streams(status="live"):
            stream_id = str(stream.get("id"))
            if stream_id in self._shadows or self.has_pending_restart(stream_id):
                continue
            try:
                log.warning(f"[{stream_id}] Marked live without a tracked process; stopping")
                await self.stop_stream(stream_id, reason="status sync")
            except Exception:
                log.exception(f"[{stream_id}] Status sync failed")

        for stream_id, shadow in list(self._shadows.items()):
            try:
                stream = self._store.find_stream(stream_id)
                if stream is not None and stream.get("status") != "live":
                    log.info(f"[{stream_id}] Running but not marked live; correcting")
                    self._store.update_status(stream_id, "live", shadow.started_at)
            except Exception:
                log.exception(f"[{stream_id}] Status sync failed")

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.health_check_interval_seconds)
            try:
                await self.check_health()
                await self.sync_stream_statuses()
            except Exception:
                log.exception("Health check cycle failed")

    # ------------------------------------------------------------------
    # Stale-entry cleanup
    # ------------------------------------------------------------------

    def cleanup_stale_entries(self) -> int:
        keep = set(self._shadows) | {
            sid for sid, task in self._restart_tasks.items() if not task.done()
        }
        removed = 0

        for mapping in (self._logs, self._retry_counts):
            for stream_id in [sid for sid in mapping if sid not in keep]:
                del mapping[stream_id]
                removed += 1

        stale_stops = self._manual_stops - keep
        self._manual_stops -= stale_stops
        removed += len(stale_stops)

        for stream_id in [sid for sid, lock in self._locks.items() if sid not in keep and not lock.locked()]:
            del self._locks[stream_id]

        for stream_id in [sid for sid, task in self._pumps.items() if task.done()]:
            del self._pumps[stream_id]

        if removed:
            log.info(f"Cleaned {removed} stale stream bookkeeping entries")
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.cleanup_interval_seconds)
            try:
                self.cleanup_stale_entries()
            except Exception:
                log.exception("Stale-entry cleanup failed")
