from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from shared.logging.logger import get_logger
from shared.utils.clock import Clock

log = get_logger("services.streams.monitors")

# stderr fragments that mean the ingest endpoint dropped or refused us
ENDPOINT_ERROR_TOKENS = (
    "Connection refused",
    "Connection reset",
    "Broken pipe",
    "Server returned 4",
    "Input/output error",
    "Failed to connect",
)

# stderr fragments that mean data is flowing
_PROGRESS_TOKENS = ("frame=", "size=")


def is_endpoint_error(line: str) -> bool:
    return any(token in line for token in ENDPOINT_ERROR_TOKENS)


class StreamMonitor:
    """
    Ancillary watcher attached to a running stream.
    Failures inside a monitor never affect the stream itself.
    """

    name = "monitor"

    def watch(self, stream: Mapping[str, Any], expected_end: Optional[datetime]) -> None:
        raise NotImplementedError

    def unwatch(self, stream_id: str) -> None:
        raise NotImplementedError

    def observe(self, stream_id: str, line: str) -> None:
        return None

    async def shutdown(self) -> None:
        return None


class EndpointHealthMonitor(StreamMonitor):
    """
    Restarts a stream whose ingest endpoint keeps failing.

    - Consecutive endpoint errors are counted per stream
    - Progress output resets the count
    - At the threshold, a reconnect is scheduled unless the stream is
      about to end anyway
    """

    name = "endpoint-health"

    def __init__(
        self,
        reconnect: Callable[[str], Awaitable[Any]],
        *,
        clock: Optional[Clock] = None,
        failure_threshold: int = 3,
        reconnect_delay: float = 5.0,
        min_remaining_seconds: float = 120.0,
    ):
        self._reconnect = reconnect
        self._clock = clock or Clock()
        self._threshold = max(1, failure_threshold)
        self._delay = reconnect_delay
        self._min_remaining = min_remaining_seconds

        self._expected_end: Dict[str, Optional[datetime]] = {}
        self._failures: Dict[str, int] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------

    def watch(self, stream: Mapping[str, Any], expected_end: Optional[datetime]) -> None:
        stream_id = str(stream["id"])
        self._expected_end[stream_id] = expected_end
        self._failures[stream_id] = 0
        log.debug(f"[{stream_id}] Endpoint health monitoring started")

    def unwatch(self, stream_id: str) -> None:
        self._expected_end.pop(stream_id, None)
        self._failures.pop(stream_id, None)
        task = self._pending.pop(stream_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def failures(self, stream_id: str) -> int:
        return self._failures.get(stream_id, 0)

    def observe(self, stream_id: str, line: str) -> None:
        if stream_id not in self._expected_end:
            return

        if is_endpoint_error(line):
            self.report_failure(stream_id)
        elif any(token in line for token in _PROGRESS_TOKENS):
            self._failures[stream_id] = 0

    def report_failure(self, stream_id: str) -> None:
        count = self._failures.get(stream_id, 0) + 1
        self._failures[stream_id] = count
        log.warning(f"[{stream_id}] Endpoint failure {count}/{self._threshold}")

        if count < self._threshold or stream_id in self._pending:
            return

        expected_end = self._expected_end.get(stream_id)
        if expected_end is not None:
            remaining = (expected_end - self._clock.now()).total_seconds()
            if remaining < self._min_remaining:
                log.info(
                    f"[{stream_id}] Endpoint failing but only {remaining:.0f}s left; "
                    "not reconnecting"
                )
                return

        self._failures[stream_id] = 0
        self._pending[stream_id] = asyncio.create_task(self._reconnect_later(stream_id))

    async def _reconnect_later(self, stream_id: str) -> None:
        try:
            await asyncio.sleep(self._delay)
            log.info(f"[{stream_id}] Reconnecting stream after repeated endpoint failures")
            await self._reconnect(stream_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception(f"[{stream_id}] Endpoint reconnect failed")
        finally:
            if self._pending.get(stream_id) is asyncio.current_task():
                self._pending.pop(stream_id, None)

    async def shutdown(self) -> None:
        tasks = [t for t in self._pending.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
