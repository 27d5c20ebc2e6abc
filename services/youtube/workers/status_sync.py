from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from services.streams.monitors import StreamMonitor
from services.youtube.api.broadcasts import YouTubeBroadcastAPI
from shared.logging.logger import get_logger
from shared.runtime.errors import AuthError, StreamRelayError
from shared.storage.state_store import StateStore

log = get_logger("youtube.status_sync")

ENDED_STATUSES = ("complete", "revoked")


class BroadcastStatusSync(StreamMonitor):
    """
    Watches the YouTube broadcast linked to a live stream.

    Responsibilities:
    - Poll the broadcast lifecycle status while the stream runs
    - Stop the stream once the broadcast is complete or revoked
    - Stop the stream when the broadcast disappears for several polls

    Streams without a linked broadcast or credentials are ignored.
    """

    name = "broadcast-status"

    def __init__(
        self,
        api: YouTubeBroadcastAPI,
        store: StateStore,
        stop_stream: Callable[..., Awaitable[Any]],
        *,
        interval: float = 60.0,
        missing_grace_checks: int = 3,
    ):
        self._api = api
        self._store = store
        self._stop_stream = stop_stream
        self._interval = interval
        self._missing_grace = max(1, missing_grace_checks)

        self._tasks: Dict[str, asyncio.Task] = {}
        self._last_status: Dict[str, Optional[str]] = {}

    # ------------------------------------------------------------------ #

    def watch(self, stream: Mapping[str, Any], expected_end: Optional[datetime]) -> None:
        stream_id = str(stream["id"])
        broadcast_id = stream.get("broadcast_id")
        credentials_id = stream.get("credentials_id")
        if not broadcast_id or not credentials_id:
            return

        self.unwatch(stream_id)
        self._tasks[stream_id] = asyncio.create_task(
            self._run(stream_id, str(broadcast_id), str(credentials_id))
        )
        log.info(f"[{stream_id}] Monitoring broadcast {broadcast_id}")

    def unwatch(self, stream_id: str) -> None:
        self._last_status.pop(stream_id, None)
        task = self._tasks.pop(stream_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def last_status(self, stream_id: str) -> Optional[str]:
        return self._last_status.get(stream_id)

    # ------------------------------------------------------------------ #

    async def check(self, stream_id: str, broadcast_id: str, credentials_id: str) -> Optional[str]:
        credentials = self._store.find_credentials(credentials_id)
        if not credentials:
            raise AuthError(f"Credentials {credentials_id} not found")

        token = await self._api.get_access_token(
            credentials.get("client_id"),
            credentials.get("client_secret"),
            credentials.get("refresh_token"),
        )
        status = await self._api.get_broadcast_status(token, broadcast_id)
        self._last_status[stream_id] = status
        return status

    async def _run(self, stream_id: str, broadcast_id: str, credentials_id: str) -> None:
        missing = 0
        while True:
            await asyncio.sleep(self._interval)
            try:
                status = await self.check(stream_id, broadcast_id, credentials_id)
            except StreamRelayError as e:
                log.warning(f"[{stream_id}] Broadcast status check failed: {e}")
                continue

            if status is None:
                missing += 1
                log.info(
                    f"[{stream_id}] Broadcast {broadcast_id} not found "
                    f"({missing}/{self._missing_grace})"
                )
                if missing < self._missing_grace:
                    continue
                reason = "broadcast deleted"
            elif status in ENDED_STATUSES:
                reason = f"broadcast {status}"
            else:
                missing = 0
                continue

            log.info(f"[{stream_id}] {reason.capitalize()}; stopping stream")
            try:
                await self._stop_stream(stream_id, reason=reason)
            except Exception:
                log.exception(f"[{stream_id}] Failed to stop stream after broadcast ended")
            return

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
