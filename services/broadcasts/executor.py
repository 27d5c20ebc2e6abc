from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

from core.jobs import ExecutionLockSet, finish_execution, start_execution
from services.broadcasts.placeholders import render_placeholders
from services.broadcasts.rotation import ResourceRotator, Selection
from services.youtube.api.broadcasts import YouTubeBroadcastAPI
from services.youtube.models.broadcast import BroadcastRequest, CreatedBroadcast
from shared.config.system import ScheduleSettings
from shared.logging.logger import get_logger
from shared.runtime.errors import (
    AuthError,
    BroadcastApiError,
    ResourceMissing,
    TransientError,
)
from shared.storage.state_store import StateStore
from shared.utils.clock import Clock, format_instant, parse_instant
from shared.utils.recurrence import next_run_for, parse_time_of_day

log = get_logger("services.broadcasts.executor")

T = TypeVar("T")

EXECUTED = "EXECUTED"
ALREADY_EXECUTING = "ALREADY_EXECUTING"
RECENTLY_EXECUTED = "RECENTLY_EXECUTED"
NOT_FOUND = "NOT_FOUND"
CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
AUTH_FAILED = "AUTH_FAILED"
FAILED = "FAILED"


@dataclass
class ExecutionResult:
    ok: bool
    code: str
    template_id: str
    message: str = ""
    broadcast_ids: List[str] = field(default_factory=list)
    execution_id: Optional[str] = None

    @property
    def attempted(self) -> bool:
        """True when the execution got past the lock and cooldown guards."""
        return self.code not in (ALREADY_EXECUTING, RECENTLY_EXECUTED, NOT_FOUND)


def _tags(value: Any) -> List[str]:
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    if isinstance(value, (list, tuple)):
        return [str(t) for t in value if str(t).strip()]
    return []


def broadcast_entries(template: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """
    One entry per broadcast to create.

    A description holding a JSON list marks a multi-broadcast template: each
    object in the list overrides the template's content fields for one
    broadcast. Anything else means a single broadcast from the template.
    """
    description = template.get("description") or ""
    if isinstance(description, str) and description.lstrip().startswith("["):
        try:
            parsed = json.loads(description)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            entries = [dict(e) for e in parsed if isinstance(e, Mapping)]
            if entries:
                return entries
    return [{}]


class BroadcastExecutor:
    """
    Runs one scheduled execution of a broadcast template.

    Responsibilities:
    - Hold the template's execution lock for the whole attempt
    - Re-check the cooldown against a fresh read of the template
    - Resolve credentials and exchange them for an access token
    - Create the broadcast(s) with rotated title and thumbnail
    - Always persist last_run_at / next_run_at once an attempt was made

    Failures are recorded in the execution history and never raised to the
    caller: nobody is waiting on a scheduled execution.
    """

    def __init__(
        self,
        store: StateStore,
        api: YouTubeBroadcastAPI,
        *,
        locks: Optional[ExecutionLockSet] = None,
        rotator: Optional[ResourceRotator] = None,
        clock: Optional[Clock] = None,
        settings: Optional[ScheduleSettings] = None,
    ):
        self._store = store
        self._api = api
        self._locks = locks or ExecutionLockSet()
        self._rotator = rotator or ResourceRotator(store)
        self._clock = clock or Clock()
        self._settings = settings or ScheduleSettings()

    @property
    def locks(self) -> ExecutionLockSet:
        return self._locks

    # ------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------

    async def execute(self, template_id: Any, *, trigger: str = "schedule") -> ExecutionResult:
        template_id = str(template_id)

        if not self._locks.acquire(template_id):
            log.info(f"[{template_id}] Blocked: template is already executing")
            return ExecutionResult(False, ALREADY_EXECUTING, template_id, "already executing")

        log.info(f"[{template_id}] Locked; starting execution ({trigger})")
        try:
            return await self._execute_locked(template_id, trigger)
        finally:
            self._locks.release(template_id)
            log.info(f"[{template_id}] Unlocked")

    async def _execute_locked(self, template_id: str, trigger: str) -> ExecutionResult:
        now = self._clock.now()

        template = self._store.find_template(template_id)
        if not template:
            log.warning(f"[{template_id}] Template not found; nothing to execute")
            return ExecutionResult(False, NOT_FOUND, template_id, "template not found")

        last_run = parse_instant(template.get("last_run_at"))
        cooldown = timedelta(minutes=self._settings.cooldown_minutes)
        if last_run is not None and now - last_run < cooldown:
            minutes_ago = int((now - last_run).total_seconds() // 60)
            log.info(
                f"[{template_id}] Blocked: executed {minutes_ago} minutes ago "
                f"(< {self._settings.cooldown_minutes} min cooldown)"
            )
            return ExecutionResult(False, RECENTLY_EXECUTED, template_id, f"executed {minutes_ago} minutes ago")

        execution_id = start_execution(self._store, template_id, started_at=now, trigger=trigger)

        try:
            result = await self._run(template, now)
        except Exception as e:
            log.exception(f"[{template_id}] Execution failed unexpectedly")
            result = ExecutionResult(False, FAILED, template_id, str(e))

        result.execution_id = execution_id
        self._advance(template, now)
        finish_execution(
            self._store,
            execution_id,
            status="completed" if result.ok else "failed",
            code=result.code,
            completed_at=self._clock.now(),
            error=None if result.ok else result.message,
            broadcast_ids=result.broadcast_ids,
        )
        return result

    def _occurrence_reference(self, template: Mapping[str, Any], now: datetime) -> datetime:
        """
        An early fire consumes today's upcoming slot, so the next run is
        computed from that slot rather than from `now`.
        """
        parsed = parse_time_of_day(template.get("recurring_time"))
        if parsed is None:
            return now
        slot = self._clock.at(self._clock.civil(now).date, parsed[0], parsed[1])
        if now < slot <= now + timedelta(minutes=self._settings.early_window_minutes):
            return slot
        return now

    def _advance(self, template: Mapping[str, Any], now: datetime) -> None:
        template_id = str(template["id"])
        upcoming = next_run_for(dict(template), self._occurrence_reference(template, now), self._clock)
        try:
            self._store.update_last_run(template_id, now, upcoming)
        except OSError as e:
            log.error(f"[{template_id}] Failed to persist last/next run: {e}")
            return
        log.info(f"[{template_id}] Next run: {format_instant(upcoming) or 'N/A'}")

    # ------------------------------------------------------------
    # Execution body
    # ------------------------------------------------------------

    async def _with_retry(self, template_id: str, what: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self._settings.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except TransientError as e:
                if attempt >= attempts:
                    raise
                log.warning(
                    f"[{template_id}] {what} failed ({e}); retrying in "
                    f"{self._settings.retry_delay_seconds}s (attempt {attempt}/{attempts})"
                )
                await asyncio.sleep(self._settings.retry_delay_seconds)
        raise TransientError(f"{what} failed")

    def _credentials(self, template: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        creds = self._store.find_credentials(template.get("account_id"))
        if not creds:
            return None
        if not all(creds.get(k) for k in ("client_id", "client_secret", "refresh_token")):
            return None
        return creds

    async def _run(self, template: Dict[str, Any], now: datetime) -> ExecutionResult:
        template_id = str(template["id"])

        creds = self._credentials(template)
        if creds is None:
            log.error(
                f"[{template_id}] YouTube credentials not found or incomplete "
                f"(account_id: {template.get('account_id')})"
            )
            return ExecutionResult(False, CREDENTIALS_MISSING, template_id, "credentials missing")

        try:
            token = await self._with_retry(
                template_id,
                "Token refresh",
                lambda: self._api.get_access_token(
                    creds["client_id"], creds["client_secret"], creds["refresh_token"]
                ),
            )
        except AuthError as e:
            log.error(f"[{template_id}] Authorization failed; account must be reconnected: {e}")
            return ExecutionResult(False, AUTH_FAILED, template_id, str(e))
        except TransientError as e:
            log.error(f"[{template_id}] Token refresh failed after retries: {e}")
            return ExecutionResult(False, FAILED, template_id, str(e))

        entries = broadcast_entries(template)
        multi = len(entries) > 1 or bool(entries[0])
        if multi:
            log.info(f"[{template_id}] Multi-broadcast template: {len(entries)} broadcasts")

        created: List[str] = []
        errors: List[str] = []

        for index, entry in enumerate(entries):
            try:
                broadcast = await self._create_one(token, template, entry, index, now, multi=multi)
            except AuthError as e:
                log.error(f"[{template_id}] Authorization failed while creating broadcast: {e}")
                return ExecutionResult(False, AUTH_FAILED, template_id, str(e), broadcast_ids=created)
            except (TransientError, BroadcastApiError) as e:
                log.error(f"[{template_id}] Failed to create broadcast {index + 1}/{len(entries)}: {e}")
                errors.append(str(e))
            else:
                created.append(broadcast.broadcast_id)

            if index < len(entries) - 1 and self._settings.multi_broadcast_pause_seconds:
                await asyncio.sleep(self._settings.multi_broadcast_pause_seconds)

        if not created:
            return ExecutionResult(False, FAILED, template_id, "; ".join(errors) or "no broadcast created")

        log.info(f"[{template_id}] Created {len(created)} broadcast(s)")
        return ExecutionResult(True, EXECUTED, template_id, broadcast_ids=created)

    async def _create_one(
        self,
        token: str,
        template: Dict[str, Any],
        entry: Dict[str, Any],
        index: int,
        now: datetime,
        *,
        multi: bool,
    ) -> CreatedBroadcast:
        template_id = str(template["id"])
        content = {**template, **entry}
        if multi and "description" not in entry:
            content["description"] = ""

        title_sel = self._rotator.select_title(template)
        raw_title = title_sel.value if title_sel is not None else content.get("title") or ""
        if title_sel is not None and title_sel.rotated:
            log.info(
                f"[{template_id}] Using rotated title \"{raw_title}\" "
                f"({title_sel.position}/{title_sel.total})"
            )

        lead = self._settings.broadcast_lead_minutes + index * self._settings.multi_broadcast_stagger_minutes
        request = BroadcastRequest(
            title=render_placeholders(raw_title, now, self._clock),
            description=render_placeholders(content.get("description"), now, self._clock),
            scheduled_start=now + timedelta(minutes=lead),
            privacy=content.get("privacy_status") or "unlisted",
            tags=_tags(content.get("tags")),
            category=str(content.get("category_id") or "20"),
            stream_target=content.get("stream_id") or None,
            auto_start=True,
            auto_stop=True,
        )
        log.info(
            f"[{template_id}] Creating broadcast \"{request.title}\" "
            f"(privacy={request.privacy}, stream={request.stream_target or 'new'})"
        )

        broadcast = await self._with_retry(
            template_id,
            "Broadcast creation",
            lambda: self._api.create_broadcast(token, request),
        )
        self._rotator.commit(title_sel)

        thumbnail = await self._upload_thumbnail(token, template, content, broadcast)

        record = {
            **broadcast.as_record(),
            "template_id": template_id,
            "user_id": template.get("user_id"),
            "account_id": template.get("account_id"),
            "thumbnail": str(thumbnail) if thumbnail else None,
            "thumbnail_folder": self._thumbnail_folder(content),
            "auto_start": request.auto_start,
            "auto_stop": request.auto_stop,
        }
        try:
            self._store.save_broadcast(record)
        except OSError as e:
            log.error(f"[{broadcast.broadcast_id}] Failed to save broadcast settings: {e}")

        if index == 0:
            self._link_relay_stream(template, broadcast)

        return broadcast

    # ------------------------------------------------------------
    # Best-effort steps
    # ------------------------------------------------------------

    @staticmethod
    def _thumbnail_folder(content: Mapping[str, Any]) -> Optional[str]:
        mapping = content.get("stream_key_folder_mapping")
        stream_id = content.get("stream_id")
        if stream_id and isinstance(mapping, Mapping) and stream_id in mapping:
            return mapping[stream_id]
        return content.get("thumbnail_folder")

    async def _upload_thumbnail(
        self,
        token: str,
        template: Mapping[str, Any],
        content: Dict[str, Any],
        broadcast: CreatedBroadcast,
    ) -> Optional[Path]:
        source = dict(content)
        source["thumbnail_folder"] = self._thumbnail_folder(content)

        try:
            selection: Optional[Selection] = self._rotator.select_thumbnail(source)
        except ResourceMissing as e:
            log.warning(f"[{broadcast.broadcast_id}] Thumbnail skipped: {e}")
            return None
        if selection is None:
            return None

        path = Path(selection.value)
        content_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
        try:
            image = path.read_bytes()
            await self._api.upload_thumbnail(token, broadcast.broadcast_id, image, content_type=content_type)
        except (OSError, TransientError, BroadcastApiError, AuthError) as e:
            log.warning(f"[{broadcast.broadcast_id}] Thumbnail upload failed: {e}")
            return None

        self._rotator.commit(selection)
        return path

    def _link_relay_stream(self, template: Mapping[str, Any], broadcast: CreatedBroadcast) -> None:
        stream_id = template.get("relay_stream_id")
        if not stream_id:
            return

        updates: Dict[str, Any] = {
            "broadcast_id": broadcast.broadcast_id,
            "credentials_id": template.get("account_id"),
        }
        if broadcast.ingest_url and broadcast.ingest_key:
            updates["rtmp_url"] = broadcast.ingest_url
            updates["stream_key"] = broadcast.ingest_key

        try:
            if self._store.update_stream(stream_id, updates):
                log.info(f"[{stream_id}] Relay stream linked to broadcast {broadcast.broadcast_id}")
        except OSError as e:
            log.error(f"[{stream_id}] Failed to link relay stream: {e}")
