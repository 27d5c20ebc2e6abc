from __future__ import annotations

import copy
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from shared.logging.logger import get_logger
from shared.storage.state_publisher import AtomicJsonWriter
from shared.utils.clock import format_instant
from shared.utils.recurrence import is_truthy

_log = get_logger("shared.state_store")

DEFAULT_STATE_PATH = Path("shared/state/streamrelay.json")

_COLLECTIONS = (
    "streams",
    "templates",
    "users",
    "credentials",
    "title_sets",
)
_LOGS = (
    "broadcasts",
    "executions",
    "history",
)


def _now_iso() -> str:
    return format_instant(datetime.now(timezone.utc))


def _empty_state() -> Dict[str, Any]:
    state: Dict[str, Any] = {name: {} for name in _COLLECTIONS}
    state.update({name: [] for name in _LOGS})
    state["rotation_cursors"] = {}
    return state


class StateStore:
    """
    JSON-file persistence for streams, templates and their bookkeeping.

    Every call reads the document, applies its change and writes it back
    atomically under one process-wide lock. Returned records are copies.
    """

    def __init__(
        self,
        path: Path | str = DEFAULT_STATE_PATH,
        *,
        writer: Optional[AtomicJsonWriter] = None,
    ):
        self._path = Path(path)
        self._lock = Lock()
        self._writer = writer or AtomicJsonWriter()

    @property
    def path(self) -> Path:
        return self._path

    # ==================================================================
    # INTERNAL LOAD / SAVE
    # ==================================================================

    def _load_state(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _empty_state()
        try:
            state = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            _log.warning(f"Failed to load state from {self._path}, returning defaults: {e}")
            return _empty_state()

        if not isinstance(state, dict):
            _log.warning(f"State root at {self._path} is not an object; ignoring")
            return _empty_state()

        for name in _COLLECTIONS:
            if not isinstance(state.get(name), dict):
                state[name] = {}
        for name in _LOGS:
            if not isinstance(state.get(name), list):
                state[name] = []
        if not isinstance(state.get("rotation_cursors"), dict):
            state["rotation_cursors"] = {}
        return state

    def _save_state(self, state: Dict[str, Any]) -> None:
        try:
            self._writer.write(self._path, state)
        except OSError as e:
            _log.error(f"Failed to persist state to {self._path}: {e}")
            raise

    def _find(self, collection: str, record_id: Any) -> Optional[Dict[str, Any]]:
        if record_id is None:
            return None
        with self._lock:
            record = self._load_state()[collection].get(str(record_id))
            return copy.deepcopy(record) if record is not None else None

    def _create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(record)
        record["id"] = str(record.get("id") or uuid.uuid4())
        now = _now_iso()
        record.setdefault("created_at", now)
        record["updated_at"] = now

        with self._lock:
            state = self._load_state()
            state[collection][record["id"]] = record
            self._save_state(state)
        return copy.deepcopy(record)

    def _update(
        self,
        collection: str,
        record_id: Any,
        updates: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            state = self._load_state()
            record = state[collection].get(str(record_id))
            if record is None:
                _log.warning(f"[{record_id}] Update skipped: not found in {collection}")
                return None
            record.update(updates)
            record["updated_at"] = _now_iso()
            self._save_state(state)
            return copy.deepcopy(record)

    # ==================================================================
    # STREAMS
    # ==================================================================

    def create_stream(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record.setdefault("status", "offline")
        return self._create("streams", record)

    def find_stream(self, stream_id: Any) -> Optional[Dict[str, Any]]:
        return self._find("streams", stream_id)

    def find_streams(
        self,
        *,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            streams = list(self._load_state()["streams"].values())
        return [
            copy.deepcopy(s) for s in streams
            if (status is None or s.get("status") == status)
            and (user_id is None or s.get("user_id") == user_id)
        ]

    def update_stream(self, stream_id: Any, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update("streams", stream_id, dict(updates))

    def update_status(
        self,
        stream_id: Any,
        status: str,
        start_time: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        now = _now_iso()
        updates: Dict[str, Any] = {"status": status, "status_updated_at": now}
        if start_time is not None:
            updates["start_time"] = format_instant(start_time)
        elif status == "live":
            updates["start_time"] = now
        else:
            updates["start_time"] = None
        return self._update("streams", stream_id, updates)

    # ==================================================================
    # TEMPLATES
    # ==================================================================

    def create_template(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._create("templates", record)

    def find_template(self, template_id: Any) -> Optional[Dict[str, Any]]:
        return self._find("templates", template_id)

    def find_recurring_templates(self) -> List[Dict[str, Any]]:
        with self._lock:
            templates = list(self._load_state()["templates"].values())
        return [
            copy.deepcopy(t) for t in templates
            if is_truthy(t.get("recurring_enabled"))
        ]

    def update_last_run(
        self,
        template_id: Any,
        last_run_at: datetime,
        next_run_at: Optional[datetime],
    ) -> Optional[Dict[str, Any]]:
        return self._update("templates", template_id, {
            "last_run_at": format_instant(last_run_at),
            "next_run_at": format_instant(next_run_at),
        })

    def update_next_run(
        self,
        template_id: Any,
        next_run_at: Optional[datetime],
    ) -> Optional[Dict[str, Any]]:
        return self._update("templates", template_id, {
            "next_run_at": format_instant(next_run_at),
        })

    # ==================================================================
    # USERS / CREDENTIALS / TITLE SETS
    # ==================================================================

    def create_user(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._create("users", record)

    def find_user(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return self._find("users", user_id)

    def create_credentials(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._create("credentials", record)

    def find_credentials(self, credentials_id: Any) -> Optional[Dict[str, Any]]:
        return self._find("credentials", credentials_id)

    def create_title_set(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._create("title_sets", record)

    def find_title_set(self, title_set_id: Any) -> Optional[Dict[str, Any]]:
        return self._find("title_sets", title_set_id)

    # ==================================================================
    # ROTATION CURSORS
    # ==================================================================

    def get_rotation_cursor(self, owner: str, key: str) -> int:
        with self._lock:
            cursors = self._load_state()["rotation_cursors"]
            value = cursors.get(str(owner), {}).get(key, 0)
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return 0

    def set_rotation_cursor(self, owner: str, key: str, value: int) -> None:
        with self._lock:
            state = self._load_state()
            state["rotation_cursors"].setdefault(str(owner), {})[key] = int(value)
            self._save_state(state)

    # ==================================================================
    # APPEND-ONLY LOGS
    # ==================================================================

    def _append(self, name: str, record: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(record)
        record["id"] = str(record.get("id") or uuid.uuid4())
        record.setdefault("created_at", _now_iso())
        with self._lock:
            state = self._load_state()
            state[name].append(record)
            self._save_state(state)
        return record

    def _list(self, name: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._load_state()[name])

    def save_broadcast(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._append("broadcasts", record)

    def list_broadcasts(self) -> List[Dict[str, Any]]:
        return self._list("broadcasts")

    def append_execution(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._append("executions", record)

    def update_execution(self, execution_id: str, updates: Dict[str, Any]) -> None:
        updates = dict(updates)
        updates.setdefault("updated_at", _now_iso())
        with self._lock:
            state = self._load_state()
            for entry in state["executions"]:
                if entry.get("id") == execution_id:
                    entry.update(updates)
                    break
            self._save_state(state)

    def list_executions(self) -> List[Dict[str, Any]]:
        return self._list("executions")

    def append_history(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._append("history", record)

    def list_history(self) -> List[Dict[str, Any]]:
        return self._list("history")
