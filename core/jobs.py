from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from shared.logging.logger import get_logger
from shared.storage.state_store import StateStore
from shared.utils.clock import format_instant

log = get_logger("core.jobs")


class ExecutionLockSet:
    """
    Template ids with an execution in flight.

    Membership is the only thing that keeps two overlapping poll cycles
    from creating the same broadcast twice. Acquire and release happen on
    the event loop thread, so a plain set is enough.
    """

    def __init__(self):
        self._held: Set[str] = set()

        # --------------------------------------------------
        # METRICS (READ-ONLY)
        # --------------------------------------------------
        self._metrics = {
            "acquired": 0,
            "rejected": 0,
            "released": 0,
        }

    def acquire(self, template_id: Any) -> bool:
        key = str(template_id)
        if key in self._held:
            self._metrics["rejected"] += 1
            log.debug(f"[{key}] Execution lock busy")
            return False
        self._held.add(key)
        self._metrics["acquired"] += 1
        return True

    def release(self, template_id: Any) -> None:
        key = str(template_id)
        if key in self._held:
            self._held.discard(key)
            self._metrics["released"] += 1

    def held(self, template_id: Any) -> bool:
        return str(template_id) in self._held

    def snapshot(self) -> List[str]:
        return sorted(self._held)

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    def __len__(self) -> int:
        return len(self._held)


# ----------------------------------------------------------------------
# Execution history
# ----------------------------------------------------------------------

def start_execution(
    store: StateStore,
    template_id: str,
    *,
    started_at: datetime,
    trigger: str = "schedule",
) -> str:
    record = store.append_execution({
        "template_id": template_id,
        "trigger": trigger,
        "status": "running",
        "started_at": format_instant(started_at),
        "completed_at": None,
    })
    return record["id"]


def finish_execution(
    store: StateStore,
    execution_id: str,
    *,
    status: str,
    code: str,
    completed_at: datetime,
    error: Optional[str] = None,
    broadcast_ids: Optional[List[str]] = None,
) -> None:
    updates: Dict[str, Any] = {
        "status": status,
        "code": code,
        "completed_at": format_instant(completed_at),
        "broadcast_ids": list(broadcast_ids or []),
    }
    if error:
        updates["error"] = error
    try:
        store.update_execution(execution_id, updates)
    except OSError as e:
        log.error(f"Failed to record execution {execution_id} result: {e}")
