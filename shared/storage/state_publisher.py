"""
Atomic JSON snapshot writer.

Writes go to a temp file in the target directory, are fsynced, then
replace the target so readers never observe a partial document.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from shared.logging.logger import get_logger

log = get_logger("shared.state_publisher")


class AtomicJsonWriter:
    """
    Atomic snapshot writer with an optional mirror directory
    (e.g. a backup mount picked up by an external sync job).
    """

    ENV_MIRROR_KEY = "STREAMRELAY_STATE_MIRROR_ROOT"

    def __init__(self, mirror_root: Path | str | None = None):
        env_root = os.getenv(self.ENV_MIRROR_KEY)
        root = mirror_root or env_root
        self._mirror_root: Optional[Path] = Path(root) if root else None

        if self._mirror_root:
            self._mirror_root.mkdir(parents=True, exist_ok=True)
            log.info(f"State mirror root: {self._mirror_root}")

    # ------------------------------------------------------------------
    # Atomic writer
    # ------------------------------------------------------------------

    @staticmethod
    def _write_atomic(path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, indent=2, default=str)
        path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            "w", dir=path.parent, delete=False, encoding="utf-8"
        ) as tmp:
            tmp.write(serialized)
            tmp.flush()
            os.fsync(tmp.fileno())
            temp_path = Path(tmp.name)

        temp_path.replace(path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def mirror_root(self) -> Optional[Path]:
        return self._mirror_root

    def write(self, path: Path | str, payload: Any) -> None:
        """
        Write the snapshot to `path`; mirror failures are logged and ignored.
        Primary write failures propagate.
        """
        target = Path(path)
        self._write_atomic(target, payload)

        if not self._mirror_root:
            return

        mirror = self._mirror_root / target.name
        try:
            self._write_atomic(mirror, payload)
        except OSError as e:
            log.warning(f"Failed to mirror state snapshot {target.name}: {e}")
