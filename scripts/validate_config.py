"""
Configuration validation script.

Validates the system configuration document and the recurrence settings of
every stream and broadcast template in the state file.

Design rules:
- No runtime startup
- Validation only (no mutation)
- Unknown fields are ignored
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from shared.config.system import load_system_config, validate_system_document
from shared.utils.recurrence import is_truthy, validate_recurring_config


# ------------------------------------------------------------
# Paths
# ------------------------------------------------------------

ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "shared" / "config"


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ValueError(f"{path.name}: invalid JSON ({e})") from e

    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: root JSON value must be an object")
    return data


def _error(msg: str):
    print(f"[CONFIG ERROR] {msg}", file=sys.stderr)


# ------------------------------------------------------------
# Validators
# ------------------------------------------------------------

def validate_system_config(path: Path) -> List[str]:
    try:
        raw = _load_json(path)
    except ValueError as e:
        return [str(e)]
    return [f"{path.name}: {problem}" for problem in validate_system_document(raw)]


def _recurrence_fields(record: Dict[str, Any], kind: str) -> Dict[str, Any]:
    if kind == "template":
        return {
            "recurring_enabled": record.get("recurring_enabled"),
            "recurring_pattern": record.get("recurring_pattern"),
            "recurring_time": record.get("recurring_time"),
            "recurring_days": record.get("recurring_days"),
        }
    # streams keep the pattern in schedule_type and days in schedule_days
    return {
        "recurring_enabled": record.get("recurring_enabled"),
        "recurring_pattern": record.get("schedule_type"),
        "recurring_time": record.get("recurring_time"),
        "recurring_days": record.get("schedule_days"),
    }


def validate_state(path: Path) -> List[str]:
    try:
        state = _load_json(path)
    except ValueError as e:
        return [str(e)]

    problems: List[str] = []
    for collection, kind in (("templates", "template"), ("streams", "stream")):
        records = state.get(collection) or {}
        if not isinstance(records, dict):
            problems.append(f"state: '{collection}' must be an object")
            continue
        for record_id, record in records.items():
            if not isinstance(record, dict) or not is_truthy(record.get("recurring_enabled")):
                continue
            for error in validate_recurring_config(_recurrence_fields(record, kind)):
                problems.append(f"{kind} {record_id}: {error}")
    return problems


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    system_path = Path(argv[0]) if argv else CONFIG_DIR / "system.json"

    problems = validate_system_config(system_path)

    cfg = load_system_config(path=system_path)
    state_path = Path(argv[1]) if len(argv) > 1 else Path(cfg.state_path)
    problems.extend(validate_state(state_path))

    for problem in problems:
        _error(problem)

    if problems:
        print("Configuration validation failed.", file=sys.stderr)
        return 1

    print("Configuration validation passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
