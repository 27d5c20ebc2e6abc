from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

from jsonschema import Draft7Validator

from shared.logging.logger import get_logger

log = get_logger("shared.config.system")

_CONFIG_PATH = Path(__file__).parent / "system.json"

T = TypeVar("T")


# ======================================================================
# Sections
# ======================================================================

@dataclass
class SupervisorSettings:
    start_confirm_seconds: float = 2.0
    restart_delay_seconds: float = 3.0
    max_retry_attempts: int = 3
    safety_floor_seconds: float = 60.0
    stop_grace_seconds: float = 2.0
    health_check_interval_seconds: float = 3600.0
    cleanup_interval_seconds: float = 14400.0


@dataclass
class ScheduleSettings:
    poll_interval_seconds: float = 120.0
    initial_delay_seconds: float = 5.0
    cooldown_minutes: int = 10
    grace_window_minutes: int = 5
    early_window_minutes: int = 2
    catch_up_ceiling_minutes: int = 60
    max_retries: int = 3
    retry_delay_seconds: float = 30.0
    broadcast_lead_minutes: int = 10
    multi_broadcast_stagger_minutes: int = 2
    multi_broadcast_pause_seconds: float = 2.0


@dataclass
class TerminationSettings:
    duration_check_interval_seconds: float = 60.0
    force_stop_overdue_seconds: float = 30.0


@dataclass
class TriggerSettings:
    poll_interval_seconds: float = 60.0
    trigger_window_minutes: int = 1
    trigger_cooldown_minutes: int = 10
    one_off_early_seconds: float = 30.0
    one_off_catch_up_minutes: int = 60


@dataclass
class MonitorSettings:
    status_sync_interval_seconds: float = 60.0
    endpoint_failure_threshold: int = 3
    endpoint_reconnect_delay_seconds: float = 5.0
    endpoint_min_remaining_seconds: float = 120.0


@dataclass
class SystemConfig:
    timezone: str = "Asia/Jakarta"
    fallback_utc_offset_hours: int = 7
    ffmpeg_path: str = "ffmpeg"
    temp_dir: str = "temp"
    media_root: str = "."
    state_path: str = "shared/state/streamrelay.json"
    default_live_limit: int = 0
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    termination: TerminationSettings = field(default_factory=TerminationSettings)
    triggers: TriggerSettings = field(default_factory=TriggerSettings)
    monitors: MonitorSettings = field(default_factory=MonitorSettings)


_SECTIONS: Dict[str, Type[Any]] = {
    "supervisor": SupervisorSettings,
    "schedule": ScheduleSettings,
    "termination": TerminationSettings,
    "triggers": TriggerSettings,
    "monitors": MonitorSettings,
}

_SCALARS = (
    "timezone",
    "fallback_utc_offset_hours",
    "ffmpeg_path",
    "temp_dir",
    "media_root",
    "state_path",
    "default_live_limit",
)


def _number_schema(cls: Type[Any]) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {f.name: {"type": "number", "minimum": 0} for f in fields(cls)},
    }


SYSTEM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "timezone": {"type": "string", "minLength": 1},
        "fallback_utc_offset_hours": {"type": "integer", "minimum": -12, "maximum": 14},
        "ffmpeg_path": {"type": "string", "minLength": 1},
        "temp_dir": {"type": "string", "minLength": 1},
        "media_root": {"type": "string", "minLength": 1},
        "state_path": {"type": "string", "minLength": 1},
        "default_live_limit": {"type": "integer", "minimum": 0},
        **{name: _number_schema(cls) for name, cls in _SECTIONS.items()},
    },
}


# ======================================================================
# Loading
# ======================================================================

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.warning(f"system.json not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning(f"Failed to load system.json ({e}); using defaults")
        return {}

    if not isinstance(data, dict):
        log.warning("system.json root is not an object; using defaults")
        return {}
    return data


def validate_system_document(raw: Dict[str, Any]) -> list[str]:
    validator = Draft7Validator(SYSTEM_SCHEMA)
    problems = []
    for err in sorted(validator.iter_errors(raw), key=lambda e: list(e.path)):
        loc = "/".join(str(p) for p in err.path) or "<root>"
        problems.append(f"{loc}: {err.message}")
    return problems


def _coerce(value: Any, default: Any, name: str) -> Any:
    if value is None:
        return default
    try:
        if isinstance(default, bool):
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError):
        log.warning(f"Invalid value for '{name}' ({value!r}); using default {default!r}")
        return default


def _load_section(cls: Type[T], raw: Any, section: str) -> T:
    if not isinstance(raw, dict):
        return cls()
    defaults = cls()
    values = {}
    for f in fields(cls):
        default = getattr(defaults, f.name)
        value = _coerce(raw.get(f.name), default, f"{section}.{f.name}")
        if isinstance(value, (int, float)) and value < 0:
            log.warning(f"'{section}.{f.name}' must not be negative; using default {default!r}")
            value = default
        values[f.name] = value
    return cls(**values)


def _apply_env_overrides(cfg: SystemConfig) -> SystemConfig:
    ffmpeg = os.getenv("STREAMRELAY_FFMPEG_PATH")
    if ffmpeg:
        cfg.ffmpeg_path = ffmpeg
    state_path = os.getenv("STREAMRELAY_STATE_PATH")
    if state_path:
        cfg.state_path = state_path
    tz_name = os.getenv("STREAMRELAY_TIMEZONE")
    if tz_name:
        cfg.timezone = tz_name
    return cfg


def load_system_config(
    raw: Optional[Dict[str, Any]] = None,
    *,
    path: Optional[Path | str] = None,
    apply_env: bool = True,
) -> SystemConfig:
    if raw is None:
        env_path = os.getenv("STREAMRELAY_SYSTEM_CONFIG")
        raw = _load_json(Path(path or env_path or _CONFIG_PATH))

    for problem in validate_system_document(raw):
        log.warning(f"system.json validation warning at {problem}")

    defaults = SystemConfig()
    scalars = {
        name: _coerce(raw.get(name), getattr(defaults, name), name)
        for name in _SCALARS
    }
    if scalars["default_live_limit"] < 0:
        scalars["default_live_limit"] = defaults.default_live_limit

    sections = {
        name: _load_section(cls, raw.get(name), name)
        for name, cls in _SECTIONS.items()
    }

    cfg = SystemConfig(**scalars, **sections)
    return _apply_env_overrides(cfg) if apply_env else cfg
