"""Application configuration and engine settings."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from flowtask.models import AppConfig, EngineSettings, QuietHours

log = logging.getLogger(__name__)

_CONFIG_DIR = Path.home() / ".config" / "flowtask"
_DB_DIR = Path.home() / ".local" / "share" / "flowtask"

_CONFIG_FILE = _CONFIG_DIR / "config.json"

# Keys in the settings store that drive the nag sweep.
NAG_INTERVAL_KEY = "reminder_nag_interval"
GPU_IDLE_INTERVAL_KEY = "gpu_idle_interval"
GPU_QUIET_HOURS_KEY = "gpu_quiet_hours"

KNOWN_SETTINGS = (NAG_INTERVAL_KEY, GPU_IDLE_INTERVAL_KEY, GPU_QUIET_HOURS_KEY)


def load_config() -> AppConfig:
    """Load config from disk, returning defaults if none exists."""
    if _CONFIG_FILE.exists():
        try:
            data = json.loads(_CONFIG_FILE.read_text())
            return AppConfig(**data)
        except (json.JSONDecodeError, TypeError, ValidationError):
            log.warning("Ignoring unreadable config file %s", _CONFIG_FILE)
    return AppConfig()


def save_config(config: AppConfig) -> Path:
    """Write config to disk. Returns the config file path."""
    _CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    _CONFIG_FILE.write_text(config.model_dump_json(indent=2))
    return _CONFIG_FILE


def get_db_path() -> Path:
    """Resolve the database path from config (or default)."""
    config = load_config()
    if config.db_path is not None:
        p = Path(config.db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        return p
    # Default
    _DB_DIR.mkdir(parents=True, exist_ok=True)
    return _DB_DIR / "flowtask.db"


def set_db_path(path: str) -> AppConfig:
    """Set a custom database path and save config."""
    resolved = Path(path).expanduser().resolve()
    # Ensure it ends with a filename
    if resolved.is_dir():
        resolved = resolved / "flowtask.db"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    config = load_config()
    config.db_path = str(resolved)
    save_config(config)
    return config


def reset_db_path() -> AppConfig:
    """Reset to the default local database path."""
    config = load_config()
    config.db_path = None
    save_config(config)
    return config


# ---------------------------------------------------------------------------
# Engine settings (stored in the database settings table)
# ---------------------------------------------------------------------------


def _positive_int(raw: Any, default: int, key: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        log.warning("Setting %s=%r is not a number; using %d", key, raw, default)
        return default
    if value < 1:
        log.warning("Setting %s=%r must be at least 1; using %d", key, raw, default)
        return default
    return value


def _quiet_hours(raw: Any) -> Optional[QuietHours]:
    if raw is None:
        return None
    try:
        return QuietHours.model_validate(raw)
    except ValidationError:
        log.warning("Setting %s=%r is malformed; quiet hours disabled", GPU_QUIET_HOURS_KEY, raw)
        return None


def load_engine_settings(conn: sqlite3.Connection) -> EngineSettings:
    """Read the recognised settings keys into a typed object.

    Missing keys fall back to the defaults; an explicit JSON ``null`` for
    ``gpu_quiet_hours`` turns quiet hours off.
    """
    from flowtask import db

    defaults = EngineSettings()
    settings = EngineSettings(
        nag_interval_minutes=_positive_int(
            db.get_setting(conn, NAG_INTERVAL_KEY, defaults.nag_interval_minutes),
            defaults.nag_interval_minutes,
            NAG_INTERVAL_KEY,
        ),
        gpu_idle_interval_minutes=_positive_int(
            db.get_setting(conn, GPU_IDLE_INTERVAL_KEY, defaults.gpu_idle_interval_minutes),
            defaults.gpu_idle_interval_minutes,
            GPU_IDLE_INTERVAL_KEY,
        ),
    )
    if db.has_setting(conn, GPU_QUIET_HOURS_KEY):
        settings.gpu_quiet_hours = _quiet_hours(db.get_setting(conn, GPU_QUIET_HOURS_KEY))
    return settings
