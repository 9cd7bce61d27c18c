"""Tests for the config module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from flowtask import db
from flowtask.config import (
    GPU_IDLE_INTERVAL_KEY,
    GPU_QUIET_HOURS_KEY,
    NAG_INTERVAL_KEY,
    get_db_path,
    load_config,
    load_engine_settings,
    reset_db_path,
    save_config,
    set_db_path,
)
from flowtask.models import AppConfig, QuietHours


def _patch_config_paths(tmp_path: Path):
    """Return context managers that redirect config and data dirs to tmp_path."""
    cfg_dir = tmp_path / "config"
    cfg_file = cfg_dir / "config.json"
    return (
        patch("flowtask.config._CONFIG_DIR", cfg_dir),
        patch("flowtask.config._CONFIG_FILE", cfg_file),
        patch("flowtask.config._DB_DIR", tmp_path / "data"),
    )


class TestLoadSaveConfig:
    def test_load_default_when_missing(self, tmp_path: Path) -> None:
        p1, p2, p3 = _patch_config_paths(tmp_path)
        with p1, p2, p3:
            config = load_config()
            assert config.db_path is None
            assert config.hook_port == 62222

    def test_save_and_load_roundtrip(self, tmp_path: Path) -> None:
        p1, p2, p3 = _patch_config_paths(tmp_path)
        with p1, p2, p3:
            cfg = AppConfig(db_path="/tmp/test.db", hook_port=9000, log_file="/tmp/ft.log")
            path = save_config(cfg)
            assert path.exists()

            loaded = load_config()
            assert loaded.db_path == "/tmp/test.db"
            assert loaded.hook_port == 9000
            assert loaded.log_file == "/tmp/ft.log"

    def test_load_handles_corrupt_file(self, tmp_path: Path) -> None:
        p1, p2, p3 = _patch_config_paths(tmp_path)
        with p1, p2, p3:
            cfg_dir = tmp_path / "config"
            cfg_dir.mkdir(parents=True, exist_ok=True)
            (cfg_dir / "config.json").write_text("not valid json{{{")
            config = load_config()
            assert config.db_path is None

    def test_load_handles_invalid_values(self, tmp_path: Path) -> None:
        p1, p2, p3 = _patch_config_paths(tmp_path)
        with p1, p2, p3:
            cfg_dir = tmp_path / "config"
            cfg_dir.mkdir(parents=True, exist_ok=True)
            (cfg_dir / "config.json").write_text('{"hook_port": "not a port"}')
            assert load_config().hook_port == 62222


class TestDbPath:
    def test_default_path(self, tmp_path: Path) -> None:
        p1, p2, p3 = _patch_config_paths(tmp_path)
        with p1, p2, p3:
            path = get_db_path()
            assert path == tmp_path / "data" / "flowtask.db"
            assert path.parent.is_dir()

    def test_set_db_path(self, tmp_path: Path) -> None:
        p1, p2, p3 = _patch_config_paths(tmp_path)
        with p1, p2, p3:
            custom = tmp_path / "custom" / "my.db"
            cfg = set_db_path(str(custom))
            assert cfg.db_path == str(custom)
            assert get_db_path() == custom

    def test_set_db_path_directory(self, tmp_path: Path) -> None:
        p1, p2, p3 = _patch_config_paths(tmp_path)
        with p1, p2, p3:
            d = tmp_path / "somedir"
            d.mkdir()
            cfg = set_db_path(str(d))
            assert cfg.db_path is not None
            assert cfg.db_path.endswith("flowtask.db")

    def test_reset_db_path(self, tmp_path: Path) -> None:
        p1, p2, p3 = _patch_config_paths(tmp_path)
        with p1, p2, p3:
            set_db_path(str(tmp_path / "custom.db"))
            cfg = reset_db_path()
            assert cfg.db_path is None


class TestEngineSettings:
    def test_defaults_when_unset(self, conn) -> None:
        settings = load_engine_settings(conn)
        assert settings.nag_interval_minutes == 15
        assert settings.gpu_idle_interval_minutes == 15
        assert settings.gpu_quiet_hours == QuietHours(start=23, end=8)

    def test_stored_values(self, conn) -> None:
        with db.transaction(conn):
            db.set_setting(conn, NAG_INTERVAL_KEY, 5)
            db.set_setting(conn, GPU_IDLE_INTERVAL_KEY, "30")
            db.set_setting(conn, GPU_QUIET_HOURS_KEY, {"start": 22, "end": 6})
        settings = load_engine_settings(conn)
        assert settings.nag_interval_minutes == 5
        assert settings.gpu_idle_interval_minutes == 30
        assert settings.gpu_quiet_hours == QuietHours(start=22, end=6)

    def test_invalid_interval_falls_back(self, conn) -> None:
        with db.transaction(conn):
            db.set_setting(conn, NAG_INTERVAL_KEY, "often")
            db.set_setting(conn, GPU_IDLE_INTERVAL_KEY, 0)
        settings = load_engine_settings(conn)
        assert settings.nag_interval_minutes == 15
        assert settings.gpu_idle_interval_minutes == 15

    def test_null_quiet_hours_disables(self, conn) -> None:
        with db.transaction(conn):
            db.set_setting(conn, GPU_QUIET_HOURS_KEY, None)
        assert load_engine_settings(conn).gpu_quiet_hours is None

    def test_malformed_quiet_hours_disables(self, conn) -> None:
        with db.transaction(conn):
            db.set_setting(conn, GPU_QUIET_HOURS_KEY, {"start": "late"})
        assert load_engine_settings(conn).gpu_quiet_hours is None
