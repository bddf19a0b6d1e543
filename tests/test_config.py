"""
Unit tests for knowledge_daemon.config
"""

from __future__ import annotations

import os

import pytest

from knowledge_daemon.config import Config, _find_config_file

_ENV_KEYS = (
    "PROJECT_ROOT", "SQLITE_PATH", "MEMORY_FILE_PATH", "REFERENCE_PATTERNS_PATH",
    "SYNC_INTERVAL_MINUTES", "FULL_SYNC_EVERY", "SYNC_FAILURE_THRESHOLD",
    "SYNC_RECOVERY_DELAY_SECONDS", "SHUTDOWN_TIMEOUT_SECONDS",
    "SYNC_QUEUE_TIMEOUT_SECONDS", "BACKUP_KEEP", "WATCH_GRAPH_FILE",
    "LEARN_RECENT_ON_START", "LOG_DIR", "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestDefaults:

    def test_defaults_resolve_against_project_root(self, tmp_path):
        cfg = Config({"project_root": str(tmp_path)})
        assert cfg.PROJECT_ROOT == str(tmp_path)
        assert cfg.SQLITE_PATH == os.path.join(str(tmp_path), ".knowledge-daemon", "knowledge.db")
        assert cfg.MEMORY_FILE_PATH.endswith("memory.jsonl")
        assert cfg.REFERENCE_PATTERNS_PATH == ""
        assert cfg.SYNC_INTERVAL_MINUTES == 15.0
        assert cfg.sync_interval_seconds == 900.0
        assert cfg.FULL_SYNC_EVERY == 4
        assert cfg.SYNC_FAILURE_THRESHOLD == 3
        assert cfg.SYNC_RECOVERY_DELAY_SECONDS == 300.0
        assert cfg.BACKUP_KEEP == 10
        assert cfg.WATCH_GRAPH_FILE is False
        assert cfg.LOG_LEVEL == "INFO"

    def test_absolute_paths_untouched(self, tmp_path):
        db = str(tmp_path / "elsewhere.db")
        assert Config({"sqlite_path": db}).SQLITE_PATH == db


class TestPriority:

    def test_yaml_over_defaults(self):
        cfg = Config({"sync_interval_minutes": 5, "backup_keep": 2, "log_level": "debug"})
        assert cfg.SYNC_INTERVAL_MINUTES == 5.0
        assert cfg.BACKUP_KEEP == 2
        assert cfg.LOG_LEVEL == "DEBUG"

    def test_env_over_yaml(self, monkeypatch):
        monkeypatch.setenv("FULL_SYNC_EVERY", "7")
        monkeypatch.setenv("WATCH_GRAPH_FILE", "yes")
        cfg = Config({"full_sync_every": 2, "watch_graph_file": False})
        assert cfg.FULL_SYNC_EVERY == 7
        assert cfg.WATCH_GRAPH_FILE is True

    def test_env_bool_false(self, monkeypatch):
        monkeypatch.setenv("WATCH_GRAPH_FILE", "off")
        assert Config({"watch_graph_file": True}).WATCH_GRAPH_FILE is False


class TestLoad:

    def test_load_explicit_file(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(f"project_root: {tmp_path}\nlearn_recent_on_start: 0\n",
                        encoding="utf-8")
        cfg = Config.load(str(path))
        assert cfg.LEARN_RECENT_ON_START == 0
        assert cfg.PROJECT_ROOT == str(tmp_path)

    def test_missing_explicit_file_uses_defaults(self, tmp_path):
        cfg = Config.load(str(tmp_path / "absent.yaml"))
        assert cfg.LEARN_RECENT_ON_START == 50

    def test_broken_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("backup_keep: [1,\n", encoding="utf-8")
        assert Config.load(str(path)).BACKUP_KEEP == 10

    def test_discovered_in_cwd(self, tmp_path, monkeypatch):
        (tmp_path / ".knowledge-daemon.yaml").write_text("backup_keep: 4\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        found = _find_config_file()
        assert os.path.realpath(found) == os.path.realpath(tmp_path / ".knowledge-daemon.yaml")
        assert Config.load().BACKUP_KEEP == 4
