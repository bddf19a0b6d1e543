"""
Configuration: loads settings from .knowledge-daemon.yaml, environment
variables, and built-in defaults (priority: CLI args > env > YAML > defaults).
"""

from __future__ import annotations

import os

import yaml


_DEFAULTS = {
    "sqlite_path": ".knowledge-daemon/knowledge.db",
    "memory_file_path": ".knowledge-daemon/memory.jsonl",
    "project_root": ".",
    "reference_patterns_path": "",
    "sync_interval_minutes": 15.0,
    "full_sync_every": 4,
    "sync_failure_threshold": 3,
    "sync_recovery_delay_seconds": 300.0,
    "shutdown_timeout_seconds": 30.0,
    "sync_queue_timeout_seconds": 5.0,
    "backup_keep": 10,
    "learn_recent_on_start": 50,
    "watch_graph_file": False,
    "log_dir": ".knowledge-daemon/logs",
    "log_level": "INFO",
}

_CONFIG_FILENAMES = [".knowledge-daemon.yaml", ".knowledge-daemon.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Daemon configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .knowledge-daemon.yaml config file
    4. Built-in defaults

    Relative paths are resolved against ``PROJECT_ROOT``.
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _get_bool(env_key: str, yaml_key: str, default: bool) -> bool:
            env_val = os.getenv(env_key)
            if env_val is not None:
                return env_val.lower() in ("1", "true", "yes")
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return bool(yaml_val)
            return default

        self.PROJECT_ROOT = os.path.abspath(
            _get("PROJECT_ROOT", "project_root", _DEFAULTS["project_root"]))

        def _path(value: str) -> str:
            if not value:
                return ""
            value = os.path.expanduser(value)
            if os.path.isabs(value):
                return value
            return os.path.join(self.PROJECT_ROOT, value)

        # Persisted state
        self.SQLITE_PATH = _path(_get("SQLITE_PATH", "sqlite_path",
                                      _DEFAULTS["sqlite_path"]))
        self.MEMORY_FILE_PATH = _path(_get("MEMORY_FILE_PATH", "memory_file_path",
                                           _DEFAULTS["memory_file_path"]))
        self.REFERENCE_PATTERNS_PATH = _path(_get(
            "REFERENCE_PATTERNS_PATH", "reference_patterns_path",
            _DEFAULTS["reference_patterns_path"]))

        # Scheduler
        self.SYNC_INTERVAL_MINUTES = _get("SYNC_INTERVAL_MINUTES",
                                          "sync_interval_minutes",
                                          _DEFAULTS["sync_interval_minutes"],
                                          cast=float)
        self.FULL_SYNC_EVERY = _get("FULL_SYNC_EVERY", "full_sync_every",
                                    _DEFAULTS["full_sync_every"], cast=int)
        self.SYNC_FAILURE_THRESHOLD = _get("SYNC_FAILURE_THRESHOLD",
                                           "sync_failure_threshold",
                                           _DEFAULTS["sync_failure_threshold"],
                                           cast=int)
        self.SYNC_RECOVERY_DELAY_SECONDS = _get(
            "SYNC_RECOVERY_DELAY_SECONDS", "sync_recovery_delay_seconds",
            _DEFAULTS["sync_recovery_delay_seconds"], cast=float)
        self.SHUTDOWN_TIMEOUT_SECONDS = _get(
            "SHUTDOWN_TIMEOUT_SECONDS", "shutdown_timeout_seconds",
            _DEFAULTS["shutdown_timeout_seconds"], cast=float)
        self.SYNC_QUEUE_TIMEOUT_SECONDS = _get(
            "SYNC_QUEUE_TIMEOUT_SECONDS", "sync_queue_timeout_seconds",
            _DEFAULTS["sync_queue_timeout_seconds"], cast=float)

        # Graph file
        self.BACKUP_KEEP = _get("BACKUP_KEEP", "backup_keep",
                                _DEFAULTS["backup_keep"], cast=int)
        self.WATCH_GRAPH_FILE = _get_bool("WATCH_GRAPH_FILE", "watch_graph_file",
                                          _DEFAULTS["watch_graph_file"])

        # Startup
        self.LEARN_RECENT_ON_START = _get("LEARN_RECENT_ON_START",
                                          "learn_recent_on_start",
                                          _DEFAULTS["learn_recent_on_start"],
                                          cast=int)

        # Logging
        self.LOG_DIR = _path(_get("LOG_DIR", "log_dir", _DEFAULTS["log_dir"]))
        self.LOG_LEVEL = _get("LOG_LEVEL", "log_level",
                              _DEFAULTS["log_level"]).upper()

    @property
    def sync_interval_seconds(self) -> float:
        return self.SYNC_INTERVAL_MINUTES * 60.0

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
