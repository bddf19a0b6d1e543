"""
Daemon health check.

Used by the CLI (``knowledge-daemon health``) and by the external HTTP
layer's health endpoint.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import asdict, dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class DaemonHealth:
    """Overall daemon health status."""

    store_ok: bool = False
    db_path: str = ""
    entities: int = 0
    error_solutions: int = 0
    commits: int = 0
    code_patterns: int = 0
    graph_path: str = ""
    graph_exists: bool = False
    git_available: bool = False
    scheduler_running: bool = False
    watcher_running: bool = False
    consecutive_sync_failures: int = 0
    recovery_pending: bool = False
    last_sync_at: Optional[str] = None
    last_sync_status: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.store_ok and not self.recovery_pending


def check(store, engine=None, scheduler=None, source=None, watcher=None) -> DaemonHealth:
    """
    Check the health of every daemon component.

    Parameters
    ----------
    store:
        The :class:`~knowledge_daemon.store.KnowledgeStore`.
    engine, scheduler, source, watcher:
        Optional sync engine, scheduler, commit source and graph watcher;
        missing components are reported as not running.

    Returns
    -------
    DaemonHealth
        Aggregated health status.
    """
    health = DaemonHealth(db_path=store.db_path)

    try:
        stats = store.stats()
    except sqlite3.Error as exc:
        logger.warning("[Health] Store unreachable: %s", exc)
    else:
        health.store_ok = True
        health.entities = stats.entities
        health.error_solutions = stats.error_solutions
        health.commits = stats.commits
        health.code_patterns = stats.code_patterns
        last = store.get_last_sync()
        if last is not None:
            health.last_sync_at = last.synced_at
            health.last_sync_status = last.status

    if engine is not None:
        health.graph_path = engine.graph_path
        health.graph_exists = os.path.isfile(engine.graph_path)

    if source is not None and hasattr(source, "is_repo"):
        health.git_available = bool(source.is_repo())

    if scheduler is not None:
        health.scheduler_running = scheduler.is_running
        health.consecutive_sync_failures = scheduler.consecutive_failures
        health.recovery_pending = scheduler.recovery_pending

    if watcher is not None:
        health.watcher_running = watcher.is_running

    return health


def format_health(health: DaemonHealth) -> str:
    """Format a :class:`DaemonHealth` into a human-readable report."""
    def _status(ok: bool) -> str:
        return "OK" if ok else "NOT OK"

    def _yes(flag: bool) -> str:
        return "Yes" if flag else "No"

    lines = [
        "",
        "Knowledge Daemon Health Report",
        "=" * 40,
        "",
        "Store:",
        f"  Status        : {_status(health.store_ok)}",
        f"  Database      : {health.db_path}",
        f"  Entities      : {health.entities}",
        f"  Solutions     : {health.error_solutions}",
        f"  Commits       : {health.commits}",
        f"  Patterns      : {health.code_patterns}",
        "",
        "Graph sync:",
        f"  Graph file    : {health.graph_path or 'n/a'}"
        f"{'' if health.graph_exists else ' (absent)'}",
        f"  Last sync     : {health.last_sync_at or 'never'}"
        f"{' [' + health.last_sync_status + ']' if health.last_sync_status else ''}",
        f"  Scheduler     : {_yes(health.scheduler_running)}",
        f"  Failures      : {health.consecutive_sync_failures}"
        f"{' (recovery pending)' if health.recovery_pending else ''}",
        f"  Watcher       : {_yes(health.watcher_running)}",
        "",
        "Version control:",
        f"  Git available : {_yes(health.git_available)}",
        "",
    ]
    return "\n".join(lines)


def to_dict(health: DaemonHealth) -> dict:
    data = asdict(health)
    data["healthy"] = health.healthy
    return data


def to_json(health: DaemonHealth) -> str:
    """Serialise a :class:`DaemonHealth` to JSON."""
    return json.dumps(to_dict(health), indent=2)
