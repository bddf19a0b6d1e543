"""
Unit tests for knowledge_daemon.health
"""

from __future__ import annotations

import json
import sqlite3
from unittest.mock import MagicMock

import pytest

from knowledge_daemon import health as health_mod
from knowledge_daemon.store import KnowledgeStore
from knowledge_daemon.store.models import SyncLogEntry


@pytest.fixture
def store(tmp_path):
    return KnowledgeStore(str(tmp_path / "k.db"))


class TestCheck:

    def test_store_only(self, store):
        store.upsert_entity("auth", "module")
        h = health_mod.check(store)
        assert h.store_ok is True
        assert h.entities == 1
        assert h.db_path == store.db_path
        assert h.last_sync_at is None
        assert h.scheduler_running is False
        assert h.healthy

    def test_components(self, store, tmp_path):
        graph = tmp_path / "memory.jsonl"
        graph.write_text("", encoding="utf-8")
        engine = MagicMock(graph_path=str(graph))
        scheduler = MagicMock(is_running=True, consecutive_failures=1,
                              recovery_pending=False)
        source = MagicMock()
        source.is_repo.return_value = True
        watcher = MagicMock(is_running=True)

        h = health_mod.check(store, engine=engine, scheduler=scheduler,
                             source=source, watcher=watcher)
        assert h.graph_exists is True
        assert h.git_available is True
        assert h.scheduler_running is True
        assert h.watcher_running is True
        assert h.consecutive_sync_failures == 1
        assert h.healthy

    def test_recovery_pending_is_unhealthy(self, store):
        scheduler = MagicMock(is_running=True, consecutive_failures=3,
                              recovery_pending=True)
        assert health_mod.check(store, scheduler=scheduler).healthy is False

    def test_unreachable_store(self):
        store = MagicMock(db_path="/nowhere/k.db")
        store.stats.side_effect = sqlite3.OperationalError("unable to open database")
        h = health_mod.check(store)
        assert h.store_ok is False
        assert h.healthy is False

    def test_last_sync_reported(self, store):
        store.add_sync_log(SyncLogEntry("full", "to_graph", "success"))
        h = health_mod.check(store)
        assert h.last_sync_status == "success"
        assert h.last_sync_at


class TestFormatting:

    def test_format_health(self, store):
        text = health_mod.format_health(health_mod.check(store))
        assert "Knowledge Daemon Health Report" in text
        assert "Status        : OK" in text
        assert "Last sync     : never" in text

    def test_to_json(self, store):
        data = json.loads(health_mod.to_json(health_mod.check(store)))
        assert data["store_ok"] is True
        assert data["healthy"] is True
        assert "consecutive_sync_failures" in data
