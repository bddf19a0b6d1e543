"""
Tests for knowledge_daemon.sync.engine

Exercises every pass kind against real temporary stores and graph files.
"""

from __future__ import annotations

import json
import threading
import time
from unittest.mock import patch

import pytest

from knowledge_daemon.errors import SyncInProgressError
from knowledge_daemon.store import KnowledgeStore
from knowledge_daemon.sync.engine import (
    BIDIRECTIONAL,
    FROM_GRAPH,
    FULL,
    INCREMENTAL,
    TO_GRAPH,
    GraphSyncEngine,
)
from knowledge_daemon.sync.graph_file import list_backups, read_graph


@pytest.fixture
def store(tmp_path):
    return KnowledgeStore(str(tmp_path / "k.db"))


@pytest.fixture
def engine(store, tmp_path):
    return GraphSyncEngine(store, str(tmp_path / "graph" / "memory.jsonl"),
                           backup_keep=3, queue_timeout=0.1)


def _populate(store: KnowledgeStore) -> None:
    auth = store.upsert_entity("auth", "module", "Authentication")
    rbac = store.upsert_entity("PATTERN_RBAC", "pattern")
    users = store.upsert_entity("users", "module")
    store.add_observation(auth.id, "uses JWT")
    store.add_observation(auth.id, "fix: resolve token refresh")
    store.upsert_relation(auth.id, rbac.id, "uses_pattern")
    store.upsert_relation(users.id, auth.id, "depends_on")


def _snapshot(store: KnowledgeStore):
    entities, relations = store.export_graph_records()
    return ({e.name for e, _ in entities},
            {(e.name, frozenset(obs)) for e, obs in entities},
            set(relations))


def _write_lines(path: str, records: list) -> None:
    import os
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for rec in records:
            f.write((rec if isinstance(rec, str) else json.dumps(rec)) + "\n")


# ---------------------------------------------------------------------------
# Full export
# ---------------------------------------------------------------------------

class TestFullExport:

    def test_writes_every_record(self, store, engine):
        _populate(store)
        result = engine.export_full()
        assert result.success
        assert (result.kind, result.direction) == (FULL, TO_GRAPH)
        graph, malformed = read_graph(engine.graph_path)
        assert malformed == 0
        assert graph.entity_count == 3
        assert graph.relation_count == 2
        assert result.graph_size == 5

    def test_two_exports_are_equivalent_and_logged_once_each(self, store, engine):
        _populate(store)
        engine.export_full()
        with open(engine.graph_path, encoding="utf-8") as f:
            first = set(f.read().splitlines())
        engine.export_full()
        with open(engine.graph_path, encoding="utf-8") as f:
            second = set(f.read().splitlines())

        assert first == second
        log = store.list_sync_log()
        assert [(e.sync_kind, e.direction, e.status) for e in log] == [
            (FULL, TO_GRAPH, "success"), (FULL, TO_GRAPH, "success")]

    def test_backups_rotate(self, store, engine):
        _populate(store)
        for _ in range(5):
            engine.export_full()
        assert len(list_backups(engine.graph_path)) == 3

    def test_own_write_is_recognised(self, store, engine, tmp_path):
        _populate(store)
        assert engine.is_own_write() is False
        engine.export_full()
        assert engine.is_own_write() is True
        with open(engine.graph_path, "a", encoding="utf-8") as f:
            f.write('{"type": "entity", "name": "extra", "entityType": "x"}\n')
        assert engine.is_own_write() is False

    def test_failure_is_logged_and_returned(self, store, engine):
        _populate(store)
        with patch("knowledge_daemon.sync.engine.write_graph_atomic",
                   side_effect=OSError("read-only file system")):
            result = engine.export_full()
        assert result.success is False
        assert "read-only" in result.error
        last = store.get_last_sync()
        assert last.status == "failed"
        assert "read-only" in last.error_message
        assert store.get_last_successful_export() is None

    def test_unexpected_error_is_logged_then_raised(self, store, engine):
        with patch.object(engine, "_export_full", side_effect=TypeError("bad record shape")):
            with pytest.raises(TypeError):
                engine.export_full()
        last = store.get_last_sync()
        assert (last.sync_kind, last.direction, last.status) == (FULL, TO_GRAPH, "failed")
        assert "bad record shape" in last.error_message
        assert not engine.is_running


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

class TestImport:

    def test_round_trip_into_empty_store(self, store, engine, tmp_path):
        _populate(store)
        engine.export_full()

        fresh = KnowledgeStore(str(tmp_path / "fresh.db"))
        result = GraphSyncEngine(fresh, engine.graph_path).import_graph()
        assert result.success
        assert (result.kind, result.direction) == (FULL, FROM_GRAPH)
        assert _snapshot(fresh) == _snapshot(store)
        assert fresh.get_entity_by_name("auth").kind == "module"

    def test_import_is_idempotent(self, store, engine, tmp_path):
        _populate(store)
        engine.export_full()
        fresh = KnowledgeStore(str(tmp_path / "fresh.db"))
        fresh_engine = GraphSyncEngine(fresh, engine.graph_path)

        first = fresh_engine.import_graph()
        second = fresh_engine.import_graph()
        assert first.counts["imported"] == 5
        assert second.counts["imported"] == 0
        assert second.counts["duplicates"] == 5
        assert second.counts["observations_added"] == 0
        assert fresh.stats().observations == 2

    def test_import_merges_into_existing_store(self, store, engine):
        auth = store.upsert_entity("auth", "module", "Authentication")
        store.add_observation(auth.id, "local fact")
        _write_lines(engine.graph_path, [
            {"type": "entity", "name": "auth", "entityType": "module",
             "observations": ["local fact", "graph fact"]},
        ])
        result = engine.import_graph()
        assert result.counts["observations_added"] == 1
        assert {o.content for o in store.get_observations(auth.id)} == {
            "local fact", "graph fact"}
        assert store.get_entity_by_name("auth").description == "Authentication"

    def test_malformed_lines_skipped(self, store, engine):
        _write_lines(engine.graph_path, [
            {"type": "entity", "name": "auth", "entityType": "module", "observations": []},
            "{broken",
            {"type": "relation", "from": "auth"},
            {"type": "entity", "name": "users", "entityType": "module", "observations": []},
        ])
        result = engine.import_graph()
        assert result.success
        assert result.counts["skipped"] == 2
        assert result.counts["imported"] == 2
        assert store.get_entity_by_name("users") is not None

    def test_undecodable_line_skipped(self, store, engine):
        import os
        os.makedirs(os.path.dirname(engine.graph_path), exist_ok=True)
        with open(engine.graph_path, "wb") as f:
            f.write(json.dumps({"type": "entity", "name": "auth", "entityType": "module",
                                "observations": ["uses JWT"]}).encode("utf-8") + b"\n")
            f.write(b"\xff\xfe garbage\n")
            f.write(json.dumps({"type": "entity", "name": "users", "entityType": "module",
                                "observations": []}).encode("utf-8") + b"\n")

        result = engine.import_graph()
        assert result.success
        assert result.counts["skipped"] == 1
        assert result.counts["imported"] == 2
        assert store.get_entity_by_name("users") is not None

    def test_undecodable_line_does_not_abort_bidirectional(self, store, engine):
        _populate(store)
        _write_lines(engine.graph_path, [
            {"type": "entity", "name": "external", "entityType": "note", "observations": []},
        ])
        with open(engine.graph_path, "ab") as f:
            f.write(b"\xc3\x28 not utf-8\n")

        result = engine.bidirectional()
        assert result.success
        assert result.counts["import_skipped"] == 1
        graph, malformed = read_graph(engine.graph_path)
        assert malformed == 0
        assert graph.has_entity("external")
        assert graph.has_entity("auth")

    def test_orphan_endpoints_become_placeholders(self, store, engine):
        _write_lines(engine.graph_path, [
            {"type": "relation", "from": "billing", "to": "stripe", "relationType": "uses"},
        ])
        result = engine.import_graph()
        assert result.counts["placeholders"] == 2
        assert store.get_entity_by_name("billing").kind == "auto"

        # a later real record upgrades the placeholder
        _write_lines(engine.graph_path, [
            {"type": "entity", "name": "billing", "entityType": "module", "observations": []},
        ])
        engine.import_graph()
        assert store.get_entity_by_name("billing").kind == "module"

    def test_missing_file_imports_nothing(self, store, engine):
        result = engine.import_graph()
        assert result.success
        assert result.counts["imported"] == 0


# ---------------------------------------------------------------------------
# Incremental and bidirectional
# ---------------------------------------------------------------------------

class TestIncremental:

    def test_first_incremental_exports_everything(self, store, engine):
        _populate(store)
        result = engine.export_incremental()
        assert (result.kind, result.direction) == (INCREMENTAL, TO_GRAPH)
        assert result.counts["entities"] == 3
        graph, _ = read_graph(engine.graph_path)
        assert graph.entity_count == 3

    def test_only_delta_since_last_export(self, store, engine):
        _populate(store)
        engine.export_full()
        time.sleep(0.001)
        billing = store.upsert_entity("billing", "module")
        store.add_observation(billing.id, "charges cards")

        result = engine.export_incremental()
        assert result.counts["entities"] == 1
        graph, _ = read_graph(engine.graph_path)
        assert graph.entity_count == 4
        assert graph.entity("billing")["observations"] == ["charges cards"]
        assert graph.entity("auth")["observations"]

    def test_incremental_keeps_external_records(self, store, engine):
        _populate(store)
        engine.export_full()
        with open(engine.graph_path, "a", encoding="utf-8") as f:
            f.write(json.dumps({"type": "entity", "name": "external",
                                "entityType": "note", "observations": []}) + "\n")
        engine.export_incremental()
        graph, _ = read_graph(engine.graph_path)
        assert graph.has_entity("external")


class TestBidirectional:

    def test_one_log_entry_with_prefixed_counts(self, store, engine):
        _populate(store)
        _write_lines(engine.graph_path, [
            {"type": "entity", "name": "external", "entityType": "note",
             "observations": ["from another tool"]},
        ])
        result = engine.bidirectional()
        assert result.success
        assert (result.kind, result.direction) == (FULL, BIDIRECTIONAL)
        assert result.counts["import_imported"] == 1
        assert result.counts["export_entities"] == 4
        assert len(store.list_sync_log()) == 1
        graph, _ = read_graph(engine.graph_path)
        assert graph.has_entity("external")
        assert graph.has_entity("auth")

    def test_run_dispatch(self, engine):
        assert engine.run("bidirectional").direction == BIDIRECTIONAL
        assert engine.run("import").direction == FROM_GRAPH
        with pytest.raises(ValueError):
            engine.run("sideways")


# ---------------------------------------------------------------------------
# Mutual exclusion and status
# ---------------------------------------------------------------------------

class TestExclusion:

    def test_concurrent_pass_is_rejected_and_logged(self, store, engine):
        release = threading.Event()
        entered = threading.Event()

        def slow_export():
            entered.set()
            release.wait(5)
            return {}, 0

        with patch.object(engine, "_export_full", side_effect=slow_export):
            worker = threading.Thread(target=engine.export_full)
            worker.start()
            assert entered.wait(5)
            assert engine.is_running
            with pytest.raises(SyncInProgressError):
                engine.export_incremental()
            release.set()
            worker.join(5)

        statuses = [e.status for e in store.list_sync_log()]
        assert statuses == ["success", "rejected"]
        assert not engine.is_running

    def test_status(self, store, engine):
        _populate(store)
        engine.export_full()
        status = engine.status()
        assert status["graph_exists"] is True
        assert status["graph_records"] == 5
        assert status["last_sync"]["status"] == "success"
        assert status["last_successful_export"]["direction"] == TO_GRAPH
        assert status["running"] is False
