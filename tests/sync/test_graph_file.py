"""
Unit tests for knowledge_daemon.sync.graph_file
"""

from __future__ import annotations

import json
import os
from unittest.mock import patch

import pytest

from knowledge_daemon.sync.graph_file import (
    KnowledgeGraph,
    backup_graph,
    content_digest,
    file_digest,
    list_backups,
    prune_backups,
    read_graph,
    write_graph_atomic,
)


def _sample() -> KnowledgeGraph:
    graph = KnowledgeGraph()
    graph.add_entity("auth", "module", ["uses JWT"])
    graph.add_entity("PATTERN_RBAC", "pattern")
    graph.add_relation("auth", "PATTERN_RBAC", "uses_pattern")
    return graph


# ---------------------------------------------------------------------------
# KnowledgeGraph
# ---------------------------------------------------------------------------

class TestKnowledgeGraph:

    def test_entity_observations_are_a_set(self):
        graph = KnowledgeGraph()
        graph.add_entity("auth", "module", ["a", "b", "a"])
        graph.add_entity("auth", "module", ["b", "c"])
        assert graph.entity("auth")["observations"] == ["a", "b", "c"]

    def test_placeholder_type_does_not_replace(self):
        graph = KnowledgeGraph()
        graph.add_entity("auth", "module")
        graph.add_entity("auth", "auto")
        assert graph.entity("auth")["entityType"] == "module"

    def test_relation_triple_once(self):
        graph = _sample()
        assert graph.add_relation("auth", "PATTERN_RBAC", "uses_pattern") is False
        assert graph.add_relation("auth", "PATTERN_RBAC", "documents") is True
        assert graph.relation_count == 2

    def test_relation_endpoints_are_not_entities(self):
        graph = KnowledgeGraph()
        graph.add_relation("a", "b", "depends_on")
        assert not graph.has_entity("a")
        assert graph.entity_count == 0
        assert graph.has_relation("a", "b", "depends_on")
        assert [r["type"] for r in graph.records()] == ["relation"]

    def test_endpoint_promoted_by_entity_record(self):
        graph = KnowledgeGraph()
        graph.add_relation("a", "b", "depends_on")
        graph.add_entity("a", "module")
        assert graph.has_entity("a")

    def test_records_order(self):
        records = _sample().records()
        assert [r["type"] for r in records] == ["entity", "entity", "relation"]
        assert [r.get("name") for r in records[:2]] == ["PATTERN_RBAC", "auth"]
        assert records[2] == {"type": "relation", "from": "auth", "to": "PATTERN_RBAC",
                              "relationType": "uses_pattern"}

    def test_merge(self):
        graph = _sample()
        other = KnowledgeGraph()
        other.add_entity("auth", "module", ["rotates tokens"])
        other.add_relation("auth", "users", "depends_on")
        graph.merge(other)
        assert graph.entity("auth")["observations"] == ["uses JWT", "rotates tokens"]
        assert graph.has_relation("auth", "users", "depends_on")
        assert not graph.has_entity("users")
        assert len(graph) == 2 + 2

    def test_jsonl_round_trip(self):
        graph = _sample()
        parsed, malformed = KnowledgeGraph.from_lines(graph.to_jsonl().splitlines())
        assert malformed == 0
        assert parsed.records() == graph.records()

    def test_empty_graph_serializes_to_empty_text(self):
        assert KnowledgeGraph().to_jsonl() == ""


class TestFromLines:

    def test_malformed_lines_are_counted_and_skipped(self):
        lines = [
            json.dumps({"type": "entity", "name": "auth", "entityType": "module",
                        "observations": ["x"]}),
            "{not json",
            json.dumps(["a", "list"]),
            json.dumps({"type": "relation", "from": "auth"}),
            json.dumps({"type": "mystery"}),
            "",
            json.dumps({"type": "relation", "from": "auth", "to": "db",
                        "relationType": "depends_on"}),
        ]
        graph, malformed = KnowledgeGraph.from_lines(lines)
        assert malformed == 4
        assert graph.has_entity("auth")
        assert graph.has_relation("auth", "db", "depends_on")

    def test_scalar_observation_wrapped(self):
        line = json.dumps({"type": "entity", "name": "a", "entityType": "m",
                           "observations": "single"})
        graph, _ = KnowledgeGraph.from_lines([line])
        assert graph.entity("a")["observations"] == ["single"]


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

class TestFiles:

    def test_read_missing_file(self, tmp_path):
        graph, malformed = read_graph(str(tmp_path / "absent.jsonl"))
        assert len(graph) == 0
        assert malformed == 0

    def test_atomic_write_and_digest(self, tmp_path):
        path = str(tmp_path / "sub" / "memory.jsonl")
        digest = write_graph_atomic(path, _sample())
        assert digest == file_digest(path)
        assert digest == content_digest(_sample().to_jsonl())
        graph, _ = read_graph(path)
        assert graph.records() == _sample().records()
        assert [f for f in os.listdir(tmp_path / "sub") if f.endswith(".tmp")] == []

    def test_failed_write_leaves_original(self, tmp_path):
        path = str(tmp_path / "memory.jsonl")
        write_graph_atomic(path, _sample())
        before = file_digest(path)
        with patch("knowledge_daemon.sync.graph_file.os.replace",
                   side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                write_graph_atomic(path, KnowledgeGraph())
        assert file_digest(path) == before
        assert [f for f in os.listdir(tmp_path) if f.endswith(".tmp")] == []

    def test_file_digest_missing(self, tmp_path):
        assert file_digest(str(tmp_path / "nope")) is None


class TestBackups:

    def test_nothing_to_back_up(self, tmp_path):
        assert backup_graph(str(tmp_path / "memory.jsonl")) is None

    def test_backup_copies_content(self, tmp_path):
        path = tmp_path / "memory.jsonl"
        path.write_text("line\n", encoding="utf-8")
        backup = backup_graph(str(path))
        assert open(backup, encoding="utf-8").read() == "line\n"
        assert list_backups(str(path)) == [backup]

    def test_prune_keeps_newest(self, tmp_path):
        path = tmp_path / "memory.jsonl"
        path.write_text("x", encoding="utf-8")
        for stamp in ("20260101T000000000000Z", "20260102T000000000000Z",
                      "20260103T000000000000Z"):
            (tmp_path / f"memory.jsonl.backup.{stamp}").write_text("old")
        removed = prune_backups(str(path), keep=1)
        assert len(removed) == 2
        remaining = list_backups(str(path))
        assert [os.path.basename(p) for p in remaining] == [
            "memory.jsonl.backup.20260103T000000000000Z"]

    def test_backup_prunes(self, tmp_path):
        path = tmp_path / "memory.jsonl"
        path.write_text("x", encoding="utf-8")
        (tmp_path / "memory.jsonl.backup.20000101T000000000000Z").write_text("old")
        backup_graph(str(path), keep=1)
        assert len(list_backups(str(path))) == 1
