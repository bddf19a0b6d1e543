"""
External knowledge-graph file: newline-delimited JSON records of the form::

    {"type": "entity", "name": ..., "entityType": ..., "observations": [...]}
    {"type": "relation", "from": ..., "to": ..., "relationType": ...}

In memory the file is a NetworkX multi-digraph keyed by relation type, so a
``(from, to, relationType)`` triple appears at most once.
"""

from __future__ import annotations

import glob
import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import Iterable, Optional

import networkx as nx

logger = logging.getLogger(__name__)

BACKUP_INFIX = ".backup."


class KnowledgeGraph:
    """
    In-memory view of the external graph file.

    Nodes are entity names with ``entity_type`` and ``observations``
    attributes.  Nodes created only as relation endpoints carry
    ``entity=False`` and are not written as entity records.
    """

    def __init__(self) -> None:
        self._g = nx.MultiDiGraph()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_entity(self, name: str, entity_type: str = "",
                   observations: Iterable[str] = ()) -> None:
        """Add an entity or merge into the existing one (observation union)."""
        if self._g.has_node(name):
            data = self._g.nodes[name]
            data["entity"] = True
            # a placeholder type never replaces a real one
            if entity_type and (entity_type != "auto" or not data.get("entity_type")):
                data["entity_type"] = entity_type
            existing = data.setdefault("observations", [])
            for obs in observations:
                if obs not in existing:
                    existing.append(obs)
            return
        obs_list: list[str] = []
        for obs in observations:
            if obs not in obs_list:
                obs_list.append(obs)
        self._g.add_node(name, entity=True, entity_type=entity_type, observations=obs_list)

    def add_relation(self, source: str, target: str, relation_type: str) -> bool:
        """Add a relation; returns False if the triple was already present."""
        for node in (source, target):
            if not self._g.has_node(node):
                self._g.add_node(node, entity=False, entity_type="", observations=[])
        if self._g.has_edge(source, target, key=relation_type):
            return False
        self._g.add_edge(source, target, key=relation_type)
        return True

    def merge(self, other: "KnowledgeGraph") -> None:
        """Union *other* into this graph."""
        for name, data in other._g.nodes(data=True):
            if data.get("entity"):
                self.add_entity(name, data.get("entity_type", ""), data.get("observations", []))
            elif not self._g.has_node(name):
                self._g.add_node(name, entity=False, entity_type="", observations=[])
        for source, target, key in other._g.edges(keys=True):
            self.add_relation(source, target, key)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_entity(self, name: str) -> bool:
        return self._g.has_node(name) and bool(self._g.nodes[name].get("entity"))

    def entity(self, name: str) -> Optional[dict]:
        if not self.has_entity(name):
            return None
        data = self._g.nodes[name]
        return {
            "name": name,
            "entityType": data.get("entity_type", ""),
            "observations": list(data.get("observations", [])),
        }

    def has_relation(self, source: str, target: str, relation_type: str) -> bool:
        return self._g.has_edge(source, target, key=relation_type)

    def entities(self) -> list[dict]:
        """Entity records sorted by name."""
        return [self.entity(name) for name in sorted(self._g.nodes)
                if self._g.nodes[name].get("entity")]

    def relations(self) -> list[tuple[str, str, str]]:
        """``(from, to, relationType)`` triples, sorted."""
        return sorted(self._g.edges(keys=True))

    @property
    def entity_count(self) -> int:
        return sum(1 for _, d in self._g.nodes(data=True) if d.get("entity"))

    @property
    def relation_count(self) -> int:
        return self._g.number_of_edges()

    def __len__(self) -> int:
        return self.entity_count + self.relation_count

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def records(self) -> list[dict]:
        """All records in file order: entities by name, then relations."""
        out: list[dict] = []
        for ent in self.entities():
            out.append({
                "type": "entity",
                "name": ent["name"],
                "entityType": ent["entityType"],
                "observations": ent["observations"],
            })
        for source, target, rel_type in self.relations():
            out.append({"type": "relation", "from": source, "to": target,
                        "relationType": rel_type})
        return out

    def to_jsonl(self) -> str:
        lines = [json.dumps(rec, ensure_ascii=False) for rec in self.records()]
        return "\n".join(lines) + ("\n" if lines else "")

    @classmethod
    def from_lines(cls, lines: Iterable[str | bytes]) -> tuple["KnowledgeGraph", int]:
        """
        Build a graph from JSONL lines (text, or UTF-8 bytes).

        Returns the graph and the number of malformed lines skipped.
        """
        graph = cls()
        malformed = 0
        for lineno, raw in enumerate(lines, start=1):
            try:
                line = (raw.decode("utf-8") if isinstance(raw, bytes) else raw).strip()
                if not line:
                    continue
                rec = json.loads(line)
            except ValueError:
                malformed += 1
                logger.warning("[Graph] Skipping malformed line %d", lineno)
                continue
            if not isinstance(rec, dict):
                malformed += 1
                continue
            kind = rec.get("type")
            if kind == "entity" and isinstance(rec.get("name"), str) and rec["name"]:
                observations = rec.get("observations") or []
                if not isinstance(observations, list):
                    observations = [observations]
                graph.add_entity(rec["name"], str(rec.get("entityType") or ""),
                                 [str(o) for o in observations])
            elif (kind == "relation"
                  and all(isinstance(rec.get(k), str) and rec.get(k)
                          for k in ("from", "to", "relationType"))):
                graph.add_relation(rec["from"], rec["to"], rec["relationType"])
            else:
                malformed += 1
                logger.warning("[Graph] Skipping unrecognised record on line %d", lineno)
        return graph, malformed


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def read_graph(path: str) -> tuple[KnowledgeGraph, int]:
    """Read the graph file; a missing file is an empty graph."""
    if not os.path.isfile(path):
        return KnowledgeGraph(), 0
    # read as bytes; lines that are not UTF-8 count as malformed
    with open(path, "rb") as f:
        return KnowledgeGraph.from_lines(f)


def content_digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def file_digest(path: str) -> Optional[str]:
    try:
        with open(path, "rb") as f:
            return hashlib.sha256(f.read()).hexdigest()
    except OSError:
        return None


def write_graph_atomic(path: str, graph: KnowledgeGraph) -> str:
    """
    Write *graph* to *path* via a temp file in the same directory and
    ``os.replace``; readers never see a partial file.  Returns the digest
    of the written content.
    """
    content = graph.to_jsonl()
    abs_path = os.path.abspath(path)
    directory = os.path.dirname(abs_path)
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix=".graph-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, abs_path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return content_digest(content)


def backup_graph(path: str, keep: int = 10) -> Optional[str]:
    """
    Copy the current graph file to ``<path>.backup.<timestamp>`` and prune
    all but the newest *keep* backups.  Returns the backup path, or None if
    there was nothing to back up.
    """
    if not os.path.isfile(path):
        return None
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    backup_path = f"{path}{BACKUP_INFIX}{stamp}"
    with open(path, "rb") as src, open(backup_path, "wb") as dst:
        dst.write(src.read())
    prune_backups(path, keep)
    return backup_path


def list_backups(path: str) -> list[str]:
    """Existing backups of *path*, oldest first."""
    return sorted(glob.glob(glob.escape(path) + BACKUP_INFIX + "*"))


def prune_backups(path: str, keep: int) -> list[str]:
    """Delete all but the newest *keep* backups; returns the deleted paths."""
    backups = list_backups(path)
    if keep < 0 or len(backups) <= keep:
        return []
    doomed = backups[: len(backups) - keep]
    for old in doomed:
        try:
            os.unlink(old)
        except OSError as exc:
            logger.warning("[Graph] Could not remove old backup %s: %s", old, exc)
    return doomed
