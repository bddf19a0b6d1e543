"""
Graph sync engine: reconciles the knowledge store with the external
knowledge-graph file.

Passes
------
import          read the file and merge every record into the store
full export     back up the file, re-derive it from the store, write atomically
incremental     merge the store delta since the last successful export into
                the current file, write atomically
bidirectional   import, then full export, as one pass

At most one pass runs at a time.  A pass requested while another is running
waits up to ``queue_timeout`` seconds and is otherwise rejected; every pass,
including rejected and failed ones, appends a sync-log entry.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..errors import KnowledgeDaemonError, SyncInProgressError
from ..store.knowledge_store import EPOCH, KnowledgeStore, utc_now
from ..store.models import SyncLogEntry
from .graph_file import (
    KnowledgeGraph,
    backup_graph,
    file_digest,
    list_backups,
    read_graph,
    write_graph_atomic,
)

logger = logging.getLogger(__name__)

FULL = "full"
INCREMENTAL = "incremental"
BIDIRECTIONAL = "bidirectional"
IMPORT = "import"

SYNC_KINDS = (FULL, INCREMENTAL, BIDIRECTIONAL, IMPORT)

TO_GRAPH = "to_graph"
FROM_GRAPH = "from_graph"

PLACEHOLDER_KIND = "auto"
GRAPH_SOURCE = "graph"

_PASS_ERRORS = (OSError, sqlite3.Error, ValueError, KnowledgeDaemonError)


@dataclass
class SyncResult:
    """Outcome of one sync pass."""

    kind: str
    direction: str
    success: bool
    counts: dict = field(default_factory=dict)
    error: str = ""
    duration_ms: int = 0
    graph_size: int = 0
    started_at: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "direction": self.direction,
            "success": self.success,
            "counts": dict(self.counts),
            "error": self.error,
            "duration_ms": self.duration_ms,
            "graph_size": self.graph_size,
            "started_at": self.started_at,
        }


class GraphSyncEngine:
    """
    Runs sync passes between a :class:`KnowledgeStore` and a graph file.

    Parameters
    ----------
    store:
        The relational knowledge store.
    graph_path:
        Path of the newline-delimited JSON graph file.  Created (with its
        parent directory) on first export.
    backup_keep:
        Number of timestamped backups kept by full exports.
    queue_timeout:
        Seconds a pass waits for a running one before being rejected.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        graph_path: str,
        backup_keep: int = 10,
        queue_timeout: float = 5.0,
    ) -> None:
        self._store = store
        self.graph_path = graph_path
        self.backup_keep = backup_keep
        self.queue_timeout = queue_timeout
        self._lock = threading.Lock()
        self._last_written_digest: Optional[str] = None

    # ------------------------------------------------------------------
    # Public passes
    # ------------------------------------------------------------------

    def run(self, kind: str) -> SyncResult:
        """Run the pass named *kind* (``full``, ``incremental``, ``bidirectional`` or ``import``)."""
        if kind == FULL:
            return self.export_full()
        if kind == INCREMENTAL:
            return self.export_incremental()
        if kind == BIDIRECTIONAL:
            return self.bidirectional()
        if kind == IMPORT:
            return self.import_graph()
        raise ValueError(f"Unknown sync kind: {kind!r}")

    def import_graph(self) -> SyncResult:
        """Merge every record of the graph file into the store."""
        return self._run(FULL, FROM_GRAPH, self._import)

    def export_full(self) -> SyncResult:
        """Back up and rewrite the graph file from the whole store."""
        return self._run(FULL, TO_GRAPH, self._export_full)

    def export_incremental(self) -> SyncResult:
        """Merge what changed since the last successful export into the file."""
        return self._run(INCREMENTAL, TO_GRAPH, self._export_incremental)

    def bidirectional(self) -> SyncResult:
        """Import, then full export, under one lock and one log entry."""
        def both() -> tuple[dict, int]:
            import_counts, _ = self._import()
            export_counts, size = self._export_full()
            counts = {f"import_{k}": v for k, v in import_counts.items()}
            counts.update({f"export_{k}": v for k, v in export_counts.items()})
            return counts, size

        return self._run(FULL, BIDIRECTIONAL, both)

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def is_own_write(self, path: Optional[str] = None) -> bool:
        """True if the file on disk is exactly what this engine last wrote."""
        if self._last_written_digest is None:
            return False
        return file_digest(path or self.graph_path) == self._last_written_digest

    def status(self) -> dict:
        """Last passes and the current state of the graph file."""
        last = self._store.get_last_sync()
        last_export = self._store.get_last_successful_export()
        exists = os.path.isfile(self.graph_path)
        records = 0
        malformed = 0
        if exists:
            graph, malformed = read_graph(self.graph_path)
            records = len(graph)
        return {
            "graph_path": self.graph_path,
            "graph_exists": exists,
            "graph_bytes": os.path.getsize(self.graph_path) if exists else 0,
            "graph_records": records,
            "graph_malformed_lines": malformed,
            "backups": len(list_backups(self.graph_path)),
            "running": self.is_running,
            "last_sync": _entry_dict(last),
            "last_successful_export": _entry_dict(last_export),
        }

    # ------------------------------------------------------------------
    # Pass runner
    # ------------------------------------------------------------------

    def _run(self, kind: str, direction: str,
             body: Callable[[], tuple[dict, int]]) -> SyncResult:
        if self.queue_timeout > 0:
            acquired = self._lock.acquire(timeout=self.queue_timeout)
        else:
            acquired = self._lock.acquire(blocking=False)

        if not acquired:
            message = "another sync pass is in progress"
            self._store.add_sync_log(SyncLogEntry(
                sync_kind=kind, direction=direction, status="rejected",
                error_message=message,
            ))
            logger.warning("[Sync] Rejected %s/%s pass: %s", kind, direction, message)
            raise SyncInProgressError(message)

        started_at = utc_now()
        t0 = time.monotonic()
        try:
            try:
                counts, size = body()
            except _PASS_ERRORS as exc:
                duration = int((time.monotonic() - t0) * 1000)
                self._store.add_sync_log(SyncLogEntry(
                    sync_kind=kind, direction=direction, status="failed",
                    error_message=str(exc), duration_ms=duration, started_at=started_at,
                ))
                logger.error("[Sync] %s/%s pass failed after %d ms: %s",
                             kind, direction, duration, exc)
                return SyncResult(kind, direction, False, error=str(exc),
                                  duration_ms=duration, started_at=started_at)
            except Exception as exc:
                duration = int((time.monotonic() - t0) * 1000)
                self._store.add_sync_log(SyncLogEntry(
                    sync_kind=kind, direction=direction, status="failed",
                    error_message=f"{type(exc).__name__}: {exc}", duration_ms=duration,
                    started_at=started_at,
                ))
                logger.exception("[Sync] %s/%s pass crashed after %d ms",
                                 kind, direction, duration)
                raise

            duration = int((time.monotonic() - t0) * 1000)
            self._store.add_sync_log(SyncLogEntry(
                sync_kind=kind, direction=direction, status="success", counts=counts,
                duration_ms=duration, graph_size=size, started_at=started_at,
            ))
            logger.info("[Sync] %s/%s pass done in %d ms: %s",
                        kind, direction, duration, counts)
            return SyncResult(kind, direction, True, counts=counts, duration_ms=duration,
                              graph_size=size, started_at=started_at)
        finally:
            self._lock.release()

    # ------------------------------------------------------------------
    # Pass bodies (called with the lock held)
    # ------------------------------------------------------------------

    def _import(self) -> tuple[dict, int]:
        graph, malformed = read_graph(self.graph_path)
        counts = {"imported": 0, "duplicates": 0, "skipped": malformed,
                  "observations_added": 0, "placeholders": 0}

        for record in graph.entities():
            try:
                with self._store.transaction():
                    changed, added = self._import_entity(record)
            except sqlite3.Error as exc:
                counts["skipped"] += 1
                logger.warning("[Sync] Skipping entity %r: %s", record["name"], exc)
                continue
            counts["observations_added"] += added
            counts["imported" if changed else "duplicates"] += 1

        for source, target, rel_type in graph.relations():
            try:
                with self._store.transaction():
                    created, placeholders = self._import_relation(source, target, rel_type)
            except sqlite3.Error as exc:
                counts["skipped"] += 1
                logger.warning("[Sync] Skipping relation %s -%s-> %s: %s",
                               source, rel_type, target, exc)
                continue
            counts["placeholders"] += placeholders
            counts["imported" if created else "duplicates"] += 1

        return counts, len(graph)

    def _import_entity(self, record: dict) -> tuple[bool, int]:
        name = record["name"]
        kind = record["entityType"] or PLACEHOLDER_KIND
        before = self._store.get_entity_by_name(name)
        entity = self._store.upsert_entity(name, kind)
        added = 0
        for content in record["observations"]:
            if self._store.add_observation(entity.id, content, source=GRAPH_SOURCE):
                added += 1
        changed = before is None or before.kind != entity.kind or added > 0
        return changed, added

    def _import_relation(self, source: str, target: str, rel_type: str) -> tuple[bool, int]:
        placeholders = 0
        ids = []
        for name in (source, target):
            entity = self._store.get_entity_by_name(name)
            if entity is None:
                entity = self._store.upsert_entity(name, PLACEHOLDER_KIND)
                placeholders += 1
            ids.append(entity.id)
        existing = self._store.find_relation(ids[0], ids[1], rel_type)
        if existing is not None:
            return False, placeholders
        self._store.upsert_relation(ids[0], ids[1], rel_type)
        return True, placeholders

    def _export_full(self) -> tuple[dict, int]:
        backup = backup_graph(self.graph_path, self.backup_keep)
        if backup:
            logger.debug("[Sync] Backed up graph to %s", backup)

        entities, relations = self._store.export_graph_records()
        graph = _build_graph(entities, relations)
        self._last_written_digest = write_graph_atomic(self.graph_path, graph)
        counts = {"entities": graph.entity_count, "relations": graph.relation_count,
                  "backed_up": 1 if backup else 0}
        return counts, len(graph)

    def _export_incremental(self) -> tuple[dict, int]:
        last = self._store.get_last_successful_export()
        since = last.started_at if last else EPOCH

        entities, relations = self._store.graph_delta_since(since)
        delta = _build_graph(entities, relations)

        current, malformed = read_graph(self.graph_path)
        current.merge(delta)
        self._last_written_digest = write_graph_atomic(self.graph_path, current)
        counts = {"entities": delta.entity_count, "relations": delta.relation_count,
                  "malformed_lines": malformed}
        return counts, len(current)


def _build_graph(entities, relations) -> KnowledgeGraph:
    graph = KnowledgeGraph()
    for entity, observations in entities:
        graph.add_entity(entity.name, entity.kind, observations)
    for source, target, rel_type in relations:
        graph.add_relation(source, target, rel_type)
    return graph


def _entry_dict(entry: Optional[SyncLogEntry]) -> Optional[dict]:
    if entry is None:
        return None
    return {
        "kind": entry.sync_kind,
        "direction": entry.direction,
        "status": entry.status,
        "counts": dict(entry.counts),
        "error": entry.error_message,
        "duration_ms": entry.duration_ms,
        "graph_size": entry.graph_size,
        "started_at": entry.started_at,
        "synced_at": entry.synced_at,
    }
