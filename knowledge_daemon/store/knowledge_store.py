"""
SQLite-backed knowledge store.

Holds entities, observations, relations, error solutions, learned commits,
code patterns and the sync log in a single database file.  Every write runs
inside one ``BEGIN IMMEDIATE`` transaction; calls made inside
:meth:`KnowledgeStore.transaction` join the outer transaction so composite
operations are all-or-nothing.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from ..errors import StoreInitError
from . import merge
from .models import (
    CodePattern,
    CommitRecord,
    Entity,
    ErrorSolution,
    Observation,
    Relation,
    StoreStats,
    SyncLogEntry,
)

logger = logging.getLogger(__name__)

EPOCH = "1970-01-01T00:00:00.000000+00:00"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT    UNIQUE NOT NULL,
    kind        TEXT    NOT NULL,
    description TEXT    NOT NULL DEFAULT '',
    created_at  TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS observations (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id   INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    content     TEXT    NOT NULL,
    source      TEXT    NOT NULL DEFAULT '',
    source_ref  TEXT    NOT NULL DEFAULT '',
    confidence  REAL    NOT NULL DEFAULT 1.0,
    created_at  TEXT    NOT NULL,
    UNIQUE(entity_id, content)
);

CREATE TABLE IF NOT EXISTS relations (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    from_entity   INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    to_entity     INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    relation_type TEXT    NOT NULL,
    strength      REAL    NOT NULL DEFAULT 1.0,
    created_at    TEXT    NOT NULL,
    updated_at    TEXT    NOT NULL,
    UNIQUE(from_entity, to_entity, relation_type)
);

CREATE TABLE IF NOT EXISTS error_solutions (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    error_pattern        TEXT    NOT NULL,
    error_message        TEXT    NOT NULL,
    error_type           TEXT    NOT NULL DEFAULT '',
    file_pattern         TEXT    NOT NULL DEFAULT '',
    stack_trace_pattern  TEXT    NOT NULL DEFAULT '',
    solution_description TEXT    NOT NULL,
    solution_code        TEXT    NOT NULL DEFAULT '',
    solution_files       TEXT    NOT NULL DEFAULT '[]',
    solution_steps       TEXT    NOT NULL DEFAULT '[]',
    related_pattern      TEXT    NOT NULL DEFAULT '',
    tags                 TEXT    NOT NULL DEFAULT '[]',
    success_count        INTEGER NOT NULL DEFAULT 0,
    fail_count           INTEGER NOT NULL DEFAULT 0,
    last_used_at         TEXT    NOT NULL DEFAULT '',
    commit_hash          TEXT    NOT NULL DEFAULT '',
    created_at           TEXT    NOT NULL,
    updated_at           TEXT    NOT NULL,
    UNIQUE(error_pattern, solution_description)
);

CREATE TABLE IF NOT EXISTS git_commits (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    hash               TEXT    UNIQUE NOT NULL,
    message            TEXT    NOT NULL,
    type               TEXT,
    module             TEXT,
    identity           TEXT,
    author             TEXT    NOT NULL DEFAULT '',
    files_changed      TEXT    NOT NULL DEFAULT '[]',
    insertions         INTEGER NOT NULL DEFAULT 0,
    deletions          INTEGER NOT NULL DEFAULT 0,
    has_metadata_block INTEGER NOT NULL DEFAULT 0,
    metadata_block     TEXT    NOT NULL DEFAULT '{}',
    error_fix          TEXT    NOT NULL DEFAULT '',
    pattern            TEXT    NOT NULL DEFAULT '',
    solution           TEXT    NOT NULL DEFAULT '',
    tags               TEXT    NOT NULL DEFAULT '[]',
    detected_patterns  TEXT    NOT NULL DEFAULT '[]',
    is_breaking        INTEGER NOT NULL DEFAULT 0,
    commit_timestamp   TEXT    NOT NULL DEFAULT '',
    learned_at         TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS code_patterns (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern_name        TEXT    UNIQUE NOT NULL,
    pattern_type        TEXT    NOT NULL DEFAULT 'general',
    category            TEXT    NOT NULL DEFAULT '',
    description         TEXT    NOT NULL DEFAULT '',
    example_code        TEXT    NOT NULL DEFAULT '',
    anti_pattern        TEXT    NOT NULL DEFAULT '',
    anti_pattern_reason TEXT    NOT NULL DEFAULT '',
    related_files       TEXT    NOT NULL DEFAULT '[]',
    tags                TEXT    NOT NULL DEFAULT '[]',
    usage_count         INTEGER NOT NULL DEFAULT 1,
    effectiveness_score REAL    NOT NULL DEFAULT 0.0,
    source_commit       TEXT    NOT NULL DEFAULT '',
    created_at          TEXT    NOT NULL,
    updated_at          TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_log (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    sync_kind     TEXT    NOT NULL,
    direction     TEXT    NOT NULL,
    status        TEXT    NOT NULL,
    counts        TEXT    NOT NULL DEFAULT '{}',
    error_message TEXT    NOT NULL DEFAULT '',
    duration_ms   INTEGER NOT NULL DEFAULT 0,
    graph_size    INTEGER NOT NULL DEFAULT 0,
    started_at    TEXT    NOT NULL,
    synced_at     TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_observations_entity ON observations(entity_id);
CREATE INDEX IF NOT EXISTS idx_relations_from      ON relations(from_entity);
CREATE INDEX IF NOT EXISTS idx_relations_to        ON relations(to_entity);
CREATE INDEX IF NOT EXISTS idx_errors_pattern      ON error_solutions(error_pattern);
CREATE INDEX IF NOT EXISTS idx_errors_type         ON error_solutions(error_type);
CREATE INDEX IF NOT EXISTS idx_commits_module      ON git_commits(module);
CREATE INDEX IF NOT EXISTS idx_sync_log_started    ON sync_log(started_at);
"""

# Merge strategies per table.  Columns not listed are REPLACE.
_ENTITY_MERGE = {"description": merge.COALESCE, "created_at": merge.KEEP}

_ERROR_MERGE = {
    "error_message": merge.COALESCE,
    "error_type": merge.COALESCE,
    "file_pattern": merge.COALESCE,
    "stack_trace_pattern": merge.COALESCE,
    "solution_code": merge.COALESCE,
    "solution_files": merge.UNION,
    "solution_steps": merge.UNION,
    "related_pattern": merge.COALESCE,
    "tags": merge.UNION,
    "commit_hash": merge.KEEP,
    "created_at": merge.KEEP,
}

# Only metadata-block-derived fields are refreshed when a commit is re-learned.
_COMMIT_MERGE = {
    "message": merge.KEEP,
    "author": merge.KEEP,
    "files_changed": merge.KEEP,
    "insertions": merge.KEEP,
    "deletions": merge.KEEP,
    "commit_timestamp": merge.KEEP,
    "learned_at": merge.KEEP,
}

_PATTERN_MERGE = {
    "pattern_type": merge.COALESCE,
    "category": merge.COALESCE,
    "description": merge.COALESCE,
    "example_code": merge.COALESCE,
    "anti_pattern": merge.COALESCE,
    "anti_pattern_reason": merge.COALESCE,
    "related_files": merge.UNION,
    "tags": merge.UNION,
    "usage_count": merge.INCREMENT,
    "effectiveness_score": merge.MAX,
    "source_commit": merge.KEEP,
    "created_at": merge.KEEP,
}


def utc_now() -> str:
    """Current UTC time as a sortable ISO-8601 string with microseconds."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _like_term(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _json_list(value: Optional[str]) -> list:
    if not value:
        return []
    try:
        data = json.loads(value)
    except ValueError:
        return []
    return data if isinstance(data, list) else []


def _json_dict(value: Optional[str]) -> dict:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class KnowledgeStore:
    """
    Relational store for everything the daemon learns.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Created (with its parent
        directory) if absent.

    Raises
    ------
    StoreInitError
        If the database cannot be opened or the schema cannot be created.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._local = threading.local()
        self._write_lock = threading.RLock()
        try:
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as exc:
            raise StoreInitError(f"Cannot open knowledge store at {db_path}: {exc}") from exc

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._open()
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection inside a write transaction.

        Nested use on the same thread joins the outermost transaction;
        writers on other threads wait for the in-process lock, then for
        SQLite's own reserved lock.
        """
        outer = getattr(self._local, "conn", None)
        if outer is not None:
            yield outer
            return

        with self._write_lock:
            conn = self._open()
            conn.execute("BEGIN IMMEDIATE")
            self._local.conn = conn
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self._local.conn = None
                conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        current = getattr(self._local, "conn", None)
        if current is not None:
            yield current
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _entity(row: sqlite3.Row) -> Entity:
        return Entity(
            id=row["id"], name=row["name"], kind=row["kind"],
            description=row["description"], created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _observation(row: sqlite3.Row) -> Observation:
        return Observation(
            id=row["id"], entity_id=row["entity_id"], content=row["content"],
            source=row["source"], source_ref=row["source_ref"],
            confidence=row["confidence"], created_at=row["created_at"],
        )

    @staticmethod
    def _relation(row: sqlite3.Row) -> Relation:
        return Relation(
            id=row["id"], from_entity=row["from_entity"], to_entity=row["to_entity"],
            relation_type=row["relation_type"], strength=row["strength"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _solution(row: sqlite3.Row) -> ErrorSolution:
        return ErrorSolution(
            id=row["id"],
            error_pattern=row["error_pattern"],
            error_message=row["error_message"],
            error_type=row["error_type"],
            file_pattern=row["file_pattern"],
            stack_trace_pattern=row["stack_trace_pattern"],
            solution_description=row["solution_description"],
            solution_code=row["solution_code"],
            solution_files=_json_list(row["solution_files"]),
            solution_steps=_json_list(row["solution_steps"]),
            related_pattern=row["related_pattern"],
            tags=_json_list(row["tags"]),
            success_count=row["success_count"],
            fail_count=row["fail_count"],
            last_used_at=row["last_used_at"],
            commit_hash=row["commit_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _commit(row: sqlite3.Row) -> CommitRecord:
        return CommitRecord(
            id=row["id"],
            hash=row["hash"],
            message=row["message"],
            type=row["type"],
            module=row["module"],
            identity=row["identity"],
            author=row["author"],
            files_changed=_json_list(row["files_changed"]),
            insertions=row["insertions"],
            deletions=row["deletions"],
            has_metadata_block=bool(row["has_metadata_block"]),
            metadata_block=_json_dict(row["metadata_block"]),
            error_fix=row["error_fix"],
            pattern=row["pattern"],
            solution=row["solution"],
            tags=_json_list(row["tags"]),
            detected_patterns=_json_list(row["detected_patterns"]),
            is_breaking=bool(row["is_breaking"]),
            commit_timestamp=row["commit_timestamp"],
            learned_at=row["learned_at"],
        )

    @staticmethod
    def _pattern(row: sqlite3.Row) -> CodePattern:
        return CodePattern(
            id=row["id"],
            pattern_name=row["pattern_name"],
            pattern_type=row["pattern_type"],
            category=row["category"],
            description=row["description"],
            example_code=row["example_code"],
            anti_pattern=row["anti_pattern"],
            anti_pattern_reason=row["anti_pattern_reason"],
            related_files=_json_list(row["related_files"]),
            tags=_json_list(row["tags"]),
            usage_count=row["usage_count"],
            effectiveness_score=row["effectiveness_score"],
            source_commit=row["source_commit"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _sync_entry(row: sqlite3.Row) -> SyncLogEntry:
        return SyncLogEntry(
            id=row["id"],
            sync_kind=row["sync_kind"],
            direction=row["direction"],
            status=row["status"],
            counts=_json_dict(row["counts"]),
            error_message=row["error_message"],
            duration_ms=row["duration_ms"],
            graph_size=row["graph_size"],
            started_at=row["started_at"],
            synced_at=row["synced_at"],
        )

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def upsert_entity(self, name: str, kind: str, description: str = "") -> Entity:
        """
        Create or update the entity called *name*.

        ``kind`` is replaced on re-observation, except that the placeholder
        kind ``"auto"`` never overrides a real one.  An empty description
        never overwrites a stored one.
        """
        now = utc_now()
        strategies = dict(_ENTITY_MERGE)
        if kind == "auto":
            strategies["kind"] = merge.KEEP
        with self.transaction() as conn:
            entity_id, inserted = merge.upsert_row(
                conn, "entities", {"name": name},
                {"kind": kind, "description": description, "created_at": now},
                strategies, touch=("updated_at", now),
            )
            if inserted:
                logger.debug("[Store] New entity %s (%s)", name, kind)
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._entity(row)

    def get_entity(self, entity_id: int) -> Optional[Entity]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._entity(row) if row else None

    def get_entity_by_name(self, name: str) -> Optional[Entity]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM entities WHERE name = ?", (name,)).fetchone()
        return self._entity(row) if row else None

    def list_entities(self, kind: Optional[str] = None) -> list[Entity]:
        with self._read() as conn:
            if kind is None:
                rows = conn.execute("SELECT * FROM entities ORDER BY name").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM entities WHERE kind = ? ORDER BY name", (kind,)
                ).fetchall()
        return [self._entity(r) for r in rows]

    def search_entities(self, query: str, limit: int = 20) -> list[Entity]:
        """Case-insensitive substring search over entity names and descriptions."""
        if not query or not query.strip():
            return []
        term = _like_term(query.strip())
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM entities
                WHERE name LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\'
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (term, term, limit),
            ).fetchall()
        return [self._entity(r) for r in rows]

    def delete_entity(self, entity_id: int) -> bool:
        """Delete an entity together with its observations and relations."""
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def add_observation(
        self,
        entity_id: int,
        content: str,
        source: str = "",
        source_ref: str = "",
        confidence: float = 1.0,
    ) -> bool:
        """Attach *content* to an entity.  Returns False if it was already there."""
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO observations
                    (entity_id, content, source, source_ref, confidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (entity_id, content, source, source_ref, confidence, utc_now()),
            )
        return cur.rowcount == 1

    def get_observations(self, entity_id: int) -> list[Observation]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM observations WHERE entity_id = ? ORDER BY id",
                (entity_id,),
            ).fetchall()
        return [self._observation(r) for r in rows]

    def delete_observation(self, observation_id: int) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM observations WHERE id = ?", (observation_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def upsert_relation(
        self,
        from_entity: int,
        to_entity: int,
        relation_type: str,
        strength: Optional[float] = None,
    ) -> Relation:
        """
        Create the relation, or update its strength if it already exists.

        A ``None`` strength keeps the stored value (1.0 for new relations).
        """
        now = utc_now()
        strategies = {"created_at": merge.KEEP}
        if strength is None:
            strategies["strength"] = merge.KEEP
        with self.transaction() as conn:
            rel_id, _ = merge.upsert_row(
                conn, "relations",
                {"from_entity": from_entity, "to_entity": to_entity,
                 "relation_type": relation_type},
                {"strength": 1.0 if strength is None else strength, "created_at": now},
                strategies, touch=("updated_at", now),
            )
            row = conn.execute("SELECT * FROM relations WHERE id = ?", (rel_id,)).fetchone()
        return self._relation(row)

    def find_relation(self, from_entity: int, to_entity: int,
                      relation_type: str) -> Optional[Relation]:
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT * FROM relations
                WHERE from_entity = ? AND to_entity = ? AND relation_type = ?
                """,
                (from_entity, to_entity, relation_type),
            ).fetchone()
        return self._relation(row) if row else None

    def get_relations(self, entity_id: int) -> list[Relation]:
        """All relations where *entity_id* is either endpoint."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM relations WHERE from_entity = ? OR to_entity = ? ORDER BY id",
                (entity_id, entity_id),
            ).fetchall()
        return [self._relation(r) for r in rows]

    def list_relations(self) -> list[Relation]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM relations ORDER BY id").fetchall()
        return [self._relation(r) for r in rows]

    def delete_relation(self, relation_id: int) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM relations WHERE id = ?", (relation_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Error solutions
    # ------------------------------------------------------------------

    def upsert_error_solution(self, solution: ErrorSolution) -> ErrorSolution:
        """
        Store *solution*, merging list fields into an existing row with the
        same ``(error_pattern, solution_description)``.  Outcome counters
        are never touched here.
        """
        now = utc_now()
        strategies = dict(_ERROR_MERGE)
        strategies["success_count"] = merge.KEEP
        strategies["fail_count"] = merge.KEEP
        with self.transaction() as conn:
            sol_id, inserted = merge.upsert_row(
                conn, "error_solutions",
                {"error_pattern": solution.error_pattern,
                 "solution_description": solution.solution_description},
                {
                    "error_message": solution.error_message,
                    "error_type": solution.error_type,
                    "file_pattern": solution.file_pattern,
                    "stack_trace_pattern": solution.stack_trace_pattern,
                    "solution_code": solution.solution_code,
                    "solution_files": solution.solution_files,
                    "solution_steps": solution.solution_steps,
                    "related_pattern": solution.related_pattern,
                    "tags": solution.tags,
                    "success_count": 0,
                    "fail_count": 0,
                    "commit_hash": solution.commit_hash,
                    "created_at": now,
                },
                strategies, touch=("updated_at", now),
            )
            if inserted:
                logger.info("[Store] Stored error solution #%d: %.50s", sol_id,
                            solution.error_pattern)
            row = conn.execute(
                "SELECT * FROM error_solutions WHERE id = ?", (sol_id,)
            ).fetchone()
        return self._solution(row)

    def get_error_solution(self, solution_id: int) -> Optional[ErrorSolution]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM error_solutions WHERE id = ?", (solution_id,)
            ).fetchone()
        return self._solution(row) if row else None

    def list_error_solutions(self, limit: Optional[int] = None) -> list[ErrorSolution]:
        sql = "SELECT * FROM error_solutions ORDER BY success_count DESC, id"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._solution(r) for r in rows]

    def search_error_solutions(self, query: str, limit: int = 20) -> list[ErrorSolution]:
        """Substring search over raw messages, patterns and descriptions."""
        if not query or not query.strip():
            return []
        term = _like_term(query.strip())
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM error_solutions
                WHERE error_message LIKE ? ESCAPE '\\'
                   OR error_pattern LIKE ? ESCAPE '\\'
                   OR solution_description LIKE ? ESCAPE '\\'
                ORDER BY success_count DESC, updated_at DESC
                LIMIT ?
                """,
                (term, term, term, limit),
            ).fetchall()
        return [self._solution(r) for r in rows]

    def find_error_candidates(
        self,
        normalized: str,
        raw: str,
        error_type: str = "",
        file_pattern: str = "",
    ) -> list[ErrorSolution]:
        """
        Solutions that could match an error by any tier: pattern equality,
        pattern containment in either direction, raw-text containment, or
        (when given) the same error type or file pattern.
        """
        if not normalized:
            return []
        norm_lower = normalized.lower()
        raw_lower = raw.lower()
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM error_solutions
                WHERE error_pattern = ?
                   OR instr(lower(error_pattern), ?) > 0
                   OR instr(?, lower(error_pattern)) > 0
                   OR instr(lower(error_message), ?) > 0
                   OR instr(?, lower(error_message)) > 0
                   OR instr(lower(error_message), ?) > 0
                   OR instr(lower(solution_description), ?) > 0
                   OR (? != '' AND error_type = ?)
                   OR (? != '' AND file_pattern = ?)
                """,
                (normalized, norm_lower, norm_lower, raw_lower, raw_lower,
                 norm_lower, raw_lower, error_type, error_type,
                 file_pattern, file_pattern),
            ).fetchall()
        return [self._solution(r) for r in rows]

    def increment_solution_counter(self, solution_id: int, succeeded: bool) -> bool:
        """
        Atomically bump the success or fail counter of a solution.

        Returns False when no solution has that id.
        """
        column = "success_count" if succeeded else "fail_count"
        now = utc_now()
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE error_solutions SET {column} = {column} + 1, "
                "last_used_at = ?, updated_at = ? WHERE id = ?",
                (now, now, solution_id),
            )
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def upsert_commit(self, commit: CommitRecord) -> CommitRecord:
        """Insert a learned commit; on re-learn only metadata-derived fields refresh."""
        now = utc_now()
        with self.transaction() as conn:
            merge.upsert_row(
                conn, "git_commits", {"hash": commit.hash},
                {
                    "message": commit.message,
                    "type": commit.type,
                    "module": commit.module,
                    "identity": commit.identity,
                    "author": commit.author,
                    "files_changed": commit.files_changed,
                    "insertions": commit.insertions,
                    "deletions": commit.deletions,
                    "has_metadata_block": commit.has_metadata_block,
                    "metadata_block": commit.metadata_block,
                    "error_fix": commit.error_fix,
                    "pattern": commit.pattern,
                    "solution": commit.solution,
                    "tags": commit.tags,
                    "detected_patterns": commit.detected_patterns,
                    "is_breaking": commit.is_breaking,
                    "commit_timestamp": commit.commit_timestamp,
                    "learned_at": now,
                },
                _COMMIT_MERGE,
            )
            row = conn.execute(
                "SELECT * FROM git_commits WHERE hash = ?", (commit.hash,)
            ).fetchone()
        return self._commit(row)

    def get_commit(self, commit_hash: str) -> Optional[CommitRecord]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM git_commits WHERE hash = ?", (commit_hash,)
            ).fetchone()
        return self._commit(row) if row else None

    def list_recent_commits(self, limit: int = 20) -> list[CommitRecord]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM git_commits ORDER BY commit_timestamp DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._commit(r) for r in rows]

    def list_metadata_commits(self, limit: int = 20) -> list[CommitRecord]:
        """Recent commits that carried a metadata block."""
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM git_commits WHERE has_metadata_block = 1
                ORDER BY commit_timestamp DESC, id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [self._commit(r) for r in rows]

    def search_commits(self, query: str, limit: int = 20) -> list[CommitRecord]:
        if not query or not query.strip():
            return []
        term = _like_term(query.strip())
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM git_commits
                WHERE message LIKE ? ESCAPE '\\' OR module LIKE ? ESCAPE '\\'
                ORDER BY commit_timestamp DESC, id DESC
                LIMIT ?
                """,
                (term, term, limit),
            ).fetchall()
        return [self._commit(r) for r in rows]

    # ------------------------------------------------------------------
    # Code patterns
    # ------------------------------------------------------------------

    def upsert_code_pattern(self, pattern: CodePattern) -> CodePattern:
        """
        Store a pattern; re-learning it bumps ``usage_count``, unions its
        list fields and never blanks out optional text.
        """
        now = utc_now()
        with self.transaction() as conn:
            merge.upsert_row(
                conn, "code_patterns", {"pattern_name": pattern.pattern_name},
                {
                    "pattern_type": pattern.pattern_type,
                    "category": pattern.category,
                    "description": pattern.description,
                    "example_code": pattern.example_code,
                    "anti_pattern": pattern.anti_pattern,
                    "anti_pattern_reason": pattern.anti_pattern_reason,
                    "related_files": pattern.related_files,
                    "tags": pattern.tags,
                    "usage_count": pattern.usage_count,
                    "effectiveness_score": pattern.effectiveness_score,
                    "source_commit": pattern.source_commit,
                    "created_at": now,
                },
                _PATTERN_MERGE, touch=("updated_at", now),
            )
            row = conn.execute(
                "SELECT * FROM code_patterns WHERE pattern_name = ?",
                (pattern.pattern_name,),
            ).fetchone()
        return self._pattern(row)

    def get_code_pattern(self, name: str) -> Optional[CodePattern]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM code_patterns WHERE pattern_name = ?", (name,)
            ).fetchone()
        return self._pattern(row) if row else None

    def list_code_patterns(self) -> list[CodePattern]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM code_patterns ORDER BY usage_count DESC, pattern_name"
            ).fetchall()
        return [self._pattern(r) for r in rows]

    def search_code_patterns(self, query: str, limit: int = 20) -> list[CodePattern]:
        if not query or not query.strip():
            return []
        term = _like_term(query.strip())
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM code_patterns
                WHERE pattern_name LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\'
                ORDER BY usage_count DESC
                LIMIT ?
                """,
                (term, term, limit),
            ).fetchall()
        return [self._pattern(r) for r in rows]

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    def add_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        """Append one pass to the sync log (never updated afterwards)."""
        synced_at = entry.synced_at or utc_now()
        started_at = entry.started_at or synced_at
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO sync_log
                    (sync_kind, direction, status, counts, error_message,
                     duration_ms, graph_size, started_at, synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (entry.sync_kind, entry.direction, entry.status,
                 json.dumps(entry.counts, sort_keys=True), entry.error_message,
                 entry.duration_ms, entry.graph_size, started_at, synced_at),
            )
            row = conn.execute("SELECT * FROM sync_log WHERE id = ?", (cur.lastrowid,)).fetchone()
        return self._sync_entry(row)

    def get_last_sync(self) -> Optional[SyncLogEntry]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM sync_log ORDER BY id DESC LIMIT 1").fetchone()
        return self._sync_entry(row) if row else None

    def get_last_successful_export(self) -> Optional[SyncLogEntry]:
        """Most recent successful pass that wrote the graph file."""
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT * FROM sync_log
                WHERE status = 'success' AND direction IN ('to_graph', 'bidirectional')
                ORDER BY id DESC LIMIT 1
                """
            ).fetchone()
        return self._sync_entry(row) if row else None

    def list_sync_log(self, limit: int = 20) -> list[SyncLogEntry]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._sync_entry(r) for r in rows]

    # ------------------------------------------------------------------
    # Graph views
    # ------------------------------------------------------------------

    def export_graph_records(self) -> tuple[list[tuple[Entity, list[str]]],
                                            list[tuple[str, str, str]]]:
        """
        Everything the external graph is derived from.

        Returns
        -------
        tuple
            ``(entities, relations)`` where each entity is paired with its
            observation contents and each relation is
            ``(from_name, to_name, relation_type)``.
        """
        return self._graph_records(EPOCH, everything=True)

    def graph_delta_since(self, since: str) -> tuple[list[tuple[Entity, list[str]]],
                                                     list[tuple[str, str, str]]]:
        """
        Entities, observations and relations created or updated at or after
        *since*.  Relation endpoints are included so the delta is
        self-contained.
        """
        return self._graph_records(since, everything=False)

    def _graph_records(self, since: str, everything: bool):
        with self._read() as conn:
            if everything:
                rel_rows = conn.execute(
                    """
                    SELECT f.name AS from_name, t.name AS to_name, r.relation_type
                    FROM relations r
                    JOIN entities f ON f.id = r.from_entity
                    JOIN entities t ON t.id = r.to_entity
                    ORDER BY r.id
                    """
                ).fetchall()
                ent_rows = conn.execute("SELECT * FROM entities ORDER BY id").fetchall()
            else:
                rel_rows = conn.execute(
                    """
                    SELECT f.name AS from_name, t.name AS to_name, r.relation_type
                    FROM relations r
                    JOIN entities f ON f.id = r.from_entity
                    JOIN entities t ON t.id = r.to_entity
                    WHERE r.updated_at >= ?
                    ORDER BY r.id
                    """,
                    (since,),
                ).fetchall()
                ent_rows = conn.execute(
                    """
                    SELECT * FROM entities e
                    WHERE e.updated_at >= ?
                       OR EXISTS (SELECT 1 FROM observations o
                                  WHERE o.entity_id = e.id AND o.created_at >= ?)
                       OR EXISTS (SELECT 1 FROM relations r
                                  WHERE (r.from_entity = e.id OR r.to_entity = e.id)
                                    AND r.updated_at >= ?)
                    ORDER BY e.id
                    """,
                    (since, since, since),
                ).fetchall()

            obs_rows = conn.execute(
                "SELECT entity_id, content FROM observations ORDER BY id"
            ).fetchall()

        by_entity: dict[int, list[str]] = {}
        for row in obs_rows:
            by_entity.setdefault(row["entity_id"], []).append(row["content"])

        entities = [(self._entity(r), by_entity.get(r["id"], [])) for r in ent_rows]
        relations = [(r["from_name"], r["to_name"], r["relation_type"]) for r in rel_rows]
        return entities, relations

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> StoreStats:
        """Return row counts for every table."""
        with self._read() as conn:
            def count(sql: str) -> int:
                return conn.execute(sql).fetchone()[0]

            last = conn.execute(
                "SELECT synced_at FROM sync_log WHERE status = 'success' "
                "ORDER BY id DESC LIMIT 1"
            ).fetchone()
            return StoreStats(
                entities=count("SELECT COUNT(*) FROM entities"),
                observations=count("SELECT COUNT(*) FROM observations"),
                relations=count("SELECT COUNT(*) FROM relations"),
                error_solutions=count("SELECT COUNT(*) FROM error_solutions"),
                proven_solutions=count(
                    "SELECT COUNT(*) FROM error_solutions WHERE success_count > 0"),
                commits=count("SELECT COUNT(*) FROM git_commits"),
                metadata_commits=count(
                    "SELECT COUNT(*) FROM git_commits WHERE has_metadata_block = 1"),
                code_patterns=count("SELECT COUNT(*) FROM code_patterns"),
                sync_passes=count("SELECT COUNT(*) FROM sync_log"),
                last_sync_at=last["synced_at"] if last else "",
            )
