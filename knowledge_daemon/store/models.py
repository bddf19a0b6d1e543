"""
Record types held by the knowledge store.

List-valued fields are persisted as JSON text; timestamps are ISO-8601 UTC
strings with microsecond precision so they sort and compare as text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Entity:
    """A named thing in the knowledge graph (module, pattern, concept)."""

    name: str
    kind: str
    description: str = ""
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Observation:
    """A single fact attached to an entity."""

    entity_id: int
    content: str
    source: str = ""
    source_ref: str = ""
    confidence: float = 1.0
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class Relation:
    """A directed, typed edge between two entities."""

    from_entity: int
    to_entity: int
    relation_type: str
    strength: float = 1.0
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class ErrorSolution:
    """A normalized error signature paired with a known fix."""

    error_pattern: str
    error_message: str
    solution_description: str
    error_type: str = ""
    file_pattern: str = ""
    stack_trace_pattern: str = ""
    solution_code: str = ""
    solution_files: list[str] = field(default_factory=list)
    solution_steps: list[str] = field(default_factory=list)
    related_pattern: str = ""
    tags: list[str] = field(default_factory=list)
    success_count: int = 0
    fail_count: int = 0
    last_used_at: str = ""
    commit_hash: str = ""
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def success_rate(self) -> float:
        """Fraction of recorded outcomes that succeeded (1.0 with no history)."""
        total = self.success_count + self.fail_count
        if total == 0:
            return 1.0
        return self.success_count / total


@dataclass
class CommitRecord:
    """A commit as learned from version control."""

    hash: str
    message: str
    type: Optional[str] = None
    module: Optional[str] = None
    identity: Optional[str] = None
    author: str = ""
    files_changed: list[str] = field(default_factory=list)
    insertions: int = 0
    deletions: int = 0
    has_metadata_block: bool = False
    metadata_block: dict = field(default_factory=dict)
    error_fix: str = ""
    pattern: str = ""
    solution: str = ""
    tags: list[str] = field(default_factory=list)
    detected_patterns: list[str] = field(default_factory=list)
    is_breaking: bool = False
    commit_timestamp: str = ""
    id: Optional[int] = None
    learned_at: str = ""


@dataclass
class CodePattern:
    """A reusable coding pattern (and optionally its anti-pattern)."""

    pattern_name: str
    pattern_type: str = "general"
    category: str = ""
    description: str = ""
    example_code: str = ""
    anti_pattern: str = ""
    anti_pattern_reason: str = ""
    related_files: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    usage_count: int = 1
    effectiveness_score: float = 0.0
    source_commit: str = ""
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class SyncLogEntry:
    """One reconciliation pass, successful or not."""

    sync_kind: str          # "full" | "incremental"
    direction: str          # "to_graph" | "from_graph" | "bidirectional"
    status: str             # "success" | "failed" | "rejected"
    counts: dict = field(default_factory=dict)
    error_message: str = ""
    duration_ms: int = 0
    graph_size: int = 0
    started_at: str = ""
    id: Optional[int] = None
    synced_at: str = ""


@dataclass
class StoreStats:
    """Row counts and a few derived figures for the whole store."""

    entities: int = 0
    observations: int = 0
    relations: int = 0
    error_solutions: int = 0
    proven_solutions: int = 0
    commits: int = 0
    metadata_commits: int = 0
    code_patterns: int = 0
    sync_passes: int = 0
    last_sync_at: str = ""

    def to_dict(self) -> dict:
        return {
            "entities": self.entities,
            "observations": self.observations,
            "relations": self.relations,
            "error_solutions": self.error_solutions,
            "proven_solutions": self.proven_solutions,
            "commits": self.commits,
            "metadata_commits": self.metadata_commits,
            "code_patterns": self.code_patterns,
            "sync_passes": self.sync_passes,
            "last_sync_at": self.last_sync_at,
        }
