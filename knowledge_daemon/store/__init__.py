"""
Relational knowledge store (SQLite) and its record types.
"""

from .knowledge_store import KnowledgeStore
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

__all__ = [
    "KnowledgeStore",
    "CodePattern",
    "CommitRecord",
    "Entity",
    "ErrorSolution",
    "Observation",
    "Relation",
    "StoreStats",
    "SyncLogEntry",
]
