"""
Reconciliation between the knowledge store and the external graph file.
"""

from .engine import GraphSyncEngine, SyncResult
from .graph_file import KnowledgeGraph
from .scheduler import SyncScheduler

__all__ = ["GraphSyncEngine", "SyncResult", "KnowledgeGraph", "SyncScheduler"]
