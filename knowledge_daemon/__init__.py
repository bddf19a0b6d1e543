"""
knowledge_daemon: persistent project knowledge store.

Learns from commit history and reported error/solution pairs, and keeps
that knowledge in sync with an external newline-delimited JSON knowledge
graph.  Library usage::

    from knowledge_daemon import KnowledgeDaemon, Config

    daemon = KnowledgeDaemon(Config.load())
    result = daemon.find_solution({"error_message": "Port 3000 in use"})
"""

from .config import Config
from .daemon import KnowledgeDaemon, OperationResult

__version__ = "0.1.0"

__all__ = ["Config", "KnowledgeDaemon", "OperationResult"]
