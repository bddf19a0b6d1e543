"""
Exception types raised by knowledge_daemon components.

Components raise these; the daemon facade turns them into failed
``OperationResult`` values so a single bad request never takes the
process down.
"""


class KnowledgeDaemonError(Exception):
    """Base class for all knowledge_daemon errors."""


class ValidationError(KnowledgeDaemonError):
    """A request is missing a required field or carries a malformed value."""


class CollaboratorUnavailableError(KnowledgeDaemonError):
    """An external collaborator (VCS, graph file) could not be reached."""


class SyncInProgressError(KnowledgeDaemonError):
    """A sync pass was requested while another one held the lock too long."""


class StoreInitError(KnowledgeDaemonError):
    """The relational store could not be opened or its schema created."""
