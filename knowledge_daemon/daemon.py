"""
Knowledge daemon: wires the store, learners, freshness checker and sync
engine together and exposes the operation contract the external HTTP layer
calls.

Every public operation returns an :class:`OperationResult`; a single bad
request never raises out of the facade.  Only failing to open the store is
fatal, and that happens in the constructor.
"""

from __future__ import annotations

import logging
import signal
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from . import health as health_mod
from .config import Config
from .errors import KnowledgeDaemonError, ValidationError
from .freshness.pattern_checker import PatternFreshnessChecker, YamlPatternSource
from .git_utils import GitRepository
from .learners.commit_learner import CommitLearner, CommitSource
from .learners.error_matcher import ErrorSolutionMatcher
from .store.knowledge_store import KnowledgeStore
from .sync.engine import SYNC_KINDS, GraphSyncEngine
from .sync.scheduler import SyncScheduler
from .sync.watcher import GraphFileWatcher

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Uniform result of a daemon operation."""

    success: bool
    reason: str = ""
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None, reason: str = "") -> "OperationResult":
        return cls(True, reason, data)

    @classmethod
    def fail(cls, reason: str, data: Any = None) -> "OperationResult":
        return cls(False, reason, data)

    def to_dict(self) -> dict:
        return {"success": self.success, "reason": self.reason, "data": self.data}


def _field(payload: dict, *names: str, default=None):
    """First present key among *names* (camelCase contract keys, then snake_case)."""
    for name in names:
        if name in payload and payload[name] is not None:
            return payload[name]
    return default


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "1", "yes", "success"):
        return True
    if isinstance(value, str) and value.lower() in ("false", "0", "no", "fail", "failed"):
        return False
    if isinstance(value, int):
        return bool(value)
    raise ValidationError(f"succeeded must be a boolean, got {value!r}")


class KnowledgeDaemon:
    """
    Long-lived knowledge daemon.

    Parameters
    ----------
    config:
        Resolved configuration.
    source:
        Commit metadata provider; defaults to a ``GitRepository`` on
        ``config.PROJECT_ROOT``.
    pattern_source:
        Reference pattern provider; defaults to a ``YamlPatternSource`` on
        ``config.REFERENCE_PATTERNS_PATH``.

    Raises
    ------
    StoreInitError
        If the knowledge store cannot be opened.
    """

    def __init__(
        self,
        config: Config,
        source: Optional[CommitSource] = None,
        pattern_source=None,
    ) -> None:
        self.config = config
        self.store = KnowledgeStore(config.SQLITE_PATH)
        self.source = source if source is not None else GitRepository(config.PROJECT_ROOT)
        self.learner = CommitLearner(self.store, self.source)
        self.matcher = ErrorSolutionMatcher(self.store)
        self.checker = PatternFreshnessChecker(
            self.store,
            pattern_source if pattern_source is not None
            else YamlPatternSource(config.REFERENCE_PATTERNS_PATH),
        )
        self.engine = GraphSyncEngine(
            self.store,
            config.MEMORY_FILE_PATH,
            backup_keep=config.BACKUP_KEEP,
            queue_timeout=config.SYNC_QUEUE_TIMEOUT_SECONDS,
        )
        self.scheduler = SyncScheduler(
            self.engine,
            interval=config.sync_interval_seconds,
            full_every=config.FULL_SYNC_EVERY,
            failure_threshold=config.SYNC_FAILURE_THRESHOLD,
            recovery_delay=config.SYNC_RECOVERY_DELAY_SECONDS,
            shutdown_timeout=config.SHUTDOWN_TIMEOUT_SECONDS,
        )
        self.watcher: Optional[GraphFileWatcher] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Bring the daemon up: import the existing graph, learn recent
        commits, write a full export, then start the scheduler (and the
        graph watcher when enabled).  Startup steps that fail are logged
        and skipped.
        """
        logger.info("[Daemon] Starting (store=%s, graph=%s)",
                    self.config.SQLITE_PATH, self.config.MEMORY_FILE_PATH)

        initial = self.sync("import")
        if not initial.success:
            logger.warning("[Daemon] Initial import failed: %s", initial.reason)

        if self.config.LEARN_RECENT_ON_START > 0:
            learned = self.learn_recent(self.config.LEARN_RECENT_ON_START)
            if not learned.success:
                logger.warning("[Daemon] Startup learning skipped: %s", learned.reason)

        exported = self.sync("full")
        if not exported.success:
            logger.warning("[Daemon] Initial export failed: %s", exported.reason)

        self.scheduler.start()
        if self.config.WATCH_GRAPH_FILE:
            self.watcher = GraphFileWatcher(self.engine)
            self.watcher.start()
        logger.info("[Daemon] Ready")

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the watcher and scheduler, running one bounded final full sync."""
        logger.info("[Daemon] Shutting down")
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        result = self.scheduler.stop(final_sync=True, timeout=timeout)
        if result is not None and not result.success:
            logger.warning("[Daemon] Final sync failed: %s", result.error)
        self._stop_event.set()

    def request_stop(self, *_args) -> None:
        self._stop_event.set()

    def serve_forever(self) -> None:
        """Start, block until SIGINT/SIGTERM or :meth:`request_stop`, then shut down."""
        self.start()
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self.request_stop)
            signal.signal(signal.SIGTERM, self.request_stop)
        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.shutdown()

    # ------------------------------------------------------------------
    # Operation guard
    # ------------------------------------------------------------------

    def _guard(self, name: str, fn: Callable[[], OperationResult]) -> OperationResult:
        try:
            return fn()
        except ValidationError as exc:
            return OperationResult.fail(f"Invalid request: {exc}")
        except KnowledgeDaemonError as exc:
            logger.warning("[Daemon] %s failed: %s", name, exc)
            return OperationResult.fail(str(exc))
        except (sqlite3.Error, OSError) as exc:
            logger.exception("[Daemon] %s failed", name)
            return OperationResult.fail(f"{name} failed: {exc}")
        except Exception as exc:
            logger.exception("[Daemon] %s crashed", name)
            return OperationResult.fail(f"{name} failed: {type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def health(self) -> OperationResult:
        def run() -> OperationResult:
            status = health_mod.check(self.store, self.engine, self.scheduler,
                                      self.source, self.watcher)
            return OperationResult(status.healthy, "" if status.healthy else "degraded",
                                   health_mod.to_dict(status))
        return self._guard("health", run)

    def stats(self) -> OperationResult:
        return self._guard("stats", lambda: OperationResult.ok(self.store.stats().to_dict()))

    def query(self, text: str, limit: int = 10) -> OperationResult:
        """Substring search across entities, solutions, patterns and commits."""
        def run() -> OperationResult:
            if not isinstance(text, str) or not text.strip():
                raise ValidationError("query text is required")
            data = {
                "entities": [
                    {"name": e.name, "kind": e.kind, "description": e.description}
                    for e in self.store.search_entities(text, limit)
                ],
                "error_solutions": [
                    {"id": s.id, "pattern": s.error_pattern,
                     "solution": s.solution_description,
                     "success_rate": round(s.success_rate, 4)}
                    for s in self.store.search_error_solutions(text, limit)
                ],
                "patterns": [
                    {"name": p.pattern_name, "type": p.pattern_type,
                     "description": p.description, "usage_count": p.usage_count}
                    for p in self.store.search_code_patterns(text, limit)
                ],
                "commits": [
                    {"hash": c.hash, "module": c.module,
                     "message": c.message.splitlines()[0] if c.message else ""}
                    for c in self.store.search_commits(text, limit)
                ],
            }
            return OperationResult.ok(data)
        return self._guard("query", run)

    def recent_commits(self, limit: int = 20, metadata_only: bool = False) -> OperationResult:
        def run() -> OperationResult:
            commits = (self.store.list_metadata_commits(limit) if metadata_only
                       else self.store.list_recent_commits(limit))
            return OperationResult.ok([
                {"hash": c.hash, "type": c.type, "module": c.module,
                 "identity": c.identity, "author": c.author,
                 "has_metadata_block": c.has_metadata_block,
                 "timestamp": c.commit_timestamp}
                for c in commits
            ])
        return self._guard("recent_commits", run)

    # ------------------------------------------------------------------
    # Commit learning
    # ------------------------------------------------------------------

    def learn_commit(self, commit_hash: str, refresh: bool = False) -> OperationResult:
        def run() -> OperationResult:
            if not isinstance(commit_hash, str) or not commit_hash.strip():
                raise ValidationError("hash is required")
            result = self.learner.learn_commit(commit_hash, refresh=refresh)
            reason = "Commit already learned" if result.already_learned and not refresh else ""
            return OperationResult.ok(result.to_dict(), reason)
        return self._guard("learn_commit", run)

    def learn_recent(self, count: int = 20, progress=None) -> OperationResult:
        def run() -> OperationResult:
            try:
                n = int(count)
            except (TypeError, ValueError):
                raise ValidationError("count must be an integer")
            if n <= 0:
                raise ValidationError("count must be positive")
            batch = self.learner.learn_recent(n, progress=progress)
            return OperationResult.ok(batch.to_dict())
        return self._guard("learn_recent", run)

    # ------------------------------------------------------------------
    # Error solutions
    # ------------------------------------------------------------------

    def learn_error(self, payload: dict) -> OperationResult:
        """Store an error/solution pair from ``{errorMessage, solution, ...}``."""
        def run() -> OperationResult:
            if not isinstance(payload, dict):
                raise ValidationError("payload must be an object")
            stored = self.matcher.learn_error(
                error_message=_field(payload, "errorMessage", "error_message", default=""),
                solution=_field(payload, "solution", default=""),
                error_type=_field(payload, "errorType", "error_type"),
                stack_trace=_field(payload, "stackTrace", "stack_trace"),
                file_path=_field(payload, "filePath", "file_path"),
                solution_code=_field(payload, "solutionCode", "solution_code", default=""),
                files_changed=_field(payload, "filesChanged", "files_changed"),
                steps=_field(payload, "steps"),
                pattern=_field(payload, "pattern", default=""),
                tags=_field(payload, "tags"),
                commit_hash=_field(payload, "commitHash", "commit_hash", default=""),
            )
            return OperationResult.ok({"id": stored.id, "pattern": stored.error_pattern,
                                       "error_type": stored.error_type})
        return self._guard("learn_error", run)

    def find_solution(self, payload: dict) -> OperationResult:
        """Ranked candidates for ``{errorMessage, errorType?, filePath?, limit?}``."""
        def run() -> OperationResult:
            if not isinstance(payload, dict):
                raise ValidationError("payload must be an object")
            message = _field(payload, "errorMessage", "error_message", default="")
            if not isinstance(message, str) or not message.strip():
                raise ValidationError("errorMessage is required")
            try:
                limit = int(_field(payload, "limit", default=5))
            except (TypeError, ValueError):
                raise ValidationError("limit must be an integer")
            candidates = self.matcher.find_solutions(
                message,
                limit=limit,
                error_type=_field(payload, "errorType", "error_type"),
                file_path=_field(payload, "filePath", "file_path"),
            )
            solutions = [c.to_dict() for c in candidates]
            return OperationResult.ok({
                "found": bool(solutions),
                "solutions": solutions,
                "best": solutions[0] if solutions else None,
            })
        return self._guard("find_solution", run)

    def auto_suggest(self, payload: dict) -> OperationResult:
        def run() -> OperationResult:
            if not isinstance(payload, dict):
                raise ValidationError("payload must be an object")
            message = _field(payload, "errorMessage", "error_message", default="")
            if not isinstance(message, str) or not message.strip():
                raise ValidationError("errorMessage is required")
            suggestion = self.matcher.auto_suggest(message)
            if suggestion is None:
                return OperationResult.ok({"found": False, "suggestion": None})
            return OperationResult.ok({
                "found": True,
                "suggestion": suggestion.to_dict(),
                "alternatives": [c.to_dict() for c in suggestion.alternatives],
            })
        return self._guard("auto_suggest", run)

    def mark_outcome(self, payload: dict) -> OperationResult:
        """Record ``{solutionId, succeeded}``."""
        def run() -> OperationResult:
            if not isinstance(payload, dict):
                raise ValidationError("payload must be an object")
            raw_id = _field(payload, "solutionId", "solution_id")
            if raw_id is None:
                raise ValidationError("solutionId is required")
            try:
                solution_id = int(raw_id)
            except (TypeError, ValueError):
                raise ValidationError(f"solutionId must be an integer, got {raw_id!r}")
            raw_outcome = _field(payload, "succeeded", "success")
            if raw_outcome is None:
                raise ValidationError("succeeded is required")
            succeeded = _as_bool(raw_outcome)
            if not self.matcher.record_outcome(solution_id, succeeded):
                return OperationResult.fail(f"Solution #{solution_id} not found")
            sol = self.store.get_error_solution(solution_id)
            return OperationResult.ok({
                "id": solution_id,
                "success_count": sol.success_count if sol else None,
                "fail_count": sol.fail_count if sol else None,
            })
        return self._guard("mark_outcome", run)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(self, kind: str = "bidirectional") -> OperationResult:
        """Run a ``full``, ``incremental``, ``bidirectional`` or ``import`` pass now."""
        def run() -> OperationResult:
            if kind not in SYNC_KINDS:
                raise ValidationError(
                    f"unknown sync kind {kind!r} (expected one of {', '.join(SYNC_KINDS)})")
            result = self.engine.run(kind)
            if not result.success:
                return OperationResult.fail(result.error, result.to_dict())
            return OperationResult.ok(result.to_dict())
        return self._guard("sync", run)

    def sync_status(self) -> OperationResult:
        def run() -> OperationResult:
            data = self.engine.status()
            data["scheduler"] = {
                "running": self.scheduler.is_running,
                "ticks": self.scheduler.ticks,
                "consecutive_failures": self.scheduler.consecutive_failures,
                "recovery_pending": self.scheduler.recovery_pending,
                "interval_seconds": self.scheduler.interval,
            }
            return OperationResult.ok(data)
        return self._guard("sync_status", run)

    # ------------------------------------------------------------------
    # Pattern freshness
    # ------------------------------------------------------------------

    def pattern_status(self) -> OperationResult:
        def run() -> OperationResult:
            report = self.checker.check()
            data = self.checker.summary(report)
            data["report"] = report.to_dict()
            return OperationResult.ok(data, data["message"])
        return self._guard("pattern_status", run)

    def pattern_attention(self) -> OperationResult:
        def run() -> OperationResult:
            return OperationResult.ok([p.to_dict() for p in self.checker.needing_attention()])
        return self._guard("pattern_attention", run)

    def patterns(self) -> OperationResult:
        def run() -> OperationResult:
            return OperationResult.ok([
                {"name": p.pattern_name, "type": p.pattern_type, "category": p.category,
                 "description": p.description, "usage_count": p.usage_count,
                 "source_commit": p.source_commit}
                for p in self.store.list_code_patterns()
            ])
        return self._guard("patterns", run)


