"""
Commit learner: turns version-control commits into stored knowledge.

For each commit the learner stores a :class:`CommitRecord`, and, when the
commit message carries a ``[BRAIN]`` block, the error solution and code
pattern it declares.  Module entities are created from the commit scope and
from the changed file paths, and linked to the patterns the commit shows.
All writes for one commit happen in a single store transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from ..errors import CollaboratorUnavailableError
from ..git_utils import CommitInfo
from ..store.knowledge_store import KnowledgeStore
from ..store.models import CodePattern, CommitRecord, ErrorSolution
from .commit_parser import (
    categorize_files,
    categorize_pattern,
    detect_patterns,
    parse_commit_message,
    parse_metadata_block,
)
from .error_matcher import extract_error_type, normalize
from .module_detector import detect_modules, module_slug

logger = logging.getLogger(__name__)

MODULE_KIND = "module"
PATTERN_KIND = "pattern"
USES_PATTERN = "uses_pattern"

DECLARED_STRENGTH = 1.0
DETECTED_STRENGTH = 0.5


class CommitSource(Protocol):
    """Anything that can describe commits (normally a GitRepository)."""

    def get_commit_info(self, commit_hash: str) -> CommitInfo: ...

    def recent_hashes(self, count: int = 20) -> list[str]: ...


@dataclass
class LearnResult:
    """Outcome of learning one commit."""

    commit: CommitRecord
    already_learned: bool = False
    error_solution: Optional[ErrorSolution] = None
    pattern: Optional[CodePattern] = None
    modules: list[str] = field(default_factory=list)
    categories: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "hash": self.commit.hash,
            "type": self.commit.type,
            "module": self.commit.module,
            "identity": self.commit.identity,
            "has_metadata_block": self.commit.has_metadata_block,
            "already_learned": self.already_learned,
            "error_solution_id": self.error_solution.id if self.error_solution else None,
            "pattern": self.pattern.pattern_name if self.pattern else None,
            "detected_patterns": list(self.commit.detected_patterns),
            "modules": list(self.modules),
        }


@dataclass
class BatchResult:
    """Outcome of learning a batch of recent commits."""

    learned: int = 0
    already_known: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "learned": self.learned,
            "already_known": self.already_known,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class CommitLearner:
    """
    Learns commits from a VCS collaborator into the knowledge store.

    Parameters
    ----------
    store:
        Destination knowledge store.
    source:
        Commit metadata provider (``GitRepository`` in production).
    """

    def __init__(self, store: KnowledgeStore, source: CommitSource) -> None:
        self._store = store
        self._source = source

    def learn_commit(self, commit_hash: str, refresh: bool = False) -> LearnResult:
        """
        Learn one commit.

        An already-learned hash short-circuits and returns the stored record
        unless *refresh* is set, in which case metadata-derived fields are
        re-parsed and refreshed (without duplicating solutions or patterns).

        Raises
        ------
        CollaboratorUnavailableError
            If the VCS cannot describe the commit.  Nothing is written.
        """
        if not commit_hash or not commit_hash.strip():
            raise CollaboratorUnavailableError("Empty commit hash")
        commit_hash = commit_hash.strip()

        existing = self._store.get_commit(commit_hash)
        if existing is not None and not refresh:
            logger.debug("[Learner] Commit %s already learned", commit_hash[:8])
            return LearnResult(commit=existing, already_learned=True)

        info = self._source.get_commit_info(commit_hash)
        if existing is None and info.hash != commit_hash:
            # Short hashes resolve to the full one; learn under the full hash.
            existing = self._store.get_commit(info.hash)
            if existing is not None and not refresh:
                return LearnResult(commit=existing, already_learned=True)

        result = self._persist(info, relearn=existing is not None)
        result.already_learned = existing is not None
        logger.info("[Learner] Learned commit %s (%s)", info.hash[:8],
                    result.commit.module or "unscoped")
        return result

    def learn_recent(
        self,
        count: int = 20,
        progress: Optional[Callable[[str], None]] = None,
    ) -> BatchResult:
        """
        Learn the *count* most recent commits.

        Commits that cannot be learned are counted as skipped; the batch
        continues.  Failing to list commits at all raises
        ``CollaboratorUnavailableError``.
        """
        batch = BatchResult()
        for commit_hash in self._source.recent_hashes(count):
            try:
                result = self.learn_commit(commit_hash)
            except CollaboratorUnavailableError as exc:
                batch.skipped += 1
                batch.errors.append(f"{commit_hash[:8]}: {exc}")
                logger.warning("[Learner] Skipping %s: %s", commit_hash[:8], exc)
            else:
                if result.already_learned:
                    batch.already_known += 1
                else:
                    batch.learned += 1
            if progress is not None:
                progress(commit_hash)
        logger.info("[Learner] Batch done: %d learned, %d known, %d skipped",
                    batch.learned, batch.already_known, batch.skipped)
        return batch

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, info: CommitInfo, relearn: bool = False) -> LearnResult:
        parsed = parse_commit_message(info.message)
        if parsed is None:
            logger.debug("[Learner] Unparseable header: %.72s",
                         info.message.splitlines()[0] if info.message else "")
        block = parse_metadata_block(info.message)
        categories = categorize_files(info.files_changed)
        detected = detect_patterns(info.files_changed, info.message)

        record = CommitRecord(
            hash=info.hash,
            message=info.message,
            type=parsed.type if parsed else None,
            module=parsed.module if parsed else None,
            identity=parsed.identity if parsed else None,
            author=info.author,
            files_changed=list(info.files_changed),
            insertions=info.insertions,
            deletions=info.deletions,
            has_metadata_block=block is not None,
            metadata_block=block.to_dict() if block else {},
            error_fix=block.error_fix if block else "",
            pattern=(block.pattern if block and block.pattern else
                     (detected[0] if detected else "")),
            solution=block.solution if block else "",
            tags=(block.tags if block and block.tags else list(detected)),
            detected_patterns=detected,
            is_breaking=bool((block and block.breaking) or (parsed and parsed.is_breaking)),
            commit_timestamp=info.timestamp,
        )

        modules: list[str] = []
        if parsed is not None:
            modules.append(module_slug(parsed.module))
        for module in detect_modules(info.files_changed):
            if module not in modules:
                modules.append(module)

        with self._store.transaction():
            stored = self._store.upsert_commit(record)
            result = LearnResult(commit=stored, modules=modules, categories=categories)

            if block and block.error_fix and block.solution:
                result.error_solution = self._store.upsert_error_solution(ErrorSolution(
                    error_pattern=normalize(block.error_fix),
                    error_message=block.error_fix,
                    error_type=extract_error_type(block.error_fix),
                    solution_description=block.solution,
                    solution_files=block.files or list(info.files_changed),
                    related_pattern=block.pattern,
                    tags=list(block.tags),
                    commit_hash=info.hash,
                ))

            if block and block.pattern:
                # a refreshed commit was already counted once
                counted = relearn and self._store.get_code_pattern(block.pattern) is not None
                result.pattern = self._store.upsert_code_pattern(CodePattern(
                    pattern_name=block.pattern,
                    pattern_type=categorize_pattern(block.pattern),
                    category=parsed.module if parsed else "",
                    description=block.solution or (parsed.description if parsed else ""),
                    related_files=list(block.files),
                    tags=list(block.tags),
                    usage_count=0 if counted else 1,
                    source_commit=info.hash,
                ))

            module_ids: dict[str, int] = {}
            for module in modules:
                entity = self._store.upsert_entity(module, MODULE_KIND, f"{module} module")
                module_ids[module] = entity.id

            if modules:
                primary = modules[0]
                if parsed is not None:
                    content = f"{parsed.type}: {parsed.description}"
                else:
                    content = f"Commit: {info.message.splitlines()[0] if info.message else info.hash}"
                self._store.add_observation(module_ids[primary], content,
                                            source="git", source_ref=info.hash)

            linked: list[tuple[str, float]] = []
            if block and block.pattern:
                linked.append((block.pattern, DECLARED_STRENGTH))
            for name in detected:
                if name not in (n for n, _ in linked):
                    linked.append((name, DETECTED_STRENGTH))

            for name, strength in linked:
                pattern_entity = self._store.upsert_entity(
                    name, PATTERN_KIND, result.pattern.description
                    if result.pattern and result.pattern.pattern_name == name else "",
                )
                for module in modules:
                    self._store.upsert_relation(module_ids[module], pattern_entity.id,
                                                USES_PATTERN, strength)

        return result
