"""
Error-solution matcher.

Normalizes raw error text into a reusable signature, stores error/solution
pairs, and ranks stored solutions for a new error.

Ranking is tiered: an exact signature match always beats signature
containment, which beats incidental text containment, which beats a match
on error type or file pattern alone.  Within the composite score
``tier × success_rate`` ties go to the solution with more recorded
successes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from ..errors import ValidationError
from ..store.knowledge_store import KnowledgeStore
from ..store.models import ErrorSolution
from .common_errors import CommonError, find_common_error

logger = logging.getLogger(__name__)

TIER_EXACT = 100
TIER_CONTAINS = 80
TIER_INCIDENTAL = 60
TIER_RELATED = 40

# Applied in order; each replacement must not re-match a later rule.
_NORMALIZERS: tuple[tuple[re.Pattern, str], ...] = (
    # absolute POSIX paths, optionally with :line[:col]
    (re.compile(r"(?<![\w.:/<])/(?:[\w.@+~-]+/)*[\w.@+~-]+(?::\d+){0,2}"), "<path>"),
    # Windows paths
    (re.compile(r"\b[A-Za-z]:\\(?:[^\\\s:]+\\)*[^\\\s:]+(?::\d+){0,2}"), "<path>"),
    # relative paths with an extension
    (re.compile(r"(?<![\w/.<-])(?:\.{1,2}/)?(?:[\w.@-]+/)+[\w@-]+\.[A-Za-z]{1,5}(?::\d+){0,2}\b"),
     "<path>"),
    (re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.I),
     "<uuid>"),
    (re.compile(r"\b\d{4}-\d{2}-\d{2}(?=\b|T)"), "<date>"),
    (re.compile(r"(?<=<date>)T"), " "),
    (re.compile(r"\b\d{1,2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"), "<time>"),
    (re.compile(r"\b0x[0-9a-f]+\b", re.I), "<hash>"),
    (re.compile(r"\b(?:[0-9a-f]{7,40}|[0-9A-F]{7,40})\b"), "<hash>"),
    (re.compile(r"\bv?\d+\.\d+\.\d+(?:-[\w.]+)?\b"), "<version>"),
    (re.compile(r"\bline\s+\d+", re.I), "line <line>"),
    (re.compile(r":\d+:\d+\b"), ":<line>"),
    (re.compile(r"\bport\s+\d+", re.I), "port <port>"),
    (re.compile(r":\d{4,5}\b"), ":<port>"),
    (re.compile(r"\berror\s*#\d+", re.I), "error #<n>"),
    (re.compile(r"\s+"), " "),
)

# First match wins.
_ERROR_TYPES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("react-infinite-loop", ("Maximum update depth exceeded",)),
    ("react-hooks-order", ("Rendered more hooks", "Rendered fewer hooks")),
    ("react-invalid-hook", ("Invalid hook call",)),
    ("react-hydration", ("Hydration",)),
    ("null-reference", ("Cannot read properties", "Cannot read property",
                        "NoneType' object has no attribute")),
    ("type-error", ("TypeError",)),
    ("reference-error", ("ReferenceError", "NameError")),
    ("syntax-error", ("SyntaxError",)),
    ("rate-limit", ("429", "Too Many Requests")),
    ("prisma-invalid", ("Invalid `prisma", "Invalid invocation")),
    ("prisma-error", ("Prisma",)),
    ("db-constraint", ("constraint",)),
    ("module-not-found", ("Module not found", "Cannot find module", "ModuleNotFoundError")),
    ("build-error", ("Build failed",)),
    ("compilation-error", ("Compilation error", "Failed to compile")),
    ("connection-refused", ("ECONNREFUSED", "Connection refused")),
    ("port-in-use", ("EADDRINUSE", "address already in use")),
    ("chunk-load", ("ChunkLoadError", "Loading chunk")),
    ("server-error", ("500",)),
    ("not-found", ("404",)),
    ("auth-error", ("401", "403")),
    ("timeout", ("timeout", "timed out", "ETIMEDOUT")),
)

_FILE_REF_RE = re.compile(
    r"(?:[\w.\[\]()-]+/)+[\w.\[\]()-]+\.(?:tsx?|jsx?|mjs|cjs|py|go|rb|java|rs|php|vue)\b"
)
_ROOT_DIRS = ("src/", "app/", "lib/", "frontend/", "backend/", "server/", "client/")


def normalize(raw: str) -> str:
    """
    Collapse the volatile parts of an error message into placeholders.

    Paths, UUIDs, hashes, dates, times, versions, line numbers, ports and
    error numbers are replaced; whitespace is collapsed.  Deterministic and
    idempotent.
    """
    if not raw:
        return ""
    text = raw
    for pattern, replacement in _NORMALIZERS:
        text = pattern.sub(replacement, text)
    return text.strip()


def extract_error_type(raw: str) -> str:
    """Coarse error category from well-known substrings, or ``"unknown"``."""
    if not raw:
        return "unknown"
    for error_type, needles in _ERROR_TYPES:
        if any(needle in raw for needle in needles):
            return error_type
    return "unknown"


def extract_file_pattern(text: Optional[str]) -> str:
    """
    The first project file referenced in a stack trace or path, generalized:
    dynamic route segments become ``[*]`` and digits become ``*``.
    """
    if not text:
        return ""
    match = _FILE_REF_RE.search(text.replace("\\", "/"))
    if not match:
        return ""
    path = match.group(0)
    for root in _ROOT_DIRS:
        index = path.find(root)
        if index > 0 and path[index - 1] == "/":
            path = path[index:]
            break
    path = re.sub(r"\[[^\]]+\]", "[*]", path)
    return re.sub(r"\d+", "*", path)


@dataclass
class SolutionCandidate:
    """One ranked answer from :meth:`ErrorSolutionMatcher.find_solutions`."""

    solution: ErrorSolution
    tier: int
    score: float

    @property
    def success_rate(self) -> float:
        return self.solution.success_rate

    def to_dict(self) -> dict:
        return {
            "id": self.solution.id,
            "pattern": self.solution.error_pattern,
            "solution": self.solution.solution_description,
            "solution_code": self.solution.solution_code,
            "solution_files": list(self.solution.solution_files),
            "solution_steps": list(self.solution.solution_steps),
            "success_rate": round(self.success_rate, 4),
            "success_count": self.solution.success_count,
            "match_tier": self.tier,
            "score": round(self.score, 4),
        }


@dataclass
class Suggestion:
    """Result of :meth:`ErrorSolutionMatcher.auto_suggest`."""

    error_type: str
    cause: str
    solution: str
    confidence: float
    source: str                 # "builtin" | "store"
    solution_id: Optional[int] = None
    alternatives: list[SolutionCandidate] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.error_type,
            "cause": self.cause,
            "solution": self.solution,
            "confidence": round(self.confidence, 4),
            "source": self.source,
            "solution_id": self.solution_id,
        }


class ErrorSolutionMatcher:
    """
    Stores and ranks error → solution pairs.

    Parameters
    ----------
    store:
        Knowledge store holding the ``error_solutions`` table.
    """

    def __init__(self, store: KnowledgeStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def learn_error(
        self,
        error_message: str,
        solution: str,
        error_type: Optional[str] = None,
        stack_trace: Optional[str] = None,
        file_path: Optional[str] = None,
        solution_code: str = "",
        files_changed: Optional[list[str]] = None,
        steps: Optional[list[str]] = None,
        pattern: str = "",
        tags: Optional[list[str]] = None,
        commit_hash: str = "",
    ) -> ErrorSolution:
        """
        Validate and store one error/solution pair.

        Re-reporting the same normalized error with the same solution merges
        tags, files and steps into the existing row.

        Raises
        ------
        ValidationError
            If the error message or solution is missing, before any write.
        """
        if not isinstance(error_message, str) or not error_message.strip():
            raise ValidationError("error_message is required")
        if not isinstance(solution, str) or not solution.strip():
            raise ValidationError("solution is required")
        for name, value in (("files_changed", files_changed), ("steps", steps), ("tags", tags)):
            if value is not None and not isinstance(value, (list, tuple)):
                raise ValidationError(f"{name} must be a list")

        message = error_message.strip()
        file_pattern = extract_file_pattern(stack_trace) or extract_file_pattern(file_path)
        if not file_pattern and file_path:
            file_pattern = file_path.strip()

        stored = self._store.upsert_error_solution(ErrorSolution(
            error_pattern=normalize(message),
            error_message=message,
            error_type=error_type or extract_error_type(message),
            file_pattern=file_pattern,
            stack_trace_pattern=normalize(stack_trace) if stack_trace else "",
            solution_description=solution.strip(),
            solution_code=solution_code or "",
            solution_files=[str(f) for f in (files_changed or [])],
            solution_steps=[str(s) for s in (steps or [])],
            related_pattern=pattern or "",
            tags=[str(t) for t in (tags or [])],
            commit_hash=commit_hash or "",
        ))
        logger.info("[Matcher] Learned solution #%s for: %.60s", stored.id, stored.error_pattern)
        return stored

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @staticmethod
    def match_tier(
        solution: ErrorSolution,
        normalized: str,
        raw: str,
        error_type: str = "",
        file_pattern: str = "",
    ) -> int:
        """Tier at which *solution* matches the query, 0 for no match."""
        if solution.error_pattern == normalized:
            return TIER_EXACT

        norm = normalized.lower()
        pattern = solution.error_pattern.lower()
        if pattern and norm and (norm in pattern or pattern in norm):
            return TIER_CONTAINS

        raw_lower = raw.lower()
        message = solution.error_message.lower()
        if message and raw_lower and (
            raw_lower in message or message in raw_lower or norm in message
        ):
            return TIER_INCIDENTAL
        if raw_lower and raw_lower in solution.solution_description.lower():
            return TIER_INCIDENTAL

        if error_type and error_type != "unknown" and solution.error_type == error_type:
            return TIER_RELATED
        if file_pattern and solution.file_pattern == file_pattern:
            return TIER_RELATED
        return 0

    def find_solutions(
        self,
        error_message: str,
        limit: int = 5,
        error_type: Optional[str] = None,
        file_path: Optional[str] = None,
    ) -> list[SolutionCandidate]:
        """
        Rank stored solutions for *error_message*.

        Parameters
        ----------
        error_message:
            Raw error text.  Blank input returns no candidates.
        limit:
            Maximum number of candidates.
        error_type, file_path:
            Optional hints enabling the lowest "related" tier.

        Returns
        -------
        list[SolutionCandidate]
            Best first; empty when nothing matches.
        """
        if not isinstance(error_message, str) or not error_message.strip():
            return []
        raw = error_message.strip()
        normalized = normalize(raw)
        type_hint = error_type or ""
        file_hint = (extract_file_pattern(file_path) or (file_path or "").strip()) if file_path else ""

        candidates: list[SolutionCandidate] = []
        for solution in self._store.find_error_candidates(
            normalized, raw, error_type=type_hint, file_pattern=file_hint
        ):
            tier = self.match_tier(solution, normalized, raw, type_hint, file_hint)
            if tier == 0:
                continue
            candidates.append(SolutionCandidate(
                solution=solution, tier=tier, score=tier * solution.success_rate,
            ))

        candidates.sort(key=lambda c: (-c.score, -c.solution.success_count, c.solution.id or 0))
        if limit is not None and limit > 0:
            candidates = candidates[:limit]
        logger.debug("[Matcher] %d candidate(s) for: %.60s", len(candidates), normalized)
        return candidates

    def record_outcome(self, solution_id: int, succeeded: bool) -> bool:
        """Count one success or failure for a solution.  False if unknown."""
        updated = self._store.increment_solution_counter(int(solution_id), bool(succeeded))
        if updated:
            logger.info("[Matcher] Solution #%s marked %s", solution_id,
                        "success" if succeeded else "fail")
        else:
            logger.warning("[Matcher] No solution #%s to mark", solution_id)
        return updated

    def auto_suggest(self, error_message: str) -> Optional[Suggestion]:
        """
        Suggest a fix: the built-in common-error table first, then the best
        stored solution.  None when neither knows the error.
        """
        if not isinstance(error_message, str) or not error_message.strip():
            return None
        raw = error_message.strip()
        error_type = extract_error_type(raw)

        common: Optional[CommonError] = find_common_error(raw, error_type)
        if common is not None:
            return Suggestion(
                error_type=common.error_type,
                cause=common.common_cause,
                solution=common.typical_solution,
                confidence=common.confidence,
                source="builtin",
                alternatives=self.find_solutions(raw, limit=3),
            )

        ranked = self.find_solutions(raw, limit=3)
        if not ranked:
            return None
        best = ranked[0]
        return Suggestion(
            error_type=best.solution.error_type or error_type,
            cause="Previously solved error",
            solution=best.solution.solution_description,
            confidence=best.success_rate,
            source="store",
            solution_id=best.solution.id,
            alternatives=ranked[1:],
        )
