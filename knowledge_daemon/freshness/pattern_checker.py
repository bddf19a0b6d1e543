"""
Pattern-freshness checker.

Compares a declared reference set of pattern names against the stored code
patterns and classifies every name as ``current`` (declared and stored),
``new`` (declared only) or ``missing`` (stored only).  Current patterns whose
declared description fields disagree with the stored ones are reported as
drifted through ``differences``.

The checker only reads: it never writes to the store.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

import yaml

from ..store.knowledge_store import KnowledgeStore
from ..store.models import CodePattern

logger = logging.getLogger(__name__)

CURRENT = "current"
NEW = "new"
MISSING = "missing"

# Declared fields compared against stored values for drift.
_COMPARED_FIELDS = ("description", "example_code", "anti_pattern", "pattern_type")


class PatternSource(Protocol):
    """Provider of the declared reference patterns."""

    def load(self) -> dict[str, dict]: ...


class StaticPatternSource:
    """Reference patterns given directly as ``{name: fields}`` or a list of names."""

    def __init__(self, patterns) -> None:
        self._patterns = _coerce(patterns)

    def load(self) -> dict[str, dict]:
        return {name: dict(fields) for name, fields in self._patterns.items()}


class YamlPatternSource:
    """
    Reference patterns read from a YAML file.

    Accepted layouts::

        patterns:
          - PATTERN_RBAC
          - name: PATTERN_DATABASE
            description: Use the repository layer for queries

    or a top-level mapping ``{PATTERN_RBAC: {description: ...}}``.  A missing
    file declares nothing.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> dict[str, dict]:
        if not self.path or not os.path.isfile(self.path):
            logger.debug("[Freshness] No reference file at %s", self.path)
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("[Freshness] Cannot read %s: %s", self.path, exc)
            return {}
        if isinstance(data, dict) and "patterns" in data:
            data = data["patterns"]
        return _coerce(data)


def _coerce(data) -> dict[str, dict]:
    patterns: dict[str, dict] = {}
    if isinstance(data, dict):
        for name, fields in data.items():
            patterns[str(name)] = dict(fields) if isinstance(fields, dict) else {}
    elif isinstance(data, (list, tuple, set)):
        for item in data:
            if isinstance(item, str):
                patterns[item] = {}
            elif isinstance(item, dict):
                name = item.get("name") or item.get("pattern_name")
                if name:
                    fields = {k: v for k, v in item.items() if k not in ("name", "pattern_name")}
                    patterns[str(name)] = fields
    return patterns


@dataclass
class PatternStatus:
    """Classification of one pattern name."""

    pattern_name: str
    status: str                      # "current" | "new" | "missing"
    in_store: bool
    in_reference: bool
    usage_count: int = 0
    effectiveness_score: float = 0.0
    updated_at: str = ""
    differences: dict = field(default_factory=dict)

    @property
    def drifted(self) -> bool:
        return bool(self.differences)

    def to_dict(self) -> dict:
        return {
            "pattern_name": self.pattern_name,
            "status": self.status,
            "in_store": self.in_store,
            "in_reference": self.in_reference,
            "usage_count": self.usage_count,
            "effectiveness_score": self.effectiveness_score,
            "updated_at": self.updated_at,
            "differences": dict(self.differences),
        }


@dataclass
class PatternReport:
    """Full freshness report, sorted by pattern name."""

    patterns: list[PatternStatus]
    checked_at: str = ""

    def _count(self, status: str) -> int:
        return sum(1 for p in self.patterns if p.status == status)

    @property
    def total(self) -> int:
        return len(self.patterns)

    @property
    def current(self) -> int:
        return self._count(CURRENT)

    @property
    def new(self) -> int:
        return self._count(NEW)

    @property
    def missing(self) -> int:
        return self._count(MISSING)

    @property
    def updated(self) -> int:
        return sum(1 for p in self.patterns if p.status == CURRENT and p.drifted)

    def names(self, status: str) -> list[str]:
        return [p.pattern_name for p in self.patterns if p.status == status]

    def to_dict(self) -> dict:
        return {
            "total_patterns": self.total,
            "current": self.current,
            "new": self.new,
            "updated": self.updated,
            "missing": self.missing,
            "patterns": [p.to_dict() for p in self.patterns],
            "last_check": self.checked_at,
        }


class PatternFreshnessChecker:
    """
    Read-only drift report between reference patterns and stored patterns.

    Parameters
    ----------
    store:
        Knowledge store holding the ``code_patterns`` table.
    source:
        Provider of the declared reference set.
    """

    def __init__(self, store: KnowledgeStore, source: PatternSource) -> None:
        self._store = store
        self._source = source

    def check(self) -> PatternReport:
        """Classify every declared and every stored pattern name exactly once."""
        declared = self._source.load()
        stored: dict[str, CodePattern] = {
            p.pattern_name: p for p in self._store.list_code_patterns()
        }

        statuses: list[PatternStatus] = []
        for name, fields in declared.items():
            pattern = stored.get(name)
            if pattern is None:
                statuses.append(PatternStatus(name, NEW, in_store=False, in_reference=True))
                continue
            statuses.append(PatternStatus(
                name, CURRENT, in_store=True, in_reference=True,
                usage_count=pattern.usage_count,
                effectiveness_score=pattern.effectiveness_score,
                updated_at=pattern.updated_at,
                differences=_differences(fields, pattern),
            ))

        for name, pattern in stored.items():
            if name in declared:
                continue
            statuses.append(PatternStatus(
                name, MISSING, in_store=True, in_reference=False,
                usage_count=pattern.usage_count,
                effectiveness_score=pattern.effectiveness_score,
                updated_at=pattern.updated_at,
            ))

        statuses.sort(key=lambda s: s.pattern_name)
        return PatternReport(
            patterns=statuses,
            checked_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )

    def needing_attention(self, report: Optional[PatternReport] = None) -> list[PatternStatus]:
        """New, missing and drifted patterns."""
        report = report or self.check()
        return [p for p in report.patterns if p.status != CURRENT or p.drifted]

    def summary(self, report: Optional[PatternReport] = None) -> dict:
        """Counts, name lists and a one-line message for display."""
        report = report or self.check()
        new_names = report.names(NEW)
        missing_names = report.names(MISSING)
        attention = report.new + report.missing + report.updated

        message = f"Pattern Status: {report.current}/{report.total} current"
        if attention:
            message += f", {attention} need attention"
            if new_names:
                message += f" ({len(new_names)} new)"
            if missing_names:
                message += f" ({len(missing_names)} missing)"
            if report.updated:
                message += f" ({report.updated} drifted)"

        return {
            "total": report.total,
            "current": report.current,
            "needs_attention": attention,
            "new_patterns": new_names,
            "missing_patterns": missing_names,
            "drifted_patterns": [p.pattern_name for p in report.patterns if p.drifted],
            "message": message,
        }


def _differences(declared: dict, stored: CodePattern) -> dict:
    diffs: dict = {}
    for name in _COMPARED_FIELDS:
        if name not in declared or declared[name] in (None, ""):
            continue
        want = str(declared[name]).strip()
        have = str(getattr(stored, name) or "").strip()
        if want != have:
            diffs[name] = {"declared": want, "stored": have}
    if "related_files" in declared and isinstance(declared["related_files"], list):
        missing_files = sorted(set(map(str, declared["related_files"])) - set(stored.related_files))
        if missing_files:
            diffs["related_files"] = {"missing": missing_files}
    return diffs
