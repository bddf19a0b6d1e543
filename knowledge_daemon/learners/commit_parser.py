"""
Pure parsing helpers for commit learning.

Nothing in here touches the store or the VCS: every function is a
deterministic function of its arguments so it can be tested in isolation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional

COMMIT_TYPES = ("feat", "fix", "docs", "refactor", "test", "chore",
                "style", "perf", "build", "ci")

# type(scope)[!]: description [IDENTITY]
_HEADER_RE = re.compile(
    r"^(?P<type>" + "|".join(COMMIT_TYPES) + r")"
    r"\((?P<scope>[a-z0-9][a-z0-9_-]*)\)"
    r"(?P<breaking>!)?:\s*"
    r"(?P<description>.+?)"
    r"(?:\s*\[(?P<identity>[A-Z][A-Z0-9_-]*)\])?\s*$",
    re.IGNORECASE,
)

_BLOCK_RE = re.compile(r"\[BRAIN\](.*?)\[/BRAIN\]", re.IGNORECASE | re.DOTALL)
_FIELD_RE = re.compile(r"^\s*(?P<key>[a-z_]+)\s*:\s*(?P<value>.*?)\s*$", re.IGNORECASE)

_LIST_FIELDS = ("files", "tags")
_TEXT_FIELDS = ("error_fix", "pattern", "solution")


@dataclass
class ParsedCommit:
    """Structured view of a conventional commit header."""

    type: str
    module: str
    description: str
    identity: Optional[str] = None
    is_breaking: bool = False


@dataclass
class MetadataBlock:
    """Fields declared inside a commit's ``[BRAIN] ... [/BRAIN]`` block."""

    error_fix: str = ""
    pattern: str = ""
    solution: str = ""
    files: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    breaking: bool = False

    def to_dict(self) -> dict:
        data: dict = {}
        for name in _TEXT_FIELDS:
            value = getattr(self, name)
            if value:
                data[name] = value
        for name in _LIST_FIELDS:
            value = getattr(self, name)
            if value:
                data[name] = list(value)
        if self.breaking:
            data["breaking"] = True
        return data


def parse_commit_message(message: str) -> Optional[ParsedCommit]:
    """
    Parse the first line of *message* as ``type(scope): description [TAG]``.

    Returns None when the header does not follow the grammar; the commit is
    still learnable in that case.
    """
    if not message:
        return None
    first_line = message.strip().splitlines()[0] if message.strip() else ""
    match = _HEADER_RE.match(first_line.strip())
    if not match:
        return None
    return ParsedCommit(
        type=match.group("type").lower(),
        module=match.group("scope").lower(),
        description=match.group("description").strip(),
        identity=match.group("identity").upper() if match.group("identity") else None,
        is_breaking=bool(match.group("breaking")),
    )


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_metadata_block(message: str) -> Optional[MetadataBlock]:
    """
    Extract the ``[BRAIN]`` block from *message*.

    Recognised labels are ``error_fix``, ``pattern``, ``solution``, ``files``,
    ``tags`` and ``breaking``; unknown labels are ignored.  Returns None if
    there is no block or it declares nothing.
    """
    if not message:
        return None
    match = _BLOCK_RE.search(message)
    if not match:
        return None

    block = MetadataBlock()
    found = False
    for line in match.group(1).splitlines():
        field_match = _FIELD_RE.match(line)
        if not field_match:
            continue
        key = field_match.group("key").lower()
        value = field_match.group("value")
        if not value:
            continue
        if key in _TEXT_FIELDS:
            setattr(block, key, value)
            found = True
        elif key in _LIST_FIELDS:
            items = _split_list(value)
            if items:
                setattr(block, key, items)
                found = True
        elif key == "breaking":
            block.breaking = value.lower() in ("true", "yes", "1")
            found = True
    return block if found else None


# ---------------------------------------------------------------------------
# File categorization
# ---------------------------------------------------------------------------

FILE_CATEGORIES = ("backend", "frontend", "database", "infra", "docs",
                   "tests", "tooling", "other")

_DOC_SUFFIXES = (".md", ".rst", ".txt", ".adoc")
_FRONTEND_SUFFIXES = (".tsx", ".jsx", ".vue", ".svelte", ".css", ".scss", ".html")


def _has(*needles: str) -> Callable[[str], bool]:
    return lambda path: any(n in path for n in needles)


def _starts(*prefixes: str) -> Callable[[str], bool]:
    return lambda path: path.startswith(prefixes)


def _ends(*suffixes: str) -> Callable[[str], bool]:
    return lambda path: path.endswith(suffixes)


# First matching rule wins.
_FILE_RULES: list[tuple[str, Callable[[str], bool]]] = [
    ("tests", _has("/tests/", "/test/", "__tests__", ".test.", ".spec.", "/spec/")),
    ("tests", _starts("tests/", "test/", "spec/")),
    ("database", _has("prisma", "migration", "schema.sql", "/models/", "alembic")),
    ("infra", _has("docker", "nginx", "pm2", "deploy", "terraform", "k8s",
                   "helm", ".github/workflows", "ecosystem.config")),
    ("infra", _starts("scripts/", "infra/", "ops/")),
    ("docs", _starts("docs/", "doc/")),
    ("docs", _ends(*_DOC_SUFFIXES)),
    ("backend", _starts("backend/", "server/", "api/")),
    ("frontend", _starts("frontend/", "client/", "web/", "ui/")),
    ("frontend", _ends(*_FRONTEND_SUFFIXES)),
    ("tooling", _starts("tools/", "mcp-servers/", ".husky/")),
    ("tooling", _has("eslint", "prettier", "tsconfig", "package.json",
                     "setup.py", "pyproject.toml", "Makefile")),
    ("backend", _ends(".py", ".go", ".java", ".rb", ".rs", ".php")),
]


def categorize_files(paths: list[str]) -> dict[str, list[str]]:
    """
    Bucket changed files into coarse domains by path rules.

    Every bucket is present in the result (possibly empty); a path lands in
    exactly one bucket.
    """
    buckets: dict[str, list[str]] = {name: [] for name in FILE_CATEGORIES}
    for path in paths:
        normalized = path.replace("\\", "/")
        for category, predicate in _FILE_RULES:
            if predicate(normalized):
                buckets[category].append(path)
                break
        else:
            buckets["other"].append(path)
    return buckets


# ---------------------------------------------------------------------------
# Pattern detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PatternRule:
    """
    A pattern is detected when its file predicate and its keyword
    predicate both hold.  A rule with no keywords only checks files; a rule
    with no file markers only checks the message.
    """

    name: str
    file_markers: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()

    def matches(self, paths: list[str], message: str) -> bool:
        if self.file_markers and not any(
            marker in path for path in paths for marker in self.file_markers
        ):
            return False
        if self.keywords:
            text = message.lower()
            if not any(keyword in text for keyword in self.keywords):
                return False
        return bool(self.file_markers or self.keywords)


PATTERN_RULES: tuple[PatternRule, ...] = (
    PatternRule("PATTERN_REACT_HOOKS", file_markers=(".tsx", ".jsx"),
                keywords=("usecallback", "useeffect", "usestate", "useref", "usememo")),
    PatternRule("PATTERN_RBAC",
                keywords=("rbac", "role", "permission", "authorization")),
    PatternRule("PATTERN_FILE_UPLOAD", keywords=("upload", "minio", "multer", "s3 bucket")),
    PatternRule("PATTERN_API_ENDPOINT",
                file_markers=("Controller", "controller", "Route", "route", "/api/")),
    PatternRule("PATTERN_DATABASE", file_markers=("prisma", "Service", "service", "repository"),
                keywords=("query", "database", "model", "transaction")),
    PatternRule("PATTERN_RATE_LIMITING", keywords=("rate limit", "rate-limit", "429", "throttle")),
    PatternRule("PATTERN_DEPLOYMENT",
                file_markers=("pm2", "deploy", "build", "ecosystem", "Dockerfile")),
)


def detect_patterns(
    paths: list[str],
    message: str,
    rules: tuple[PatternRule, ...] = PATTERN_RULES,
) -> list[str]:
    """Names of every rule matching the commit, in rule order, without duplicates."""
    detected: list[str] = []
    for rule in rules:
        if rule.name not in detected and rule.matches(paths, message or ""):
            detected.append(rule.name)
    return detected


_PATTERN_TYPES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("framework-hooks", ("react", "hook")),
    ("security", ("rbac", "auth", "security")),
    ("database", ("database", "prisma", "sql", "migration")),
    ("api", ("api", "endpoint")),
    ("file-upload", ("file", "upload")),
    ("deployment", ("deploy", "build")),
    ("rate-limiting", ("rate", "limit", "throttle")),
)


def categorize_pattern(pattern_name: str) -> str:
    """Coarse pattern type derived from keywords in the pattern's name."""
    name = pattern_name.lower()
    for pattern_type, needles in _PATTERN_TYPES:
        if any(needle in name for needle in needles):
            return pattern_type
    return "general"
