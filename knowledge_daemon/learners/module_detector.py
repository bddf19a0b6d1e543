"""
Module auto-detection from changed file paths.

A module is the feature directory a file lives in (``src/modules/auth/...``
is module ``auth``), falling back to the coarse area of the repository
(``backend``, ``frontend``, ``infra`` ...) when no feature directory is
recognisable.
"""

from __future__ import annotations

import re
from typing import Optional

# Directories whose immediate child names a feature module.
_CONTAINER_DIRS = frozenset({
    "modules", "features", "routes", "controllers", "services", "components",
    "pages", "app", "apps", "packages", "domains", "handlers", "api",
})

# Directories that never name a module on their own.
_NOISE_DIRS = frozenset({
    "src", "lib", "internal", "pkg", "__tests__", "tests", "test", "utils",
    "common", "shared", "core", "index", "(auth)", "[id]",
})

# First-segment prefix to fallback area, checked in order.
_AREA_RULES: tuple[tuple[str, str], ...] = (
    ("backend/", "backend"),
    ("server/", "backend"),
    ("frontend/", "frontend"),
    ("client/", "frontend"),
    ("web/", "frontend"),
    ("docs/", "docs"),
    ("scripts/", "infra"),
    ("infra/", "infra"),
    ("deploy/", "infra"),
    ("mcp-servers/", "tooling"),
    ("tools/", "tooling"),
)

_INFRA_MARKERS = ("docker", "pm2", "ecosystem.config", "nginx", ".github/workflows")

_SLUG_RE = re.compile(r"[^a-z0-9-]+")


def module_slug(name: str) -> str:
    """Lower-case, dash-separated module name."""
    slug = _SLUG_RE.sub("-", name.lower()).strip("-")
    return slug


def _strip_suffix(segment: str) -> str:
    # "candidateController.ts" -> "candidate"
    stem = segment.split(".", 1)[0]
    for suffix in ("Controller", "Service", "Routes", "Route", "Repository"):
        if stem.endswith(suffix) and len(stem) > len(suffix):
            return stem[: -len(suffix)]
    return stem


def detect_module(path: str) -> Optional[str]:
    """Return the module a single file belongs to, or None if unknown."""
    normalized = path.replace("\\", "/").strip("/")
    if not normalized:
        return None
    segments = normalized.split("/")

    for index, segment in enumerate(segments[:-1]):
        if segment.lower() in _CONTAINER_DIRS:
            child = segments[index + 1]
            is_file = index + 1 == len(segments) - 1
            candidate = _strip_suffix(child) if is_file else child
            slug = module_slug(candidate)
            if slug and slug not in _NOISE_DIRS and candidate.lower() not in _NOISE_DIRS:
                return slug

    lowered = normalized.lower()
    if any(marker in lowered for marker in _INFRA_MARKERS):
        return "infra"
    for prefix, area in _AREA_RULES:
        if normalized.startswith(prefix):
            return area
    return None


def detect_modules(paths: list[str]) -> list[str]:
    """Distinct modules touched by *paths*, in first-seen order."""
    modules: list[str] = []
    for path in paths:
        module = detect_module(path)
        if module and module not in modules:
            modules.append(module)
    return modules
