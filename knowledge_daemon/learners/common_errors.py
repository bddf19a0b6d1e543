"""
Built-in table of well-known error signatures.

Consulted before any stored solution so that common errors resolve even on
an empty store.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CommonError:
    """A well-known error with its usual cause and fix."""

    error_type: str
    signature: str
    common_cause: str
    typical_solution: str
    confidence: float = 0.8

    def matches(self, error_message: str) -> bool:
        return re.search(self.signature, error_message, re.IGNORECASE) is not None


COMMON_ERRORS: tuple[CommonError, ...] = (
    CommonError(
        "react-infinite-loop",
        r"Maximum update depth exceeded",
        "Unstable reference in useEffect/useCallback dependencies",
        "Remove unstable references from dependency arrays or guard the "
        "effect with a useRef flag",
    ),
    CommonError(
        "rate-limit",
        r"\b429\b|Too Many Requests",
        "Too many API calls in a short time, often doubled by React Strict Mode",
        "Add a useRef guard, increase the polling interval, or relax the "
        "rate limiter in development",
    ),
    CommonError(
        "prisma-invalid",
        r"Invalid `?prisma\.\w+\.\w+\(?\)?`? invocation",
        "Invalid query parameters or schema mismatch",
        "Check the Prisma query against the schema; filter in memory for "
        "conditions Prisma cannot express",
    ),
    CommonError(
        "react-hydration",
        r"Hydration failed because|hydration mismatch",
        "Server and client rendered different content",
        "Move client-only code into useEffect and avoid Date/Math.random "
        "during server rendering",
    ),
    CommonError(
        "module-not-found",
        r"Module not found|Cannot find module|ModuleNotFoundError",
        "Missing dependency or incorrect import path",
        "Install the missing package or fix the import path",
    ),
    CommonError(
        "port-in-use",
        r"EADDRINUSE|address already in use",
        "Port already in use by another process",
        "Stop the process holding the port (lsof -i :PORT) or use another port",
    ),
    CommonError(
        "null-reference",
        r"Cannot read propert(y|ies) of (null|undefined)",
        "Accessing a property on a null/undefined object",
        "Add optional chaining (?.) or a null check before the access",
    ),
    CommonError(
        "chunk-load",
        r"Loading chunk \S+ failed|ChunkLoadError",
        "Static chunks missing from the deployed build",
        "Copy the build's static directory next to the standalone server "
        "after building",
    ),
)


def find_common_error(error_message: str, error_type: str = "") -> Optional[CommonError]:
    """First table entry whose type equals *error_type* or whose signature matches."""
    if not error_message:
        return None
    for entry in COMMON_ERRORS:
        if error_type and entry.error_type == error_type:
            return entry
    for entry in COMMON_ERRORS:
        if entry.matches(error_message):
            return entry
    return None
