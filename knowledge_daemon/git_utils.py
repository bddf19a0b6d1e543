"""
Git integration: read-only access to commit metadata for the learners.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field

from .errors import CollaboratorUnavailableError

logger = logging.getLogger(__name__)

_HASH_RE = re.compile(r"^[0-9a-fA-F]{4,40}$|^HEAD(~\d+)?$")
_SHORTSTAT_INS_RE = re.compile(r"(\d+) insertions?\(\+\)")
_SHORTSTAT_DEL_RE = re.compile(r"(\d+) deletions?\(-\)")

# Unit separator between header fields of `git log --format`.
_SEP = "\x1f"


@dataclass
class CommitInfo:
    """What the VCS reports about one commit."""

    hash: str
    message: str
    author: str = ""
    timestamp: str = ""
    files_changed: list[str] = field(default_factory=list)
    insertions: int = 0
    deletions: int = 0


def _run_git(args: list[str], cwd: str, timeout: float = 30.0) -> tuple[bool, str]:
    """Run a git command and return ``(success, output)``."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return False, str(e)
    if result.returncode != 0:
        return False, (result.stderr or result.stdout).strip()
    return True, result.stdout


class GitRepository:
    """
    Commit metadata reader for the repository at *project_root*.

    Any failure to run git or to resolve a commit raises
    :class:`CollaboratorUnavailableError`; there is no retry here.
    """

    def __init__(self, project_root: str) -> None:
        self.project_root = project_root

    def _git(self, args: list[str]) -> str:
        ok, output = _run_git(args, self.project_root)
        if not ok:
            raise CollaboratorUnavailableError(f"git {args[0]} failed: {output}")
        return output

    def is_repo(self) -> bool:
        ok, _ = _run_git(["rev-parse", "--is-inside-work-tree"], self.project_root)
        return ok

    def get_commit_info(self, commit_hash: str) -> CommitInfo:
        """Return message, author, timestamp, changed files and line stats."""
        if not commit_hash or not _HASH_RE.match(commit_hash):
            raise CollaboratorUnavailableError(f"Not a commit reference: {commit_hash!r}")

        header = self._git(
            ["log", "-1", f"--format=%H{_SEP}%an{_SEP}%aI{_SEP}%B", commit_hash]
        )
        parts = header.split(_SEP, 3)
        if len(parts) != 4:
            raise CollaboratorUnavailableError(f"Unexpected git log output for {commit_hash}")
        full_hash, author, timestamp, message = parts

        files_out = self._git(
            ["diff-tree", "--no-commit-id", "--name-only", "-r", "--root", full_hash]
        )
        files = [line.strip() for line in files_out.splitlines() if line.strip()]

        stat_out = self._git(["show", "--shortstat", "--format=", full_hash])
        insertions = _first_int(_SHORTSTAT_INS_RE, stat_out)
        deletions = _first_int(_SHORTSTAT_DEL_RE, stat_out)

        return CommitInfo(
            hash=full_hash.strip(),
            message=message.strip(),
            author=author.strip(),
            timestamp=timestamp.strip(),
            files_changed=files,
            insertions=insertions,
            deletions=deletions,
        )

    def recent_hashes(self, count: int = 20) -> list[str]:
        """Full hashes of the *count* most recent commits, newest first."""
        output = self._git(["log", f"-{int(count)}", "--format=%H"])
        return [line.strip() for line in output.splitlines() if line.strip()]


def _first_int(pattern: re.Pattern, text: str) -> int:
    match = pattern.search(text)
    return int(match.group(1)) if match else 0
