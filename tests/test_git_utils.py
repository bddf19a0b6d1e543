"""
Unit tests for knowledge_daemon.git_utils

subprocess.run is mocked; no git repository is needed.
"""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from knowledge_daemon.errors import CollaboratorUnavailableError
from knowledge_daemon.git_utils import GitRepository

_FULL = "abc123" + "0" * 34


def _completed(stdout="", returncode=0, stderr=""):
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


def _git_responses(args, **kwargs):
    sub = args[1]
    if sub == "log":
        return _completed(f"{_FULL}\x1fDev One\x1f2026-03-01T10:00:00+01:00\x1f"
                          "fix(auth): resolve token refresh [MOD]\n\nbody\n")
    if sub == "diff-tree":
        return _completed("src/modules/auth/token.ts\nsrc/modules/auth/token.test.ts\n")
    if sub == "show":
        return _completed(" 2 files changed, 10 insertions(+), 3 deletions(-)\n")
    if sub == "rev-parse":
        return _completed("true\n")
    raise AssertionError(f"unexpected git call {args}")


class TestGetCommitInfo:

    @patch("knowledge_daemon.git_utils.subprocess.run", side_effect=_git_responses)
    def test_parses_all_fields(self, mock_run, tmp_path):
        info = GitRepository(str(tmp_path)).get_commit_info("abc123")
        assert info.hash == _FULL
        assert info.author == "Dev One"
        assert info.timestamp == "2026-03-01T10:00:00+01:00"
        assert info.message == "fix(auth): resolve token refresh [MOD]\n\nbody"
        assert info.files_changed == ["src/modules/auth/token.ts",
                                      "src/modules/auth/token.test.ts"]
        assert (info.insertions, info.deletions) == (10, 3)

        first_call = mock_run.call_args_list[0]
        assert first_call.args[0][:3] == ["git", "log", "-1"]
        assert first_call.kwargs["cwd"] == str(tmp_path)

    @patch("knowledge_daemon.git_utils.subprocess.run")
    def test_only_insertions(self, mock_run, tmp_path):
        def responses(args, **kwargs):
            if args[1] == "show":
                return _completed(" 1 file changed, 1 insertion(+)\n")
            return _git_responses(args, **kwargs)
        mock_run.side_effect = responses
        info = GitRepository(str(tmp_path)).get_commit_info("abc123")
        assert (info.insertions, info.deletions) == (1, 0)

    @pytest.mark.parametrize("ref", ["", "main; rm -rf /", "--all", "zzzz"])
    @patch("knowledge_daemon.git_utils.subprocess.run")
    def test_rejects_non_hash(self, mock_run, ref, tmp_path):
        with pytest.raises(CollaboratorUnavailableError):
            GitRepository(str(tmp_path)).get_commit_info(ref)
        mock_run.assert_not_called()

    @patch("knowledge_daemon.git_utils.subprocess.run",
           return_value=_completed(returncode=128, stderr="fatal: bad object abc123"))
    def test_unknown_commit(self, mock_run, tmp_path):
        with pytest.raises(CollaboratorUnavailableError, match="bad object"):
            GitRepository(str(tmp_path)).get_commit_info("abc123")

    @patch("knowledge_daemon.git_utils.subprocess.run",
           side_effect=FileNotFoundError("git not installed"))
    def test_git_missing(self, mock_run, tmp_path):
        with pytest.raises(CollaboratorUnavailableError):
            GitRepository(str(tmp_path)).get_commit_info("abc123")

    @patch("knowledge_daemon.git_utils.subprocess.run",
           side_effect=subprocess.TimeoutExpired(cmd="git", timeout=30))
    def test_timeout(self, mock_run, tmp_path):
        with pytest.raises(CollaboratorUnavailableError):
            GitRepository(str(tmp_path)).get_commit_info("abc123")


class TestRepository:

    @patch("knowledge_daemon.git_utils.subprocess.run",
           return_value=_completed(f"{_FULL}\n{'f' * 40}\n"))
    def test_recent_hashes(self, mock_run, tmp_path):
        hashes = GitRepository(str(tmp_path)).recent_hashes(2)
        assert hashes == [_FULL, "f" * 40]
        assert mock_run.call_args.args[0] == ["git", "log", "-2", "--format=%H"]

    @patch("knowledge_daemon.git_utils.subprocess.run", side_effect=_git_responses)
    def test_is_repo(self, mock_run, tmp_path):
        assert GitRepository(str(tmp_path)).is_repo() is True

    @patch("knowledge_daemon.git_utils.subprocess.run",
           return_value=_completed(returncode=128, stderr="not a git repository"))
    def test_not_a_repo(self, mock_run, tmp_path):
        repo = GitRepository(str(tmp_path))
        assert repo.is_repo() is False
        with pytest.raises(CollaboratorUnavailableError):
            repo.recent_hashes()
