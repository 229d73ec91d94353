"""Tests for ralph.git module."""

import subprocess
from pathlib import Path
from unittest.mock import patch, MagicMock

from ralph.git.runner import run_git, GitResult
from ralph.git.branch import branch_exists, delete_branch
from ralph.git.remote import has_remote, fetch_into_local
from ralph.git.worktree import add_worktree, list_worktrees, parse_worktree_porcelain


class TestGitResult:
    """Test GitResult dataclass."""

    def test_success_when_returncode_zero(self):
        result = GitResult(returncode=0, stdout="ok", stderr="")
        assert result.success is True

    def test_failure_when_returncode_nonzero(self):
        result = GitResult(returncode=1, stdout="", stderr="error")
        assert result.success is False

    def test_failure_when_timed_out(self):
        result = GitResult(returncode=0, stdout="ok", stderr="", timed_out=True)
        assert result.success is False

    def test_error_uses_last_stderr_line(self):
        result = GitResult(returncode=128, stdout="", stderr="hint: x\nfatal: bad ref\n")
        assert result.error == "fatal: bad ref"

    def test_error_without_output(self):
        assert GitResult(returncode=3, stdout="", stderr="").error == "git exited with 3"


class TestRunGit:
    """Test run_git function."""

    @patch("ralph.git.runner.subprocess.run")
    def test_returns_result_on_success(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="output", stderr="")
        result = run_git(["status"], Path("/tmp"))
        assert result.success
        assert result.stdout == "output"
        mock_run.assert_called_once()

    @patch("ralph.git.runner.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["status"], Path("/tmp"))
        assert not result.success
        assert result.timed_out
        assert "timed out" in result.stderr

    @patch("ralph.git.runner.subprocess.run")
    def test_missing_git_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")
        result = run_git(["status"], Path("/tmp"))
        assert result.returncode == 127
        assert not result.success

    @patch("ralph.git.runner.subprocess.run")
    def test_passes_cwd_with_C_flag(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        run_git(["worktree", "list", "--porcelain"], Path("/my/repo"))
        call_args = mock_run.call_args[0][0]
        assert call_args == ["git", "-C", "/my/repo", "worktree", "list", "--porcelain"]


class TestBranchAndRemote:

    @patch("ralph.git.branch.run_git")
    def test_branch_exists_uses_show_ref(self, mock_git):
        mock_git.return_value = GitResult(0, "", "")
        assert branch_exists(Path("/repo"), "feature/x")
        args = mock_git.call_args[0][0]
        assert args == ["show-ref", "--verify", "--quiet", "refs/heads/feature/x"]

    @patch("ralph.git.branch.run_git")
    def test_delete_branch_forced(self, mock_git):
        mock_git.return_value = GitResult(0, "", "")
        delete_branch(Path("/repo"), "feature/x")
        assert mock_git.call_args[0][0] == ["branch", "-D", "feature/x"]

    @patch("ralph.git.remote.run_git")
    def test_has_remote(self, mock_git):
        mock_git.return_value = GitResult(0, "origin\nupstream\n", "")
        assert has_remote(Path("/repo"))
        assert not has_remote(Path("/repo"), "fork")

    @patch("ralph.git.remote.run_git")
    def test_fetch_into_local_refspec(self, mock_git):
        mock_git.return_value = GitResult(0, "", "")
        fetch_into_local(Path("/repo"), "main")
        assert mock_git.call_args[0][0] == ["fetch", "origin", "main:main"]


PORCELAIN = """worktree /repo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /repo/.worktrees/ralph-001
HEAD 2222222222222222222222222222222222222222
branch refs/heads/feature/001-fix-login

worktree /tmp/detached
HEAD 3333333333333333333333333333333333333333
detached

worktree /repo/.worktrees/ralph-gone
HEAD 4444444444444444444444444444444444444444
branch refs/heads/feature/gone
prunable gitdir file points to non-existent location
"""


class TestWorktreePorcelain:
    """Parsing `git worktree list --porcelain`."""

    def test_parses_all_entries(self):
        entries = parse_worktree_porcelain(PORCELAIN)
        assert [e.path for e in entries] == [
            Path("/repo"),
            Path("/repo/.worktrees/ralph-001"),
            Path("/tmp/detached"),
            Path("/repo/.worktrees/ralph-gone"),
        ]

    def test_branch_short_name(self):
        entries = parse_worktree_porcelain(PORCELAIN)
        assert entries[1].branch == "feature/001-fix-login"
        assert entries[1].commit.startswith("2222")

    def test_detached_and_prunable_flags(self):
        entries = parse_worktree_porcelain(PORCELAIN)
        assert entries[2].detached and entries[2].branch == ""
        assert entries[3].prunable

    def test_empty_output(self):
        assert parse_worktree_porcelain("") == []

    @patch("ralph.git.worktree.run_git")
    def test_list_returns_empty_on_failure(self, mock_git):
        mock_git.return_value = GitResult(128, "", "fatal: not a git repository")
        assert list_worktrees(Path("/nowhere")) == []

    @patch("ralph.git.worktree.run_git")
    def test_add_worktree_args(self, mock_git):
        mock_git.return_value = GitResult(0, "", "")
        add_worktree(Path("/repo"), Path("/repo/.worktrees/ralph-001"), "feature/x", "main")
        assert mock_git.call_args[0][0] == [
            "worktree", "add", "/repo/.worktrees/ralph-001", "-b", "feature/x", "main",
        ]
