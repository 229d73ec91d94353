"""Git worktree plumbing.

Thin wrappers over `git worktree`. Lifecycle policy (naming, setup, cleanup
fallbacks) lives in ralph.workspaces.
"""

from dataclasses import dataclass
from pathlib import Path

from ralph.git.runner import run_git, GitResult

WORKTREE_ADD_TIMEOUT = 120


@dataclass
class WorktreeEntry:
    """One entry of `git worktree list --porcelain`."""
    path: Path
    commit: str = ""
    branch: str = ""  # short name, empty when detached
    bare: bool = False
    detached: bool = False
    prunable: bool = False


def parse_worktree_porcelain(output: str) -> list[WorktreeEntry]:
    """Parse porcelain output.

    Format: blocks separated by blank lines, each starting with
    "worktree <path>" followed by "HEAD <sha>", "branch refs/heads/<name>",
    "bare", "detached" or "prunable <reason>" lines.
    """
    entries = []
    for block in output.strip().split("\n\n"):
        lines = [line for line in block.splitlines() if line.strip()]
        if not lines or not lines[0].startswith("worktree "):
            continue

        entry = WorktreeEntry(path=Path(lines[0][len("worktree "):]))
        for line in lines[1:]:
            if line.startswith("HEAD "):
                entry.commit = line[len("HEAD "):]
            elif line.startswith("branch "):
                ref = line[len("branch "):]
                entry.branch = ref.removeprefix("refs/heads/")
            elif line == "bare":
                entry.bare = True
            elif line == "detached":
                entry.detached = True
            elif line.startswith("prunable"):
                entry.prunable = True
        entries.append(entry)
    return entries


def list_worktrees(repo: Path) -> list[WorktreeEntry]:
    """List registered worktrees. Returns [] when repo is not a git repo."""
    result = run_git(["worktree", "list", "--porcelain"], repo)
    if not result.success:
        return []
    return parse_worktree_porcelain(result.stdout)


def add_worktree(repo: Path, path: Path, branch: str, start_point: str) -> GitResult:
    """Create a worktree at path on a new branch from start_point."""
    return run_git(
        ["worktree", "add", str(path), "-b", branch, start_point],
        repo,
        timeout=WORKTREE_ADD_TIMEOUT,
    )


def remove_worktree(repo: Path, path: Path, force: bool = True) -> GitResult:
    """Remove a worktree; --force discards uncommitted changes."""
    args = ["worktree", "remove", str(path)]
    if force:
        args.append("--force")
    return run_git(args, repo, timeout=WORKTREE_ADD_TIMEOUT)


def prune_worktrees(repo: Path) -> GitResult:
    """Drop administrative entries for worktrees whose directory is gone."""
    return run_git(["worktree", "prune"], repo)
