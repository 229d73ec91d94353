"""Git remote operations."""

from pathlib import Path

from ralph.git.runner import run_git, GitResult


def has_remote(repo: Path, remote: str = "origin") -> bool:
    """Check if the named remote is configured."""
    result = run_git(["remote"], repo)
    return remote in result.stdout.split()


def fetch_into_local(repo: Path, branch: str, remote: str = "origin") -> GitResult:
    """Fast-forward a local branch from the remote (git fetch origin main:main).

    Fails harmlessly when the branch is checked out or has diverged.
    """
    return run_git(["fetch", remote, f"{branch}:{branch}"], repo, timeout=60)
