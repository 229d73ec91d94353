"""Git branch operations."""

from pathlib import Path

from ralph.git.runner import run_git, GitResult


def branch_exists(repo: Path, branch: str) -> bool:
    """Check if a branch exists."""
    result = run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo)
    return result.success


def get_commit_sha(repo: Path, ref: str = "HEAD") -> str | None:
    """Get the SHA of a ref."""
    result = run_git(["rev-parse", "--verify", "--quiet", ref], repo)
    if result.success:
        return result.stdout.strip()
    return None


def delete_branch(repo: Path, branch: str, force: bool = True) -> GitResult:
    """Delete a local branch (-D when force, -d otherwise)."""
    return run_git(["branch", "-D" if force else "-d", branch], repo)
