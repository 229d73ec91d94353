"""Git operations for ralph.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: add_worktree(), remove_worktree(), delete_branch()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: branch_exists(), has_remote(), has_uncommitted_changes()
- Functions returning parsed values (str, list): Return None/empty on failure.
  Examples: get_commit_sha() -> None, list_worktrees() -> []
"""

from ralph.git.runner import GitResult, run_git
from ralph.git.status import (
    has_uncommitted_changes,
)
from ralph.git.branch import (
    branch_exists,
    get_commit_sha,
    delete_branch,
)
from ralph.git.remote import (
    has_remote,
    fetch_into_local,
)
from ralph.git.worktree import (
    WorktreeEntry,
    parse_worktree_porcelain,
    list_worktrees,
    add_worktree,
    remove_worktree,
    prune_worktrees,
)

__all__ = [
    "GitResult",
    "run_git",
    # status
    "has_uncommitted_changes",
    # branch
    "branch_exists",
    "get_commit_sha",
    "delete_branch",
    # remote
    "has_remote",
    "fetch_into_local",
    # worktree
    "WorktreeEntry",
    "parse_worktree_porcelain",
    "list_worktrees",
    "add_worktree",
    "remove_worktree",
    "prune_worktrees",
]
