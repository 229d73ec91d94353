"""
Workspace Manager: one git worktree + branch per claimed item.

Worktrees live under a dedicated root (default <repo>/.worktrees). Names
carrying the managed prefix (ralph-*) are ours; `list` hides the rest unless
asked. A half-created worktree is never left registered as usable: setup
failures trigger a full removal, and anything that could not be removed is
reported with its path.
"""

import logging
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from ralph import git
from ralph.lib.constants import PROTECTED_BRANCHES, WORKSPACE_NAME_PATTERN
from ralph.lib.errors import AlreadyExists, MalformedInput, NotFound, PartialFailure, WorkspaceError

logger = logging.getLogger(__name__)

DEFAULT_SETUP_TIMEOUT = 600


@dataclass
class Workspace:
    """An isolated working copy dedicated to one item."""
    name: str
    path: Path
    branch: str = ""
    commit: str = ""
    managed: bool = True

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "branch": self.branch,
            "commit": self.commit,
            "managed": self.managed,
        }


@dataclass
class CleanupReport:
    """Result of removing managed worktrees in bulk."""
    cleaned: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"cleaned": self.cleaned, "kept": self.kept, "errors": self.errors}

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialFailure("Worktree cleanup incomplete", self.errors, self.cleaned)


class WorktreeManager:
    """Creates, lists and removes managed git worktrees.

    Does not retry; retry policy belongs to the batch orchestrator.
    """

    def __init__(
        self,
        repo: Path,
        root: Path | None = None,
        prefix: str = "ralph",
        trunk: str = "main",
        setup_command: str | None = None,
        setup_timeout: float = DEFAULT_SETUP_TIMEOUT,
    ):
        # git reports resolved paths; compare like with like
        self.repo = Path(repo).resolve()
        self.root = Path(root).resolve() if root else self.repo / ".worktrees"
        self.prefix = prefix
        self.trunk = trunk
        self.setup_command = setup_command
        self.setup_timeout = setup_timeout

    # --- naming ---

    def name_for(self, ref: str) -> str:
        """Workspace name for an item reference: ralph-HOL-12, ralph-001."""
        return f"{self.prefix}-{ref}"

    def is_managed(self, name: str) -> bool:
        return name.startswith(f"{self.prefix}-")

    def path(self, name: str) -> Path:
        return self.root / name

    def _check_name(self, name: str) -> None:
        if not WORKSPACE_NAME_PATTERN.match(name):
            raise MalformedInput(f"Invalid workspace name '{name}'")

    # --- queries ---

    def list(self, include_all: bool = False) -> list[Workspace]:
        """Registered worktrees, sorted by name.

        By default only managed worktrees under the root. A missing root or
        repository yields an empty list.
        """
        if not self.repo.exists():
            return []

        workspaces = []
        for entry in git.list_worktrees(self.repo):
            name = entry.path.name
            managed = entry.path.parent == self.root and self.is_managed(name)
            if include_all or managed:
                workspaces.append(Workspace(
                    name=name,
                    path=entry.path,
                    branch=entry.branch,
                    commit=entry.commit,
                    managed=managed,
                ))
        return sorted(workspaces, key=lambda w: w.name)

    def get(self, name: str) -> Optional[Workspace]:
        for workspace in self.list(include_all=True):
            if workspace.name == name and workspace.path.parent == self.root:
                return workspace
        return None

    def exists(self, name: str) -> bool:
        """True if the worktree is registered or its directory is present."""
        return self.path(name).exists() or self.get(name) is not None

    # --- lifecycle ---

    def create(self, name: str, branch: str) -> Workspace:
        """Create a worktree on a new branch from the trunk and run setup.

        Raises:
            AlreadyExists: workspace or branch already present (treat as claimed)
            WorkspaceError: git or setup failed; partial state was removed
                unless err.cleaned_up is False
        """
        self._check_name(name)
        path = self.path(name)

        if self.exists(name):
            raise AlreadyExists(f"Worktree {name} already exists at {path}")
        if git.branch_exists(self.repo, branch):
            raise AlreadyExists(f"Branch {branch} already exists")

        if git.has_remote(self.repo):
            result = git.fetch_into_local(self.repo, self.trunk)
            if not result.success:
                logger.info(f"[WORKTREE] Could not fast-forward {self.trunk} from origin: {result.error}")

        self.root.mkdir(parents=True, exist_ok=True)
        result = git.add_worktree(self.repo, path, branch, self.trunk)
        if not result.success:
            cleaned = self._discard_partial(name, path, branch)
            raise WorkspaceError(
                f"Failed to create worktree {name}: {result.error}", path, cleaned
            )

        if self.setup_command:
            try:
                self._run_setup(path)
            except WorkspaceError as e:
                cleaned = self._discard_partial(name, path, branch)
                raise WorkspaceError(str(e), path, cleaned) from None

        workspace = Workspace(
            name=name,
            path=path,
            branch=branch,
            commit=git.get_commit_sha(path) or "",
        )
        logger.info(f"[WORKTREE] Created {name} on {branch} at {path}")
        return workspace

    def _run_setup(self, path: Path) -> None:
        """One-time setup inside a new worktree (dependency install)."""
        cmd = shlex.split(self.setup_command)
        logger.info(f"[WORKTREE] Running setup in {path}: {self.setup_command}")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(path),
                capture_output=True,
                text=True,
                timeout=self.setup_timeout,
            )
        except subprocess.TimeoutExpired:
            raise WorkspaceError(f"Setup timed out after {self.setup_timeout}s", path) from None
        except OSError as e:
            raise WorkspaceError(f"Setup could not start: {e}", path) from None

        if result.returncode != 0:
            tail = (result.stderr or result.stdout).strip().splitlines()[-5:]
            raise WorkspaceError(
                f"Setup failed (exit {result.returncode}): {' | '.join(tail)}", path
            )

    def _discard_partial(self, name: str, path: Path, branch: str) -> bool:
        """Remove whatever a failed create left behind. Returns True if clean."""
        try:
            if path.exists() or self.get(name) is not None:
                self.remove(name, branch=branch)
            elif git.branch_exists(self.repo, branch):
                git.delete_branch(self.repo, branch)
        except (WorkspaceError, NotFound) as e:
            logger.error(f"[WORKTREE] Cleanup of partial worktree {path} failed: {e}")
            return False
        return not path.exists()

    def remove(self, name: str, branch: str | None = None) -> None:
        """Force-remove a worktree and delete its branch.

        Uncommitted changes are discarded; callers capture results first.
        Falls back to deleting the directory and pruning when `git worktree
        remove` fails.

        Raises:
            NotFound: neither registered nor on disk
            WorkspaceError: the directory could not be removed
        """
        self._check_name(name)
        path = self.path(name)
        workspace = self.get(name)

        if workspace is None and not path.exists():
            raise NotFound(f"Worktree {name} does not exist")

        branch = branch or (workspace.branch if workspace else "")

        if path.exists() and git.has_uncommitted_changes(path):
            logger.warning(f"[WORKTREE] Discarding uncommitted changes in {path}")

        result = git.remove_worktree(self.repo, path, force=True)
        if not result.success or path.exists():
            logger.warning(
                f"[WORKTREE] git worktree remove failed for {name} ({result.error}), "
                "falling back to manual cleanup"
            )
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise WorkspaceError(f"Failed to delete worktree {name}: {e}", path, cleaned_up=False) from None

        prune = git.prune_worktrees(self.repo)
        if not prune.success:
            logger.warning(f"[WORKTREE] git worktree prune failed: {prune.error}")

        if branch and branch not in PROTECTED_BRANCHES | {self.trunk}:
            if git.branch_exists(self.repo, branch):
                deleted = git.delete_branch(self.repo, branch)
                if not deleted.success:
                    logger.warning(f"[WORKTREE] Could not delete branch {branch}: {deleted.error}")

        logger.info(f"[WORKTREE] Removed {name}")

    def cleanup(self, keep: Callable[[Workspace], bool] | None = None) -> CleanupReport:
        """Remove managed worktrees, except those keep() returns True for."""
        report = CleanupReport()
        for workspace in self.list():
            if keep is not None and keep(workspace):
                report.kept.append(workspace.name)
                continue
            try:
                self.remove(workspace.name, branch=workspace.branch)
                report.cleaned.append(workspace.name)
            except (WorkspaceError, NotFound) as e:
                report.errors.append(f"{workspace.name}: {e}")
        return report
