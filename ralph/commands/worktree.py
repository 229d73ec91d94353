"""
ralph worktree - manage isolated git worktrees.
"""

from ralph.lib.config import RalphConfig
from ralph.lib.constants import EXIT_OK
from ralph.lib.output import emit
from ralph.workspaces import WorktreeManager


def build_manager(config: RalphConfig) -> WorktreeManager:
    return WorktreeManager(
        repo=config.repo_path,
        root=config.worktrees_path,
        prefix=config.workspace_prefix,
        trunk=config.trunk,
        setup_command=config.setup_command,
        setup_timeout=config.setup_timeout,
    )


def cmd_worktree_create(args, config: RalphConfig) -> int:
    workspace = build_manager(config).create(args.name, args.branch)
    emit({"success": True, **workspace.to_dict()})
    return EXIT_OK


def cmd_worktree_delete(args, config: RalphConfig) -> int:
    build_manager(config).remove(args.name)
    emit({"success": True, "deleted": args.name})
    return EXIT_OK


def cmd_worktree_list(args, config: RalphConfig) -> int:
    workspaces = build_manager(config).list(include_all=args.all)
    emit({"worktrees": [w.to_dict() for w in workspaces]})
    return EXIT_OK


def cmd_worktree_exists(args, config: RalphConfig) -> int:
    manager = build_manager(config)
    emit({"name": args.name, "exists": manager.exists(args.name), "path": str(manager.path(args.name))})
    return EXIT_OK


def cmd_worktree_cleanup(args, config: RalphConfig) -> int:
    """Remove every managed worktree; exit 1 if any removal failed."""
    report = build_manager(config).cleanup()
    emit({"success": report.success, **report.to_dict()})
    report.raise_for_errors()
    return EXIT_OK


def cmd_worktree_path(args, config: RalphConfig) -> int:
    emit({"path": str(build_manager(config).path(args.name))})
    return EXIT_OK
