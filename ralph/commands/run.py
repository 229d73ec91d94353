"""
ralph run - process the todo queue in batches.
"""

import logging

from ralph.commands.worktree import build_manager
from ralph.lib.config import RalphConfig, clamp_workers
from ralph.lib.constants import EXIT_ERROR, EXIT_OK
from ralph.lib.errors import MalformedInput
from ralph.lib.output import emit
from ralph.todos import ItemStore
from ralph.tracker import ClaimCoordinator, FileTracker, GitHubTracker, MemoryTracker, Tracker
from ralph.workflow.batch import BatchOrchestrator
from ralph.workflow.dispatch import CommandDispatcher

logger = logging.getLogger(__name__)


def build_tracker(config: RalphConfig) -> Tracker:
    kind = config.tracker.kind
    if kind == "file":
        return FileTracker(config.tracker_path)
    if kind == "github":
        return GitHubTracker(repo=config.tracker.repo, cwd=config.repo_path)
    if kind == "memory":
        logger.warning("Using in-memory tracker: claims are not shared with other processes")
        return MemoryTracker()
    raise MalformedInput(f"Unknown tracker kind '{kind}'")


def build_orchestrator(config: RalphConfig, flags: list[str] | None = None) -> BatchOrchestrator:
    coordinator = ClaimCoordinator(
        build_tracker(config),
        actor=config.actor,
        retries=config.claim_retries,
        backoff_seconds=config.retry_backoff_seconds,
    )
    dispatcher = None
    if config.dispatch_command:
        dispatcher = CommandDispatcher(config.dispatch_command, timeout=config.dispatch_timeout)
    return BatchOrchestrator(
        store=ItemStore(config.todos_path),
        workspaces=build_manager(config),
        coordinator=coordinator,
        dispatcher=dispatcher,
        workers=config.workers,
        max_items=config.max_items,
        include_backlog=config.include_backlog,
        dispatch_timeout=config.dispatch_timeout,
        max_attempts=config.max_attempts,
        branch_prefix=config.branch_prefix,
        flags=flags,
    )


def cmd_run(args, config: RalphConfig) -> int:
    """Sync, then process batches until the queue is exhausted.

    Exit 1 when the run escalated (a batch with no successes).
    """
    if args.workers is not None:
        config.workers = clamp_workers(args.workers)
    if args.max_items is not None:
        config.max_items = args.max_items
    if args.include_backlog:
        config.include_backlog = True
    if not config.dispatch_command:
        raise MalformedInput("No dispatch command configured (dispatch_command or RALPH_DISPATCH_COMMAND)")

    orchestrator = build_orchestrator(config, flags=args.flag)

    if args.local:
        report = orchestrator.run()
    else:
        from ralph.workflow.flows import ralph_run
        report = ralph_run(orchestrator)

    emit(report.to_dict())
    return EXIT_ERROR if report.escalated else EXIT_OK
