"""Prefect flow and task wrappers for the batch orchestrator.

Wraps orchestrator steps with @task decorators to get:
- Automatic retry of the tracker sync
- Observability (when connected to a Prefect server)

The orchestrator logic itself lives in ralph.workflow.batch and runs the same
with or without Prefect.
"""

from prefect import flow, task

from ralph.workflow.batch import BatchOrchestrator, CycleReport, RunReport, SyncReport


@task(
    retries=2,
    retry_delay_seconds=10,
    name="sync",
    description="Reconcile local todos against the tracker",
)
def task_sync(orchestrator: BatchOrchestrator) -> SyncReport:
    """Sync with retry handling.

    Reconciliation is idempotent, so a rerun after a tracker outage is safe.
    """
    return orchestrator.sync()


@task(
    retries=0,
    name="cycle",
    description="Claim, provision, dispatch and settle one batch",
)
def task_cycle(orchestrator: BatchOrchestrator, limit: int) -> CycleReport:
    """One batch. Never retried: claims and worktrees are not idempotent."""
    return orchestrator.run_cycle(limit)


@flow(name="ralph_run")
def ralph_run(orchestrator: BatchOrchestrator) -> RunReport:
    """Full run: sync, then batches until exhausted, capped or escalated."""
    return orchestrator.run(
        sync=lambda: task_sync(orchestrator),
        cycle=lambda limit: task_cycle(orchestrator, limit),
    )
