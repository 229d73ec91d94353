"""
Batch Orchestrator: drives items through claim, workspace, dispatch and cleanup.

Per cycle:
    BuildQueue -> ClaimBatch -> ProvisionWorkspaces -> Dispatch
    -> CollectResults -> Reconcile&Cleanup -> (loop | stop)

Claims within a batch are taken one at a time; dispatched work runs in
parallel; the next batch starts only after every member of the current one
reached a terminal outcome or timed out. The orchestrator owns the retry
budget: an item failing max_attempts times in one run is blocked.

The tracker is written before the store: when a release cannot be
recorded the item keeps its local state and the result is failed.

Dispatches run on daemon threads and are never preempted. A dispatch that
outlives the timeout keeps its worktree; the item is blocked and nothing
else is dispatched into that worktree while the thread is alive.
"""

import logging
import threading
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from typing import Callable, Optional

from ralph import notifications
from ralph.lib.errors import (
    AlreadyExists,
    ExternalUnavailable,
    MalformedInput,
    NotFound,
    RalphError,
    WorkspaceError,
)
from ralph.todos.models import Item, ItemState
from ralph.todos.queue import build_queue, dependency_problems, next_eligible
from ralph.todos.store import ItemStore, now_iso
from ralph.tracker.claims import ClaimCoordinator, Outcome, ReconcileAction
from ralph.tracker.fsm import ExternalState
from ralph.workflow.dispatch import DispatchOutcome, DispatchRequest
from ralph.workspaces import Workspace, WorktreeManager

logger = logging.getLogger(__name__)

# Local state -> tracker state for records created during sync
CREATE_STATE = {
    ItemState.PENDING: ExternalState.OPEN,
    ItemState.IN_PROGRESS: ExternalState.OPEN,
    ItemState.BLOCKED: ExternalState.BLOCKED,
    ItemState.COMPLETED: ExternalState.DONE,
}

STOP_QUEUE_EXHAUSTED = "queue_exhausted"
STOP_MAX_ITEMS = "max_items"
STOP_ESCALATED = "escalated"


@dataclass
class SyncReport:
    """What reconciliation against the tracker changed locally."""
    checked: int = 0
    created: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    reopened: list[str] = field(default_factory=list)
    regrouped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class ItemResult:
    """Terminal outcome of one item in a cycle."""
    item_id: str
    ref: str
    status: str  # completed | blocked | failed
    detail: str
    merged: bool = False
    workspace: Optional[str] = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class CycleReport:
    claimed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    dependency_blocked: list[str] = field(default_factory=list)
    results: list[ItemResult] = field(default_factory=list)
    follow_ups: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == "completed")

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        data["results"] = [r.to_dict() for r in self.results]
        return data


@dataclass
class RunReport:
    sync: Optional[SyncReport] = None
    cycles: list[CycleReport] = field(default_factory=list)
    stop_reason: str = STOP_QUEUE_EXHAUSTED
    escalated: bool = False

    @property
    def processed(self) -> int:
        return sum(len(c.claimed) for c in self.cycles)

    def count(self, status: str) -> int:
        return sum(c.count(status) for c in self.cycles)

    def to_dict(self) -> dict:
        return {
            "sync": self.sync.to_dict() if self.sync else None,
            "cycles": [c.to_dict() for c in self.cycles],
            "processed": self.processed,
            "completed": self.count("completed"),
            "blocked": self.count("blocked"),
            "failed": self.count("failed"),
            "stop_reason": self.stop_reason,
            "escalated": self.escalated,
        }


Dispatcher = Callable[[DispatchRequest], DispatchOutcome]


class BatchOrchestrator:
    """Runs batches of todos through claim, worktree, dispatch and cleanup."""

    def __init__(
        self,
        store: ItemStore,
        workspaces: WorktreeManager,
        coordinator: ClaimCoordinator,
        dispatcher: Dispatcher,
        workers: int = 3,
        max_items: int = 0,
        include_backlog: bool = False,
        dispatch_timeout: float | None = None,
        max_attempts: int = 2,
        branch_prefix: str = "feature",
        flags: list[str] | None = None,
    ):
        self.store = store
        self.workspaces = workspaces
        self.coordinator = coordinator
        self.dispatcher = dispatcher
        self.workers = workers
        self.max_items = max_items
        self.include_backlog = include_backlog
        self.dispatch_timeout = dispatch_timeout
        self.max_attempts = max_attempts
        self.branch_prefix = branch_prefix
        self.flags = list(flags or [])
        # item id -> failed attempts in this run
        self.attempts: dict[str, int] = {}
        # workspace name -> dispatch that outlived the timeout
        self._running: dict[str, Future] = {}

    @property
    def tracker(self):
        return self.coordinator.tracker

    def branch_for(self, item: Item) -> str:
        return f"{self.branch_prefix}/{item.id}-{item.slug}"

    # --- sync ---

    def sync(self) -> SyncReport:
        """Reconcile every local item against the tracker before trusting local state."""
        report = SyncReport()
        for item in self.store.list():
            report.checked += 1
            try:
                self._sync_item(item, report)
            except (ExternalUnavailable, MalformedInput) as e:
                logger.error(f"[BATCH] Sync of todo {item.id} failed: {e}")
                report.errors.append(f"{item.id}: {e}")

        for path, error in self.store.last_errors:
            report.errors.append(f"{path.name}: {error}")

        logger.info(
            f"[BATCH] Sync: {report.checked} checked, {len(report.created)} created, "
            f"{len(report.completed)} completed, {len(report.deleted)} deleted, "
            f"{len(report.blocked)} blocked, {len(report.reopened)} reopened"
        )
        return report

    def _sync_item(self, item: Item, report: SyncReport) -> None:
        record = None
        if item.external_id:
            try:
                record = self.coordinator.call(self.tracker.get_record, item.external_id)
            except NotFound:
                logger.warning(f"[BATCH] Todo {item.id} links to missing record {item.external_id}")

        action = self.coordinator.reconcile(item, record.state if record else None)

        if action == ReconcileAction.CREATE_EXTERNAL:
            record = self.coordinator.call(self.tracker.create_record, {
                "title": item.title,
                "state": CREATE_STATE[item.state],
                "group": item.group,
            })
            self.store.update(item.id, external_id=record.id, external_url=record.url)
            report.created.append(item.id)
            return

        if action == ReconcileAction.MARK_COMPLETED:
            self.store.transition(item.id, ItemState.COMPLETED)
            report.completed.append(item.id)
        elif action == ReconcileAction.DELETE_LOCAL:
            self.store.delete(item.id, reason="cancelled")
            report.deleted.append(item.id)
            return
        elif action == ReconcileAction.MARK_BLOCKED:
            self.store.transition(
                item.id, ItemState.BLOCKED, blocked_reason=f"blocked in tracker ({record.id})"
            )
            report.blocked.append(item.id)
        elif action == ReconcileAction.REOPEN_LOCAL:
            self.store.transition(item.id, ItemState.PENDING)
            report.reopened.append(item.id)

        # The tracker owns scheduling groups
        if record.group and record.group != item.group:
            self.store.update(item.id, group=record.group)
            report.regrouped.append(item.id)

    # --- cycle steps ---

    def build_queue(self, report: CycleReport) -> tuple[list[Item], set[str]]:
        """Pending queue plus completed ids; unsatisfiable items are blocked."""
        pending = self.store.list(ItemState.PENDING)
        completed_ids = self.store.completed_ids()
        problems = dependency_problems(
            pending, completed_ids, self.store.known_ids(), self.store.deleted_ids()
        )

        for item_id, reason in problems.items():
            logger.error(f"[QUEUE] Todo {item_id} can never become eligible: {reason}")
            self.store.transition(item_id, ItemState.BLOCKED, blocked_reason=reason)
            report.dependency_blocked.append(item_id)
            notifications.notify_blocked(item_id, reason)

        pending = [item for item in pending if item.id not in problems]
        return build_queue(pending, self.include_backlog), completed_ids

    def claim_batch(self, queue: list[Item], completed_ids: set[str], limit: int,
                    report: CycleReport) -> list[Item]:
        """Claim up to limit eligible items, one at a time."""
        candidates = list(queue)
        batch = []
        while len(batch) < limit:
            item = next_eligible(candidates, completed_ids)
            if item is None:
                break
            candidates.remove(item)

            if not item.external_id:
                logger.warning(f"[BATCH] Todo {item.id} has no tracker record; run sync first")
                report.skipped.append(item.id)
                continue

            try:
                result = self.coordinator.try_claim(item.external_id)
            except (NotFound, ExternalUnavailable) as e:
                logger.warning(f"[BATCH] Skipping todo {item.id}: {e}")
                report.skipped.append(item.id)
                continue

            if not result.claimed:
                report.skipped.append(item.id)
                continue
            batch.append(item)
            report.claimed.append(item.id)
        return batch

    def provision(self, batch: list[Item], report: CycleReport) -> list[tuple[Item, Workspace]]:
        """Create a worktree per claimed item; failures go back to the pool."""
        ready = []
        for item in batch:
            name = self.workspaces.name_for(item.ref)
            branch = self.branch_for(item)
            if self._still_running(name):
                logger.error(f"[BATCH] Todo {item.id}: an earlier dispatch is still running in {name}")
                self._fail(item, f"earlier dispatch still running in worktree {name}", report, name)
                continue
            try:
                workspace = self.workspaces.create(name, branch)
            except AlreadyExists as e:
                workspace = self.workspaces.get(name)
                if workspace is None or workspace.branch != branch:
                    self._fail(item, f"workspace unavailable: {e}", report, None)
                    continue
                # We hold the claim, so this is our own retained worktree
                logger.info(f"[BATCH] Resuming todo {item.id} in retained worktree {name}")
            except WorkspaceError as e:
                logger.error(f"[BATCH] Provisioning todo {item.id} failed: {e}")
                self._fail(item, f"workspace setup failed: {e}", report, None)
                continue

            self.store.transition(item.id, ItemState.IN_PROGRESS)
            ready.append((item, workspace))
        return ready

    def _start(self, request: DispatchRequest) -> Future:
        """Run one dispatch on a daemon thread so a hung one cannot hold the process open."""
        future: Future = Future()

        def work():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.dispatcher(request))
            except Exception as e:
                future.set_exception(e)

        thread = threading.Thread(target=work, name=f"ralph-dispatch-{request.item.id}", daemon=True)
        thread.start()
        return future

    def _still_running(self, workspace_name: str) -> bool:
        future = self._running.get(workspace_name)
        if future is None:
            return False
        if future.done():
            del self._running[workspace_name]
            return False
        return True

    def dispatch(self, ready: list[tuple[Item, Workspace]]) -> dict[str, DispatchOutcome]:
        """Run dispatched work concurrently and join with the dispatch timeout.

        Unfinished work becomes failed(timeout) but is not preempted; its
        worktree is remembered as busy until the thread finishes.
        """
        if not ready:
            return {}

        outcomes: dict[str, DispatchOutcome] = {}
        futures = {
            self._start(DispatchRequest(item, workspace, list(self.flags))): (item, workspace)
            for item, workspace in ready
        }
        done, not_done = wait(futures, timeout=self.dispatch_timeout)

        for future in not_done:
            item, workspace = futures[future]
            logger.error(f"[BATCH] Dispatch of todo {item.id} timed out after {self.dispatch_timeout}s")
            self._running[workspace.name] = future
            outcomes[item.id] = DispatchOutcome.failed(f"timeout after {self.dispatch_timeout}s")

        for future in done:
            item, _ = futures[future]
            try:
                outcomes[item.id] = future.result()
            except Exception as e:
                logger.exception(f"[BATCH] Dispatch of todo {item.id} raised")
                outcomes[item.id] = DispatchOutcome.failed(f"dispatch raised {type(e).__name__}: {e}")
        return outcomes

    def settle(self, item: Item, workspace: Workspace, outcome: DispatchOutcome,
               report: CycleReport) -> None:
        """Apply one outcome to the tracker, the store and the worktree."""
        ref = item.external_id
        self._create_follow_ups(item, outcome, report)

        if outcome.status == "completed":
            if outcome.merged:
                self.store.update(item.id, result_ref=outcome.result_ref)
                if not self._release(item, Outcome.COMPLETED, outcome.detail, report):
                    self._unsettled(item, f"completed ({outcome.detail}) but the claim was not released",
                                    report, workspace.name)
                    return
                self.store.delete(item.id, reason=ItemState.COMPLETED.value)
                try:
                    self.workspaces.remove(workspace.name, branch=workspace.branch)
                except (WorkspaceError, NotFound) as e:
                    logger.error(f"[BATCH] Could not remove worktree {workspace.name}: {e}")
                    report.errors.append(f"{item.id}: {e}")
            else:
                # Awaiting merge: item and claim stay in_progress, worktree kept
                self.store.update(item.id, result_ref=outcome.result_ref)
                self._note(ref, f"Completed, awaiting merge: {outcome.detail}", report)
            self.attempts.pop(item.id, None)
            report.results.append(ItemResult(
                item.id, item.ref, "completed", outcome.detail, outcome.merged, workspace.name
            ))
            return

        if outcome.status == "blocked":
            self._block(item, outcome.reason, report, workspace.name)
            return

        self._fail(item, outcome.error, report, workspace.name)

    def _create_follow_ups(self, item: Item, outcome: DispatchOutcome, report: CycleReport) -> None:
        """New todos reported by dispatched work, linked to a fresh tracker record."""
        for follow_up in outcome.follow_ups:
            try:
                created = self.store.create(
                    title=follow_up.title,
                    priority=follow_up.priority,
                    description=follow_up.description,
                    tags=follow_up.tags,
                    dependencies=follow_up.dependencies,
                    parent=item.id,
                    group=item.group,
                )
            except MalformedInput as e:
                report.errors.append(f"{item.id}: follow-up '{follow_up.title}' rejected: {e}")
                continue
            report.follow_ups.append(created.id)

            try:
                record = self.coordinator.call(self.tracker.create_record, {
                    "title": created.title,
                    "state": ExternalState.OPEN,
                    "group": created.group,
                })
            except ExternalUnavailable as e:
                # Picked up by the next sync
                logger.error(f"[BATCH] Could not register follow-up {created.id}: {e}")
                report.errors.append(f"{created.id}: tracker record not created: {e}")
                continue
            self.store.update(created.id, external_id=record.id, external_url=record.url)
            logger.info(f"[BATCH] Follow-up {created.id} ({record.id}) created from todo {item.id}")

    def _fail(self, item: Item, error: str, report: CycleReport, workspace_name: str | None) -> None:
        """Failed attempt: back to pending, or blocked once the budget is spent.

        An item whose dispatch is still running is blocked at once so its
        worktree stays with the operator.
        """
        attempts = self.attempts.get(item.id, 0) + 1
        self.attempts[item.id] = attempts
        hung = workspace_name is not None and self._still_running(workspace_name)

        if hung or attempts >= self.max_attempts:
            reason = f"failed {attempts} time(s), last error: {error}"
            if hung:
                reason += f"; dispatch still running in worktree {workspace_name}"
            self._block(item, reason, report, workspace_name)
            return

        if not self._release(item, Outcome.FAILED, error, report):
            self._unsettled(item, f"failed ({error}) and the claim was not released", report, workspace_name)
            return
        self.store.transition(item.id, ItemState.PENDING, failed_at=now_iso(), failed_reason=error)
        logger.warning(f"[BATCH] Todo {item.id} failed (attempt {attempts}/{self.max_attempts}): {error}")
        report.results.append(ItemResult(item.id, item.ref, "failed", error, workspace=workspace_name))

    def _block(self, item: Item, reason: str, report: CycleReport, workspace_name: str | None) -> None:
        if not self._release(item, Outcome.BLOCKED, reason, report):
            self._unsettled(item, f"blocked ({reason}) but the claim was not released", report, workspace_name)
            return
        self.store.transition(item.id, ItemState.BLOCKED, blocked_reason=reason)
        logger.warning(f"[BATCH] Todo {item.id} blocked: {reason}")
        notifications.notify_blocked(item.ref, reason)
        report.results.append(ItemResult(item.id, item.ref, "blocked", reason, workspace=workspace_name))

    def _release(self, item: Item, outcome: Outcome, detail: str, report: CycleReport) -> bool:
        """Release the claim. False when the tracker was not updated."""
        ref = item.external_id
        try:
            released = self.coordinator.release(ref, outcome, detail)
        except (ExternalUnavailable, NotFound) as e:
            logger.error(f"[BATCH] Could not release {ref} as {outcome.value}: {e}")
            report.errors.append(f"{ref}: release failed: {e}")
            return False
        if not released:
            report.errors.append(f"{ref}: claim no longer held, not released as {outcome.value}")
        return released

    def _unsettled(self, item: Item, detail: str, report: CycleReport, workspace_name: str | None) -> None:
        """The tracker kept its state, so the local item does too."""
        logger.error(f"[BATCH] Todo {item.id} left unchanged locally: {detail}")
        report.results.append(ItemResult(item.id, item.ref, "failed", detail, workspace=workspace_name))

    def _note(self, ref: str, text: str, report: CycleReport) -> None:
        try:
            self.coordinator.call(self.tracker.add_note, ref, text)
        except (ExternalUnavailable, NotFound) as e:
            logger.error(f"[BATCH] Could not add note to {ref}: {e}")
            report.errors.append(f"{ref}: note failed: {e}")

    # --- driving ---

    def run_cycle(self, limit: int | None = None) -> CycleReport:
        """One batch: build queue, claim, provision, dispatch, settle."""
        report = CycleReport()
        limit = self.workers if limit is None else limit

        queue, completed_ids = self.build_queue(report)
        batch = self.claim_batch(queue, completed_ids, limit, report)
        if not batch:
            return report

        ready = self.provision(batch, report)
        outcomes = self.dispatch(ready)
        for item, workspace in ready:
            try:
                self.settle(item, workspace, outcomes[item.id], report)
            except RalphError as e:
                logger.error(f"[BATCH] Settling todo {item.id} failed: {e}")
                report.errors.append(f"{item.id}: {e}")

        logger.info(
            f"[BATCH] Cycle done: {len(report.claimed)} claimed, {report.count('completed')} completed, "
            f"{report.count('blocked')} blocked, {report.count('failed')} failed"
        )
        return report

    def run(
        self,
        sync: Callable[[], SyncReport] | None = None,
        cycle: Callable[[int], CycleReport] | None = None,
    ) -> RunReport:
        """Sync, then run cycles until the queue is empty, max_items is hit,
        or a batch yields no successes.

        sync/cycle default to this orchestrator's own methods; the Prefect
        flow passes task-wrapped versions.
        """
        sync = sync or self.sync
        cycle = cycle or self.run_cycle
        report = RunReport()
        self.attempts = {}

        report.sync = sync()

        while True:
            limit = self.workers
            if self.max_items:
                remaining = self.max_items - report.processed
                if remaining <= 0:
                    report.stop_reason = STOP_MAX_ITEMS
                    break
                limit = min(limit, remaining)

            result = cycle(limit)
            report.cycles.append(result)

            if not result.claimed:
                report.stop_reason = STOP_QUEUE_EXHAUSTED
                break

            if result.succeeded == 0:
                message = (
                    f"Batch of {len(result.claimed)} todo(s) produced no successes "
                    f"({', '.join(r.item_id + ': ' + r.detail for r in result.results) or 'no results'})"
                )
                logger.error(f"[BATCH] Escalating: {message}")
                notifications.notify_escalation(message)
                report.escalated = True
                report.stop_reason = STOP_ESCALATED
                break

        logger.info(
            f"[BATCH] Run finished ({report.stop_reason}): {report.processed} processed, "
            f"{report.count('completed')} completed, {report.count('blocked')} blocked, "
            f"{report.count('failed')} failed"
        )
        notifications.notify_run_complete(
            report.processed, report.count("completed"), report.count("blocked"), report.count("failed")
        )
        return report
