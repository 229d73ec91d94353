"""End-to-end tests for the batch orchestrator.

Uses a real git repository for worktrees, the in-memory tracker for claims
and a scripted dispatcher in place of the external work collaborator.
"""

import logging
import threading

import pytest

from ralph import notifications
from ralph.lib.errors import ExternalUnavailable, NotFound
from ralph.todos.models import ItemState
from ralph.todos.store import ItemStore
from ralph.tracker.claims import ClaimCoordinator
from ralph.tracker.fsm import ExternalState
from ralph.tracker.memory import MemoryTracker
from ralph.workflow.batch import (
    STOP_ESCALATED,
    STOP_MAX_ITEMS,
    STOP_QUEUE_EXHAUSTED,
    BatchOrchestrator,
    CycleReport,
)
from ralph.workflow.dispatch import DispatchOutcome
from ralph.workspaces import WorktreeManager


class ScriptedDispatcher:
    """Returns scripted outcomes per item title; completed+merged otherwise."""

    def __init__(self, script=None):
        self.script = {title: list(outcomes) for title, outcomes in (script or {}).items()}
        self.calls = []
        self.seen_worktrees = {}
        self._lock = threading.Lock()

    def __call__(self, request):
        with self._lock:
            self.calls.append(request.item.id)
            self.seen_worktrees[request.item.id] = (
                request.workspace.path.exists(),
                request.workspace.branch,
            )
            outcomes = self.script.get(request.item.title)
            outcome = outcomes.pop(0) if outcomes else DispatchOutcome.completed("pr/1", merged=True)
        if callable(outcome):
            return outcome(request)
        return outcome


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch):
    sent = []
    monkeypatch.setattr(notifications, "notify", lambda title, message, urgency="normal": sent.append(
        (title, message, urgency)
    ))
    return sent


class Env:
    """One todo store, tracker and worktree root shared by every orchestrator."""

    def __init__(self, repo, todos_dir):
        self.store = ItemStore(todos_dir)
        self.tracker = MemoryTracker(prefix="HOL")
        self.workspaces = WorktreeManager(repo)

    def orchestrator(self, dispatcher, actor="worker-a", **kwargs):
        coordinator = ClaimCoordinator(self.tracker, actor, sleep=lambda _: None)
        return BatchOrchestrator(self.store, self.workspaces, coordinator, dispatcher, **kwargs)


@pytest.fixture
def env(git_repo, tmp_path):
    return Env(git_repo, tmp_path / "todos")


class TestEndToEnd:

    def test_first_item_claimed_processed_and_cleaned_up(self, env):
        env.store.create("Fix login", "p1", group="Cycle 4 (current)")
        env.store.create("Add search", "p2", group="Cycle 4 (current)")
        env.store.create("Refactor db", "p1", group="Cycle 5")
        env.store.create("Write docs", "p1")
        env.store.create("Polish UI", "p3", group="Cycle 4 (current)")
        dispatcher = ScriptedDispatcher()
        orch = env.orchestrator(dispatcher, workers=1, max_items=1)
        orch.sync()
        first = env.store.get("1")
        workspace_name = env.workspaces.name_for(first.ref)

        report = orch.run()

        assert dispatcher.calls == ["001"]
        assert dispatcher.seen_worktrees["001"] == (True, "feature/001-fix-login")
        assert report.stop_reason == STOP_MAX_ITEMS
        assert report.count("completed") == 1
        with pytest.raises(NotFound):
            env.store.get("1")
        assert "001" in env.store.completed_ids()
        record = env.tracker.get_record(first.external_id)
        assert record.state == ExternalState.DONE
        assert record.notes[-1]["text"] == "Completed by worker-a: pr/1 (merged)"
        assert not env.workspaces.exists(workspace_name)
        assert env.workspaces.list() == []

    def test_dependent_waits_for_dependency(self, env):
        env.store.create("Base", "p2")
        env.store.create("Dependent", "p1", dependencies=["1"])
        dispatcher = ScriptedDispatcher()

        report = env.orchestrator(dispatcher, workers=2).run()

        assert dispatcher.calls == ["001", "002"]
        assert report.cycles[0].claimed == ["001"]
        assert report.cycles[1].claimed == ["002"]
        assert report.stop_reason == STOP_QUEUE_EXHAUSTED
        assert env.store.list() == []

    def test_racing_orchestrators_split_the_queue(self, env):
        for title in ("One", "Two", "Three", "Four"):
            env.store.create(title, "p1")
        env.store.transition("1", ItemState.COMPLETED)
        env.store.transition("2", ItemState.COMPLETED)
        first = env.orchestrator(ScriptedDispatcher(), actor="worker-a")
        second = env.orchestrator(ScriptedDispatcher(), actor="worker-b")
        first.sync()

        barrier = threading.Barrier(2)
        reports = {}

        def claim(name, orch):
            report = CycleReport()
            queue, completed = orch.build_queue(report)
            barrier.wait()
            orch.claim_batch(queue, completed, 1, report)
            reports[name] = report

        threads = [
            threading.Thread(target=claim, args=("a", first)),
            threading.Thread(target=claim, args=("b", second)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        claimed = sorted(reports["a"].claimed + reports["b"].claimed)
        assert claimed == ["003", "004"]
        loser = reports["a"] if reports["a"].claimed == ["004"] else reports["b"]
        assert loser.skipped == ["003"]
        assert env.workspaces.list() == []


class TestOutcomes:

    def test_blocked_outcome_escalates_single_batch(self, env, sent_notifications):
        env.store.create("Deploy", "p1")
        dispatcher = ScriptedDispatcher({"Deploy": [DispatchOutcome.blocked("needs prod credentials")]})

        report = env.orchestrator(dispatcher).run()

        item = env.store.get("1")
        assert item.state == ItemState.BLOCKED
        assert item.blocked_reason == "needs prod credentials"
        assert env.tracker.get_record(item.external_id).state == ExternalState.BLOCKED
        assert report.escalated
        assert report.stop_reason == STOP_ESCALATED
        urgencies = [u for _, _, u in sent_notifications]
        assert urgencies.count("critical") == 2

    def test_failure_retried_in_retained_worktree(self, env, caplog):
        caplog.set_level(logging.INFO)
        env.store.create("Flaky", "p1")
        env.store.create("Steady", "p2")
        dispatcher = ScriptedDispatcher({"Flaky": [DispatchOutcome.failed("tests failing")]})

        report = env.orchestrator(dispatcher, workers=2, max_attempts=2).run()

        assert dispatcher.calls.count("001") == 2
        assert report.cycles[0].count("failed") == 1
        assert report.cycles[1].count("completed") == 1
        assert not report.escalated
        assert "Resuming todo 001" in caplog.text
        assert env.store.list() == []

    def test_failed_item_returns_to_pending_with_audit(self, env):
        env.store.create("Flaky", "p1")
        env.store.create("Steady", "p2")
        orch = env.orchestrator(
            ScriptedDispatcher({"Flaky": [DispatchOutcome.failed("tests failing")]}), workers=2
        )
        orch.sync()

        orch.run_cycle()

        item = env.store.get("1")
        assert item.state == ItemState.PENDING
        assert item.failed_reason == "tests failing"
        assert item.failed_at
        record = env.tracker.get_record(item.external_id)
        assert record.state == ExternalState.OPEN
        assert record.assignee is None

    def test_retry_budget_blocks_item(self, env):
        env.store.create("Broken", "p1")
        dispatcher = ScriptedDispatcher({"Broken": [DispatchOutcome.failed("boom")]})

        report = env.orchestrator(dispatcher, max_attempts=1).run()

        item = env.store.get("1")
        assert item.state == ItemState.BLOCKED
        assert item.blocked_reason == "failed 1 time(s), last error: boom"
        assert report.count("blocked") == 1

    def test_dispatch_timeout_becomes_failure(self, env):
        env.store.create("Slow", "p1")
        release = threading.Event()

        def hang(request):
            release.wait(5)
            return DispatchOutcome.completed(merged=True)

        dispatcher = ScriptedDispatcher({"Slow": [hang]})
        try:
            report = env.orchestrator(dispatcher, dispatch_timeout=0.2, max_attempts=1).run()
        finally:
            release.set()

        detail = report.cycles[0].results[0].detail
        assert detail.startswith("failed 1 time(s), last error: timeout after 0.2s")
        assert env.store.get("1").state == ItemState.BLOCKED

    def test_hung_dispatch_blocks_and_keeps_worktree(self, env):
        env.store.create("Slow", "p1")
        env.store.create("Fast", "p2")
        release = threading.Event()

        def hang(request):
            release.wait(10)
            return DispatchOutcome.completed(merged=True)

        dispatcher = ScriptedDispatcher({"Slow": [hang, hang]})
        orch = env.orchestrator(dispatcher, workers=2, dispatch_timeout=0.3, max_attempts=3)
        try:
            report = orch.run()

            slow = env.store.get("1")
            assert sorted(dispatcher.calls) == ["001", "002"]
            assert slow.state == ItemState.BLOCKED
            assert "dispatch still running in worktree ralph-HOL-1" in slow.blocked_reason
            assert env.tracker.get_record(slow.external_id).state == ExternalState.BLOCKED
            assert env.workspaces.exists("ralph-HOL-1")
            assert report.count("completed") == 1

            # Unblocked by hand while the first dispatch is still alive
            env.store.transition("1", ItemState.PENDING)
            env.tracker.update_record(slow.external_id, ExternalState.OPEN)
            report = orch.run()

            assert sorted(dispatcher.calls) == ["001", "002"]
            assert report.cycles[0].results[0].status == "blocked"
            assert env.store.get("1").state == ItemState.BLOCKED
        finally:
            release.set()

    def test_dispatch_runs_on_daemon_threads(self, env):
        env.store.create("Check", "p1")
        seen = []

        def record_thread(request):
            seen.append(threading.current_thread().daemon)
            return DispatchOutcome.completed(merged=True)

        env.orchestrator(ScriptedDispatcher({"Check": [record_thread]})).run()

        assert seen == [True]

    def test_dispatcher_exception_is_failure(self, env):
        env.store.create("Crashy", "p1")

        def crash(request):
            raise RuntimeError("agent exploded")

        report = env.orchestrator(ScriptedDispatcher({"Crashy": [crash]}), max_attempts=1).run()

        assert "dispatch raised RuntimeError: agent exploded" in report.cycles[0].results[0].detail

    def test_completed_unmerged_keeps_claim_and_worktree(self, env):
        env.store.create("Feature", "p1")
        dispatcher = ScriptedDispatcher({"Feature": [DispatchOutcome.completed("pr/9", merged=False)]})
        orch = env.orchestrator(dispatcher)

        report = orch.run()

        item = env.store.get("1")
        assert item.state == ItemState.IN_PROGRESS
        assert item.result_ref == "pr/9"
        record = env.tracker.get_record(item.external_id)
        assert record.state == ExternalState.IN_PROGRESS
        assert record.notes[-1]["text"].startswith("Completed, awaiting merge")
        assert env.workspaces.exists(env.workspaces.name_for(item.ref))
        assert not report.escalated
        assert report.stop_reason == STOP_QUEUE_EXHAUSTED

    def test_follow_ups_created_and_processed(self, env):
        env.store.create("Parent", "p1")
        outcome = DispatchOutcome.completed("pr/1", merged=True, follow_ups=[{"title": "Add tests"}])
        dispatcher = ScriptedDispatcher({"Parent": [outcome]})

        report = env.orchestrator(dispatcher, workers=1).run()

        assert dispatcher.calls == ["001", "002"]
        assert report.cycles[0].follow_ups == ["002"]
        records = env.tracker.list_records()
        assert [r.state for r in records] == [ExternalState.DONE, ExternalState.DONE]

    def test_setup_failure_counts_as_attempt(self, env, git_repo):
        env.workspaces = WorktreeManager(git_repo, setup_command="false")
        env.store.create("Needs setup", "p1")
        dispatcher = ScriptedDispatcher()

        report = env.orchestrator(dispatcher, max_attempts=1).run()

        assert dispatcher.calls == []
        item = env.store.get("1")
        assert item.state == ItemState.BLOCKED
        assert "workspace setup failed" in item.blocked_reason
        assert report.escalated


class TestQueueLimits:

    def test_max_items_caps_processing(self, env):
        for title in ("A", "B", "C"):
            env.store.create(title, "p1")
        dispatcher = ScriptedDispatcher()

        report = env.orchestrator(dispatcher, workers=3, max_items=2).run()

        assert sorted(dispatcher.calls) == ["001", "002"]
        assert report.processed == 2
        assert report.stop_reason == STOP_MAX_ITEMS
        assert [i.id for i in env.store.list()] == ["003"]

    def test_unsatisfiable_dependencies_blocked(self, env, sent_notifications):
        env.store.create("Orphan", "p1", dependencies=["99"])
        env.store.create("Left", "p1", dependencies=["3"])
        env.store.create("Right", "p1", dependencies=["2"])

        report = env.orchestrator(ScriptedDispatcher()).run()

        assert sorted(report.cycles[0].dependency_blocked) == ["001", "002", "003"]
        assert "099" in env.store.get("1").blocked_reason
        assert "cycle" in env.store.get("2").blocked_reason
        assert report.stop_reason == STOP_QUEUE_EXHAUSTED
        assert len(sent_notifications) >= 3

    def test_dependency_on_cancelled_todo_blocked(self, env):
        env.store.create("Base", "p1")
        env.store.create("Dependent", "p1", dependencies=["1"])
        env.store.delete("1", reason="cancelled")

        report = env.orchestrator(ScriptedDispatcher()).run()

        assert report.cycles[0].dependency_blocked == ["002"]
        dependent = env.store.get("2")
        assert dependent.state == ItemState.BLOCKED
        assert dependent.blocked_reason == "depends on deleted todo(s): 001"

    def test_empty_queue(self, env):
        report = env.orchestrator(ScriptedDispatcher()).run()
        assert report.processed == 0
        assert report.stop_reason == STOP_QUEUE_EXHAUSTED
        assert not report.escalated

class RefusingTracker(MemoryTracker):
    """Accepts claims but is unreachable when asked to record one state."""

    def __init__(self, refused, prefix="HOL"):
        super().__init__(prefix=prefix)
        self.refused = refused

    def update_record(self, record_id, state, fields=None, expect=None):
        if state == self.refused:
            raise ExternalUnavailable("tracker unreachable")
        return super().update_record(record_id, state, fields, expect)


class TestUnrecordedRelease:
    """The tracker is written first; a release it never recorded leaves the item as it was."""

    def test_merged_completion_not_applied_locally(self, env):
        env.tracker = RefusingTracker(ExternalState.DONE)
        env.store.create("Fix login", "p1")

        report = env.orchestrator(ScriptedDispatcher()).run()

        item = env.store.get("1")
        assert item.state == ItemState.IN_PROGRESS
        assert item.result_ref == "pr/1"
        assert "001" not in env.store.completed_ids()
        record = env.tracker.get_record(item.external_id)
        assert record.state == ExternalState.IN_PROGRESS
        assert record.assignee == "worker-a"
        result = report.cycles[0].results[0]
        assert result.status == "failed"
        assert "claim was not released" in result.detail
        assert env.workspaces.exists(env.workspaces.name_for(item.ref))
        assert report.escalated

    def test_block_not_applied_locally(self, env):
        env.tracker = RefusingTracker(ExternalState.BLOCKED)
        env.store.create("Deploy", "p1")
        dispatcher = ScriptedDispatcher({"Deploy": [DispatchOutcome.blocked("needs prod credentials")]})

        report = env.orchestrator(dispatcher).run()

        item = env.store.get("1")
        assert item.state == ItemState.IN_PROGRESS
        assert item.blocked_reason is None
        assert env.tracker.get_record(item.external_id).state == ExternalState.IN_PROGRESS
        assert report.cycles[0].results[0].status == "failed"
        assert any("release failed" in e for e in report.cycles[0].errors)

    def test_failure_not_returned_to_pending(self, env):
        env.tracker = RefusingTracker(ExternalState.OPEN)
        env.store.create("Flaky", "p1")
        dispatcher = ScriptedDispatcher({"Flaky": [DispatchOutcome.failed("tests failing")]})

        report = env.orchestrator(dispatcher, max_attempts=3).run()

        item = env.store.get("1")
        assert item.state == ItemState.IN_PROGRESS
        assert item.failed_reason is None
        assert report.cycles[0].results[0].status == "failed"


class TestSync:
    """The tracker wins during reconciliation."""

    def test_local_state_follows_tracker(self, env):
        done = env.tracker.create_record({"title": "Done", "state": ExternalState.DONE})
        cancelled = env.tracker.create_record({"title": "Cancelled", "state": ExternalState.CANCELLED})
        blocked = env.tracker.create_record({"title": "Blocked", "state": ExternalState.BLOCKED})
        reopened = env.tracker.create_record({"title": "Reopened", "group": "Cycle 9"})

        env.store.create("Done", "p1", external_id=done.id)
        env.store.create("Cancelled", "p1", external_id=cancelled.id)
        env.store.create("Blocked", "p1", external_id=blocked.id)
        env.store.create("Reopened", "p1", external_id=reopened.id)
        env.store.transition("4", ItemState.COMPLETED)
        env.store.create("Unlinked", "p2")

        report = env.orchestrator(ScriptedDispatcher()).sync()

        assert report.checked == 5
        assert report.completed == ["001"]
        assert report.deleted == ["002"]
        assert report.blocked == ["003"]
        assert report.reopened == ["004"]
        assert report.regrouped == ["004"]
        assert report.created == ["005"]

        assert env.store.get("1").state == ItemState.COMPLETED
        with pytest.raises(NotFound):
            env.store.get("2")
        assert "002" not in env.store.completed_ids()
        assert env.store.get("4").state == ItemState.PENDING
        assert env.store.get("4").group == "Cycle 9"
        linked = env.store.get("5")
        assert env.tracker.get_record(linked.external_id).title == "Unlinked"

    def test_sync_is_idempotent(self, env):
        env.store.create("Unlinked", "p2")
        orch = env.orchestrator(ScriptedDispatcher())
        orch.sync()
        report = orch.sync()
        assert report.created == []
        assert len(env.tracker.list_records()) == 1
