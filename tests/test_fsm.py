"""Tests for ralph.tracker.fsm module."""

import pytest

from ralph.lib.errors import RalphError
from ralph.tracker.fsm import (
    ExternalState,
    InvalidTransition,
    RecordFSM,
    STATES,
    TRIGGER_FOR,
    check_transition,
    parse_external_state,
)


class TestFSMStates:
    """Tests for FSM state definitions."""

    def test_all_states_defined(self):
        expected = ["backlog", "open", "in_progress", "blocked", "done", "cancelled"]
        assert set(STATES) == set(expected)

    def test_trigger_lookup(self):
        assert TRIGGER_FOR[("open", "in_progress")] == "claim"
        assert TRIGGER_FOR[("backlog", "in_progress")] == "claim"
        assert TRIGGER_FOR[("in_progress", "done")] == "complete"
        assert TRIGGER_FOR[("in_progress", "open")] == "reopen"
        assert ("done", "in_progress") not in TRIGGER_FOR

    def test_parse_unknown_state(self):
        with pytest.raises(RalphError, match="Unknown tracker state"):
            parse_external_state("archived")


class TestRecordFSM:
    """Transitions on a single record."""

    def test_claim_from_open(self):
        fsm = RecordFSM("HOL-1", ExternalState.OPEN)
        fsm.claim()
        assert fsm.external_state == ExternalState.IN_PROGRESS

    def test_full_happy_path(self):
        fsm = RecordFSM("HOL-1", ExternalState.BACKLOG)
        fsm.move_to(ExternalState.IN_PROGRESS)
        fsm.move_to(ExternalState.DONE)
        assert fsm.external_state == ExternalState.DONE

    def test_can_reports_available_triggers(self):
        fsm = RecordFSM("HOL-1", ExternalState.IN_PROGRESS)
        assert fsm.can("complete")
        assert fsm.can("block")
        assert not fsm.can("claim")

    def test_no_auto_transitions(self):
        fsm = RecordFSM("HOL-1", ExternalState.OPEN)
        assert not hasattr(fsm, "to_done")

    def test_invalid_move_raises(self):
        fsm = RecordFSM("HOL-1", ExternalState.DONE)
        with pytest.raises(InvalidTransition) as exc:
            fsm.move_to(ExternalState.IN_PROGRESS)
        assert exc.value.from_state == ExternalState.DONE
        assert exc.value.to_state == ExternalState.IN_PROGRESS
        assert fsm.external_state == ExternalState.DONE

    def test_cancelled_is_terminal(self):
        fsm = RecordFSM("HOL-1", ExternalState.CANCELLED)
        for dest in ExternalState:
            if dest == ExternalState.CANCELLED:
                continue
            with pytest.raises(InvalidTransition):
                fsm.move_to(dest)


class TestCheckTransition:

    def test_same_state_is_allowed(self):
        check_transition("HOL-1", ExternalState.DONE, ExternalState.DONE)

    def test_blocked_cannot_be_claimed(self):
        with pytest.raises(InvalidTransition, match="blocked -> in_progress"):
            check_transition("HOL-1", ExternalState.BLOCKED, ExternalState.IN_PROGRESS)

    def test_release_paths(self):
        check_transition("HOL-1", ExternalState.IN_PROGRESS, ExternalState.DONE)
        check_transition("HOL-1", ExternalState.IN_PROGRESS, ExternalState.BLOCKED)
        check_transition("HOL-1", ExternalState.IN_PROGRESS, ExternalState.OPEN)
