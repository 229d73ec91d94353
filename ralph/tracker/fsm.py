"""Tracker record state machine using transitions library.

The tracker owns the richer lifecycle; ralph only ever drives four triggers:

    claim   : backlog/open -> in_progress
    complete: in_progress -> done
    block   : open/in_progress -> blocked
    reopen  : in_progress/blocked/done -> open

Backends use RecordFSM to check a requested state change before writing it,
so every backend enforces the same rules.
"""

import logging
from enum import Enum

from transitions import Machine, MachineError

from ralph.lib.errors import RalphError

logger = logging.getLogger(__name__)


class ExternalState(Enum):
    """State of a record in the external tracker."""
    BACKLOG = "backlog"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELLED = "cancelled"


CLAIMABLE_STATES = {ExternalState.BACKLOG, ExternalState.OPEN}

STATES = [state.value for state in ExternalState]

TRANSITIONS = [
    {"trigger": "claim", "source": ["backlog", "open"], "dest": "in_progress"},
    {"trigger": "complete", "source": "in_progress", "dest": "done"},
    {"trigger": "block", "source": ["open", "in_progress"], "dest": "blocked"},
    {"trigger": "reopen", "source": ["in_progress", "blocked", "done"], "dest": "open"},
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """(source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            lookup.setdefault((source, t["dest"]), t["trigger"])
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class InvalidTransition(RalphError):
    """Raised when a record cannot move between the requested states."""

    def __init__(self, record_id: str, from_state: ExternalState, to_state: ExternalState):
        self.record_id = record_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"{record_id}: invalid transition {from_state.value} -> {to_state.value}"
        )


def parse_external_state(value: str) -> ExternalState:
    try:
        return ExternalState(value)
    except ValueError:
        raise RalphError(f"Unknown tracker state '{value}'") from None


class RecordFSM:
    """State machine for one tracker record.

    Stateless apart from the current state: backends create one per write,
    fire the trigger for the requested destination, then persist
    fsm.external_state.
    """

    def __init__(self, record_id: str, initial: ExternalState):
        self.record_id = record_id
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial.value,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def external_state(self) -> ExternalState:
        return ExternalState(self.state)

    def on_state_change(self, event) -> None:
        logger.debug(
            f"[FSM] {self.record_id}: {event.transition.source} -> "
            f"{event.transition.dest} ({event.event.name})"
        )

    def can(self, trigger: str) -> bool:
        return trigger in self.machine.get_triggers(self.state)

    def move_to(self, dest: ExternalState) -> None:
        """Fire the trigger leading to dest.

        Raises:
            InvalidTransition: no trigger connects the current state to dest
        """
        current = self.external_state
        trigger = TRIGGER_FOR.get((current.value, dest.value))
        if trigger is None:
            raise InvalidTransition(self.record_id, current, dest)
        try:
            self.trigger(trigger)
        except MachineError:
            raise InvalidTransition(self.record_id, current, dest) from None


def check_transition(record_id: str, current: ExternalState, dest: ExternalState) -> None:
    """Validate current -> dest; a no-op move is always allowed."""
    if current == dest:
        return
    RecordFSM(record_id, current).move_to(dest)
