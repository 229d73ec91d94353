"""External tracker (system of record) and claim coordination."""

from ralph.tracker.fsm import (
    ExternalState,
    RecordFSM,
    InvalidTransition,
    CLAIMABLE_STATES,
    check_transition,
    parse_external_state,
)
from ralph.tracker.base import Record, Tracker, check_limit
from ralph.tracker.memory import MemoryTracker
from ralph.tracker.files import FileTracker
from ralph.tracker.github import GitHubTracker
from ralph.tracker.claims import (
    ClaimCoordinator,
    ClaimResult,
    ClaimStatus,
    Outcome,
    ReconcileAction,
    reconcile,
)

__all__ = [
    # fsm
    "ExternalState",
    "RecordFSM",
    "InvalidTransition",
    "CLAIMABLE_STATES",
    "check_transition",
    "parse_external_state",
    # backends
    "Record",
    "Tracker",
    "check_limit",
    "MemoryTracker",
    "FileTracker",
    "GitHubTracker",
    # claims
    "ClaimCoordinator",
    "ClaimResult",
    "ClaimStatus",
    "Outcome",
    "ReconcileAction",
    "reconcile",
]
