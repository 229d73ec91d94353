"""
Claim Coordinator: tracker-backed claims and reconciliation.

A claim is the tracker record moving to in_progress with our actor as
assignee. Nothing local is authoritative: the coordinator never touches
item files, it only reads and writes tracker state.

Claim protocol:
1. Read the record; anything but backlog/open is ALREADY_CLAIMED.
2. Write in_progress with expect=<observed state> (compare-and-set where
   the backend supports it).
3. Append the claim note. Backends without an assignee field (GitHub)
   derive the holder from these notes.
4. Read back and verify state and holder (catches lost updates on
   backends that merge conflicting writes, and claimants that raced past
   a non-atomic expect check).
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ralph.lib.errors import ClaimConflict, ExternalUnavailable
from ralph.todos.models import Item, ItemState
from ralph.tracker.base import Record, Tracker, claim_note, release_note
from ralph.tracker.fsm import CLAIMABLE_STATES, ExternalState, InvalidTransition

logger = logging.getLogger(__name__)


class ClaimStatus(Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


@dataclass
class ClaimResult:
    status: ClaimStatus
    record_id: str
    holder: Optional[str] = None  # assignee seen when the claim was refused
    state: Optional[ExternalState] = None

    @property
    def claimed(self) -> bool:
        return self.status == ClaimStatus.CLAIMED


class Outcome(Enum):
    """Terminal outcome reported back to the tracker."""
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


RELEASE_STATE = {
    Outcome.COMPLETED: ExternalState.DONE,
    Outcome.BLOCKED: ExternalState.BLOCKED,
    Outcome.FAILED: ExternalState.OPEN,
}


class ReconcileAction(Enum):
    """What to do with a local item given the tracker's view."""
    NONE = "none"
    MARK_COMPLETED = "mark_completed"
    DELETE_LOCAL = "delete_local"
    MARK_BLOCKED = "mark_blocked"
    REOPEN_LOCAL = "reopen_local"
    CREATE_EXTERNAL = "create_external"


def reconcile(local: Item, external: ExternalState | None) -> ReconcileAction:
    """Decide how local state follows the tracker. The tracker always wins.

    | tracker      | local                | action          |
    |--------------|----------------------|-----------------|
    | done         | pending/in_progress  | MARK_COMPLETED  |
    | cancelled    | any                  | DELETE_LOCAL    |
    | blocked      | pending              | MARK_BLOCKED    |
    | backlog/open | completed            | REOPEN_LOCAL    |
    | (no record)  | any                  | CREATE_EXTERNAL |
    """
    if external is None:
        return ReconcileAction.CREATE_EXTERNAL
    if external == ExternalState.CANCELLED:
        return ReconcileAction.DELETE_LOCAL
    if external == ExternalState.DONE and local.state in (ItemState.PENDING, ItemState.IN_PROGRESS):
        return ReconcileAction.MARK_COMPLETED
    if external == ExternalState.BLOCKED and local.state == ItemState.PENDING:
        return ReconcileAction.MARK_BLOCKED
    if external in CLAIMABLE_STATES and local.state == ItemState.COMPLETED:
        logger.error(
            f"[CLAIM] Todo {local.id} is completed locally but {local.ref} is "
            f"{external.value} in the tracker; reopening the local todo"
        )
        return ReconcileAction.REOPEN_LOCAL
    return ReconcileAction.NONE


class ClaimCoordinator:
    """Claims and releases tracker records on behalf of one actor."""

    def __init__(
        self,
        tracker: Tracker,
        actor: str,
        retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tracker = tracker
        self.actor = actor
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def call(self, fn, *args, **kwargs):
        """Run a tracker call, retrying ExternalUnavailable with exponential backoff."""
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except ExternalUnavailable as e:
                if attempt >= self.retries:
                    raise
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    f"[CLAIM] Tracker unavailable ({e}); retry {attempt + 1}/{self.retries} in {delay:.1f}s"
                )
                self._sleep(delay)
                attempt += 1

    def _is_ours(self, record: Record) -> bool:
        return record.assignee == self.actor

    def try_claim(self, ref: str) -> ClaimResult:
        """Claim a tracker record for this actor.

        Raises:
            NotFound: the record does not exist
            ExternalUnavailable: the tracker stayed unreachable after retries
        """
        record = self.call(self.tracker.get_record, ref)

        if record.state == ExternalState.IN_PROGRESS and self._is_ours(record):
            # A retried write that landed before the connection dropped
            logger.info(f"[CLAIM] {ref} already held by this actor")
            return ClaimResult(ClaimStatus.CLAIMED, ref, self.actor, record.state)

        if record.state not in CLAIMABLE_STATES:
            logger.info(f"[CLAIM] {ref} is {record.state.value} (holder: {record.assignee or 'unknown'}); skipping")
            return ClaimResult(ClaimStatus.ALREADY_CLAIMED, ref, record.assignee, record.state)

        try:
            self.call(
                self.tracker.update_record,
                ref,
                ExternalState.IN_PROGRESS,
                {"assignee": self.actor},
                expect=record.state,
            )
        except (ClaimConflict, InvalidTransition) as e:
            logger.info(f"[CLAIM] Lost claim race for {ref}: {e}")
            return ClaimResult(ClaimStatus.ALREADY_CLAIMED, ref, None, None)

        self.call(self.tracker.add_note, ref, claim_note(self.actor))
        verified = self.call(self.tracker.get_record, ref)
        if verified.state != ExternalState.IN_PROGRESS or not self._is_ours(verified):
            logger.warning(
                f"[CLAIM] Claim on {ref} not confirmed on read-back "
                f"(state={verified.state.value}, assignee={verified.assignee}); treating as claimed by another actor"
            )
            return ClaimResult(ClaimStatus.ALREADY_CLAIMED, ref, verified.assignee, verified.state)

        logger.info(f"[CLAIM] Claimed {ref}")
        return ClaimResult(ClaimStatus.CLAIMED, ref, self.actor, verified.state)

    def release(self, ref: str, outcome: Outcome, detail: str = "") -> bool:
        """Move a claimed record to the state matching outcome and note why.

        If the record has left in_progress (or another actor holds it), the
        tracker's state wins: a warning is logged and nothing is written.
        Returns True if the record was updated.
        """
        target = RELEASE_STATE[outcome]
        record = self.call(self.tracker.get_record, ref)

        if record.state != ExternalState.IN_PROGRESS or not self._is_ours(record):
            logger.warning(
                f"[CLAIM] Not releasing {ref} as {outcome.value}: record is "
                f"{record.state.value} (assignee: {record.assignee or 'none'})"
            )
            return False

        fields = {"assignee": None} if outcome == Outcome.FAILED else None
        try:
            self.call(self.tracker.update_record, ref, target, fields, expect=ExternalState.IN_PROGRESS)
        except ClaimConflict as e:
            logger.warning(f"[CLAIM] Not releasing {ref}: {e}")
            return False

        self.call(self.tracker.add_note, ref, release_note(outcome.value, self.actor, detail))
        logger.info(f"[CLAIM] Released {ref} -> {target.value}")
        return True

    def reconcile(self, local: Item, external: ExternalState | None) -> ReconcileAction:
        return reconcile(local, external)
