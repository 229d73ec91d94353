"""
Tracker interface.

A tracker holds the authoritative record for each item. The claim on a
record (state in_progress, assignee = actor) is the only cross-process
mutual exclusion ralph relies on.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from ralph.lib.constants import MAX_LIST_LIMIT
from ralph.lib.errors import MalformedInput
from ralph.tracker.fsm import ExternalState

DEFAULT_LIST_LIMIT = 50


@dataclass
class Record:
    """Tracker-side view of an item."""
    id: str
    state: ExternalState
    title: str = ""
    url: Optional[str] = None
    assignee: Optional[str] = None
    group: Optional[str] = None
    notes: list[dict] = field(default_factory=list)
    fields: dict = field(default_factory=dict)
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "title": self.title,
            "url": self.url,
            "assignee": self.assignee,
            "group": self.group,
            "notes": list(self.notes),
            "fields": dict(self.fields),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Record":
        return cls(
            id=data["id"],
            state=ExternalState(data["state"]),
            title=data.get("title", ""),
            url=data.get("url"),
            assignee=data.get("assignee"),
            group=data.get("group"),
            notes=list(data.get("notes", [])),
            fields=dict(data.get("fields", {})),
            updated_at=data.get("updated_at"),
        )


def check_limit(limit: int) -> int:
    """Every listing is bounded; reject unbounded or oversized requests."""
    if not isinstance(limit, int) or limit < 1 or limit > MAX_LIST_LIMIT:
        raise MalformedInput(f"limit must be between 1 and {MAX_LIST_LIMIT}, got {limit!r}")
    return limit


class Tracker(ABC):
    """External tracker backend.

    Implementations raise ExternalUnavailable on transport errors and
    NotFound for missing records. `expect` on update_record is a
    compare-and-set precondition on the current state; backends that can
    honor it atomically raise ClaimConflict when it does not hold.
    """

    @abstractmethod
    def get_record(self, record_id: str) -> Record:
        ...

    @abstractmethod
    def update_record(
        self,
        record_id: str,
        state: ExternalState,
        fields: dict | None = None,
        expect: ExternalState | None = None,
    ) -> Record:
        """Set the state (and optional title/assignee/group/url fields)."""
        ...

    @abstractmethod
    def create_record(self, fields: dict) -> Record:
        """Create a record; fields carries at least a title."""
        ...

    @abstractmethod
    def add_note(self, record_id: str, text: str) -> None:
        ...

    @abstractmethod
    def list_records(
        self,
        state: ExternalState | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[Record]:
        ...


# Record attributes update_record may set through `fields`
UPDATABLE_FIELDS = ("title", "url", "assignee", "group")


def apply_fields(record: Record, fields: dict | None) -> None:
    """Apply update fields: known attributes directly, the rest into record.fields."""
    for key, value in (fields or {}).items():
        if key in UPDATABLE_FIELDS:
            setattr(record, key, value)
        elif value is None:
            record.fields.pop(key, None)
        else:
            record.fields[key] = value


CLAIM_NOTE_PREFIX = "Claimed by "
# Notes written when a claim ends, e.g. "Failed by worker-a: exit 2"
RELEASE_NOTE_PATTERN = re.compile(r"^(Completed|Blocked|Failed) by ")


def claim_note(actor: str) -> str:
    return f"{CLAIM_NOTE_PREFIX}{actor}"


def release_note(outcome: str, actor: str, detail: str = "") -> str:
    note = f"{outcome.capitalize()} by {actor}"
    if detail:
        note += f": {detail}"
    return note


def claim_holder(notes: list[str]) -> Optional[str]:
    """Actor holding the claim according to the audit notes.

    The first claim note after the most recent release note wins; claim
    notes written while another actor holds the claim are ignored.
    """
    holder = None
    for text in notes:
        if RELEASE_NOTE_PATTERN.match(text):
            holder = None
        elif holder is None and text.startswith(CLAIM_NOTE_PREFIX):
            holder = text[len(CLAIM_NOTE_PREFIX):].strip() or None
    return holder
