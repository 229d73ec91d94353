"""In-process tracker for tests and local runs."""

import copy
import logging
import threading

from ralph.lib.errors import ClaimConflict, MalformedInput, NotFound
from ralph.todos.store import now_iso
from ralph.tracker.base import DEFAULT_LIST_LIMIT, Record, Tracker, apply_fields, check_limit
from ralph.tracker.fsm import ExternalState, check_transition

logger = logging.getLogger(__name__)


class MemoryTracker(Tracker):
    """Thread-safe dict-backed tracker with atomic compare-and-set.

    Records handed out are copies; mutating one never changes the store.
    """

    def __init__(self, prefix: str = "MEM"):
        self.prefix = prefix
        self._records: dict[str, Record] = {}
        self._lock = threading.Lock()
        self._counter = 0

    def _get(self, record_id: str) -> Record:
        record = self._records.get(record_id)
        if record is None:
            raise NotFound(f"Tracker record {record_id} not found")
        return record

    def get_record(self, record_id: str) -> Record:
        with self._lock:
            return copy.deepcopy(self._get(record_id))

    def update_record(self, record_id, state, fields=None, expect=None) -> Record:
        with self._lock:
            record = self._get(record_id)
            if expect is not None and record.state != expect:
                raise ClaimConflict(record_id, expect.value, record.state.value)
            check_transition(record_id, record.state, state)
            record.state = state
            apply_fields(record, fields)
            record.updated_at = now_iso()
            return copy.deepcopy(record)

    def create_record(self, fields: dict) -> Record:
        fields = dict(fields)
        title = (fields.pop("title", "") or "").strip()
        if not title:
            raise MalformedInput("Tracker record requires a title")
        state = fields.pop("state", ExternalState.OPEN)
        with self._lock:
            self._counter += 1
            record = Record(
                id=f"{self.prefix}-{self._counter}",
                state=ExternalState(state),
                title=title,
                updated_at=now_iso(),
            )
            apply_fields(record, fields)
            self._records[record.id] = record
            logger.info(f"[TRACKER] Created {record.id}: {title}")
            return copy.deepcopy(record)

    def add_note(self, record_id: str, text: str) -> None:
        with self._lock:
            record = self._get(record_id)
            record.notes.append({"at": now_iso(), "text": text})

    def list_records(self, state=None, limit=DEFAULT_LIST_LIMIT) -> list[Record]:
        check_limit(limit)
        with self._lock:
            records = [
                copy.deepcopy(r) for r in self._records.values()
                if state is None or r.state == state
            ]
        return records[:limit]
