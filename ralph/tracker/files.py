"""
File-backed tracker.

One JSON file per record under <tracker_dir>/records/. Writes to a record
are serialized by a per-record flock, which makes `expect` a real
compare-and-set across processes sharing the directory. Records are
validated against record.schema.json on read and before every write.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from ralph.lib.errors import ClaimConflict, ExternalUnavailable, MalformedInput, NotFound
from ralph.lib.locking import LockTimeout, record_lock
from ralph.lib.validate import validate, validate_before_write
from ralph.todos.store import now_iso
from ralph.tracker.base import DEFAULT_LIST_LIMIT, Record, Tracker, apply_fields, check_limit
from ralph.tracker.fsm import ExternalState, check_transition

logger = logging.getLogger(__name__)

COUNTER_LOCK = "_counter"
COUNTER_FILE = "counter"


class FileTracker(Tracker):
    """Tracker stored as JSON files in a shared directory."""

    def __init__(self, tracker_dir: Path, prefix: str = "LOC"):
        self.tracker_dir = Path(tracker_dir)
        self.records_dir = self.tracker_dir / "records"
        self.prefix = prefix

    def _path(self, record_id: str) -> Path:
        if "/" in record_id or record_id.startswith("."):
            raise MalformedInput(f"Invalid record id '{record_id}'")
        return self.records_dir / f"{record_id}.json"

    def _read(self, record_id: str) -> Record:
        path = self._path(record_id)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            raise NotFound(f"Tracker record {record_id} not found") from None
        except json.JSONDecodeError as e:
            raise MalformedInput(f"Invalid JSON: {e}", path) from None
        except OSError as e:
            raise ExternalUnavailable(f"Cannot read tracker record {record_id}: {e}") from None
        validate(data, "record", path)
        return Record.from_dict(data)

    def _write(self, record: Record) -> None:
        path = self._path(record.id)
        data = record.to_dict()
        validate_before_write(data, "record", path)
        self.records_dir.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=self.records_dir, prefix=f".{record.id}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get_record(self, record_id: str) -> Record:
        return self._read(record_id)

    def update_record(self, record_id, state, fields=None, expect=None) -> Record:
        try:
            with record_lock(self.tracker_dir, record_id):
                record = self._read(record_id)
                if expect is not None and record.state != expect:
                    raise ClaimConflict(record_id, expect.value, record.state.value)
                check_transition(record_id, record.state, state)
                record.state = state
                apply_fields(record, fields)
                record.updated_at = now_iso()
                self._write(record)
                return record
        except LockTimeout as e:
            raise ExternalUnavailable(str(e)) from None

    def _allocate_id(self) -> str:
        counter_path = self.tracker_dir / COUNTER_FILE
        with record_lock(self.tracker_dir, COUNTER_LOCK):
            current = 0
            if counter_path.exists():
                text = counter_path.read_text().strip()
                current = int(text) if text.isdigit() else 0
            # Never collide with a record written by hand
            while self._path(f"{self.prefix}-{current + 1}").exists():
                current += 1
            current += 1
            self.tracker_dir.mkdir(parents=True, exist_ok=True)
            counter_path.write_text(f"{current}\n")
        return f"{self.prefix}-{current}"

    def create_record(self, fields: dict) -> Record:
        fields = dict(fields)
        title = (fields.pop("title", "") or "").strip()
        if not title:
            raise MalformedInput("Tracker record requires a title")
        state = ExternalState(fields.pop("state", ExternalState.OPEN))

        try:
            record_id = self._allocate_id()
            record = Record(id=record_id, state=state, title=title, updated_at=now_iso())
            apply_fields(record, fields)
            with record_lock(self.tracker_dir, record_id):
                self._write(record)
        except LockTimeout as e:
            raise ExternalUnavailable(str(e)) from None

        logger.info(f"[TRACKER] Created {record.id}: {title}")
        return record

    def add_note(self, record_id: str, text: str) -> None:
        try:
            with record_lock(self.tracker_dir, record_id):
                record = self._read(record_id)
                record.notes.append({"at": now_iso(), "text": text})
                self._write(record)
        except LockTimeout as e:
            raise ExternalUnavailable(str(e)) from None

    def list_records(self, state=None, limit=DEFAULT_LIST_LIMIT) -> list[Record]:
        check_limit(limit)
        if not self.records_dir.is_dir():
            return []

        def record_number(path: Path) -> tuple[int, str]:
            suffix = path.stem.rsplit("-", 1)[-1]
            return (int(suffix) if suffix.isdigit() else 0, path.stem)

        records = []
        for path in sorted(self.records_dir.glob("*.json"), key=record_number):
            try:
                record = self._read(path.stem)
            except MalformedInput as e:
                logger.warning(f"[TRACKER] Skipping malformed record: {e}")
                continue
            if state is None or record.state == state:
                records.append(record)
                if len(records) >= limit:
                    break
        return records
