"""
Item Store: todo items as markdown files with front matter.

Items are stored one per file in the todos directory:
  todos/001-pending-p1-extract-duplicate-utility-functions.md

The filename is derived from (id, state, priority, slug). State is always
read from the front matter, never parsed back out of the filename.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import fields as dataclass_fields
from datetime import datetime
from pathlib import Path
from typing import Optional

from ralph.lib import frontmatter
from ralph.lib.constants import (
    DEFAULT_SLUG,
    ITEM_FILENAME_PATTERN,
    ITEM_ID_PATTERN,
    ITEM_SUFFIX,
    PRIORITIES,
    SLUG_MAX_LEN,
)
from ralph.lib.errors import MalformedInput, NotFound
from ralph.lib.locking import store_lock
from ralph.lib.validate import validate, validate_before_write
from ralph.todos.models import FRONTMATTER_KEYS, Item, ItemState, normalize_id, parse_state
from ralph.todos.queue import sort_key

logger = logging.getLogger(__name__)

TOMBSTONES_FILE = ".tombstones.jsonl"

TITLE_PATTERN = re.compile(r'^#\s+(.+)$', re.MULTILINE)

# Fields callers may not change through update()/transition()
IMMUTABLE_FIELDS = {"id", "slug", "state", "path", "extra", "body"}

_ITEM_FIELDS = {f.name for f in dataclass_fields(Item)}


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def slugify(title: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', bound the length."""
    slug = re.sub(r'[^a-z0-9]+', '-', title.lower()).strip('-')
    slug = slug[:SLUG_MAX_LEN].rstrip('-')
    return slug or DEFAULT_SLUG


def extract_title(body: str) -> str:
    """First markdown heading in the body, or "Untitled"."""
    match = TITLE_PATTERN.search(body)
    return match.group(1).strip() if match else "Untitled"


def render_body(title: str, description: str = "", parent: str | None = None) -> str:
    """Body template for new items."""
    origin = ""
    if parent:
        origin = f"## Origin\n\nCreated as follow-up from todo {parent}.\n\n"
    return (
        f"\n# {title}\n\n"
        f"## Problem Statement\n\n"
        f"{description or '[To be defined]'}\n\n"
        f"{origin}"
        f"## Acceptance Criteria\n\n"
        f"- [ ] [Define acceptance criteria]\n\n"
        f"## Notes\n\n"
        f"[Add implementation notes here]\n"
    )


def _as_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


class ItemStore:
    """Reads and writes todo item files.

    Concurrency: create() allocates ids under a file lock. transition(),
    update() and delete() are last-writer-wins; cross-process exclusion for
    work on an item comes from the tracker claim, not from this store.
    """

    def __init__(self, todos_dir: Path):
        self.todos_dir = Path(todos_dir)
        # (path, error) for each file skipped by the last list() call
        self.last_errors: list[tuple[Path, MalformedInput]] = []

    # --- reading ---

    def _item_files(self) -> list[Path]:
        if not self.todos_dir.is_dir():
            return []
        return sorted(
            p for p in self.todos_dir.glob(f"*{ITEM_SUFFIX}")
            if not p.name.startswith(".")
        )

    def load(self, path: Path) -> Item:
        """Parse one item file.

        Raises:
            MalformedInput: bad filename, front matter or schema violation
        """
        match = ITEM_FILENAME_PATTERN.match(path.name)
        if not match:
            raise MalformedInput(
                "filename must look like 001-pending-p1-some-title.md", path
            )
        file_id, file_state, file_priority, slug = match.groups()

        data, body = frontmatter.parse_document(path.read_text(), path)
        validate(data, "item", path)

        item_id = normalize_id(data["issue_id"])
        if item_id != normalize_id(file_id):
            raise MalformedInput(
                f"issue_id {data['issue_id']} does not match filename id {file_id}", path
            )

        state = parse_state(data["status"])
        if file_state != state.value or file_priority != data["priority"]:
            logger.warning(
                f"[STORE] {path.name}: filename disagrees with front matter "
                f"(status={state.value}, priority={data['priority']}); front matter wins"
            )

        known = {k: data[k] for k in FRONTMATTER_KEYS if k in data}
        extra = {k: v for k, v in data.items() if k not in FRONTMATTER_KEYS}

        return Item(
            id=item_id,
            state=state,
            priority=known["priority"],
            slug=slug,
            title=extract_title(body),
            body=body,
            group=known.get("group"),
            external_id=known.get("external_id"),
            external_url=known.get("external_url"),
            tags=_as_list(known.get("tags")),
            dependencies=_as_list(known.get("dependencies")),
            parent=known.get("parent"),
            created_at=known.get("created_at"),
            completed_at=known.get("completed_at"),
            blocked_at=known.get("blocked_at"),
            blocked_reason=known.get("blocked_reason"),
            failed_at=known.get("failed_at"),
            failed_reason=known.get("failed_reason"),
            result_ref=known.get("result_ref"),
            extra=extra,
            path=path,
        )

    def list(self, state: ItemState | str | None = None) -> list[Item]:
        """List items in queue order, optionally filtered by state.

        A malformed file is logged, recorded in last_errors and skipped;
        it never aborts the listing.
        """
        if isinstance(state, str):
            parsed = parse_state(state)
            if parsed is None:
                raise MalformedInput(f"Unknown state '{state}'")
            state = parsed

        items = []
        errors = []
        for path in self._item_files():
            try:
                item = self.load(path)
            except MalformedInput as e:
                logger.warning(f"[STORE] Skipping malformed item file: {e}")
                errors.append((path, e))
                continue
            except OSError as e:
                logger.warning(f"[STORE] Skipping unreadable item file {path}: {e}")
                errors.append((path, MalformedInput(str(e), path)))
                continue
            if state is None or item.state == state:
                items.append(item)

        self.last_errors = errors
        items.sort(key=sort_key)
        return items

    def _find_path(self, ref: str) -> Path:
        """Resolve an id ("7", "007") or a filename to the item's path."""
        ref = str(ref).strip()
        if ref.endswith(ITEM_SUFFIX):
            path = self.todos_dir / Path(ref).name
            if path.exists():
                return path
            match = ITEM_FILENAME_PATTERN.match(Path(ref).name)
            if not match:
                raise NotFound(f"Todo {ref} not found")
            ref = match.group(1)

        if not ITEM_ID_PATTERN.match(ref):
            raise NotFound(f"Todo {ref} not found")

        item_id = normalize_id(ref)
        matches = []
        for path in self._item_files():
            match = ITEM_FILENAME_PATTERN.match(path.name)
            if match and normalize_id(match.group(1)) == item_id:
                matches.append(path)
        if not matches:
            raise NotFound(f"Todo {item_id} not found")
        if len(matches) > 1:
            names = ", ".join(p.name for p in matches)
            raise MalformedInput(f"Multiple files for todo {item_id}: {names}")
        return matches[0]

    def get(self, ref: str) -> Item:
        """Get an item by id or filename.

        Raises:
            NotFound: if no file matches
        """
        return self.load(self._find_path(ref))

    def find_by_external(self, external_id: str) -> Optional[Item]:
        """Find the local item linked to a tracker record."""
        for item in self.list():
            if item.external_id == external_id:
                return item
        return None

    def external_ids(self) -> list[str]:
        """Tracker ids referenced by local items."""
        return [item.external_id for item in self.list() if item.external_id]

    # --- tombstones ---

    def _tombstones_path(self) -> Path:
        return self.todos_dir / TOMBSTONES_FILE

    def tombstones(self) -> list[dict]:
        """Records of deleted items (append-only)."""
        path = self._tombstones_path()
        if not path.exists():
            return []
        entries = []
        for lineno, line in enumerate(path.read_text().splitlines(), 1):
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"[STORE] {TOMBSTONES_FILE}:{lineno}: invalid JSON, ignored")
        return entries

    def completed_ids(self) -> set[str]:
        """Ids that satisfy dependencies: completed items and items deleted as completed."""
        done = {item.id for item in self.list(ItemState.COMPLETED)}
        for entry in self.tombstones():
            if entry.get("reason") == ItemState.COMPLETED.value and entry.get("id"):
                done.add(normalize_id(entry["id"]))
        return done

    def deleted_ids(self) -> set[str]:
        """Ids deleted for any reason other than completion; they can never satisfy a dependency."""
        return {
            normalize_id(entry["id"])
            for entry in self.tombstones()
            if entry.get("id") and entry.get("reason") != ItemState.COMPLETED.value
        }

    def known_ids(self) -> set[str]:
        """Every id that exists or ever existed in this store, malformed files included."""
        ids = {normalize_id(e["id"]) for e in self.tombstones() if e.get("id")}
        for path in self._item_files():
            match = ITEM_FILENAME_PATTERN.match(path.name)
            if match:
                ids.add(normalize_id(match.group(1)))
        return ids

    def next_number(self) -> str:
        """Next unused id: max existing (or tombstoned) id + 1, zero-padded."""
        ids = self.known_ids()
        highest = max((int(i) for i in ids), default=0)
        return normalize_id(highest + 1)

    # --- writing ---

    def _write(self, item: Item, old_path: Path | None) -> Item:
        """Write content then rename to the derived filename.

        Content goes to a temp file that replaces the current path, then the
        file is renamed. State is read from content, so a reader never sees
        new state with old content.
        """
        self.todos_dir.mkdir(parents=True, exist_ok=True)
        new_path = self.todos_dir / item.filename
        data = item.to_frontmatter()
        validate_before_write(data, "item", new_path)
        content = frontmatter.render_document(data, item.body)

        fd, tmp_name = tempfile.mkstemp(dir=self.todos_dir, prefix=f".{item.id}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_name, old_path or new_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        if old_path and old_path != new_path:
            os.rename(old_path, new_path)

        item.path = new_path
        return item

    def _apply_fields(self, item: Item, fields: dict) -> None:
        for key, value in fields.items():
            if key in IMMUTABLE_FIELDS:
                raise MalformedInput(f"Field '{key}' cannot be changed")
            if key == "priority":
                if value not in PRIORITIES:
                    raise MalformedInput(f"Invalid priority '{value}'")
                item.priority = value
            elif key == "title":
                if not value or not str(value).strip():
                    raise MalformedInput("Title must not be empty")
                item.title = str(value).strip()
                if TITLE_PATTERN.search(item.body):
                    item.body = TITLE_PATTERN.sub(lambda _: f"# {item.title}", item.body, count=1)
                else:
                    item.body = f"\n# {item.title}\n{item.body}"
            elif key in ("tags", "dependencies"):
                setattr(item, key, _as_list(value))
            elif key in _ITEM_FIELDS:
                setattr(item, key, value)
            elif value is None:
                item.extra.pop(key, None)
            else:
                item.extra[key] = value

    def create(
        self,
        title: str,
        priority: str,
        description: str = "",
        tags: list[str] | tuple = (),
        dependencies: list[str] | tuple = (),
        parent: str | None = None,
        external_id: str | None = None,
        external_url: str | None = None,
        group: str | None = None,
    ) -> Item:
        """Create a new pending item with the next free id.

        Raises:
            MalformedInput: missing title, bad priority, bad or self dependency
        """
        title = (title or "").strip()
        if not title:
            raise MalformedInput("Title is required")
        if priority not in PRIORITIES:
            raise MalformedInput(f"Priority must be one of {', '.join(PRIORITIES)}, got '{priority}'")

        deps = []
        for dep in dependencies:
            dep = str(dep).strip()
            if not dep:
                continue
            if not ITEM_ID_PATTERN.match(dep):
                raise MalformedInput(f"Dependency '{dep}' is not a todo id")
            deps.append(normalize_id(dep))

        if parent and ITEM_ID_PATTERN.match(parent):
            parent = normalize_id(parent)

        with store_lock(self.todos_dir):
            item_id = self.next_number()
            if item_id in deps:
                raise MalformedInput(f"Todo {item_id} cannot depend on itself")

            known = self.known_ids()
            deleted = self.deleted_ids()
            for dep in deps:
                if dep in deleted:
                    logger.warning(
                        f"[STORE] Todo {item_id} depends on deleted todo {dep}; it can never become eligible"
                    )
                elif dep not in known:
                    logger.warning(
                        f"[STORE] Todo {item_id} depends on unknown todo {dep}; "
                        "it stays ineligible until that todo exists and completes"
                    )

            item = Item(
                id=item_id,
                state=ItemState.PENDING,
                priority=priority,
                slug=slugify(title),
                title=title,
                body=render_body(title, description, parent),
                group=group,
                external_id=external_id,
                external_url=external_url,
                tags=[t.strip() for t in tags if t and t.strip()],
                dependencies=deps,
                parent=parent,
                created_at=now_iso(),
            )
            self._write(item, None)

        logger.info(f"[STORE] Created todo {item.filename}")
        return item

    def update(self, ref: str, **fields) -> Item:
        """Rewrite front-matter fields without changing state."""
        path = self._find_path(ref)
        item = self.load(path)
        self._apply_fields(item, fields)
        return self._write(item, path)

    def transition(self, ref: str, state: ItemState | str, **fields) -> Item:
        """Move an item to a new state, merging extra fields.

        Completed and blocked get their audit timestamp if not supplied;
        blocked requires a blocked_reason.

        Raises:
            NotFound: no such item
            MalformedInput: unknown state or missing blocked reason
        """
        if isinstance(state, str):
            parsed = parse_state(state)
            if parsed is None:
                raise MalformedInput(f"Unknown state '{state}'")
            state = parsed

        path = self._find_path(ref)
        item = self.load(path)
        previous = item.state
        self._apply_fields(item, fields)

        if state == ItemState.COMPLETED:
            item.completed_at = fields.get("completed_at") or now_iso()
        elif previous == ItemState.COMPLETED:
            item.completed_at = None

        if state == ItemState.BLOCKED:
            if not item.blocked_reason:
                raise MalformedInput(f"Blocking todo {item.id} requires a reason")
            item.blocked_at = fields.get("blocked_at") or now_iso()
        elif previous == ItemState.BLOCKED:
            item.blocked_at = None
            item.blocked_reason = None

        item.state = state
        self._write(item, path)
        logger.info(f"[STORE] {item.id}: {previous.value} -> {state.value}")
        return item

    def delete(self, ref: str, reason: str | None = None) -> bool:
        """Delete an item file. Missing items are a no-op returning False.

        With a reason, a tombstone is kept so the id is never reused and
        (for reason "completed") still satisfies dependencies.
        """
        try:
            path = self._find_path(ref)
        except NotFound:
            logger.debug(f"[STORE] delete {ref}: already absent")
            return False

        item = None
        if reason:
            try:
                item = self.load(path)
            except MalformedInput as e:
                logger.warning(f"[STORE] Deleting malformed todo {path.name}: {e}")

        try:
            path.unlink()
        except FileNotFoundError:
            return False

        if reason:
            match = ITEM_FILENAME_PATTERN.match(path.name)
            entry = {
                "id": item.id if item else normalize_id(match.group(1)),
                "reason": reason,
                "at": now_iso(),
                "title": item.title if item else None,
                "external_id": item.external_id if item else None,
                "result_ref": item.result_ref if item else None,
            }
            with store_lock(self.todos_dir):
                with open(self._tombstones_path(), "a") as f:
                    f.write(json.dumps(entry) + "\n")

        logger.info(f"[STORE] Deleted todo {path.name}" + (f" ({reason})" if reason else ""))
        return True
