"""
Data models for the todo backlog.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from ralph.lib.constants import ITEM_ID_WIDTH, ITEM_SUFFIX


class ItemState(Enum):
    """Local lifecycle of a todo item.

    The tracker has a richer state set (see ralph.tracker.fsm.ExternalState).
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


def parse_state(value: str | None) -> ItemState | None:
    """Parse a status string into ItemState. Returns None if unknown."""
    for state in ItemState:
        if state.value == value:
            return state
    return None


def normalize_id(value: str | int) -> str:
    """Zero-pad an item id: 7 -> "007", "7" -> "007"."""
    return str(int(value)).zfill(ITEM_ID_WIDTH)


def build_filename(item_id: str, state: ItemState, priority: str, slug: str) -> str:
    """Derive the on-disk filename from current fields."""
    return f"{item_id}-{state.value}-{priority}-{slug}{ITEM_SUFFIX}"


# Front-matter keys owned by Item fields, in write order
FRONTMATTER_KEYS = (
    "status",
    "priority",
    "issue_id",
    "group",
    "external_id",
    "external_url",
    "tags",
    "dependencies",
    "parent",
    "created_at",
    "completed_at",
    "blocked_at",
    "blocked_reason",
    "failed_at",
    "failed_reason",
    "result_ref",
)


@dataclass
class Item:
    """A unit of work backed by one markdown file.

    `id`, `slug` and `priority` are fixed for the life of the file; `state`
    lives in the front matter and the filename is always derived from it.
    """
    id: str                                     # "001"
    state: ItemState
    priority: str                               # p1, p2, p3
    slug: str
    title: str
    body: str = ""
    group: Optional[str] = None                 # tracker cycle, e.g. "Cycle 4 (current)"
    external_id: Optional[str] = None           # tracker record id, e.g. "HOL-12"
    external_url: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    parent: Optional[str] = None                # item this was spun off from
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    blocked_at: Optional[str] = None
    blocked_reason: Optional[str] = None
    failed_at: Optional[str] = None
    failed_reason: Optional[str] = None
    result_ref: Optional[str] = None            # e.g. merge request URL
    extra: dict = field(default_factory=dict)   # unknown front-matter keys
    path: Optional[Path] = None

    @property
    def number(self) -> int:
        return int(self.id)

    @property
    def filename(self) -> str:
        return build_filename(self.id, self.state, self.priority, self.slug)

    @property
    def ref(self) -> str:
        """Human-facing reference: tracker id when linked, else the item id."""
        return self.external_id or self.id

    def active_dependencies(self) -> list[str]:
        """Dependencies with blank entries discarded, ids normalized."""
        deps = []
        for dep in self.dependencies:
            dep = dep.strip()
            if not dep:
                continue
            deps.append(normalize_id(dep) if dep.isdigit() else dep)
        return deps

    def to_frontmatter(self) -> dict:
        """Front matter in canonical key order, unknown keys last."""
        data = {
            "status": self.state.value,
            "priority": self.priority,
            "issue_id": self.id,
            "group": self.group,
            "external_id": self.external_id,
            "external_url": self.external_url,
            "tags": list(self.tags),
            "dependencies": list(self.dependencies) or None,
            "parent": self.parent,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "blocked_at": self.blocked_at,
            "blocked_reason": self.blocked_reason,
            "failed_at": self.failed_at,
            "failed_reason": self.failed_reason,
            "result_ref": self.result_ref,
        }
        data.update(self.extra)
        return {k: v for k, v in data.items() if v is not None}

    def to_dict(self) -> dict:
        """JSON-friendly view for CLI output."""
        data = self.to_frontmatter()
        data.update({
            "id": self.id,
            "state": self.state.value,
            "title": self.title,
            "slug": self.slug,
            "filename": self.filename,
            "path": str(self.path) if self.path else None,
        })
        return data
