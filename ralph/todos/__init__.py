"""
Todo backlog: item files, the item store and the processing queue.
"""

from ralph.todos.models import Item, ItemState, parse_state, normalize_id
from ralph.todos.store import ItemStore, slugify
from ralph.todos.queue import (
    build_queue,
    next_eligible,
    dependency_problems,
    unmet_dependencies,
)

__all__ = [
    "Item",
    "ItemState",
    "parse_state",
    "normalize_id",
    "ItemStore",
    "slugify",
    "build_queue",
    "next_eligible",
    "dependency_problems",
    "unmet_dependencies",
]
