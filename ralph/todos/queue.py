"""
Queue Builder: deterministic processing order and dependency eligibility.

Order is ascending (group rank, priority rank, numeric id):
- group rank: group containing "current" = 1, any other group = 2, none = 3
- priority rank: p1 = 1, p2 = 2, p3 = 3
"""

import logging
from typing import Iterable, Optional

from ralph.todos.models import Item

logger = logging.getLogger(__name__)

GROUP_RANK_CURRENT = 1
GROUP_RANK_OTHER = 2
GROUP_RANK_NONE = 3

PRIORITY_RANK = {"p1": 1, "p2": 2, "p3": 3}


def group_rank(group: str | None) -> int:
    if not group or not group.strip():
        return GROUP_RANK_NONE
    if "current" in group.lower():
        return GROUP_RANK_CURRENT
    return GROUP_RANK_OTHER


def priority_rank(priority: str) -> int:
    # Unknown priorities sort with the least urgent tier
    return PRIORITY_RANK.get(priority, len(PRIORITY_RANK))


def sort_key(item: Item) -> tuple[int, int, int]:
    return (group_rank(item.group), priority_rank(item.priority), item.number)


def build_queue(items: Iterable[Item], include_backlog: bool = False) -> list[Item]:
    """Sort items into processing order.

    Ungrouped items are backlog: they are excluded unless include_backlog is
    set, or unless no item has a group at all (a backlog never synced with a
    tracker cycle would otherwise be unprocessable).
    """
    items = list(items)
    has_groups = any(group_rank(item.group) != GROUP_RANK_NONE for item in items)
    keep_ungrouped = include_backlog or not has_groups

    queue = [
        item for item in items
        if keep_ungrouped or group_rank(item.group) != GROUP_RANK_NONE
    ]
    dropped = len(items) - len(queue)
    if dropped:
        logger.debug(f"[QUEUE] Excluded {dropped} ungrouped item(s); use include_backlog to keep them")

    # sorted() is stable
    return sorted(queue, key=sort_key)


def unmet_dependencies(item: Item, completed_ids: set[str]) -> list[str]:
    return [dep for dep in item.active_dependencies() if dep not in completed_ids]


def next_eligible(pending_queue: Iterable[Item], completed_ids: set[str]) -> Optional[Item]:
    """First item in queue order whose dependencies are all completed.

    Not cached: callers re-run this whenever completed_ids changes.
    """
    for item in pending_queue:
        if not unmet_dependencies(item, completed_ids):
            return item
    return None


def _find_cycles(items: list[Item]) -> dict[str, str]:
    """Map item id -> description of a dependency cycle it sits on."""
    ids = {item.id for item in items}
    graph = {
        item.id: [d for d in item.active_dependencies() if d in ids and d != item.id]
        for item in items
    }
    problems: dict[str, str] = {}
    visiting, done = set(), set()

    def visit(node: str, path: list[str]) -> None:
        visiting.add(node)
        path.append(node)
        for dep in graph[node]:
            if dep in visiting:
                cycle = path[path.index(dep):] + [dep]
                for member in cycle[:-1]:
                    problems.setdefault(member, "dependency cycle: " + " -> ".join(cycle))
            elif dep not in done:
                visit(dep, path)
        path.pop()
        visiting.discard(node)
        done.add(node)

    for item in sorted(items, key=lambda i: i.number):
        if item.id not in done:
            visit(item.id, [])
    return problems


def dependency_problems(
    pending: Iterable[Item],
    completed_ids: set[str],
    known_ids: set[str],
    deleted_ids: Iterable[str] = (),
) -> dict[str, str]:
    """Find pending items that can never become eligible.

    Flags self-dependencies, dependencies on deleted todos, dependencies on
    ids that exist nowhere, and cycles among pending items. Returns item
    id -> human-readable reason.

    Args:
        pending: Pending items
        completed_ids: Ids that satisfy dependencies
        known_ids: Every id that exists or existed (items plus tombstones)
        deleted_ids: Ids deleted without completing (tombstones of any other reason)
    """
    pending = list(pending)
    deleted_ids = set(deleted_ids)
    problems: dict[str, str] = {}

    for item in pending:
        deps = item.active_dependencies()
        if item.id in deps:
            problems[item.id] = f"todo {item.id} depends on itself"
            continue
        deleted = [d for d in deps if d in deleted_ids and d not in completed_ids]
        if deleted:
            problems[item.id] = f"depends on deleted todo(s): {', '.join(deleted)}"
            continue
        unknown = [d for d in deps if d not in known_ids and d not in completed_ids]
        if unknown:
            problems[item.id] = f"depends on unknown todo(s): {', '.join(unknown)}"

    candidates = [item for item in pending if item.id not in problems]
    for item_id, reason in _find_cycles(candidates).items():
        problems.setdefault(item_id, reason)

    return problems
