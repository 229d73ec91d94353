"""
ralph todo - manage the todo backlog.
"""

from ralph.lib.config import RalphConfig
from ralph.lib.constants import EXIT_ERROR, EXIT_OK
from ralph.lib.output import emit, error, warn
from ralph.todos import ItemState, ItemStore, build_queue, next_eligible


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _store(config: RalphConfig) -> ItemStore:
    return ItemStore(config.todos_path)


def cmd_todo_list(args, config: RalphConfig) -> int:
    """List todos, optionally filtered by state."""
    store = _store(config)
    items = store.list(args.state)
    for path, err in store.last_errors:
        warn(f"skipped {path.name}: {err}")
    emit([item.to_dict() for item in items])
    return EXIT_OK


def cmd_todo_get(args, config: RalphConfig) -> int:
    emit(_store(config).get(args.id).to_dict())
    return EXIT_OK


def cmd_todo_create(args, config: RalphConfig) -> int:
    item = _store(config).create(
        title=args.title,
        priority=args.priority,
        description=args.description or "",
        tags=_split_csv(args.tags),
        dependencies=_split_csv(args.dependencies),
        parent=args.parent,
        external_id=args.external_id,
        external_url=args.external_url,
        group=args.group,
    )
    emit({"success": True, "filename": item.filename, "path": str(item.path), "id": item.id,
          "external_id": item.external_id})
    return EXIT_OK


def cmd_todo_complete(args, config: RalphConfig) -> int:
    fields = {"result_ref": args.result_ref} if args.result_ref else {}
    item = _store(config).transition(args.id, ItemState.COMPLETED, **fields)
    emit({"success": True, "filename": item.filename, "result_ref": item.result_ref})
    return EXIT_OK


def cmd_todo_block(args, config: RalphConfig) -> int:
    reason = " ".join(args.reason).strip()
    if not reason:
        error("A reason is required to block a todo")
        return EXIT_ERROR
    item = _store(config).transition(args.id, ItemState.BLOCKED, blocked_reason=reason)
    emit({"success": True, "filename": item.filename, "reason": reason})
    return EXIT_OK


def cmd_todo_next(args, config: RalphConfig) -> int:
    """Print the next eligible pending todo, or {"none": true}."""
    store = _store(config)
    queue = build_queue(store.list(ItemState.PENDING), args.include_backlog)
    item = next_eligible(queue, store.completed_ids())
    if item is None:
        emit({"none": True, "message": "No pending todos with met dependencies"})
    else:
        emit(item.to_dict())
    return EXIT_OK


def cmd_todo_delete(args, config: RalphConfig) -> int:
    deleted = _store(config).delete(args.id, reason=args.reason)
    emit({"success": True, "deleted": deleted, "id": args.id})
    return EXIT_OK


def cmd_todo_next_number(args, config: RalphConfig) -> int:
    emit({"next_number": _store(config).next_number()})
    return EXIT_OK


def cmd_todo_find_by_external(args, config: RalphConfig) -> int:
    item = _store(config).find_by_external(args.external_id)
    if item is None:
        emit({"found": False, "external_id": args.external_id})
    else:
        emit(item.to_dict())
    return EXIT_OK


def cmd_todo_list_external(args, config: RalphConfig) -> int:
    ids = _store(config).external_ids()
    emit({"external_ids": ids, "count": len(ids)})
    return EXIT_OK


def cmd_todo_update_external(args, config: RalphConfig) -> int:
    """Link a todo to its tracker record, optionally retitling it."""
    fields = {"external_id": args.external_id, "external_url": args.url}
    if args.title:
        fields["title"] = args.title
    item = _store(config).update(args.id, **fields)
    emit({"success": True, "filename": item.filename, "external_id": item.external_id,
          "title": item.title})
    return EXIT_OK
