#!/usr/bin/env python3
"""ralph CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from ralph.lib.config import load_config
from ralph.lib.constants import EXIT_ERROR, PRIORITIES
from ralph.lib.errors import RalphError
from ralph.lib.locking import LockTimeout
from ralph.lib.output import error
from ralph.commands import todo as cmd_todo_module
from ralph.commands import worktree as cmd_worktree_module
from ralph.commands import run as cmd_run_module
from ralph.commands import sync as cmd_sync_module


def configure_logging(verbose: bool) -> None:
    """Logs go to stderr so stdout stays machine-readable."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='ralph', description='Todo queue and worktree orchestration')
    parser.add_argument('--repo', '-C', default='.', help='Repository root (default: current directory)')
    parser.add_argument('--config', '-c', help='Config file (default: <repo>/ralph.yaml)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # ralph todo
    p_todo = subparsers.add_parser('todo', help='Manage todo items')
    todo_sub = p_todo.add_subparsers(dest='todo_cmd', required=True)

    p = todo_sub.add_parser('list', help='List todos')
    p.add_argument('state', nargs='?', help='Filter: pending, in_progress, completed, blocked')
    p.set_defaults(func=cmd_todo_module.cmd_todo_list)

    p = todo_sub.add_parser('get', help='Show one todo')
    p.add_argument('id', help='Todo id or filename')
    p.set_defaults(func=cmd_todo_module.cmd_todo_get)

    p = todo_sub.add_parser('create', help='Create a todo')
    p.add_argument('--priority', '-p', required=True, choices=PRIORITIES)
    p.add_argument('--title', '-t', required=True)
    p.add_argument('--description', '-d', help='Problem statement')
    p.add_argument('--tags', help='Comma-separated tags')
    p.add_argument('--parent', help='Parent todo id')
    p.add_argument('--external-id', help='Tracker record id')
    p.add_argument('--external-url', help='Tracker record URL')
    p.add_argument('--dependencies', help='Comma-separated todo ids')
    p.add_argument('--group', help='Scheduling group (tracker cycle)')
    p.set_defaults(func=cmd_todo_module.cmd_todo_create)

    p = todo_sub.add_parser('complete', help='Mark a todo completed')
    p.add_argument('id')
    p.add_argument('result_ref', nargs='?', help='Result reference, e.g. merge request URL')
    p.set_defaults(func=cmd_todo_module.cmd_todo_complete)

    p = todo_sub.add_parser('block', help='Mark a todo blocked')
    p.add_argument('id')
    p.add_argument('reason', nargs='+')
    p.set_defaults(func=cmd_todo_module.cmd_todo_block)

    p = todo_sub.add_parser('next', help='Show the next eligible todo')
    p.add_argument('--include-backlog', action='store_true', help='Consider ungrouped todos')
    p.set_defaults(func=cmd_todo_module.cmd_todo_next)

    p = todo_sub.add_parser('delete', help='Delete a todo')
    p.add_argument('id')
    p.add_argument('--reason', help='Keep a tombstone (e.g. "completed")')
    p.set_defaults(func=cmd_todo_module.cmd_todo_delete)

    p = todo_sub.add_parser('next-number', help='Show the next free todo id')
    p.set_defaults(func=cmd_todo_module.cmd_todo_next_number)

    p = todo_sub.add_parser('find-by-external', help='Find the todo linked to a tracker record')
    p.add_argument('external_id')
    p.set_defaults(func=cmd_todo_module.cmd_todo_find_by_external)

    p = todo_sub.add_parser('list-external', help='List tracker ids referenced by todos')
    p.set_defaults(func=cmd_todo_module.cmd_todo_list_external)

    p = todo_sub.add_parser('update-external', help='Link a todo to a tracker record')
    p.add_argument('id')
    p.add_argument('external_id')
    p.add_argument('url')
    p.add_argument('title', nargs='?')
    p.set_defaults(func=cmd_todo_module.cmd_todo_update_external)

    # ralph worktree
    p_wt = subparsers.add_parser('worktree', help='Manage isolated worktrees')
    wt_sub = p_wt.add_subparsers(dest='worktree_cmd', required=True)

    p = wt_sub.add_parser('create', help='Create a worktree on a new branch')
    p.add_argument('name')
    p.add_argument('branch')
    p.set_defaults(func=cmd_worktree_module.cmd_worktree_create)

    p = wt_sub.add_parser('delete', help='Remove a worktree and its branch')
    p.add_argument('name')
    p.set_defaults(func=cmd_worktree_module.cmd_worktree_delete)

    p = wt_sub.add_parser('list', help='List managed worktrees')
    p.add_argument('--all', action='store_true', help='Include worktrees not managed by ralph')
    p.set_defaults(func=cmd_worktree_module.cmd_worktree_list)

    p = wt_sub.add_parser('exists', help='Check whether a worktree exists')
    p.add_argument('name')
    p.set_defaults(func=cmd_worktree_module.cmd_worktree_exists)

    p = wt_sub.add_parser('cleanup', help='Remove all managed worktrees')
    p.set_defaults(func=cmd_worktree_module.cmd_worktree_cleanup)

    p = wt_sub.add_parser('path', help='Print the path a worktree would use')
    p.add_argument('name')
    p.set_defaults(func=cmd_worktree_module.cmd_worktree_path)

    # ralph run
    p = subparsers.add_parser('run', help='Process the queue in batches')
    p.add_argument('--workers', '-w', type=int, help='Batch size (1-5)')
    p.add_argument('--max-items', '-n', type=int, help='Stop after this many todos')
    p.add_argument('--include-backlog', action='store_true', help='Process ungrouped todos too')
    p.add_argument('--local', action='store_true', help='Run without the Prefect flow')
    p.add_argument('--flag', action='append', default=[], help='Extra flag passed to dispatch (repeatable)')
    p.set_defaults(func=cmd_run_module.cmd_run)

    # ralph sync
    p = subparsers.add_parser('sync', help='Reconcile todos with the tracker')
    p.set_defaults(func=cmd_sync_module.cmd_sync)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(Path(args.repo), Path(args.config) if args.config else None)
        return args.func(args, config)
    except (RalphError, LockTimeout) as e:
        error(str(e))
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
