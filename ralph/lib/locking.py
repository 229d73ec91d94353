"""
File locks for ralph.

Uses flock on small lock files. Serializes item-id allocation in the todo
store and record writes in the file tracker. These locks only protect local
bookkeeping; cross-actor mutual exclusion is the tracker claim.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path

DEFAULT_LOCK_TIMEOUT = 30
LOCK_POLL_INTERVAL = 0.05


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Lock files are never deleted: unlinking one lets two holders end up with
    exclusive locks on different inodes behind the same path.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'a')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start > timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(LOCK_POLL_INTERVAL)

    try:
        fd.truncate(0)
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        fd.close()


@contextmanager
def store_lock(todos_dir: Path, timeout: float = DEFAULT_LOCK_TIMEOUT):
    """Acquire the todo store lock (id allocation)."""
    with _acquire_lock(todos_dir / ".lock", timeout, "todo store lock"):
        yield


@contextmanager
def record_lock(tracker_dir: Path, record_id: str, timeout: float = DEFAULT_LOCK_TIMEOUT):
    """Acquire the per-record lock of the file tracker."""
    lock_file = tracker_dir / "locks" / f"{record_id}.lock"
    with _acquire_lock(lock_file, timeout, f"lock for record {record_id}"):
        yield
