"""
Error taxonomy for ralph.

Collisions (AlreadyExists, AlreadyClaimed) are signals the caller decides
about; the rest describe failures that must be reported, never swallowed.
"""

from pathlib import Path


class RalphError(Exception):
    """Base class for all ralph errors."""
    pass


class NotFound(RalphError):
    """An item, workspace or tracker record does not exist."""
    pass


class AlreadyExists(RalphError):
    """A workspace or branch with this name is already present."""
    pass


class AlreadyClaimed(RalphError):
    """Another actor holds the claim on a tracker record."""
    pass


class ClaimConflict(RalphError):
    """A compare-and-set tracker write lost against a concurrent writer."""

    def __init__(self, record_id: str, expected: str, actual: str):
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"{record_id}: expected state '{expected}', found '{actual}'")


class MalformedInput(RalphError):
    """Bad front matter, self-dependency, or missing creation fields."""

    def __init__(self, message: str, path: Path | None = None, line: int | None = None):
        self.path = path
        self.line = line
        where = ""
        if path is not None:
            where = f"{path.name}"
            if line is not None:
                where += f":{line}"
            where += ": "
        elif line is not None:
            where = f"line {line}: "
        super().__init__(f"{where}{message}")


class ExternalUnavailable(RalphError):
    """The tracker or dispatch collaborator could not be reached."""
    pass


class DispatchTimeout(RalphError):
    """Dispatched work did not report back within the bounded wait."""
    pass


class PartialFailure(RalphError):
    """Some members of a batch operation failed while others succeeded."""

    def __init__(self, message: str, errors: list[str], succeeded: list[str] | None = None):
        self.errors = errors
        self.succeeded = succeeded or []
        super().__init__(f"{message}: {len(errors)} failed, {len(self.succeeded)} succeeded")


class WorkspaceError(RalphError):
    """Workspace creation or removal failed.

    `cleaned_up` tells whether the partial workspace was removed; when it is
    False the path needs manual remediation.
    """

    def __init__(self, message: str, path: Path, cleaned_up: bool = True):
        self.path = path
        self.cleaned_up = cleaned_up
        suffix = "" if cleaned_up else f" (manual cleanup required: {path})"
        super().__init__(f"{message}{suffix}")
