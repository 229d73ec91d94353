"""
Dispatch: hand an (item, workspace) pair to the external work collaborator.

The collaborator is any callable taking a DispatchRequest and returning a
DispatchOutcome. CommandDispatcher runs a configured shell command inside the
worktree and reads the outcome as the last JSON object printed on stdout:

    {"status": "completed", "result_ref": "https://.../pull/7", "merged": true}
    {"status": "blocked", "reason": "needs API credentials"}
    {"status": "failed", "error": "tests failing", "follow_ups": [{"title": "..."}]}
"""

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Literal, Optional

from pydantic import BaseModel, ValidationError, model_validator

from ralph.lib.errors import MalformedInput
from ralph.todos.models import Item
from ralph.workspaces import Workspace

logger = logging.getLogger(__name__)

# Variables available in dispatch command templates
TEMPLATE_VARIABLES = ("item_id", "item_ref", "worktree", "branch", "title", "flags")

STDERR_TAIL_LINES = 5


class FollowUp(BaseModel):
    """New work discovered while processing an item."""
    title: str
    priority: Literal["p1", "p2", "p3"] = "p2"
    description: str = ""
    tags: list[str] = []
    dependencies: list[str] = []


class DispatchOutcome(BaseModel):
    """Terminal result of dispatched work."""
    status: Literal["completed", "blocked", "failed"]
    result_ref: Optional[str] = None
    merged: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    follow_ups: list[FollowUp] = []

    @model_validator(mode="after")
    def _require_reason(self):
        if self.status == "blocked" and not (self.reason or "").strip():
            raise ValueError("blocked outcome requires a reason")
        if self.status == "failed" and not (self.error or "").strip():
            self.error = "unspecified failure"
        return self

    @classmethod
    def completed(cls, result_ref: str | None = None, merged: bool = False, **kwargs) -> "DispatchOutcome":
        return cls(status="completed", result_ref=result_ref, merged=merged, **kwargs)

    @classmethod
    def blocked(cls, reason: str, **kwargs) -> "DispatchOutcome":
        return cls(status="blocked", reason=reason, **kwargs)

    @classmethod
    def failed(cls, error: str, **kwargs) -> "DispatchOutcome":
        return cls(status="failed", error=error, **kwargs)

    @property
    def detail(self) -> str:
        """Human-readable reason persisted in audit fields and tracker notes."""
        if self.status == "completed":
            merged = "merged" if self.merged else "not merged"
            return f"{self.result_ref or 'no result reference'} ({merged})"
        if self.status == "blocked":
            return self.reason
        return self.error


@dataclass
class DispatchRequest:
    item: Item
    workspace: Workspace
    flags: list[str] = field(default_factory=list)


def parse_outcome(stdout: str) -> DispatchOutcome:
    """Parse the last JSON object line of stdout.

    Raises:
        MalformedInput: no JSON object found, or it does not describe an outcome
    """
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        try:
            return DispatchOutcome.model_validate(data)
        except ValidationError as e:
            raise MalformedInput(f"Invalid dispatch outcome: {e.errors()[0]['msg']}") from None
    raise MalformedInput("Dispatch printed no JSON outcome")


def build_command(template: str, request: DispatchRequest) -> list[str]:
    """Split the template with shlex, then substitute variables per argument.

    Substituting after splitting keeps titles with spaces or quotes as a
    single argument. A bare {flags} argument expands to one argument per flag.
    """
    values = {
        "item_id": request.item.id,
        "item_ref": request.item.ref,
        "worktree": str(request.workspace.path),
        "branch": request.workspace.branch,
        "title": request.item.title,
        "flags": " ".join(request.flags),
    }
    cmd = []
    for arg in shlex.split(template):
        if arg == "{flags}":
            cmd.extend(request.flags)
            continue
        for key, value in values.items():
            arg = arg.replace(f"{{{key}}}", value)
        cmd.append(arg)
    return cmd


class CommandDispatcher:
    """Runs a shell command per item and parses its JSON outcome."""

    def __init__(self, command: str, timeout: float | None = None):
        if not command or not command.strip():
            raise MalformedInput("dispatch_command is not configured")
        self.command = command
        self.timeout = timeout

    def __call__(self, request: DispatchRequest) -> DispatchOutcome:
        cmd = build_command(self.command, request)
        logger.info(f"[DISPATCH] {request.item.ref}: {' '.join(shlex.quote(c) for c in cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(request.workspace.path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return DispatchOutcome.failed(f"timeout after {self.timeout}s")
        except OSError as e:
            return DispatchOutcome.failed(f"could not start dispatch command: {e}")

        if result.returncode != 0:
            tail = " | ".join(result.stderr.strip().splitlines()[-STDERR_TAIL_LINES:])
            return DispatchOutcome.failed(f"exit {result.returncode}: {tail or 'no output'}")

        try:
            return parse_outcome(result.stdout)
        except MalformedInput as e:
            return DispatchOutcome.failed(str(e))
