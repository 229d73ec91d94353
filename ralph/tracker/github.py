"""
GitHub Issues tracker via the gh CLI.

State mapping:
- open issue, no ralph label   -> open
- open issue, ralph:backlog    -> backlog
- open issue, ralph:in-progress -> in_progress
- open issue, ralph:blocked    -> blocked
- closed as completed          -> done
- closed as not planned        -> cancelled

The group is the issue milestone. GitHub assignees must be real accounts,
so the assignee is derived from the issue comments: the first "Claimed by"
comment since the last release comment names the holder. `expect` is checked
by a read immediately before the write; GitHub offers no atomic
compare-and-set, so claimants that both pass it are told apart by their
comments on read-back.
"""

import json
import logging
import subprocess
from pathlib import Path

from ralph.lib.errors import ClaimConflict, ExternalUnavailable, MalformedInput, NotFound
from ralph.tracker.base import DEFAULT_LIST_LIMIT, Record, Tracker, check_limit, claim_holder
from ralph.tracker.fsm import ExternalState, check_transition

logger = logging.getLogger(__name__)

# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

ISSUE_FIELDS = "number,title,url,state,stateReason,labels,milestone,updatedAt"
# Comments are only fetched for single issues
VIEW_FIELDS = ISSUE_FIELDS + ",comments"

STATE_LABELS = {
    ExternalState.BACKLOG: "ralph:backlog",
    ExternalState.IN_PROGRESS: "ralph:in-progress",
    ExternalState.BLOCKED: "ralph:blocked",
}


def state_from_issue(data: dict) -> ExternalState:
    """Map gh issue JSON to an ExternalState."""
    if data.get("state", "").upper() == "CLOSED":
        if (data.get("stateReason") or "").upper() == "NOT_PLANNED":
            return ExternalState.CANCELLED
        return ExternalState.DONE

    labels = {label.get("name") for label in data.get("labels") or []}
    for state in (ExternalState.BLOCKED, ExternalState.IN_PROGRESS, ExternalState.BACKLOG):
        if STATE_LABELS[state] in labels:
            return state
    return ExternalState.OPEN


def record_from_issue(data: dict) -> Record:
    milestone = data.get("milestone") or {}
    labels = sorted(label.get("name", "") for label in data.get("labels") or [])
    notes = [
        {"at": comment.get("createdAt"), "text": comment.get("body", "")}
        for comment in data.get("comments") or []
    ]
    state = state_from_issue(data)
    assignee = None
    if state == ExternalState.IN_PROGRESS:
        assignee = claim_holder([note["text"] for note in notes])
    return Record(
        id=str(data["number"]),
        state=state,
        title=data.get("title", ""),
        url=data.get("url"),
        assignee=assignee,
        group=milestone.get("title") or None,
        notes=notes,
        fields={"labels": labels},
        updated_at=data.get("updatedAt"),
    )


class GitHubTracker(Tracker):
    """Tracker backed by the issues of one GitHub repository."""

    def __init__(self, repo: str | None = None, cwd: Path | None = None):
        self.repo = repo
        self.cwd = cwd

    def _gh(self, args: list[str], record_id: str | None = None) -> str:
        cmd = ["gh"] + args
        if self.repo:
            cmd += ["--repo", self.repo]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=str(self.cwd) if self.cwd else None,
                timeout=GH_TIMEOUT_SECONDS,
            )
        except subprocess.TimeoutExpired:
            raise ExternalUnavailable(f"GitHub API timeout: gh {' '.join(args[:2])}") from None
        except (OSError, subprocess.SubprocessError) as e:
            raise ExternalUnavailable(f"gh failed to run: {e}") from None

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if record_id and "Could not resolve to an issue" in stderr:
                raise NotFound(f"Tracker record {record_id} not found")
            raise ExternalUnavailable(f"gh {' '.join(args[:2])} failed: {stderr}")
        return result.stdout

    def _check_id(self, record_id: str) -> str:
        record_id = str(record_id).lstrip("#")
        if not record_id.isdigit():
            raise MalformedInput(f"GitHub issue id must be a number, got '{record_id}'")
        return record_id

    def get_record(self, record_id: str) -> Record:
        record_id = self._check_id(record_id)
        out = self._gh(["issue", "view", record_id, "--json", VIEW_FIELDS], record_id)
        try:
            return record_from_issue(json.loads(out))
        except (json.JSONDecodeError, KeyError):
            raise ExternalUnavailable("Invalid JSON from gh") from None

    def update_record(self, record_id, state, fields=None, expect=None) -> Record:
        record_id = self._check_id(record_id)
        current = self.get_record(record_id)
        if expect is not None and current.state != expect:
            raise ClaimConflict(record_id, expect.value, current.state.value)
        check_transition(record_id, current.state, state)

        fields = fields or {}
        closed = current.state in (ExternalState.DONE, ExternalState.CANCELLED)
        if state == ExternalState.DONE:
            self._gh(["issue", "close", record_id, "--reason", "completed"], record_id)
        elif state == ExternalState.CANCELLED:
            self._gh(["issue", "close", record_id, "--reason", "not planned"], record_id)
        elif closed:
            self._gh(["issue", "reopen", record_id], record_id)

        edit = ["issue", "edit", record_id]
        wanted = STATE_LABELS.get(state)
        present = set(current.fields.get("labels", []))
        stale = [label for s, label in STATE_LABELS.items() if s != state and label in present]
        if wanted and wanted not in present:
            edit += ["--add-label", wanted]
        if stale:
            edit += ["--remove-label", ",".join(stale)]
        if fields.get("title"):
            edit += ["--title", fields["title"]]
        if fields.get("group"):
            edit += ["--milestone", fields["group"]]
        if len(edit) > 3:
            self._gh(edit, record_id)

        return self.get_record(record_id)

    def create_record(self, fields: dict) -> Record:
        title = (fields.get("title") or "").strip()
        if not title:
            raise MalformedInput("Tracker record requires a title")

        args = ["issue", "create", "--title", title, "--body", fields.get("body") or ""]
        state = ExternalState(fields.get("state", ExternalState.OPEN))
        if state in STATE_LABELS:
            args += ["--label", STATE_LABELS[state]]
        if fields.get("group"):
            args += ["--milestone", fields["group"]]

        lines = self._gh(args).strip().splitlines()
        url = lines[-1] if lines else ""
        number = url.rstrip("/").split("/")[-1]
        if not number.isdigit():
            raise ExternalUnavailable(f"Unexpected gh issue create output: {url}")
        logger.info(f"[TRACKER] Created GitHub issue #{number}: {title}")
        return self.get_record(number)

    def add_note(self, record_id: str, text: str) -> None:
        record_id = self._check_id(record_id)
        self._gh(["issue", "comment", record_id, "--body", text], record_id)

    def list_records(self, state=None, limit=DEFAULT_LIST_LIMIT) -> list[Record]:
        check_limit(limit)
        args = ["issue", "list", "--limit", str(limit), "--json", ISSUE_FIELDS]
        if state in (ExternalState.DONE, ExternalState.CANCELLED):
            args += ["--state", "closed"]
        elif state is None:
            args += ["--state", "all"]
        else:
            args += ["--state", "open"]
            if state in STATE_LABELS:
                args += ["--label", STATE_LABELS[state]]

        try:
            issues = json.loads(self._gh(args))
        except json.JSONDecodeError:
            raise ExternalUnavailable("Invalid JSON from gh") from None

        records = [record_from_issue(issue) for issue in issues]
        if state is not None:
            records = [r for r in records if r.state == state]
        return records[:limit]
