"""
Configuration loader for ralph.

Loads ralph.yaml from the repository root. If no config file exists, returns
defaults. A handful of RALPH_* environment variables override file values.
"""

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ralph.lib import validate
from ralph.lib.constants import MAX_WORKERS, MIN_WORKERS
from ralph.lib.errors import MalformedInput

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "ralph.yaml"

VALID_TRACKER_KINDS = {"file", "memory", "github"}

# Environment variable -> (config key, converter)
ENV_OVERRIDES = {
    "RALPH_WORKERS": ("workers", int),
    "RALPH_MAX_ITEMS": ("max_items", int),
    "RALPH_DISPATCH_COMMAND": ("dispatch_command", str),
    "RALPH_DISPATCH_TIMEOUT": ("dispatch_timeout", float),
}


def default_actor() -> str:
    """Identity written into claims, unique per process."""
    return f"ralph@{socket.gethostname()}:{os.getpid()}"


@dataclass
class TrackerConfig:
    """System-of-record backend selection."""
    kind: str = "file"
    path: str = ".ralph/tracker"  # file tracker only, relative to repo
    repo: str | None = None  # github tracker only, "owner/name"


@dataclass
class RalphConfig:
    """Repository-level configuration from ralph.yaml"""
    repo_path: Path
    todos_dir: str = "todos"
    worktrees_dir: str = ".worktrees"
    workspace_prefix: str = "ralph"
    trunk: str = "main"
    branch_prefix: str = "feature"
    setup_command: str | None = None  # run once inside each new worktree
    setup_timeout: float = 600
    workers: int = 3
    max_items: int = 0  # 0 = unlimited
    include_backlog: bool = False
    dispatch_command: str | None = None
    dispatch_timeout: float = 3600
    max_attempts: int = 2
    claim_retries: int = 3
    retry_backoff_seconds: float = 1.0
    actor: str = field(default_factory=default_actor)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)

    @property
    def todos_path(self) -> Path:
        return self.repo_path / self.todos_dir

    @property
    def worktrees_path(self) -> Path:
        return self.repo_path / self.worktrees_dir

    @property
    def tracker_path(self) -> Path:
        return self.repo_path / self.tracker.path


def clamp_workers(workers: int) -> int:
    """Clamp a worker count into the supported batch size range."""
    if workers < MIN_WORKERS or workers > MAX_WORKERS:
        clamped = max(MIN_WORKERS, min(MAX_WORKERS, workers))
        logger.warning(
            f"workers={workers} outside {MIN_WORKERS}-{MAX_WORKERS}, using {clamped}"
        )
        return clamped
    return workers


def _apply_env_overrides(data: dict, environ) -> None:
    for var, (key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            data[key] = convert(raw)
        except ValueError:
            raise MalformedInput(f"{var}={raw!r} is not a valid {convert.__name__}") from None

    tracker_kind = environ.get("RALPH_TRACKER")
    if tracker_kind:
        data.setdefault("tracker", {})
        data["tracker"] = dict(data["tracker"], kind=tracker_kind)


def load_config(repo_path: Path, config_file: Path | None = None, environ=None) -> RalphConfig:
    """Load ralph.yaml and return RalphConfig.

    Args:
        repo_path: Repository root (worktrees and todos are resolved against it)
        config_file: Explicit config path; defaults to <repo_path>/ralph.yaml
        environ: Environment mapping for overrides (defaults to os.environ)

    Raises:
        MalformedInput: If the file is not valid YAML or fails schema validation
    """
    repo_path = Path(repo_path).resolve()
    config_path = config_file or repo_path / CONFIG_FILENAME
    environ = os.environ if environ is None else environ

    data: dict = {}
    if config_path.exists():
        try:
            loaded = yaml.safe_load(config_path.read_text())
        except yaml.YAMLError as e:
            raise MalformedInput(f"Failed to parse YAML: {e}", config_path) from None
        if loaded is not None and not isinstance(loaded, dict):
            raise MalformedInput("Top level must be a mapping", config_path)
        data = loaded or {}
    elif config_file is not None:
        raise MalformedInput(f"Config file not found: {config_file}", config_file)

    _apply_env_overrides(data, environ)

    known = set(RalphConfig.__dataclass_fields__) - {"repo_path"}
    for key in list(data):
        if key not in known:
            logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")
            data.pop(key)

    validate.validate(data, "config", config_path)

    tracker = TrackerConfig(**data.pop("tracker", {}))
    if tracker.kind not in VALID_TRACKER_KINDS:
        raise MalformedInput(f"Unknown tracker kind '{tracker.kind}'", config_path)

    config = RalphConfig(repo_path=repo_path, tracker=tracker, **data)
    config.workers = clamp_workers(config.workers)
    return config
