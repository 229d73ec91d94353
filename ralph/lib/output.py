"""Machine-readable CLI output: JSON on stdout, human errors on stderr."""

import json
import sys


def emit(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def error(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr)


def warn(message: str) -> None:
    print(f"WARN: {message}", file=sys.stderr)
