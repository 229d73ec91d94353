"""
Front-matter parser for todo item files.

Grammar (one entry per line between two `---` delimiter lines):

    key: value

- key:    ^[a-z][a-z0-9_]*$
- value:  empty (key is omitted)
        | "double quoted"  (supports \\" and \\\\ escapes)
        | 'single quoted'  (no escapes)
        | [item, "item", 'item']  (comma-separated list, may be empty)
        | bare scalar      (rest of line, trimmed)

Blank lines and lines starting with '#' are ignored. Anything else raises
MalformedInput with the offending line number.
"""

import re
from pathlib import Path

from ralph.lib.errors import MalformedInput

DELIMITER = "---"

KEY_PATTERN = re.compile(r'^[a-z][a-z0-9_]*$')

# Bare scalars containing any of these are written quoted
_NEEDS_QUOTES = re.compile(r'[\s:#\[\]{},"\'\\]')


def split_document(text: str, path: Path | None = None) -> tuple[list[str], str, int]:
    """Split a document into front-matter lines and body.

    Returns (front matter lines, body, line number of first front-matter line).
    """
    lines = text.split("\n")
    if not lines or lines[0].strip() != DELIMITER:
        raise MalformedInput("missing opening '---' front-matter delimiter", path, 1)

    for idx in range(1, len(lines)):
        if lines[idx].strip() == DELIMITER:
            body = "\n".join(lines[idx + 1:])
            return lines[1:idx], body, 2

    raise MalformedInput("missing closing '---' front-matter delimiter", path)


def _parse_quoted(raw: str, path: Path | None, lineno: int) -> tuple[str, str]:
    """Parse a quoted string at the start of raw. Returns (value, remainder)."""
    quote = raw[0]
    out = []
    i = 1
    while i < len(raw):
        ch = raw[i]
        if quote == '"' and ch == "\\":
            if i + 1 >= len(raw):
                break
            nxt = raw[i + 1]
            if nxt not in ('"', "\\"):
                raise MalformedInput(f"invalid escape '\\{nxt}'", path, lineno)
            out.append(nxt)
            i += 2
            continue
        if ch == quote:
            return "".join(out), raw[i + 1:]
        out.append(ch)
        i += 1
    raise MalformedInput("unterminated quoted string", path, lineno)


def _parse_list(raw: str, path: Path | None, lineno: int) -> list[str]:
    """Parse a bracket list. raw includes the surrounding brackets."""
    inner = raw[1:].strip()
    items: list[str] = []

    if inner == "]":
        return items

    while True:
        inner = inner.lstrip()
        if not inner:
            raise MalformedInput("unterminated list (missing ']')", path, lineno)

        if inner[0] in ('"', "'"):
            value, inner = _parse_quoted(inner, path, lineno)
        else:
            match = re.match(r'([^,\]]*)', inner)
            value = match.group(1).strip()
            inner = inner[match.end():]
            if not value:
                raise MalformedInput("empty list element", path, lineno)
        items.append(value)

        inner = inner.lstrip()
        if inner.startswith(","):
            inner = inner[1:]
            continue
        if inner.startswith("]"):
            if inner[1:].strip():
                raise MalformedInput("unexpected text after ']'", path, lineno)
            return items
        if not inner:
            raise MalformedInput("unterminated list (missing ']')", path, lineno)
        raise MalformedInput("expected ',' or ']' in list", path, lineno)


def parse_value(raw: str, path: Path | None = None, lineno: int | None = None):
    """Parse a single front-matter value. Returns None for an empty value."""
    raw = raw.strip()
    if not raw:
        return None
    if raw.startswith("["):
        return _parse_list(raw, path, lineno)
    if raw[0] in ('"', "'"):
        value, rest = _parse_quoted(raw, path, lineno)
        if rest.strip():
            raise MalformedInput("unexpected text after closing quote", path, lineno)
        return value
    return raw


def parse_lines(lines: list[str], path: Path | None = None, first_lineno: int = 1) -> dict:
    """Parse front-matter lines into an ordered dict."""
    data: dict = {}
    for offset, line in enumerate(lines):
        lineno = first_lineno + offset
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        if ":" not in stripped:
            raise MalformedInput(f"expected 'key: value', got '{stripped}'", path, lineno)

        key, _, raw = stripped.partition(":")
        key = key.strip()
        if not KEY_PATTERN.match(key):
            raise MalformedInput(f"invalid key '{key}'", path, lineno)
        if key in data:
            raise MalformedInput(f"duplicate key '{key}'", path, lineno)

        value = parse_value(raw, path, lineno)
        if value is None:
            continue
        data[key] = value
    return data


def parse_document(text: str, path: Path | None = None) -> tuple[dict, str]:
    """Parse a full item document. Returns (front matter, body)."""
    lines, body, first_lineno = split_document(text, path)
    return parse_lines(lines, path, first_lineno), body


def _single_line(text: str) -> str:
    if "\n" in text or "\r" in text:
        return " ".join(part.strip() for part in text.splitlines() if part.strip())
    return text


def _quote(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_scalar(value) -> str:
    """Format a scalar, quoting when the bare form would not round-trip.

    Values are single-line; embedded line breaks are folded into spaces.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    text = _single_line(str(value))
    if not text or _NEEDS_QUOTES.search(text):
        return _quote(text)
    return text


def serialize(data: dict) -> str:
    """Serialize front matter (without delimiters). None values are dropped."""
    lines = []
    for key, value in data.items():
        if value is None:
            continue
        if not KEY_PATTERN.match(key):
            raise MalformedInput(f"invalid key '{key}'")
        if isinstance(value, (list, tuple)):
            items = ", ".join(_quote(_single_line(str(v))) for v in value)
            lines.append(f"{key}: [{items}]")
        else:
            lines.append(f"{key}: {format_scalar(value)}")
    return "\n".join(lines)


def render_document(data: dict, body: str) -> str:
    """Render front matter and body back into a document."""
    return f"{DELIMITER}\n{serialize(data)}\n{DELIMITER}\n{body}"
