"""Shared constants for ralph."""

import re

# CLI exit codes
EXIT_OK = 0
EXIT_ERROR = 1

# Item file naming: 001-pending-p1-some-slug.md
ITEM_SUFFIX = ".md"
ITEM_ID_WIDTH = 3
ITEM_FILENAME_PATTERN = re.compile(r'^(\d+)-([a-z_]+)-(p[123])-(.+)\.md$')
ITEM_ID_PATTERN = re.compile(r'^\d+$')

SLUG_MAX_LEN = 50
DEFAULT_SLUG = "untitled"

PRIORITIES = ("p1", "p2", "p3")

# Workspace names become directory and branch components
WORKSPACE_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')

# Branches never deleted when a workspace is removed
PROTECTED_BRANCHES = {"main", "master"}

# Upper bound for any tracker listing call
MAX_LIST_LIMIT = 100

# Batch worker bounds
MIN_WORKERS = 1
MAX_WORKERS = 5
