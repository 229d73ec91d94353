"""Every ralph module imports cleanly on the running interpreter."""

import importlib
from pathlib import Path

import pytest

PACKAGE_ROOT = Path(__file__).resolve().parent.parent / "ralph"


def all_modules():
    names = set()
    for path in PACKAGE_ROOT.rglob("*.py"):
        parts = path.relative_to(PACKAGE_ROOT.parent).with_suffix("").parts
        if parts[-1] == "__init__":
            parts = parts[:-1]
        names.add(".".join(parts))
    return sorted(names)


def test_modules_discovered():
    names = all_modules()
    assert "ralph.todos.store" in names
    assert "ralph.workflow.batch" in names


@pytest.mark.parametrize("name", all_modules())
def test_module_imports(name):
    importlib.import_module(name)


def test_store_methods_keep_annotations():
    from ralph.todos.store import ItemStore
    assert ItemStore.external_ids.__annotations__["return"] == "list[str]"
