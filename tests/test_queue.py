"""Tests for ralph.todos.queue module."""

from ralph.todos.models import Item, ItemState
from ralph.todos.queue import (
    build_queue,
    dependency_problems,
    group_rank,
    next_eligible,
    unmet_dependencies,
)


def make_item(item_id, priority="p2", group=None, deps=(), state=ItemState.PENDING):
    return Item(
        id=item_id,
        state=state,
        priority=priority,
        slug=f"item-{item_id}",
        title=f"Item {item_id}",
        group=group,
        dependencies=list(deps),
    )


class TestGroupRank:

    def test_current_marker(self):
        assert group_rank("Cycle 4 (Current)") == 1

    def test_other_group(self):
        assert group_rank("Cycle 5") == 2

    def test_no_group(self):
        assert group_rank(None) == 3
        assert group_rank("  ") == 3


class TestBuildQueue:
    """Ordering is (group rank, priority rank, id)."""

    def test_full_ordering(self):
        items = [
            make_item("006", "p1", group="next"),
            make_item("005", "p3", group="current"),
            make_item("004", "p1", group="current"),
            make_item("003", "p2", group="next"),
            make_item("002", "p1", group="current"),
            make_item("001", "p1"),
        ]
        queue = build_queue(items, include_backlog=True)
        assert [i.id for i in queue] == ["002", "004", "005", "006", "003", "001"]

    def test_ungrouped_excluded_when_groups_exist(self):
        items = [make_item("001", "p1"), make_item("002", "p3", group="current")]
        assert [i.id for i in build_queue(items)] == ["002"]

    def test_ungrouped_kept_when_nothing_grouped(self):
        items = [make_item("002", "p2"), make_item("001", "p2"), make_item("003", "p1")]
        assert [i.id for i in build_queue(items)] == ["003", "001", "002"]

    def test_numeric_id_tiebreak(self):
        items = [make_item("010"), make_item("009")]
        assert [i.id for i in build_queue(items)] == ["009", "010"]

    def test_empty(self):
        assert build_queue([]) == []


class TestNextEligible:
    """Dependency gating."""

    def test_skips_item_with_pending_dependency(self):
        a = make_item("001", "p2")
        b = make_item("002", "p1", deps=["001"])
        queue = build_queue([a, b])
        assert next_eligible(queue, set()) is a

    def test_dependent_becomes_eligible_once_completed(self):
        b = make_item("002", "p1", deps=["001"])
        assert next_eligible([b], set()) is None
        assert next_eligible([b], {"001"}) is b

    def test_blank_dependencies_ignored(self):
        item = make_item("003", deps=["", "  "])
        assert next_eligible([item], set()) is item

    def test_unpadded_dependency_matches(self):
        item = make_item("003", deps=["1"])
        assert unmet_dependencies(item, {"001"}) == []

    def test_none_when_nothing_qualifies(self):
        item = make_item("003", deps=["099"])
        assert next_eligible([item], {"001"}) is None


class TestDependencyProblems:
    """Items that could never become eligible are flagged."""

    def test_self_dependency(self):
        item = make_item("004", deps=["004"])
        problems = dependency_problems([item], set(), {"004"})
        assert "depends on itself" in problems["004"]

    def test_unknown_dependency(self):
        item = make_item("004", deps=["099"])
        problems = dependency_problems([item], set(), {"004"})
        assert "099" in problems["004"]

    def test_cycle(self):
        a = make_item("001", deps=["002"])
        b = make_item("002", deps=["001"])
        c = make_item("003", deps=["001"])
        problems = dependency_problems([a, b, c], set(), {"001", "002", "003"})
        assert set(problems) == {"001", "002"}
        assert "cycle" in problems["001"]

    def test_pending_dependency_is_not_a_problem(self):
        a = make_item("001")
        b = make_item("002", deps=["001"])
        assert dependency_problems([a, b], set(), {"001", "002"}) == {}

    def test_completed_dependency_is_known(self):
        b = make_item("002", deps=["001"])
        assert dependency_problems([b], {"001"}, {"002"}) == {}

    def test_deleted_dependency(self):
        b = make_item("002", deps=["001"])
        problems = dependency_problems([b], set(), {"001", "002"}, deleted_ids={"001"})
        assert problems["002"] == "depends on deleted todo(s): 001"

    def test_deleted_then_completed_is_satisfied(self):
        b = make_item("002", deps=["001"])
        assert dependency_problems([b], {"001"}, {"001", "002"}, deleted_ids={"001"}) == {}
