"""Tests for structural graph queries."""

from __future__ import annotations

import re
from collections.abc import Callable

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from branch_graph.models.graph_types import BranchState, CrossReference, CrossRefType
from branch_graph.models.store import GraphStore
from branch_graph.tools.graph_search import GraphSearch
from branch_graph.utils.errors import ValidationError


def _chain(store: GraphStore, length: int) -> None:
    store.create_branch("n0")
    for i in range(1, length):
        store.create_branch(f"n{i}", parent_id=f"n{i - 1}")


def _ref(source: str, target: str) -> CrossReference:
    return CrossReference(f"x-{source}-{target}", source, target, CrossRefType.SUPPORTS, 0.5)


class TestBreadthFirstSearch:
    """Tests for bounded BFS from parent to child."""

    def test_depth_zero_is_start_only(self, store: GraphStore) -> None:
        """max_depth=0 returns just the start branch."""
        _chain(store, 3)
        assert GraphSearch(store).breadth_first_search("n1", 0) == {"n1"}

    def test_follows_children_only(self, store: GraphStore) -> None:
        """One hop reaches the children but never the parent."""
        _chain(store, 3)
        assert GraphSearch(store).breadth_first_search("n1", 1) == {"n1", "n2"}

    def test_leaf_excludes_parent_and_siblings(self, store: GraphStore) -> None:
        """A search from a leaf returns only the leaf."""
        store.create_branch("root")
        store.create_branch("a", parent_id="root")
        store.create_branch("b", parent_id="root")
        assert GraphSearch(store).breadth_first_search("a", 2) == {"a"}
        assert GraphSearch(store).breadth_first_search("root", 1) == {"root", "a", "b"}

    def test_depth_bound_on_chain(self, store: GraphStore) -> None:
        """A chain is cut at max_depth hops."""
        _chain(store, 6)
        assert GraphSearch(store).breadth_first_search("n0", 2) == {"n0", "n1", "n2"}

    def test_blank_start_rejected(self, store: GraphStore) -> None:
        """Blank ids raise ValidationError."""
        with pytest.raises(ValidationError):
            GraphSearch(store).breadth_first_search("", 1)

    def test_negative_depth_rejected(self, store: GraphStore) -> None:
        """Negative depths raise ValidationError."""
        store.create_branch("a")
        with pytest.raises(ValidationError):
            GraphSearch(store).breadth_first_search("a", -1)

    def test_missing_start_raises(self, store: GraphStore) -> None:
        """Unknown start branches raise ValidationError naming the field."""
        with pytest.raises(ValidationError) as exc_info:
            GraphSearch(store).breadth_first_search("nope", 1)
        assert exc_info.value.field == "start_branch_id"
        assert exc_info.value.to_dict()["code"] == "VALIDATION_ERROR"

    @given(
        parents=st.lists(st.integers(min_value=0, max_value=1000), min_size=1, max_size=25),
        depth=st.integers(min_value=0, max_value=6),
        data=st.data(),
    )
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_result_within_depth(self, parents: list[int], depth: int, data: st.DataObject) -> None:
        """Every returned branch is a descendant at most max_depth levels down."""
        tree = GraphStore()
        tree.create_branch("b0")
        for i, choice in enumerate(parents, start=1):
            tree.create_branch(f"b{i}", parent_id=f"b{choice % i}")

        start = data.draw(st.integers(min_value=0, max_value=len(parents)))
        result = GraphSearch(tree).breadth_first_search(f"b{start}", depth)

        # Reference depths from walking each branch's parent chain
        expected = {f"b{start}"}
        for branch in tree.get_all_branches():
            chain = tree.ancestors(branch.id)
            if f"b{start}" in chain and chain.index(f"b{start}") + 1 <= depth:
                expected.add(branch.id)

        assert f"b{start}" in result
        assert result == expected


class TestNeighborhood:
    """Tests for neighborhood listing."""

    def test_returns_branches_in_store_order(self, store: GraphStore) -> None:
        """Neighborhood keeps the arena order."""
        _chain(store, 4)
        ids = [b.id for b in GraphSearch(store).neighborhood("n1", 1)]
        assert ids == ["n1", "n2"]


class TestSearchThoughts:
    """Tests for regex content search."""

    def test_case_insensitive(self, store: GraphStore, put_thought: Callable[..., str]) -> None:
        """String patterns ignore case."""
        put_thought("b1", "Cache invalidation is hard")
        put_thought("b1", "Naming things is hard")
        matches = GraphSearch(store).search_thoughts("cache")
        assert [t.content for t in matches] == ["Cache invalidation is hard"]

    def test_compiled_pattern_used_as_is(self, store: GraphStore, put_thought: Callable[..., str]) -> None:
        """Compiled patterns keep their own flags."""
        put_thought("b1", "Cache invalidation")
        assert GraphSearch(store).search_thoughts(re.compile("cache")) == []

    def test_invalid_pattern_rejected(self, store: GraphStore) -> None:
        """A pattern that does not compile raises ValidationError."""
        with pytest.raises(ValidationError):
            GraphSearch(store).search_thoughts("(unclosed")

    def test_shared_thought_listed_once(self, store: GraphStore, put_thought: Callable[..., str]) -> None:
        """A thought in two branches matches once."""
        put_thought("b1", "shared idea")
        put_thought("b2", "shared idea")
        assert len(GraphSearch(store).search_thoughts("idea")) == 1


class TestFilters:
    """Tests for attribute filters."""

    def test_by_type(self, store: GraphStore, put_thought: Callable[..., str]) -> None:
        """Only thoughts of the given type are returned."""
        put_thought("b1", "a guess", thought_type="hypothesis")
        put_thought("b1", "a fact", thought_type="observation")
        found = GraphSearch(store).find_thoughts_by_type("hypothesis")
        assert [t.content for t in found] == ["a guess"]

    def test_by_confidence_inclusive(self, store: GraphStore, put_thought: Callable[..., str]) -> None:
        """Confidence bounds are inclusive."""
        put_thought("b1", "low", confidence=0.2)
        put_thought("b1", "mid", confidence=0.5)
        put_thought("b1", "high", confidence=0.9)
        found = GraphSearch(store).find_thoughts_by_confidence(0.2, 0.5)
        assert {t.content for t in found} == {"low", "mid"}

    def test_by_confidence_rejects_inverted_range(self, store: GraphStore) -> None:
        """min > max raises ValidationError."""
        with pytest.raises(ValidationError):
            GraphSearch(store).find_thoughts_by_confidence(0.8, 0.2)

    def test_by_state(self, store: GraphStore) -> None:
        """Branches are filtered by state."""
        store.create_branch("a")
        store.create_branch("b").state = BranchState.SUSPENDED
        found = GraphSearch(store).find_branches_by_state(BranchState.SUSPENDED)
        assert [b.id for b in found] == ["b"]

    def test_orphaned(self, store: GraphStore) -> None:
        """Orphans have no live parent and no children."""
        store.create_branch("root")
        store.create_branch("child", parent_id="root")
        store.create_branch("alone")
        store.create_branch("stray", parent_id="ghost")
        found = {b.id for b in GraphSearch(store).find_orphaned_branches()}
        assert found == {"alone", "stray"}


class TestCircularReferences:
    """Tests for cross-reference cycle detection."""

    def test_no_cycles(self, store: GraphStore) -> None:
        """Acyclic references report nothing."""
        store.create_branch("a").cross_refs.append(_ref("a", "b"))
        store.create_branch("b")
        assert GraphSearch(store).detect_circular_references() == []

    def test_two_cycle(self, store: GraphStore) -> None:
        """A <-> B is reported once, closing on its first branch."""
        store.create_branch("a").cross_refs.append(_ref("a", "b"))
        store.create_branch("b").cross_refs.append(_ref("b", "a"))
        cycles = GraphSearch(store).detect_circular_references()
        assert len(cycles) == 1
        assert cycles[0].circular_path == ["a", "b", "a"]
        assert cycles[0].to_dict()["code"] == "CIRCULAR_REFERENCE"

    def test_three_cycle(self, store: GraphStore) -> None:
        """Longer cycles carry the full path."""
        store.create_branch("a").cross_refs.append(_ref("a", "b"))
        store.create_branch("b").cross_refs.append(_ref("b", "c"))
        store.create_branch("c").cross_refs.append(_ref("c", "a"))
        cycles = GraphSearch(store).detect_circular_references()
        assert [c.circular_path for c in cycles] == [["a", "b", "c", "a"]]

    def test_references_to_missing_branches_ignored(self, store: GraphStore) -> None:
        """Dangling targets do not form cycles."""
        store.create_branch("a").cross_refs.append(_ref("a", "ghost"))
        assert GraphSearch(store).detect_circular_references() == []
