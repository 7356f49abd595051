"""Tests for reachability and cycle helpers over the relationship graph."""

from bridge_engine.core.schemas_tasks import Relationship
from bridge_engine.core.task_graph import (
    build_adjacency,
    find_closing_path,
    find_path,
    path_edges,
    select_edge_to_break,
)
from tests.fakes.graph_checks import find_cycle, is_acyclic


def test_build_adjacency_collapses_parallel_edges():
    edges = [
        Relationship(source_task_id="a", target_task_id="b"),
        Relationship(source_task_id="a", target_task_id="b", relationship_type="blocks"),
        ("a", "c"),
    ]

    assert build_adjacency(edges) == {"a": ["b", "c"]}


def test_find_path_shortest():
    adjacency = build_adjacency([("a", "b"), ("b", "c"), ("c", "d"), ("a", "d")])

    assert find_path(adjacency, "a", "d") == ["a", "d"]
    assert find_path(adjacency, "b", "d") == ["b", "c", "d"]
    assert find_path(adjacency, "d", "a") is None


def test_find_path_to_self():
    assert find_path({}, "a", "a") == ["a"]


def test_path_edges():
    assert path_edges(["a", "b", "c"]) == [("a", "b"), ("b", "c")]
    assert path_edges(["a"]) == []


def test_find_cycle():
    assert find_cycle(build_adjacency([("a", "b"), ("b", "c")])) == []

    cycle = find_cycle(build_adjacency([("a", "b"), ("b", "c"), ("c", "a")]))
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert len(cycle) == 4


def test_is_acyclic():
    assert is_acyclic([("a", "b"), ("b", "c"), ("a", "c")])
    assert not is_acyclic([("a", "b"), ("b", "a")])


def test_find_closing_path_direct_back_edge():
    # Inserting a -> new -> b closes a loop when b already reaches a
    assert find_closing_path([("b", "a")], "a", "b") == ["b", "a"]


def test_find_closing_path_none_when_forward_only():
    assert find_closing_path([("a", "b"), ("b", "c")], "a", "c") is None


def test_select_edge_to_break():
    assert select_edge_to_break(["b", "a"]) == ("b", "a")
    assert select_edge_to_break(["b", "x", "a"]) == ("b", "x")
    assert select_edge_to_break(["a"]) is None
