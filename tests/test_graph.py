from pathlib import Path

import pytest

from sluggy.errors import CycleError
from sluggy.graph import ORDERING_KINDS, DependencyEdge, DependencyGraph, EdgeKind
from sluggy.scanner import SourceFile, SourceKind
from sluggy.utils import hash_bytes


def node(entity_id, kind=SourceKind.TEMPLATE, data=b""):
    return SourceFile(entity_id, kind, Path(entity_id), hash_bytes(data or entity_id.encode()), 0, data)


def build_graph(edges, ids=None):
    graph = DependencyGraph()
    names = set(ids or [])
    for source, target in edges:
        names.update((source, target))
    for name in sorted(names):
        graph.insert_or_replace(node(name))
    for source, target in edges:
        graph.add_edge(source, target, EdgeKind.INCLUDES)
    return graph


def test_dependents_and_dependencies_are_transitive():
    graph = build_graph([("page", "layout"), ("layout", "nav"), ("other", "nav")])

    assert graph.dependents_of("nav") == {"layout", "page", "other"}
    assert graph.dependents_of(["layout", "page"]) == set()
    assert graph.dependencies_of("page") == {"layout", "nav"}


def test_topological_order_is_deterministic():
    graph = build_graph([("c", "a"), ("b", "a"), ("d", "b"), ("d", "c")])

    assert graph.topological_order() == ["a", "b", "c", "d"]
    assert graph.topological_order(["d", "c"]) == ["c", "d"]


def test_topological_order_rejects_cycles():
    graph = build_graph([("a", "b"), ("b", "a")])
    with pytest.raises(CycleError) as excinfo:
        graph.topological_order()
    assert excinfo.value.cycle == ["a", "b", "a"]

    loop = build_graph([("self", "self")])
    with pytest.raises(CycleError):
        loop.topological_order()


def test_find_cycles_names_every_loop_once():
    graph = build_graph([("b", "c"), ("c", "b"), ("x", "y"), ("y", "z"), ("z", "x"), ("p", "b")])

    assert graph.find_cycles() == [["b", "c", "b"], ["x", "y", "z", "x"]]
    assert graph.find_cycles(["p"]) == []
    assert graph.find_cycles(["y"]) == [["x", "y", "z", "x"]]


def test_data_edges_are_not_followed_for_cycles():
    graph = build_graph([])
    graph.insert_or_replace(node("a"))
    graph.insert_or_replace(node("b"))
    graph.add_edge("a", "b", EdgeKind.USES_DATA)
    graph.add_edge("b", "a", EdgeKind.USES_DATA)
    assert graph.find_cycles() == []


def test_removed_node_leaves_dangling_edges():
    graph = build_graph([("page", "layout")])
    graph.remove("layout")

    assert "layout" not in graph
    assert graph.missing_dependencies("page") == ["layout"]
    assert graph.dependents_of("layout") == {"page"}

    graph.insert_or_replace(node("layout"))
    assert graph.missing_dependencies("page") == []


def test_optional_edges_are_never_missing():
    graph = build_graph([], ids=["page"])
    graph.add_edge("page", "templates/default.html", EdgeKind.EXTENDS, optional=True)
    assert graph.missing_dependencies("page") == []
    assert graph.dependencies_of("page") == {"templates/default.html"}


def test_replace_clears_outgoing_edges_only():
    graph = build_graph([("page", "layout"), ("layout", "nav")])
    graph.insert_or_replace(node("layout", data=b"changed"))

    assert graph.edges_from("layout") == []
    assert graph.dependents_of("layout") == {"page"}
    assert graph.get("layout").content_hash == hash_bytes(b"changed")


def test_set_edges_and_unknown_source():
    graph = build_graph([], ids=["a", "b"])
    graph.set_edges("a", [DependencyEdge("a", "b", EdgeKind.EXTENDS)])
    assert graph.edges_from("a") == [DependencyEdge("a", "b", EdgeKind.EXTENDS)]
    graph.set_edges("a", [])
    assert graph.dependents_of("b") == set()

    with pytest.raises(KeyError):
        graph.add_edge("ghost", "a", EdgeKind.INCLUDES)


def test_section_listings_propagate_changes_without_ordering():
    graph = build_graph([], ids=["layout", "manifest", "post"])
    graph.add_edge("post", "layout", EdgeKind.EXTENDS)
    graph.add_edge("layout", "manifest", EdgeKind.USES_SECTION, optional=True)
    graph.add_edge("manifest", "post", EdgeKind.LISTS)

    assert graph.topological_order() == ["manifest", "layout", "post"]
    assert graph.find_cycles() == []
    assert graph.dependents_of("post") == {"manifest", "layout"}
    assert graph.dependents_of("post", ORDERING_KINDS) == set()
    assert graph.dependents_of("manifest", ORDERING_KINDS) == {"layout", "post"}
