import threading
import time
from pathlib import Path

import pytest

from sluggy.cache import BuildCache, CacheKey, derive_key
from sluggy.errors import CacheConsistencyError
from sluggy.graph import DependencyGraph, EdgeKind
from sluggy.scanner import SourceFile, SourceKind
from sluggy.utils import hash_bytes


def node(entity_id, data):
    return SourceFile(entity_id, SourceKind.TEMPLATE, Path(entity_id), hash_bytes(data), 0, data)


def test_key_covers_transitive_dependencies():
    graph = DependencyGraph()
    graph.insert_or_replace(node("page", b"page"))
    graph.insert_or_replace(node("layout", b"layout"))
    graph.insert_or_replace(node("nav", b"nav"))
    graph.add_edge("page", "layout", EdgeKind.EXTENDS)
    graph.add_edge("layout", "nav", EdgeKind.INCLUDES)

    render = derive_key(graph, "page", "render")
    parse = derive_key(graph, "page", "parse")
    assert derive_key(graph, "page", "render") == render

    graph.insert_or_replace(node("nav", b"nav v2"))
    graph.add_edge("layout", "nav", EdgeKind.INCLUDES)
    assert derive_key(graph, "page", "render") != render
    assert derive_key(graph, "page", "parse") == parse
    assert derive_key(graph, "page", "render", "other-config") != derive_key(graph, "page", "render")

    manifest = ["content/section.yaml", "abc"]
    assert derive_key(graph, "page", "parse", extra=manifest) != parse
    assert derive_key(graph, "page", "render", extra=manifest) != derive_key(graph, "page", "render")


def test_key_changes_when_missing_dependency_appears():
    graph = DependencyGraph()
    graph.insert_or_replace(node("page", b"page"))
    graph.add_edge("page", "layout", EdgeKind.EXTENDS, optional=True)
    before = derive_key(graph, "page", "render")

    graph.insert_or_replace(node("layout", b"layout"))
    assert derive_key(graph, "page", "render") != before

    with pytest.raises(KeyError):
        derive_key(graph, "ghost", "render")
    with pytest.raises(ValueError):
        CacheKey("page", "abc", "bake")


def test_get_or_compute_is_single_flight():
    cache = BuildCache()
    key = CacheKey("templates/_nav.html", "d1", "render")
    calls = []
    barrier = threading.Barrier(8)
    results = []

    def compute():
        calls.append(1)
        time.sleep(0.05)
        return "rendered"

    def worker():
        barrier.wait()
        results.append(cache.get_or_compute(key, compute))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(calls) == 1
    assert [value for value, _ in results] == ["rendered"] * 8
    assert sum(1 for _, computed in results if computed) == 1
    assert cache.computations[key] == 1
    assert cache.misses == 1
    assert cache.hits == 7


def test_failures_are_not_cached():
    cache = BuildCache()
    key = CacheKey("a", "d1", "render")
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("boom")
        return 42

    with pytest.raises(RuntimeError):
        cache.get_or_compute(key, flaky)
    assert key not in cache
    assert cache.get_or_compute(key, flaky) == (42, True)
    assert cache.get_or_compute(key, flaky) == (42, False)
    assert len(attempts) == 2


def test_consistency_violations_raise():
    cache = BuildCache()
    cache.get_or_compute(CacheKey("a", "same", "render"), lambda: "x")

    with pytest.raises(CacheConsistencyError):
        cache.get_or_compute(CacheKey("b", "same", "render"), lambda: "y")
    with pytest.raises(CacheConsistencyError):
        cache.get_or_compute(CacheKey("a", "same", "render"), lambda: "x", expect=int)

    wrong_shape = CacheKey("c", "other", "finish")
    with pytest.raises(CacheConsistencyError):
        cache.get_or_compute(wrong_shape, lambda: "not bytes", expect=bytes)
    assert wrong_shape not in cache


def test_retain_evicts_dead_ids_only():
    cache = BuildCache()
    live = CacheKey("live", "d1", "render")
    dead = CacheKey("dead", "d2", "render")
    cache.get_or_compute(live, lambda: 1)
    cache.get_or_compute(dead, lambda: 2)

    assert cache.retain(["live"]) == 1
    assert live in cache
    assert dead not in cache
    assert cache.peek(live) == 1
    assert cache.peek(dead) is None
    assert cache.computations_for("live") == 1
    assert cache.computations_for("live", "finish") == 0
