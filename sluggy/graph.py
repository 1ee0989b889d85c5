"""Dependency graph for Sluggy.

Nodes are SourceFiles keyed by id; edges point from an entity to the entity
its render depends on. A reverse index is kept alongside the forward edges so
that dirty propagation is a breadth-first walk, and it deliberately survives
the removal of a node: edges into a removed id are how its dependents learn
that it is gone.

Key classes:
- EdgeKind: Includes, Extends, UsesData, BundledIn, UsesSection or Lists.
- DependencyEdge: One typed edge.
- DependencyGraph: Mutation, traversal, ordering and cycle detection.
"""

from __future__ import annotations

import heapq
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from .errors import CycleError
from .scanner import SourceFile


class EdgeKind(str, Enum):
    """Kind of a dependency edge."""

    INCLUDES = "includes"
    EXTENDS = "extends"
    USES_DATA = "uses_data"
    BUNDLED_IN = "bundled_in"
    USES_SECTION = "uses_section"
    LISTS = "lists"


# Edge kinds that must never form a loop.
CYCLE_KINDS = frozenset({EdgeKind.INCLUDES, EdgeKind.EXTENDS, EdgeKind.BUNDLED_IN})

# Edge kinds whose target must render before the source. A section lists its
# entries by their parse results, so LISTS only propagates changes.
ORDERING_KINDS = frozenset(EdgeKind) - {EdgeKind.LISTS}


@dataclass(frozen=True, order=True)
class DependencyEdge:
    """``source`` depends on ``target``.

    Attributes:
        source: Id of the dependent entity.
        target: Id of the entity it depends on.
        kind: Relationship kind.
        optional: A missing target is not an error (implicit default layout,
            data lookups).
    """

    source: str
    target: str
    kind: EdgeKind
    optional: bool = False


class DependencyGraph:
    """Directed graph of build-time relationships between source entities.

    Not synchronised: it is only mutated by the orchestrator between render
    phases, and workers only read it while no mutation is in progress.
    """

    def __init__(self):
        self._nodes: dict[str, SourceFile] = {}
        self._out: dict[str, dict[tuple[str, EdgeKind], DependencyEdge]] = {}
        self._in: dict[str, set[str]] = {}

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, entity_id: str) -> SourceFile | None:
        return self._nodes.get(entity_id)

    def ids(self) -> list[str]:
        """All node ids, sorted."""
        return sorted(self._nodes)

    def nodes(self) -> list[SourceFile]:
        return [self._nodes[i] for i in self.ids()]

    def insert_or_replace(self, entity: SourceFile) -> None:
        """Add ``entity``, replacing any node with the same id.

        Outgoing edges of the replaced node are cleared; the adapter that
        parses the entity re-declares them. Edges from other entities into
        this id are kept.
        """
        self._nodes[entity.id] = entity
        self._clear_outgoing(entity.id)

    def add_edge(
        self,
        source: str,
        target: str,
        kind: EdgeKind,
        optional: bool = False,
    ) -> DependencyEdge:
        """Declare that ``source`` depends on ``target``.

        Args:
            source: Id of an existing node.
            target: Id of the dependency; it may not exist (dangling).
            kind: Relationship kind.
            optional: Whether a missing target is acceptable.

        Returns:
            The stored edge.

        Raises:
            KeyError: If ``source`` is not a node.
        """
        if source not in self._nodes:
            raise KeyError(f"Unknown graph node {source!r}")
        edge = DependencyEdge(source, target, kind, optional)
        self._out.setdefault(source, {})[(target, kind)] = edge
        self._in.setdefault(target, set()).add(source)
        return edge

    def set_edges(self, source: str, edges: Iterable[DependencyEdge]) -> None:
        """Replace every outgoing edge of ``source``."""
        self._clear_outgoing(source)
        for edge in edges:
            self.add_edge(source, edge.target, edge.kind, edge.optional)

    def remove(self, entity_id: str) -> None:
        """Drop a node and its outgoing edges; incoming edges become dangling."""
        self._nodes.pop(entity_id, None)
        self._clear_outgoing(entity_id)

    def edges_from(self, entity_id: str) -> list[DependencyEdge]:
        """Outgoing edges of ``entity_id``, sorted."""
        return sorted(self._out.get(entity_id, {}).values())

    def dependents_of(
        self,
        ids: Iterable[str] | str,
        kinds: frozenset[EdgeKind] | None = None,
    ) -> set[str]:
        """Everything with a path to any of ``ids``, excluding ``ids`` themselves.

        Args:
            ids: One id or several.
            kinds: Edge kinds to follow; None follows every kind.

        Returns:
            Set of dependent ids, found by reverse breadth-first traversal.
        """
        start = {ids} if isinstance(ids, str) else set(ids)
        seen: set[str] = set()
        queue = deque(sorted(start))
        while queue:
            current = queue.popleft()
            for dependent in sorted(self._in.get(current, ())):
                if dependent in seen or dependent in start:
                    continue
                if kinds is not None and not any(
                    (current, kind) in self._out.get(dependent, {}) for kind in kinds
                ):
                    continue
                seen.add(dependent)
                queue.append(dependent)
        return seen

    def dependencies_of(self, entity_id: str) -> set[str]:
        """Forward transitive closure of ``entity_id``, including missing targets."""
        seen: set[str] = set()
        stack = [entity_id]
        while stack:
            current = stack.pop()
            for (target, _kind) in self._out.get(current, {}):
                if target not in seen and target != entity_id:
                    seen.add(target)
                    stack.append(target)
        return seen

    def missing_dependencies(self, entity_id: str) -> list[str]:
        """Targets of required edges from ``entity_id`` that do not exist."""
        return sorted(
            {
                edge.target
                for edge in self._out.get(entity_id, {}).values()
                if not edge.optional and edge.target not in self._nodes
            }
        )

    def topological_order(self, subset: Iterable[str] | None = None) -> list[str]:
        """Order ``subset`` so every node follows the nodes it depends on.

        Only ordering edges with both ends inside the subset constrain the
        order; LISTS edges are ignored. Ties are broken by id, so the order
        is deterministic.

        Args:
            subset: Ids to order; defaults to every node.

        Returns:
            Ids, dependencies first.

        Raises:
            CycleError: If the edges inside the subset form a loop.
        """
        members = set(self._nodes if subset is None else subset) & set(self._nodes)
        pending: dict[str, int] = {}
        children: dict[str, list[str]] = {m: [] for m in members}
        for member in members:
            deps = {
                t
                for (t, k) in self._out.get(member, {})
                if t in members and t != member and k in ORDERING_KINDS
            }
            pending[member] = len(deps)
            for dep in deps:
                children[dep].append(member)
            if any(t == member and k in ORDERING_KINDS for (t, k) in self._out.get(member, {})):
                raise CycleError(member, [member, member])

        ready = [m for m, count in pending.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            current = heapq.heappop(ready)
            order.append(current)
            for child in children[current]:
                pending[child] -= 1
                if pending[child] == 0:
                    heapq.heappush(ready, child)

        if len(order) != len(members):
            remaining = members - set(order)
            cycles = self.find_cycles(remaining, kinds=ORDERING_KINDS)
            cycle = cycles[0] if cycles else sorted(remaining)
            raise CycleError(cycle[0], cycle)
        return order

    def find_cycles(
        self,
        subset: Iterable[str] | None = None,
        kinds: frozenset[EdgeKind] | None = CYCLE_KINDS,
    ) -> list[list[str]]:
        """Find one cycle per strongly connected loop.

        Args:
            subset: Only report loops that contain at least one of these ids.
            kinds: Edge kinds to follow; None follows every kind.

        Returns:
            Cycles as id lists starting at their smallest id and ending with
            it again, e.g. ``["a", "b", "a"]``, sorted.
        """
        adjacency = {
            node: sorted(
                t
                for (t, k) in self._out.get(node, {})
                if t in self._nodes and (kinds is None or k in kinds)
            )
            for node in self._nodes
        }
        wanted = None if subset is None else set(subset)
        cycles: list[list[str]] = []
        for component in _strongly_connected(adjacency):
            start = min(component)
            if len(component) == 1 and start not in adjacency[start]:
                continue
            if wanted is not None and not (component & wanted):
                continue
            cycles.append(_cycle_path(adjacency, component, start))
        return sorted(cycles)

    def _clear_outgoing(self, entity_id: str) -> None:
        for (target, _kind) in self._out.pop(entity_id, {}):
            sources = self._in.get(target)
            if sources is None:
                continue
            sources.discard(entity_id)
            if not sources:
                del self._in[target]


def _strongly_connected(adjacency: dict[str, list[str]]) -> list[set[str]]:
    """Iterative Tarjan; returns every strongly connected component."""
    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[set[str]] = []
    counter = 0

    for root in sorted(adjacency):
        if root in index:
            continue
        work = [(root, iter(adjacency[root]))]
        index[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in index:
                    index[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(adjacency[child])))
                    advanced = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index[node]:
                component: set[str] = set()
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.add(member)
                    if member == node:
                        break
                components.append(component)
    return components


def _cycle_path(adjacency: dict[str, list[str]], component: set[str], start: str) -> list[str]:
    """Shortest path from ``start`` back to itself inside ``component``."""
    parents: dict[str, str] = {}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for child in adjacency[current]:
            if child not in component:
                continue
            if child == start:
                path = [current]
                while path[-1] != start:
                    path.append(parents[path[-1]])
                path.reverse()
                return path + [start]
            if child not in parents:
                parents[child] = current
                queue.append(child)
    return [start, start]
