"""Resource dependency graph construction and validation.

This module turns a desired resource set into a dependency graph:
1. Every ResourceRef in a resource's attributes becomes an edge
2. Every explicit depends_on entry becomes an edge
3. Unknown targets are rejected (UnresolvedReferenceError)
4. Cycles are rejected (CyclicDependencyError)

Resources are kept in an arena indexed by key and edges are stored as
(from, to) index pairs: ``from`` must be created/updated after ``to`` and
destroyed before it. The graph holds no object references between
resources, so it can be shared read-only across workers.

EXAMPLE:
```python
vpc = Resource(kind="aws_vpc", name="main", attributes={"cidr_block": "10.0.0.0/16"})
subnet = Resource(
    kind="aws_subnet",
    name="a",
    attributes={"vpc_id": ResourceRef(kind="aws_vpc", name="main")},
)
graph = build_graph([vpc, subnet])
graph.dependencies(subnet.key)  # [aws_vpc.main]
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from .errors import CyclicDependencyError, DuplicateResourceError, UnresolvedReferenceError
from .models import UNKNOWN, Resource, ResourceKey, ResourceRef
from .paths import MISSING, get_path

logger = logging.getLogger(__name__)

# DFS node colors
_WHITE = 0
_GREY = 1  # on the recursion stack
_BLACK = 2


class ResourceGraph:
    """Directed acyclic graph of resources.

    Build instances with build_graph(); the constructor does not validate.
    """

    def __init__(self, resources: Iterable[Resource], edges: Iterable[tuple[int, int]]) -> None:
        self._nodes: list[Resource] = list(resources)
        self._index: dict[ResourceKey, int] = {
            resource.key: i for i, resource in enumerate(self._nodes)
        }
        self._edges: list[tuple[int, int]] = []
        self._deps: list[list[int]] = [[] for _ in self._nodes]
        self._dependents: list[list[int]] = [[] for _ in self._nodes]

        seen: set[tuple[int, int]] = set()
        for edge in edges:
            if edge in seen:
                continue
            seen.add(edge)
            src, dst = edge
            self._edges.append(edge)
            self._deps[src].append(dst)
            self._dependents[dst].append(src)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def __iter__(self) -> Iterator[Resource]:
        return iter(self._nodes)

    @property
    def edges(self) -> list[tuple[ResourceKey, ResourceKey]]:
        """Edges as (dependent, dependency) key pairs."""
        return [(self._nodes[src].key, self._nodes[dst].key) for src, dst in self._edges]

    def keys(self) -> list[ResourceKey]:
        return [resource.key for resource in self._nodes]

    def resource(self, key: ResourceKey) -> Resource:
        """Return the resource for a key.

        Raises:
            KeyError: If the key is not in the graph.
        """
        return self._nodes[self._index[key]]

    def dependencies(self, key: ResourceKey) -> list[ResourceKey]:
        """Direct dependencies of a resource, in declaration order."""
        return [self._nodes[i].key for i in self._deps[self._index[key]]]

    def dependents(self, key: ResourceKey) -> list[ResourceKey]:
        """Resources that directly depend on ``key``."""
        return [self._nodes[i].key for i in self._dependents[self._index[key]]]

    def transitive_dependencies(self, key: ResourceKey) -> set[ResourceKey]:
        return {self._nodes[i].key for i in self._walk(self._index[key], self._deps)}

    def transitive_dependents(self, key: ResourceKey) -> set[ResourceKey]:
        return {self._nodes[i].key for i in self._walk(self._index[key], self._dependents)}

    def _walk(self, start: int, adjacency: list[list[int]]) -> set[int]:
        visited: set[int] = set()
        pending = list(adjacency[start])
        while pending:
            current = pending.pop()
            if current in visited:
                continue
            visited.add(current)
            pending.extend(adjacency[current])
        return visited

    def find_cycle(self) -> list[ResourceKey] | None:
        """Find a cycle using DFS with recursion-stack marking.

        Returns:
            Cycle members in encounter order, or None if the graph is acyclic.
        """
        color = [_WHITE] * len(self._nodes)

        for root in range(len(self._nodes)):
            if color[root] != _WHITE:
                continue

            # Iterative DFS: stack of (node, next dependency position)
            stack: list[tuple[int, int]] = [(root, 0)]
            path: list[int] = [root]
            color[root] = _GREY

            while stack:
                node, pos = stack[-1]
                if pos < len(self._deps[node]):
                    stack[-1] = (node, pos + 1)
                    dep = self._deps[node][pos]
                    if color[dep] == _GREY:
                        start = path.index(dep)
                        return [self._nodes[i].key for i in path[start:]]
                    if color[dep] == _WHITE:
                        color[dep] = _GREY
                        stack.append((dep, 0))
                        path.append(dep)
                else:
                    color[node] = _BLACK
                    stack.pop()
                    path.pop()

        return None

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CyclicDependencyError(cycle)

    def topological_order(self) -> list[ResourceKey]:
        """Return keys in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        in_degree = [len(deps) for deps in self._deps]
        ready = sorted(
            (i for i, degree in enumerate(in_degree) if degree == 0),
            key=lambda i: self._nodes[i].key,
        )
        result: list[ResourceKey] = []

        while ready:
            current = ready.pop(0)
            result.append(self._nodes[current].key)

            released = []
            for dependent in self._dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    released.append(dependent)
            ready.extend(released)
            # Sort for deterministic ordering among nodes with same in_degree
            ready.sort(key=lambda i: self._nodes[i].key)

        return result

    def resolve_desired(self, value: Any, _seen: frozenset[ResourceKey] = frozenset()) -> Any:
        """Resolve references against the desired attributes of their targets.

        Handle references and references to attributes not present in the
        target's configuration resolve to UNKNOWN.
        """
        if isinstance(value, ResourceRef):
            if value.targets_handle or value.key in _seen or value.key not in self:
                return UNKNOWN
            target = self.resource(value.key)
            found = get_path(target.attributes, value.attribute_path)
            if found is MISSING:
                return UNKNOWN
            return self.resolve_desired(found, _seen | {value.key})
        if isinstance(value, Mapping):
            return {k: self.resolve_desired(v, _seen) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [self.resolve_desired(v, _seen) for v in value]
        return value


def build_graph(resources: Iterable[Resource]) -> ResourceGraph:
    """Build and validate a dependency graph from a resource set.

    Args:
        resources: Desired resources. Not mutated.

    Returns:
        Validated, acyclic ResourceGraph.

    Raises:
        DuplicateResourceError: If two resources share a key.
        UnresolvedReferenceError: If a reference or depends_on target is missing.
        CyclicDependencyError: If the dependencies form a cycle.
    """
    nodes = list(resources)
    index: dict[ResourceKey, int] = {}
    for i, resource in enumerate(nodes):
        if resource.key in index:
            raise DuplicateResourceError(resource.key)
        index[resource.key] = i

    edges: list[tuple[int, int]] = []
    for i, resource in enumerate(nodes):
        for ref in resource.references():
            target = index.get(ref.key)
            if target is None:
                raise UnresolvedReferenceError(resource.key, ref)
            edges.append((i, target))

        for dep_key in resource.depends_on:
            target = index.get(dep_key)
            if target is None:
                raise UnresolvedReferenceError(resource.key, dep_key)
            edges.append((i, target))

    graph = ResourceGraph(nodes, edges)
    graph.validate()

    logger.debug(
        "Built resource graph",
        extra={"resources": len(graph), "edges": len(graph.edges)},
    )
    return graph
