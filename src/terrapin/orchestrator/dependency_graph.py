"""Dependency graph builder for resource ordering."""

import heapq
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from terrapin.declarations.models import DeclarationSet
from terrapin.declarations.ref import ResourceRef
from terrapin.state.models import ResourceState
from terrapin.utils.errors import CycleError, ErrorContext


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    ref: ResourceRef
    order: int  # tie-break position, lower sorts first
    dependencies: Set[ResourceRef] = field(default_factory=set)


class DependencyGraph:
    """Directed graph of resource dependencies.

    Edges point from a dependency to its dependents. Dependencies naming
    resources that are not in the graph are ignored, which lets a graph be
    built over a subset of resources.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[ResourceRef, DependencyNode] = {}

    @classmethod
    def from_declarations(cls, declarations: DeclarationSet) -> "DependencyGraph":
        """Graph over declared resources, ordered by declaration order."""
        graph = cls()
        for declaration in declarations:
            graph.add_resource(declaration.ref, declaration.dependencies, declaration.index)
        return graph

    @classmethod
    def from_state(cls, resources: Iterable[ResourceState]) -> "DependencyGraph":
        """Graph over stored resources using their recorded dependencies."""
        graph = cls()
        for order, state in enumerate(sorted(resources, key=lambda s: s.key)):
            graph.add_resource(state.ref, state.dependency_refs(), order)
        return graph

    def add_resource(self, ref: ResourceRef, dependencies: Iterable[ResourceRef], order: int) -> None:
        """Add or replace a resource node.

        Args:
            ref: Resource reference
            dependencies: Resources this one depends on
            order: Tie-break position
        """
        self.nodes[ref] = DependencyNode(ref=ref, order=order, dependencies=set(dependencies))

    def get_dependencies(self, ref: ResourceRef) -> Set[ResourceRef]:
        """Direct dependencies of a resource that are present in the graph."""
        node = self.nodes.get(ref)
        if node is None:
            return set()
        return {dep for dep in node.dependencies if dep in self.nodes}

    def _dependents_map(self) -> Dict[ResourceRef, Set[ResourceRef]]:
        dependents: Dict[ResourceRef, Set[ResourceRef]] = defaultdict(set)
        for ref in self.nodes:
            for dep in self.get_dependencies(ref):
                dependents[dep].add(ref)
        return dependents

    def get_dependents(self, ref: ResourceRef) -> Set[ResourceRef]:
        """Direct dependents of a resource."""
        return set(self._dependents_map().get(ref, set()))

    def get_all_dependents(self, ref: ResourceRef) -> Set[ResourceRef]:
        """All transitive dependents of a resource."""
        dependents = self._dependents_map()
        visited = set()
        queue = deque([ref])

        while queue:
            current = queue.popleft()
            for dependent in dependents.get(current, ()):
                if dependent not in visited:
                    visited.add(dependent)
                    queue.append(dependent)

        visited.discard(ref)
        return visited

    def _ordered(self, refs: Iterable[ResourceRef]) -> List[ResourceRef]:
        return sorted(refs, key=lambda r: (self.nodes[r].order, r.key))

    def detect_cycle(self) -> Optional[List[ResourceRef]]:
        """Find a dependency cycle.

        Returns:
            References forming the cycle, first element repeated at the end,
            or None if the graph is acyclic
        """
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {ref: 0 for ref in self.nodes}
        parent: Dict[ResourceRef, ResourceRef] = {}
        dependents = self._dependents_map()

        def dfs(ref: ResourceRef) -> Optional[List[ResourceRef]]:
            color[ref] = 1

            for dependent in self._ordered(dependents.get(ref, ())):
                if color[dependent] == 1:
                    # Back edge: walk parents from ref up to the dependent
                    cycle = [dependent]
                    current = ref
                    while current != dependent:
                        cycle.append(current)
                        current = parent[current]
                    cycle.append(dependent)
                    return list(reversed(cycle))

                if color[dependent] == 0:
                    parent[dependent] = ref
                    cycle = dfs(dependent)
                    if cycle:
                        return cycle

            color[ref] = 2
            return None

        for ref in self._ordered(self.nodes):
            if color[ref] == 0:
                cycle = dfs(ref)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the graph is acyclic.

        Raises:
            CycleError: If a dependency cycle exists
        """
        cycle = self.detect_cycle()
        if cycle:
            keys = [ref.key for ref in cycle]
            raise CycleError(
                f"Dependency cycle detected: {' -> '.join(keys)}",
                cycle=keys,
                context=ErrorContext(resource_id=keys[0]),
                suggestions=["Remove one of the depends_on entries or references in the cycle"]
            )

    def topological_sort(self) -> List[ResourceRef]:
        """Dependencies before dependents, ties broken by node order.

        Raises:
            CycleError: If graph contains cycles
        """
        self.validate()

        dependents = self._dependents_map()
        in_degree = {ref: len(self.get_dependencies(ref)) for ref in self.nodes}
        heap = [(self.nodes[ref].order, ref.key, ref) for ref, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            _, _, ref = heapq.heappop(heap)
            result.append(ref)

            for dependent in dependents.get(ref, ()):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self.nodes[dependent].order, dependent.key, dependent))

        return result

    def ranks(self) -> Dict[ResourceRef, int]:
        """Longest path length from a root (a node with no dependencies)."""
        ranks: Dict[ResourceRef, int] = {}
        for ref in self.topological_sort():
            deps = self.get_dependencies(ref)
            ranks[ref] = 1 + max(ranks[dep] for dep in deps) if deps else 0
        return ranks

    def reverse_ranks(self) -> Dict[ResourceRef, int]:
        """Longest path length from a leaf (a node nothing depends on)."""
        dependents = self._dependents_map()
        ranks: Dict[ResourceRef, int] = {}
        for ref in reversed(self.topological_sort()):
            children = dependents.get(ref, set())
            ranks[ref] = 1 + max(ranks[child] for child in children) if children else 0
        return ranks

    def get_destruction_order(self) -> List[ResourceRef]:
        """Dependents before dependencies, ties broken by node order."""
        self.validate()

        dependents = self._dependents_map()
        out_degree = {ref: len(dependents.get(ref, ())) for ref in self.nodes}
        heap = [(self.nodes[ref].order, ref.key, ref) for ref, degree in out_degree.items() if degree == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            _, _, ref = heapq.heappop(heap)
            result.append(ref)

            for dep in self.get_dependencies(ref):
                out_degree[dep] -= 1
                if out_degree[dep] == 0:
                    heapq.heappush(heap, (self.nodes[dep].order, dep.key, dep))

        return result
