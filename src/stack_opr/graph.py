"""Graph module for stack-based provisioning.

Builds a dependency DAG from Stack.resources and computes traversal
orderings for create (producers first) and destroy (consumers first).
Edges come from references in properties and from explicit depends_on.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from errors import CyclicDependencyError, UnresolvedReferenceError, ValidationError
from providers.types import get_type
from stack import Resource, Stack

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphNode:
    """A node in the resource graph.

    Attributes:
        resource: The underlying Resource declaration
        dependencies: Logical ids this node depends on (producers)
        dependents: Logical ids depending on this node (consumers)
        position: Index in the topological order
    """
    resource: Resource
    dependencies: tuple[str, ...] = ()
    dependents: tuple[str, ...] = ()
    position: int = 0

    @property
    def logical_id(self) -> str:
        return self.resource.logical_id

    @property
    def type(self) -> str:
        return self.resource.type

    def __repr__(self) -> str:
        return f"GraphNode({self.logical_id}, type={self.type}, position={self.position})"


def find_cycle(ids: Iterable[str], deps: Mapping[str, Iterable[str]]) -> list[str]:
    """Return one cycle as [a, b, ..., a], or [] if the graph is acyclic."""
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def _visit(node: str) -> list[str]:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for dep in deps.get(node, ()):
            if dep in on_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                cycle = _visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        on_stack.discard(node)
        return []

    for node in ids:
        if node not in visited:
            cycle = _visit(node)
            if cycle:
                return cycle
    return []


def order_ids(ids: list[str], deps: Mapping[str, Iterable[str]]) -> list[str]:
    """Topologically order ids so every dependency precedes its dependent.

    Ties are broken by position in ids. Dependencies outside ids are ignored.

    Raises:
        CyclicDependencyError: If the edges among ids form a cycle
    """
    rank = {node: i for i, node in enumerate(ids)}
    indegree = {node: 0 for node in ids}
    consumers: dict[str, list[str]] = {node: [] for node in ids}
    for node in ids:
        for dep in set(deps.get(node, ())):
            if dep in rank and dep != node:
                indegree[node] += 1
                consumers[dep].append(node)
            elif dep == node:
                raise CyclicDependencyError([node, node])

    ready = [rank[node] for node in ids if indegree[node] == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        node = ids[heapq.heappop(ready)]
        ordered.append(node)
        for consumer in consumers[node]:
            indegree[consumer] -= 1
            if indegree[consumer] == 0:
                heapq.heappush(ready, rank[consumer])

    if len(ordered) != len(ids):
        remaining = [n for n in ids if n not in set(ordered)]
        cycle = find_cycle(remaining, {n: [d for d in deps.get(n, ()) if d in remaining]
                                       for n in remaining})
        raise CyclicDependencyError(cycle or remaining)
    return ordered


class ResourceGraph:
    """Immutable dependency graph built from a Stack.

    Provides ordered traversal for lifecycle operations:
    - create_order(): producers before consumers
    - destroy_order(): consumers before producers
    """

    def __init__(self, stack: Stack):
        """Build the graph.

        Raises:
            ValidationError: If logical ids are not unique
            UnresolvedReferenceError: If a reference or depends_on names a
                missing resource, or a reference names a missing output attribute
            CyclicDependencyError: If the edges form a cycle
        """
        self.stack = stack
        self._nodes: dict[str, GraphNode] = {}
        self._order: tuple[str, ...] = ()
        self._build_graph(stack.resources)

    def _build_graph(self, resources: list[Resource]) -> None:
        declared: dict[str, Resource] = {}
        for resource in resources:
            if resource.logical_id in declared:
                raise ValidationError("Duplicate logical id", logical_id=resource.logical_id)
            declared[resource.logical_id] = resource

        # Resolve references and explicit dependencies into edges
        deps: dict[str, list[str]] = {}
        for resource in resources:
            edges: list[str] = []
            for ref in resource.references():
                producer = declared.get(ref.resource)
                if producer is None:
                    raise UnresolvedReferenceError(
                        f"Reference {ref} names unknown resource '{ref.resource}'",
                        logical_id=resource.logical_id, target=ref.resource,
                    )
                if not get_type(producer.type).has_output(ref.attribute):
                    raise UnresolvedReferenceError(
                        f"Reference {ref}: {producer.type} has no output '{ref.attribute}'",
                        logical_id=resource.logical_id, target=ref.resource,
                        attribute=ref.attribute,
                    )
                if ref.resource not in edges:
                    edges.append(ref.resource)
            for dep in resource.depends_on:
                if dep not in declared:
                    raise UnresolvedReferenceError(
                        f"depends_on names unknown resource '{dep}'",
                        logical_id=resource.logical_id, target=dep,
                    )
                if dep not in edges:
                    edges.append(dep)
            deps[resource.logical_id] = edges

        order = order_ids(list(declared), deps)

        dependents: dict[str, list[str]] = {lid: [] for lid in declared}
        for lid in order:
            for dep in deps[lid]:
                dependents[dep].append(lid)

        for position, lid in enumerate(order):
            self._nodes[lid] = GraphNode(
                resource=declared[lid],
                dependencies=tuple(deps[lid]),
                dependents=tuple(dependents[lid]),
                position=position,
            )
        self._order = tuple(order)
        logger.debug(f"Built graph for stack '{self.stack.name}': {len(order)} resources")

    @property
    def logical_ids(self) -> tuple[str, ...]:
        """Logical ids in topological order."""
        return self._order

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, logical_id: str) -> GraphNode:
        """Get a node by logical id.

        Raises:
            KeyError: If logical id not found
        """
        return self._nodes[logical_id]

    def dependencies_of(self, logical_id: str) -> tuple[str, ...]:
        return self._nodes[logical_id].dependencies

    def dependents_of(self, logical_id: str) -> tuple[str, ...]:
        return self._nodes[logical_id].dependents

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (producers before consumers).

        Ties between independent nodes are broken by declaration order.
        """
        return [self._nodes[lid] for lid in self._order]

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (consumers before producers).

        Reverse of create_order.
        """
        return list(reversed(self.create_order()))
