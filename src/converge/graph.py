"""Dependency graph construction, cycle detection and ordering.

Edges point from a resource to the resources it requires:
1. Explicit ``dependsOn`` references
2. The resource's scope
3. Zone coupling: an endpoint requires every zone it joins, and a private
   zone requires every network scope it links to

References that are not declared in the plan become external nodes. The
validator must prove that every external node exists before planning.

Ordering is a depth-first postorder over requires edges. Roots and edges are
visited in declaration order, so the same document always produces the same
order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .models import (
    ConvergeError,
    DeclaredState,
    ExistingResourceRef,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)

logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


class CycleError(ConvergeError):
    """Raised when the requires edges form a cycle.

    Attributes:
        cycle: Keys along the cycle, first key repeated at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


@dataclass
class GraphNode:
    """A node in the dependency graph."""

    ref: ResourceRef
    resource: ResourceSpec | None = None
    existing: ExistingResourceRef | None = None
    requires: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.ref.key

    @property
    def external(self) -> bool:
        """True when the plan does not manage this resource."""
        return self.resource is None


@dataclass
class DependencyGraph:
    """Directed graph of resources and their requirements."""

    nodes: dict[str, GraphNode] = field(default_factory=dict)

    def add_node(
        self,
        ref: ResourceRef,
        resource: ResourceSpec | None = None,
        existing: ExistingResourceRef | None = None,
    ) -> GraphNode:
        """Add a node, or fill in a placeholder created by an earlier edge."""
        node = self.nodes.get(ref.key)
        if node is None:
            node = GraphNode(ref=ref, resource=resource, existing=existing)
            self.nodes[ref.key] = node
        else:
            if resource is not None:
                node.resource = resource
            if existing is not None:
                node.existing = existing
        return node

    def add_edge(self, source: str, target: ResourceRef) -> None:
        """Record that ``source`` requires ``target``."""
        if target.key not in self.nodes:
            self.add_node(target)
        requires = self.nodes[source].requires
        if target.key not in requires:
            requires.append(target.key)

    def __contains__(self, key: str) -> bool:
        return key in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def managed_keys(self) -> list[str]:
        return [k for k, n in self.nodes.items() if not n.external]

    def external_nodes(self) -> list[GraphNode]:
        return [n for n in self.nodes.values() if n.external]

    def requires(self, key: str) -> list[str]:
        return list(self.nodes[key].requires)

    def dependents(self, key: str) -> list[str]:
        """Direct dependents of a node, in declaration order."""
        return [k for k, n in self.nodes.items() if key in n.requires]

    def transitive_dependents(self, key: str) -> set[str]:
        """Every node that directly or indirectly requires ``key``."""
        reverse: dict[str, list[str]] = {k: [] for k in self.nodes}
        for k, node in self.nodes.items():
            for dep in node.requires:
                reverse[dep].append(k)

        found: set[str] = set()
        pending = list(reverse[key])
        while pending:
            current = pending.pop()
            if current in found:
                continue
            found.add(current)
            pending.extend(reverse[current])
        return found

    def find_cycle(self) -> list[str] | None:
        """Three-color DFS; returns the first cycle found or None."""
        color = {k: _WHITE for k in self.nodes}

        for root in self.nodes:
            if color[root] != _WHITE:
                continue
            color[root] = _GRAY
            path = [root]
            stack = [iter(self.nodes[root].requires)]

            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    color[path.pop()] = _BLACK
                    stack.pop()
                    continue
                if color[nxt] == _GRAY:
                    return path[path.index(nxt) :] + [nxt]
                if color[nxt] == _WHITE:
                    color[nxt] = _GRAY
                    path.append(nxt)
                    stack.append(iter(self.nodes[nxt].requires))

        return None

    def validate(self) -> None:
        """Raise CycleError if the graph has a cycle."""
        cycle = self.find_cycle()
        if cycle:
            logger.error("Dependency cycle detected", extra={"cycle": cycle})
            raise CycleError(cycle)

    def topological_order(self, include_external: bool = False) -> list[str]:
        """Keys in dependency order (requirements first).

        Raises:
            CycleError: If a cycle is detected.
        """
        self.validate()

        visited: set[str] = set()
        order: list[str] = []

        for root in self.nodes:
            if root in visited:
                continue
            visited.add(root)
            path = [root]
            stack = [iter(self.nodes[root].requires)]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    order.append(path.pop())
                    stack.pop()
                    continue
                if nxt not in visited:
                    visited.add(nxt)
                    path.append(nxt)
                    stack.append(iter(self.nodes[nxt].requires))

        if include_external:
            return order
        return [k for k in order if not self.nodes[k].external]

    def reverse_order(self, keys: Iterable[str] | None = None) -> list[str]:
        """Keys with dependents before requirements (teardown order)."""
        selected = set(keys) if keys is not None else None
        order = list(reversed(self.topological_order()))
        if selected is None:
            return order
        return [k for k in order if k in selected]


def build_graph(state: DeclaredState) -> DependencyGraph:
    """Build and validate the dependency graph for a declared state.

    Raises:
        CycleError: If the requires edges form a cycle.
    """
    graph = DependencyGraph()

    for resource in state.resources:
        graph.add_node(resource.ref, resource=resource)
    for existing in state.existing:
        graph.add_node(existing.ref, existing=existing)

    for resource in state.resources:
        key = resource.key
        for dep in resource.dependency_refs():
            graph.add_edge(key, dep)

        if resource.scope is not None:
            graph.add_edge(key, ResourceRef(ResourceKind.SCOPE, None, resource.scope))

        for zone in resource.joined_zone_refs():
            graph.add_edge(key, zone)

        for network_scope in resource.linked_networks():
            if network_scope != resource.scope:
                graph.add_edge(key, ResourceRef(ResourceKind.SCOPE, None, network_scope))

        # Secret references need the store before the consumer
        for secret in resource.secret_refs():
            if secret.store_ref.key != key:
                graph.add_edge(key, secret.store_ref)

    graph.validate()

    logger.debug(
        "Dependency graph built",
        extra={
            "managed": len(graph.managed_keys()),
            "external": len(graph.external_nodes()),
        },
    )
    return graph
