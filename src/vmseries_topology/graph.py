"""Resource graph model and dependency ordering.

The declared topology is an explicit graph: every resource has an identity
(kind + name) and directed "depends-on" edges to other resources. This module
provides:
1. Identity and node types
2. Graph construction with duplicate and dangling-reference checks
3. Cycle detection that reports the offending path
4. Deterministic topological ordering (ties broken by declaration order)

EXAMPLE:
```yaml
- kind: subnet
  name: trust-a
  attributes: {network: trust, region: us-central1, ipCidrRange: 10.1.0.0/24}
```
declares ``subnet/trust-a`` with an implicit edge to ``network/trust``.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """The fixed set of resource kinds in a firewall topology."""

    NETWORK = "network"
    SUBNET = "subnet"
    FIREWALL_RULE = "firewall_rule"
    ROUTE = "route"
    PEERING = "peering"
    INSTANCE_GROUP = "instance_group"
    LOAD_BALANCER = "load_balancer"
    AUTOSCALER = "autoscaler"


class NodeStatus(str, Enum):
    """Reconciliation status of a node within a pass."""

    UNPLANNED = "unplanned"
    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


class ConfigError(Exception):
    """Raised when the declared configuration is malformed.

    Fatal before planning: no provider mutation may happen afterwards.
    """

    pass


class DuplicateIdentityError(ConfigError):
    """Raised when two nodes share kind + name."""

    pass


class DanglingReferenceError(ConfigError):
    """Raised when an edge points at a node that is not in the graph."""

    pass


class CycleDetectedError(Exception):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[ResourceIdentity]) -> None:
        self.cycle = cycle
        path = " -> ".join(str(identity) for identity in cycle)
        super().__init__(f"Circular dependency detected: {path}")


@dataclass(frozen=True, order=True)
class ResourceIdentity:
    """Unique identity of a resource: kind + name."""

    kind: ResourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceIdentity:
        """Parse the ``kind/name`` string form.

        Raises:
            ValueError: If the string is not a valid identity.
        """
        kind, sep, name = value.partition("/")
        if not sep or not name:
            raise ValueError(f"Identity must be 'kind/name': {value!r}")
        try:
            return cls(ResourceKind(kind), name)
        except ValueError as e:
            valid = [k.value for k in ResourceKind]
            raise ValueError(f"Unknown resource kind {kind!r}, expected one of {valid}") from e


@dataclass
class ResourceNode:
    """A declared resource in the topology graph."""

    identity: ResourceIdentity
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[ResourceIdentity] = field(default_factory=list)
    prevent_destroy: bool = False
    declaration_index: int = -1
    status: NodeStatus = NodeStatus.UNPLANNED


class ResourceGraph:
    """Directed acyclic graph of declared resources.

    Edges point from a dependent to its dependency. Node iteration order is
    declaration order.
    """

    def __init__(self) -> None:
        self._nodes: dict[ResourceIdentity, ResourceNode] = {}

    def __contains__(self, identity: object) -> bool:
        return identity in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    @property
    def identities(self) -> list[ResourceIdentity]:
        """All identities in declaration order."""
        return list(self._nodes)

    def node(self, identity: ResourceIdentity) -> ResourceNode:
        """Get a node by identity.

        Raises:
            KeyError: If the identity is not in the graph.
        """
        return self._nodes[identity]

    def get(self, identity: ResourceIdentity) -> ResourceNode | None:
        """Get a node by identity, or None."""
        return self._nodes.get(identity)

    def add_node(self, node: ResourceNode) -> ResourceNode:
        """Add a node to the graph.

        Dependencies already listed on the node are checked by validate(),
        since their targets may be declared later.

        Raises:
            DuplicateIdentityError: If kind + name is already present.
        """
        if node.identity in self._nodes:
            raise DuplicateIdentityError(f"Duplicate resource identity: {node.identity}")
        node.declaration_index = len(self._nodes)
        self._nodes[node.identity] = node
        return node

    def add_edge(self, dependent: ResourceIdentity, dependency: ResourceIdentity) -> None:
        """Record that ``dependent`` depends on ``dependency``.

        Raises:
            DanglingReferenceError: If either endpoint is absent.
        """
        for endpoint in (dependent, dependency):
            if endpoint not in self._nodes:
                raise DanglingReferenceError(
                    f"Edge {dependent} -> {dependency} references unknown resource {endpoint}"
                )
        deps = self._nodes[dependent].depends_on
        if dependency not in deps:
            deps.append(dependency)

    def dependencies(self, identity: ResourceIdentity) -> tuple[ResourceIdentity, ...]:
        """Direct dependencies of a node."""
        return tuple(self._nodes[identity].depends_on)

    def dependents(self, identity: ResourceIdentity) -> tuple[ResourceIdentity, ...]:
        """Direct dependents of a node, in declaration order."""
        return tuple(n.identity for n in self._nodes.values() if identity in n.depends_on)

    def descendants(self, identity: ResourceIdentity) -> set[ResourceIdentity]:
        """All nodes that transitively depend on ``identity``."""
        reverse = self._reverse_edges()
        seen: set[ResourceIdentity] = set()
        stack = list(reverse.get(identity, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(reverse.get(current, ()))
        return seen

    def _reverse_edges(self) -> dict[ResourceIdentity, list[ResourceIdentity]]:
        reverse: dict[ResourceIdentity, list[ResourceIdentity]] = {i: [] for i in self._nodes}
        for node in self._nodes.values():
            for dep in node.depends_on:
                if dep in reverse:
                    reverse[dep].append(node.identity)
        return reverse

    def find_cycle(self) -> list[ResourceIdentity] | None:
        """Return one dependency cycle as a closed path, or None.

        The path starts and ends with the same identity, e.g.
        ``[a, b, c, a]`` for a -> b -> c -> a.
        """
        white, grey, black = 0, 1, 2
        color = {identity: white for identity in self._nodes}

        for root in self._nodes:
            if color[root] != white:
                continue
            path: list[ResourceIdentity] = [root]
            iterators = [iter(self._nodes[root].depends_on)]
            color[root] = grey

            while iterators:
                advanced = False
                for dep in iterators[-1]:
                    if dep not in color:
                        continue
                    if color[dep] == grey:
                        start = path.index(dep)
                        return [*path[start:], dep]
                    if color[dep] == white:
                        color[dep] = grey
                        path.append(dep)
                        iterators.append(iter(self._nodes[dep].depends_on))
                        advanced = True
                        break
                if not advanced:
                    color[path.pop()] = black
                    iterators.pop()

        return None

    def validate(self) -> None:
        """Validate edges and acyclicity.

        Raises:
            DanglingReferenceError: If an edge target is not in the graph.
            CycleDetectedError: If a cycle is detected.
        """
        for node in self._nodes.values():
            for dep in node.depends_on:
                if dep not in self._nodes:
                    raise DanglingReferenceError(
                        f"{node.identity} depends on unknown resource {dep}"
                    )

        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleDetectedError(cycle)

    def topological_order(self) -> list[ResourceIdentity]:
        """Return identities in dependency order (dependencies first).

        Among nodes whose dependencies are all placed, the earliest declared
        goes first, so the ordering is deterministic.

        Raises:
            DanglingReferenceError: If an edge target is not in the graph.
            CycleDetectedError: If a cycle is detected.
        """
        self.validate()

        reverse = self._reverse_edges()
        in_degree = {i: len(set(n.depends_on)) for i, n in self._nodes.items()}

        # Kahn's algorithm keyed by declaration index
        heap = [
            (self._nodes[i].declaration_index, i) for i, degree in in_degree.items() if degree == 0
        ]
        heapq.heapify(heap)
        result: list[ResourceIdentity] = []

        while heap:
            _, current = heapq.heappop(heap)
            result.append(current)
            for dependent in dict.fromkeys(reverse[current]):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self._nodes[dependent].declaration_index, dependent))

        return result

    def reset_status(self, status: NodeStatus = NodeStatus.UNPLANNED) -> None:
        """Reset every node's status at the start of a pass."""
        for node in self._nodes.values():
            node.status = status
