"""Dependency graph construction.

Resolves a root description's input references against a catalog into an
execution graph: a DAG of descriptions keyed by content address. Addresses
are computed bottom-up, since a node's address covers the resolved
addresses of its inputs.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from storebuild.builds.cache_key import compute_address
from storebuild.builds.description import BuildDescription, Catalog

logger = logging.getLogger(__name__)


class CyclicDependency(Exception):
    """Raised when following input references leads back to a node in progress."""

    def __init__(self, cycle: list[str], code: str = "cyclic_dependency") -> None:
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")
        self.cycle = cycle
        self.code = code


class UnresolvedReference(Exception):
    """Raised when an input reference does not name a known description."""

    def __init__(
        self,
        target: str,
        referrer: str,
        binding: str,
        code: str = "unresolved_reference",
    ) -> None:
        super().__init__(
            f"{referrer}: input {binding!r} references unknown description {target!r}"
        )
        self.target = target
        self.referrer = referrer
        self.binding = binding
        self.code = code


class _Mark(Enum):
    IN_PROGRESS = 1
    DONE = 2


@dataclass(frozen=True)
class GraphNode:
    """A resolved description in an execution graph.

    Attributes:
        address: Content address of the node.
        description: The description.
        inputs: Sorted ``(binding, address)`` pairs of resolved inputs.
    """

    address: str
    description: BuildDescription
    inputs: tuple[tuple[str, str], ...] = ()

    @property
    def name(self) -> str:
        return self.description.name

    @property
    def input_addresses(self) -> dict[str, str]:
        return dict(self.inputs)


@dataclass
class ExecutionGraph:
    """DAG of descriptions reachable from a root, keyed by address."""

    root: str
    nodes: dict[str, GraphNode] = field(default_factory=dict)

    def __contains__(self, address: object) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies(self, address: str) -> set[str]:
        """Return the direct dependency addresses of a node."""
        return {dep for _, dep in self.nodes[address].inputs}

    def dependents(self, address: str) -> set[str]:
        """Return the addresses of nodes that directly depend on a node."""
        return {a for a in self.nodes if address in self.dependencies(a)}

    def dependents_map(self) -> dict[str, set[str]]:
        """Return the reverse adjacency of the whole graph."""
        reverse: dict[str, set[str]] = {address: set() for address in self.nodes}
        for address in self.nodes:
            for dep in self.dependencies(address):
                reverse[dep].add(address)
        return reverse

    def transitive_dependents(self, address: str) -> set[str]:
        """Return every node reachable by following dependents from a node."""
        reverse = self.dependents_map()
        seen: set[str] = set()
        queue = deque(reverse[address])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(reverse[current] - seen)
        return seen

    def topological_order(self) -> list[str]:
        """Return addresses with every dependency before its dependents.

        Ties are broken by name then address so the order is stable.
        """
        reverse = self.dependents_map()
        remaining = {a: len(self.dependencies(a)) for a in self.nodes}

        def sort_key(address: str) -> tuple[str, str]:
            return (self.nodes[address].name, address)

        ready = sorted((a for a, n in remaining.items() if n == 0), key=sort_key)
        order: list[str] = []
        while ready:
            address = ready.pop(0)
            order.append(address)
            for dependent in reverse[address]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)
            ready.sort(key=sort_key)
        return order


def build_graph(root: str | BuildDescription, catalog: Catalog) -> ExecutionGraph:
    """Resolve a root description into an execution graph.

    Depth-first traversal of input references with three-colour marking.
    Descriptions resolving to the same address share one node.

    Args:
        root: Root description, or the catalog name of one.
        catalog: Descriptions that references are resolved against.

    Returns:
        The execution graph.

    Raises:
        CyclicDependency: If a reference leads back to a node in progress.
        UnresolvedReference: If a reference names no known description.
        DuplicateDescriptionError: If ``root`` clashes with a catalog entry.
    """
    if isinstance(root, BuildDescription):
        catalog = catalog.copy()
        catalog.add(root)
        root_name = root.name
    else:
        root_name = root
        if root_name not in catalog:
            raise UnresolvedReference(root_name, referrer="<request>", binding="root")

    marks: dict[str, _Mark] = {}
    addresses: dict[str, str] = {}
    path: list[str] = []
    nodes: dict[str, GraphNode] = {}

    def visit(name: str) -> str:
        mark = marks.get(name)
        if mark is _Mark.DONE:
            return addresses[name]
        if mark is _Mark.IN_PROGRESS:
            raise CyclicDependency(path[path.index(name) :] + [name])

        description = catalog.get(name)
        if description is None:
            raise ValueError(f"Description {name!r} vanished from catalog")

        marks[name] = _Mark.IN_PROGRESS
        path.append(name)

        resolved: dict[str, str] = {}
        for binding, target in description.inputs:
            if target not in catalog:
                raise UnresolvedReference(target, referrer=name, binding=binding)
            resolved[binding] = visit(target)

        path.pop()
        marks[name] = _Mark.DONE

        address = compute_address(description, resolved)
        addresses[name] = address
        if address not in nodes:
            nodes[address] = GraphNode(
                address=address,
                description=description,
                inputs=tuple(sorted(resolved.items())),
            )
        return address

    root_address = visit(root_name)
    logger.debug("Resolved %s into %d node(s)", root_name, len(nodes))
    return ExecutionGraph(root=root_address, nodes=nodes)


__all__ = [
    "CyclicDependency",
    "ExecutionGraph",
    "GraphNode",
    "UnresolvedReference",
    "build_graph",
]
