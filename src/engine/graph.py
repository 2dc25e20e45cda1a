"""Graph module for resource provisioning.

Builds a dependency graph from ResourceSpecs and computes traversal
orderings for create/update (dependencies first) and delete (dependents
first). Building the graph is pure: it either returns a ResourceGraph or
raises ValidationError naming the offending resources.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from engine.errors import ValidationError
from resources import ResourceSpec

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A node in the resource graph with dependency edges.

    Wraps a ResourceSpec and adds graph structure for traversal.

    Attributes:
        spec: The underlying ResourceSpec definition
        dependencies: Nodes this node references (must commit first)
        dependents: Nodes referencing this node
    """
    spec: ResourceSpec
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)

    @property
    def address(self) -> str:
        return self.spec.address

    @property
    def index(self) -> int:
        return self.spec.index

    @property
    def is_root(self) -> bool:
        return len(self.dependencies) == 0

    @property
    def is_leaf(self) -> bool:
        return len(self.dependents) == 0

    def __repr__(self) -> str:
        return f"GraphNode({self.address}, deps={[d.address for d in self.dependencies]})"


class ResourceGraph:
    """Directed acyclic dependency graph over ResourceSpecs.

    Provides ordered traversal for lifecycle operations:
    - topological_order(): dependencies before dependents
    - reverse_order(): dependents before dependencies
    Ties are broken by declaration order.
    """

    def __init__(self, specs: Iterable[ResourceSpec]):
        """Build the graph.

        Args:
            specs: Resource specs in declaration order

        Raises:
            ValidationError: On duplicate addresses, dangling references or cycles
        """
        self._specs = list(specs)
        self._nodes: dict[str, GraphNode] = {}
        self._build_graph()

    def _build_graph(self) -> None:
        for spec in self._specs:
            if spec.address in self._nodes:
                raise ValidationError(f"Duplicate resource address: '{spec.address}'",
                                      address=spec.address)
            self._nodes[spec.address] = GraphNode(spec=spec)

        # Dangling references are reported together
        missing: list[str] = []
        offenders: list[str] = []
        for spec in self._specs:
            for dep in spec.dependencies:
                if dep not in self._nodes:
                    missing.append(f"'{spec.address}' references unknown resource '{dep}'")
                    if spec.address not in offenders:
                        offenders.append(spec.address)
        if missing:
            raise ValidationError(
                "Missing references: " + '; '.join(missing),
                address=offenders[0],
                addresses=offenders,
            )

        for spec in self._specs:
            node = self._nodes[spec.address]
            for dep in spec.dependencies:
                dep_node = self._nodes[dep]
                node.dependencies.append(dep_node)
                dep_node.dependents.append(node)

        cycle = self._find_cycle()
        if cycle:
            raise ValidationError(
                f"Cycle detected in resource graph involving '{cycle[0]}': "
                + ' -> '.join(cycle + [cycle[0]]),
                address=cycle[0],
                addresses=cycle,
            )

    def _find_cycle(self) -> Optional[list[str]]:
        """Return the first cycle found by DFS in declaration order, if any."""
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def _visit(node: GraphNode) -> Optional[list[str]]:
            visited.add(node.address)
            stack.append(node.address)
            on_stack.add(node.address)
            for dep in node.dependencies:
                if dep.address in on_stack:
                    return stack[stack.index(dep.address):]
                if dep.address not in visited:
                    found = _visit(dep)
                    if found:
                        return found
            stack.pop()
            on_stack.discard(node.address)
            return None

        for spec in self._specs:
            if spec.address not in visited:
                found = _visit(self._nodes[spec.address])
                if found:
                    return found
        return None

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    @property
    def specs(self) -> list[ResourceSpec]:
        return list(self._specs)

    @property
    def addresses(self) -> list[str]:
        return [spec.address for spec in self._specs]

    @property
    def roots(self) -> list[GraphNode]:
        """Nodes with no dependencies."""
        return [self._nodes[s.address] for s in self._specs if self._nodes[s.address].is_root]

    def get_node(self, address: str) -> GraphNode:
        """Get a GraphNode by address.

        Raises:
            KeyError: If address not found
        """
        return self._nodes[address]

    def topological_order(self) -> list[GraphNode]:
        """Return nodes with dependencies before dependents.

        Kahn's algorithm with a declaration-order priority queue, so
        independent nodes keep the order they were declared in.
        """
        in_degree = {address: len(node.dependencies) for address, node in self._nodes.items()}
        ready = [(node.index, node.address) for node in self._nodes.values() if in_degree[node.address] == 0]
        heapq.heapify(ready)

        ordered: list[GraphNode] = []
        while ready:
            _, address = heapq.heappop(ready)
            node = self._nodes[address]
            ordered.append(node)
            for dependent in node.dependents:
                in_degree[dependent.address] -= 1
                if in_degree[dependent.address] == 0:
                    heapq.heappush(ready, (dependent.index, dependent.address))

        return ordered

    def reverse_order(self) -> list[GraphNode]:
        """Return nodes with dependents before dependencies.

        Reverse of topological_order.
        """
        return list(reversed(self.topological_order()))

    def ancestors(self, address: str) -> list[str]:
        """All transitive dependencies of a node, in topological order."""
        seen: set[str] = set()
        pending = [self._nodes[address]]
        while pending:
            node = pending.pop()
            for dep in node.dependencies:
                if dep.address not in seen:
                    seen.add(dep.address)
                    pending.append(dep)
        return [n.address for n in self.topological_order() if n.address in seen]

    def descendants(self, address: str) -> list[str]:
        """All transitive dependents of a node, in topological order."""
        seen: set[str] = set()
        pending = [self._nodes[address]]
        while pending:
            node = pending.pop()
            for dependent in node.dependents:
                if dependent.address not in seen:
                    seen.add(dependent.address)
                    pending.append(dependent)
        return [n.address for n in self.topological_order() if n.address in seen]

    def extract(self, targets: Iterable[str]) -> 'ResourceGraph':
        """Extract the targeted nodes plus their transitive dependencies.

        Args:
            targets: Addresses to keep

        Returns:
            New ResourceGraph over the selected specs (declaration order kept)

        Raises:
            KeyError: If a target address is not in the graph
        """
        keep: set[str] = set()
        for target in targets:
            if target not in self._nodes:
                raise KeyError(target)
            keep.add(target)
            keep.update(self.ancestors(target))
        logger.debug(f"Targeting {len(keep)} of {len(self._nodes)} resources")
        return ResourceGraph(s for s in self._specs if s.address in keep)


def build_graph(specs: Iterable[ResourceSpec]) -> ResourceGraph:
    """Build a ResourceGraph, raising ValidationError on invalid input."""
    graph = ResourceGraph(specs)
    logger.debug(f"Built resource graph with {len(graph)} nodes")
    return graph
