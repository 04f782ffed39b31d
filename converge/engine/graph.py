"""
Converge - Dependency Graph

Expands counted resources into instances, resolves references into
explicit edges and produces a deterministic topological order.
"""

from __future__ import annotations
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
import heapq
import logging

from converge.models import Configuration, ReferenceEdge, ResourceNode
from converge.engine.expressions import COUNT_INDEX, Reference, find_references
from converge.engine.parser import ParseError, resolve_count

logger = logging.getLogger(__name__)


OrderKey = Tuple[int, int]


class CycleError(Exception):
    """Exception raised when resource references form a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        self.message = f"Dependency cycle detected: {' -> '.join(cycle)}"
        super().__init__(self.message)


class DependencyGraph:
    """
    Directed acyclic graph of resource addresses.

    An edge ``A -> B`` means A depends on B. Every node carries an order
    key used to break ties so that ordering is deterministic.
    """

    def __init__(self):
        self.resources: Dict[str, ResourceNode] = {}
        self.instances: Dict[str, List[str]] = {}
        self.edges: List[ReferenceEdge] = []
        self._order: Dict[str, OrderKey] = {}
        self._dependencies: Dict[str, Set[str]] = {}
        self._dependents: Dict[str, Set[str]] = {}

    def __contains__(self, address: object) -> bool:
        return address in self._order

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def add_node(
        self,
        address: str,
        order_key: OrderKey,
        resource: Optional[ResourceNode] = None,
    ) -> None:
        self._order[address] = order_key
        self._dependencies.setdefault(address, set())
        self._dependents.setdefault(address, set())
        if resource is not None:
            self.resources[address] = resource

    def add_edge(self, source: str, target: str, attribute: Optional[str] = None) -> None:
        """Record that ``source`` depends on ``target``."""
        if target in self._dependencies[source]:
            return
        self._dependencies[source].add(target)
        self._dependents[target].add(source)
        self.edges.append(ReferenceEdge(source=source, target=target, attribute=attribute))

    def dependencies(self, address: str) -> List[str]:
        return sorted(self._dependencies.get(address, ()), key=self._order.__getitem__)

    def topological_order(self) -> List[str]:
        """
        Kahn's algorithm; among ready nodes the smallest order key goes first.

        Raises:
            CycleError: If the graph contains a cycle
        """
        remaining = {a: len(deps) for a, deps in self._dependencies.items()}
        ready = [(self._order[a], a) for a, n in remaining.items() if n == 0]
        heapq.heapify(ready)

        result: List[str] = []
        while ready:
            _, address = heapq.heappop(ready)
            result.append(address)
            for dependent in self._dependents[address]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._order[dependent], dependent))

        if len(result) != len(self._order):
            unresolved = {a for a, n in remaining.items() if n > 0}
            raise CycleError(self._find_cycle(unresolved))

        return result

    def reverse_order(self) -> List[str]:
        return list(reversed(self.topological_order()))

    def _find_cycle(self, candidates: Set[str]) -> List[str]:
        """Return one cycle (first node repeated at the end) among candidates."""
        visiting: List[str] = []
        on_path: Set[str] = set()
        done: Set[str] = set()

        def visit(address: str) -> Optional[List[str]]:
            visiting.append(address)
            on_path.add(address)
            for dep in self.dependencies(address):
                if dep not in candidates or dep in done:
                    continue
                if dep in on_path:
                    start = visiting.index(dep)
                    return visiting[start:] + [dep]
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            on_path.discard(address)
            done.add(address)
            return None

        for address in sorted(candidates, key=self._order.__getitem__):
            if address not in done:
                found = visit(address)
                if found:
                    return found
        return sorted(candidates)


class GraphBuilder:
    """
    Builds the dependency graph of a configuration.

    Responsibilities:
    - Expand counted resources into indexed instances
    - Resolve attribute references and depends_on into edges
    - Reject cycles before anything is planned
    """

    def __init__(self):
        """Initialize graph builder."""
        self.logger = logging.getLogger(__name__)

    def build(self, config: Configuration) -> DependencyGraph:
        """
        Build a DAG from a parsed configuration.

        Raises:
            ParseError: If a count cannot be evaluated or a reference
                points at a missing instance
            CycleError: If references form a cycle
        """
        graph = DependencyGraph()

        # Phase 1: count expansion
        for resource in config.resources:
            instances = self.expand(resource, config.variable_values)
            graph.instances[resource.base_address] = [n.address for n in instances]
            for node in instances:
                order_key = (resource.declaration_order, -1 if node.index is None else node.index)
                graph.add_node(node.address, order_key, node)

        # Phase 2: edge resolution
        errors: List[str] = []
        for address, node in graph.resources.items():
            for ref in find_references(node.attributes):
                if ref.kind != "resource":
                    continue
                targets = self._resolve_targets(ref, node, graph, errors)
                for target in targets:
                    graph.add_edge(address, target, ref.attribute)

            for dep in node.depends_on:
                if dep in graph.instances:
                    targets = graph.instances[dep]
                elif dep in graph:
                    targets = [dep]
                else:
                    errors.append(f"{address} depends on missing instance '{dep}'")
                    continue
                for target in targets:
                    graph.add_edge(address, target)

        if errors:
            raise ParseError("Reference resolution failed", errors=errors)

        # Phase 3: cycle check
        order = graph.topological_order()

        self.logger.info(
            f"Built dependency graph: {len(graph)} nodes, {len(graph.edges)} edges"
        )
        self.logger.debug(f"Topological order: {order}")
        return graph

    def expand(self, resource: ResourceNode, variables: Dict[str, Any]) -> List[ResourceNode]:
        """Expand a resource block into its instances."""
        count = resolve_count(resource, variables)
        if count is None:
            return [resource.model_copy(deep=True)]

        self.logger.debug(f"Expanding {resource.base_address} into {count} instances")
        return [
            resource.model_copy(deep=True, update={"index": i})
            for i in range(count)
        ]

    def _resolve_targets(
        self,
        ref: Reference,
        node: ResourceNode,
        graph: DependencyGraph,
        errors: List[str],
    ) -> List[str]:
        base = ref.base_address
        instances = graph.instances.get(base)
        if instances is None:
            errors.append(f"{node.address} references undeclared resource '{base}'")
            return []

        if ref.is_splat:
            return list(instances)

        if ref.index is None:
            if instances != [base]:
                errors.append(
                    f"{node.address} references counted resource '{base}' "
                    f"without an index"
                )
                return []
            return [base]

        index = node.index if ref.index == COUNT_INDEX else ref.index
        target = f"{base}[{index}]"
        if target not in graph:
            errors.append(f"{node.address} references missing instance '{target}'")
            return []
        return [target]
