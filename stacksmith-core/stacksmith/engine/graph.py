import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping, Optional, Union

from stacksmith.engine.entities import ResourceNode
from stacksmith.engine.exceptions import CyclicDependencyError, UnresolvableReferenceError

LOG = logging.getLogger(__name__)

# DFS marks
_UNVISITED = 0
_ON_STACK = 1
_DONE = 2


@dataclass
class DependencyGraph:
    """
    Resource nodes keyed by logical id and their dependency edges. ``edges[consumer]`` is the set of producers
    the consumer depends on, i.e. every producer comes before its consumers in ``order``.
    """

    nodes: dict[str, ResourceNode]
    edges: dict[str, set[str]]
    order: list[str] = field(default_factory=list)

    def __iter__(self) -> Iterator[ResourceNode]:
        for logical_id in self.order:
            yield self.nodes[logical_id]

    def __len__(self):
        return len(self.nodes)

    def dependencies(self, logical_id: str) -> list[str]:
        return sorted(self.edges.get(logical_id, ()))

    def dependents(self, logical_id: str) -> list[str]:
        return sorted(
            consumer for consumer, producers in self.edges.items() if logical_id in producers
        )


def build(nodes: Union[Mapping[str, ResourceNode], Iterable[ResourceNode]]) -> DependencyGraph:
    """
    Builds the dependency graph of the given nodes. Edges are derived from all references in the node
    properties and from the explicit ``depends_on`` sets.

    :raises UnresolvableReferenceError: if a reference or explicit dependency points to an undeclared node
    :raises CyclicDependencyError: if the dependencies form a cycle
    """
    if isinstance(nodes, Mapping):
        nodes_by_id = dict(nodes)
    else:
        nodes_by_id = {node.logical_id: node for node in nodes}

    edges: dict[str, set[str]] = {}
    for logical_id, node in nodes_by_id.items():
        producers = set()
        for reference in node.references():
            if reference.source_node_id not in nodes_by_id:
                raise UnresolvableReferenceError(
                    reference.source_node_id,
                    reference.attribute_name,
                    [logical_id, str(reference)],
                )
            producers.add(reference.source_node_id)
        for dependency in sorted(node.depends_on):
            if dependency not in nodes_by_id:
                raise UnresolvableReferenceError(
                    dependency, "", [f"{logical_id}.DependsOn", dependency]
                )
            producers.add(dependency)
        edges[logical_id] = producers

    if cycle := find_cycle(edges):
        raise CyclicDependencyError(cycle)

    order = topological_order(edges)
    LOG.debug("Dependency order of %d resources: %s", len(order), order)
    return DependencyGraph(nodes=nodes_by_id, edges=edges, order=order)


def find_cycle(edges: Mapping[str, Iterable[str]]) -> Optional[list[str]]:
    """
    Depth-first search for a cycle. Nodes are visited in lexicographic order, so the same graph always reports
    the same cycle.

    :return: the logical ids along the cycle in edge order (e.g. ``["A", "B"]`` for A -> B -> A), or None
    """
    marks = {node: _UNVISITED for node in edges}

    for start in sorted(edges):
        if marks[start] != _UNVISITED:
            continue
        path = [start]
        marks[start] = _ON_STACK
        stack = [iter(sorted(edges[start]))]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                marks[path.pop()] = _DONE
                stack.pop()
                continue
            mark = marks.get(child, _UNVISITED)
            if mark == _ON_STACK:
                return path[path.index(child) :]
            if mark == _UNVISITED:
                marks[child] = _ON_STACK
                path.append(child)
                stack.append(iter(sorted(edges.get(child, ()))))
    return None


def topological_order(edges: Mapping[str, Iterable[str]]) -> list[str]:
    """
    Orders nodes so that every node comes after all nodes it points to (``edges[node]``). Among the nodes
    that are ready at the same time, the lexicographically smallest comes first.

    :raises CyclicDependencyError: if not all nodes could be ordered
    """
    remaining: dict[str, set[str]] = {node: set(targets) for node, targets in edges.items()}
    for targets in list(remaining.values()):
        for target in targets:
            remaining.setdefault(target, set())

    dependents: dict[str, set[str]] = {node: set() for node in remaining}
    for node, targets in remaining.items():
        for target in targets:
            dependents[target].add(node)

    ready = [node for node, targets in remaining.items() if not targets]
    heapq.heapify(ready)
    order = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            targets = remaining[dependent]
            targets.discard(node)
            if not targets:
                heapq.heappush(ready, dependent)

    if len(order) != len(remaining):
        ordered = set(order)
        unordered = {node: targets for node, targets in remaining.items() if node not in ordered}
        raise CyclicDependencyError(find_cycle(unordered) or sorted(unordered))
    return order
