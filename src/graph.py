"""
Resource Graph Builder.

Turns a flat set of declared resources into a dependency graph held as an
adjacency structure keyed by logical ID. Edges come from references found
in property values plus explicit ``depends_on`` hints.
"""

import heapq
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
)

from errors import CycleError, DeclarationError
from models import Resource
from references import find_references

logger = logging.getLogger(__name__)


def dependency_ids(resource: Resource) -> Set[str]:
    """All logical IDs a resource depends on, implicit and explicit."""
    deps = set(resource.depends_on)
    deps.update(ref.resource_id for ref in find_references(resource.properties))
    return deps


def find_cycle(
    nodes: Iterable[str], dependencies: Mapping[str, Iterable[str]]
) -> Optional[List[str]]:
    """
    Find one dependency cycle with an iterative depth-first traversal.

    Returns:
        The IDs on the cycle, rotated to start at the smallest ID, or
        None if the graph is acyclic.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color: Dict[str, int] = {}
    node_list = sorted(nodes)
    known = set(node_list)

    for root in node_list:
        if color.get(root, WHITE) != WHITE:
            continue
        path: List[str] = [root]
        iterators = [iter(sorted(d for d in dependencies.get(root, ()) if d in known))]
        color[root] = GRAY

        while iterators:
            child = next(iterators[-1], None)
            if child is None:
                color[path.pop()] = BLACK
                iterators.pop()
                continue
            state = color.get(child, WHITE)
            if state == GRAY:
                cycle = path[path.index(child) :]
                start = cycle.index(min(cycle))
                return cycle[start:] + cycle[:start]
            if state == WHITE:
                color[child] = GRAY
                path.append(child)
                iterators.append(
                    iter(sorted(d for d in dependencies.get(child, ()) if d in known))
                )

    return None


def kahn_order(
    nodes: Iterable[Hashable],
    dependencies: Mapping[Hashable, Iterable[Hashable]],
    key: Optional[Callable[[Any], Any]] = None,
    follow: Optional[Callable[[Any], Optional[Hashable]]] = None,
) -> List[Any]:
    """
    Topologically order nodes with Kahn's algorithm.

    Among ready nodes the one with the smallest ``key`` goes first, so the
    order is deterministic for identical input. If ``follow(n)`` names a
    node that becomes ready as soon as ``n`` is emitted, that node is
    emitted next regardless of its key.

    Raises:
        CycleError: If some nodes can never become ready.
    """
    key = key or (lambda n: n)
    node_list = list(nodes)
    members = set(node_list)
    remaining: Dict[Any, int] = {}
    dependents: Dict[Any, List[Any]] = {n: [] for n in node_list}

    for node in node_list:
        deps = {d for d in dependencies.get(node, ()) if d in members}
        remaining[node] = len(deps)
        for dep in deps:
            dependents[dep].append(node)

    ready: List[Tuple[Any, int, Any]] = []
    index = {node: i for i, node in enumerate(node_list)}
    for node in node_list:
        if remaining[node] == 0:
            heapq.heappush(ready, (key(node), index[node], node))

    order: List[Any] = []
    pinned: Optional[Any] = None
    while ready or pinned is not None:
        if pinned is not None:
            node, pinned = pinned, None
        else:
            node = heapq.heappop(ready)[2]
        order.append(node)

        wanted = follow(node) if follow else None
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                if dependent == wanted:
                    pinned = dependent
                else:
                    heapq.heappush(ready, (key(dependent), index[dependent], dependent))

    if len(order) != len(node_list):
        stuck = sorted(str(n) for n in node_list if remaining[n] > 0)
        raise CycleError(stuck)
    return order


class ResourceGraph:
    """
    All resources of one stack and the dependency edges between them.

    Edges are stored by logical ID. References to IDs outside the graph
    are kept aside as unresolved so the planner can report them.
    """

    def __init__(
        self,
        resources: Dict[str, Resource],
        dependencies: Dict[str, Set[str]],
        unresolved: Optional[Dict[str, List[str]]] = None,
    ):
        self._resources = dict(resources)
        self._dependencies = {rid: set(deps) for rid, deps in dependencies.items()}
        self._dependents: Dict[str, Set[str]] = {rid: set() for rid in resources}
        for rid, deps in self._dependencies.items():
            for dep in deps:
                self._dependents[dep].add(rid)
        self._unresolved = unresolved or {}

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def ids(self) -> List[str]:
        return sorted(self._resources)

    def get(self, resource_id: str) -> Resource:
        return self._resources[resource_id]

    @property
    def resources(self) -> List[Resource]:
        return [self._resources[rid] for rid in self.ids()]

    def dependencies(self, resource_id: str) -> List[str]:
        return sorted(self._dependencies.get(resource_id, ()))

    def dependents(self, resource_id: str) -> List[str]:
        return sorted(self._dependents.get(resource_id, ()))

    def unresolved_references(self) -> List[Tuple[str, str]]:
        """(resource ID, missing ID) pairs, sorted."""
        return sorted(
            (rid, missing)
            for rid, missing_ids in self._unresolved.items()
            for missing in missing_ids
        )

    def topological_order(self) -> List[str]:
        """Dependencies first; ties broken by ascending logical ID."""
        return kahn_order(self.ids(), self._dependencies)

    def to_dict(self) -> Dict[str, List[str]]:
        return {rid: self.dependencies(rid) for rid in self.ids()}


def build(resources: Iterable[Resource]) -> ResourceGraph:
    """
    Build a dependency graph from declared resources.

    Raises:
        DeclarationError: If two resources share a logical ID.
        CycleError: If the dependencies form a cycle.
    """
    by_id: Dict[str, Resource] = {}
    for resource in resources:
        if resource.id in by_id:
            raise DeclarationError(f"Duplicate resource ID: '{resource.id}'")
        by_id[resource.id] = resource

    dependencies: Dict[str, Set[str]] = {}
    unresolved: Dict[str, List[str]] = {}
    for rid, resource in by_id.items():
        deps = dependency_ids(resource)
        dependencies[rid] = {d for d in deps if d in by_id}
        missing = sorted(d for d in deps if d not in by_id)
        if missing:
            unresolved[rid] = missing

    cycle = find_cycle(by_id, dependencies)
    if cycle:
        raise CycleError(cycle)

    logger.debug(f"Built resource graph with {len(by_id)} resources")
    return ResourceGraph(by_id, dependencies, unresolved)
