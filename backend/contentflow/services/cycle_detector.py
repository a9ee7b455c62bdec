"""
Cycle detector: separates managed loop edges from hard cycles.

A cycle entered through a loop-node is a managed loop: the edges that close
it back into that loop-node carry feedback into the next pass and are not
scheduling dependencies. Any other cycle can never make progress, so the
graph is rejected.

Cyclic regions are found as strongly connected components. In each one the
loop-nodes fed from outside the component are its headers; every edge from
inside the component into a header is a loop edge. Those edges are removed
and the component is split again, so an inner loop nested in an outer body
is resolved on the next round with the outer loop's entry edge left
ordinary. A component without any loop-node is a hard cycle.
"""

from __future__ import annotations

from collections import defaultdict, deque

from pydantic import BaseModel, ConfigDict

from contentflow.models.graph import Graph, GraphConnection
from contentflow.services.errors import HardCycleError


class CycleClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    ordinary_edges: tuple[GraphConnection, ...]
    loop_edges: tuple[GraphConnection, ...]
    hard_cycles: tuple[tuple[str, ...], ...] = ()

    @property
    def loop_edge_ids(self) -> frozenset[str]:
        return frozenset(c.id for c in self.loop_edges)

    def is_loop_edge(self, connection: GraphConnection) -> bool:
        return connection.id in self.loop_edge_ids

    def feedback_sources(self, loop_id: str) -> list[str]:
        """Nodes whose output travels back into `loop_id`, in edge order."""
        seen: list[str] = []
        for conn in self.loop_edges:
            if conn.target_id == loop_id and conn.source_id not in seen:
                seen.append(conn.source_id)
        return seen


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def classify(graph: Graph) -> CycleClassification:
    order = {nid: i for i, nid in enumerate(graph.nodes)}
    loop_ids: set[str] = set()
    hard_cycles: list[tuple[str, ...]] = []

    pending: list[tuple[list[str], list[GraphConnection]]] = [
        (list(graph.nodes), list(graph.connections))
    ]
    while pending:
        nodes, edges = pending.pop()
        for component in _cyclic_components(nodes, edges, order):
            members = set(component)
            inner = [
                c for c in edges
                if c.source_id in members and c.target_id in members
            ]
            headers = _loop_headers(graph, component, members)
            if not headers:
                hard_cycles.append(_cycle_through(component[0], inner))
                continue
            loop_ids.update(c.id for c in inner if c.target_id in headers)
            pending.append((component, [c for c in inner if c.id not in loop_ids]))

    hard_cycles.sort(key=lambda cycle: order[cycle[0]])
    return CycleClassification(
        ordinary_edges=tuple(c for c in graph.connections if c.id not in loop_ids),
        loop_edges=tuple(c for c in graph.connections if c.id in loop_ids),
        hard_cycles=tuple(hard_cycles),
    )


def ensure_acyclic(graph: Graph) -> CycleClassification:
    """Classify and raise HardCycleError if any hard cycle exists."""
    classification = classify(graph)
    if classification.hard_cycles:
        raise HardCycleError([list(c) for c in classification.hard_cycles])
    return classification


def topological_order(graph: Graph, classification: CycleClassification) -> list[str]:
    """Kahn ordering over ordinary edges (loop edges excluded)."""
    in_degree: dict[str, int] = {nid: 0 for nid in graph.nodes}
    adjacency: dict[str, list[str]] = defaultdict(list)

    for conn in classification.ordinary_edges:
        adjacency[conn.source_id].append(conn.target_id)
        in_degree[conn.target_id] += 1

    queue: deque[str] = deque(nid for nid, deg in in_degree.items() if deg == 0)
    order: list[str] = []

    while queue:
        nid = queue.popleft()
        order.append(nid)
        for neighbor in adjacency[nid]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) != len(graph.nodes):
        cycle_nodes = [nid for nid, deg in in_degree.items() if deg > 0]
        raise HardCycleError([cycle_nodes])

    return order


# ---------------------------------------------------------------------------
# Graph traversal
# ---------------------------------------------------------------------------


def _loop_headers(graph: Graph, component: list[str], members: set[str]) -> set[str]:
    """Loop-nodes of `component` fed from outside it (first loop-node if none are)."""
    loops = [nid for nid in component if graph.node(nid).is_loop]
    entered = [
        nid for nid in loops
        if any(c.source_id not in members for c in graph.inbound(nid))
    ]
    return set(entered or loops[:1])


def _cyclic_components(
    nodes: list[str],
    edges: list[GraphConnection],
    order: dict[str, int],
) -> list[list[str]]:
    """
    Iterative Tarjan over `edges`, keeping only components that hold a cycle.

    Members of each component are listed in graph order.
    """
    outgoing: dict[str, list[str]] = defaultdict(list)
    self_loops: set[str] = set()
    for conn in edges:
        outgoing[conn.source_id].append(conn.target_id)
        if conn.source_id == conn.target_id:
            self_loops.add(conn.source_id)

    index: dict[str, int] = {}
    low: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    found: list[list[str]] = []

    for root in nodes:
        if root in index:
            continue
        index[root] = low[root] = len(index)
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(outgoing[root]))]

        while work:
            nid, targets = work[-1]
            target = next(targets, None)
            if target is not None:
                if target not in index:
                    index[target] = low[target] = len(index)
                    stack.append(target)
                    on_stack.add(target)
                    work.append((target, iter(outgoing[target])))
                elif target in on_stack:
                    low[nid] = min(low[nid], index[target])
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[nid])
            if low[nid] != index[nid]:
                continue

            component: list[str] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == nid:
                    break
            if len(component) > 1 or nid in self_loops:
                found.append(sorted(component, key=order.__getitem__))

    return found


def _cycle_through(start: str, edges: list[GraphConnection]) -> tuple[str, ...]:
    """One cycle of a strongly connected region, found by DFS from `start`."""
    outgoing: dict[str, list[GraphConnection]] = defaultdict(list)
    for conn in edges:
        outgoing[conn.source_id].append(conn)

    path: list[str] = [start]
    iterators = [iter(outgoing[start])]
    visited: set[str] = {start}

    while iterators:
        conn = next(iterators[-1], None)
        if conn is None:
            iterators.pop()
            path.pop()
            continue
        target = conn.target_id
        if target in path:
            return tuple(path[path.index(target):])
        if target not in visited:
            visited.add(target)
            path.append(target)
            iterators.append(iter(outgoing[target]))

    return (start,)
