"""In-memory view of the task relationship graph.

The graph is small (hundreds of nodes), so every operation loads the edge list
into an adjacency map and works on it directly. Reachability uses BFS from the
start node only, so its cost is proportional to the edges reachable from that
node rather than to the whole graph.
"""

from collections import deque
from collections.abc import Iterable

from bridge_engine.core.schemas_tasks import Relationship

Edge = tuple[str, str]
Adjacency = dict[str, list[str]]


def _as_edge(edge: Relationship | Edge) -> Edge:
    if isinstance(edge, Relationship):
        return edge.key
    return edge


def build_adjacency(edges: Iterable[Relationship | Edge]) -> Adjacency:
    """Build ``{source: [targets]}``; parallel edges collapse, order is kept."""
    adjacency: Adjacency = {}
    for edge in edges:
        source, target = _as_edge(edge)
        targets = adjacency.setdefault(source, [])
        if target not in targets:
            targets.append(target)
    return adjacency


def find_path(adjacency: Adjacency, source: str, target: str) -> list[str] | None:
    """Shortest directed path ``source -> ... -> target`` as a node list, or None."""
    if source == target:
        return [source]

    parents: dict[str, str] = {}
    visited = {source}
    queue = deque([source])

    while queue:
        current = queue.popleft()
        for neighbor in adjacency.get(current, ()):
            if neighbor in visited:
                continue
            parents[neighbor] = current
            if neighbor == target:
                path = [target]
                while path[-1] != source:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            visited.add(neighbor)
            queue.append(neighbor)

    return None


def has_path(adjacency: Adjacency, source: str, target: str) -> bool:
    return find_path(adjacency, source, target) is not None


def path_edges(path: list[str]) -> list[Edge]:
    """``[a, b, c]`` -> ``[(a, b), (b, c)]``."""
    return list(zip(path, path[1:]))


def find_closing_path(
    edges: Iterable[Relationship | Edge],
    predecessor_id: str,
    successor_id: str,
) -> list[str] | None:
    """Path successor -> ... -> predecessor that would close a loop.

    Inserting ``predecessor -> new -> successor`` creates a cycle exactly when
    the successor already reaches the predecessor; the new node has no other
    edges, so no other cycle can pass through it.
    """
    return find_path(build_adjacency(edges), successor_id, predecessor_id)


def select_edge_to_break(path: list[str]) -> Edge | None:
    """Pick the single edge to delete so ``path`` no longer connects its ends.

    A direct back-edge (path of length one) is removed outright; otherwise the
    first edge of the path, closest to the successor, is removed.
    """
    edges = path_edges(path)
    return edges[0] if edges else None
