"""Pure DAG helpers shared by plan validation and the dependency resolver.

Graphs are given as ``node -> nodes it depends on``. Edges to nodes that are
not keys of the mapping are ignored.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

_WHITE, _GRAY, _BLACK = 0, 1, 2


def find_cycle(edges: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
    """Tricolour DFS. Returns the cycle path (first node repeated at the end)
    or ``None`` if the graph is acyclic."""
    color: Dict[str, int] = {node: _WHITE for node in edges}

    for root in edges:
        if color[root] != _WHITE:
            continue
        # Iterative DFS: stack of (node, iterator over its deps)
        path: List[str] = [root]
        color[root] = _GRAY
        stack = [iter(edges[root])]
        while stack:
            advanced = False
            for dep in stack[-1]:
                if dep not in color:
                    continue
                if color[dep] == _GRAY:
                    return path[path.index(dep):] + [dep]
                if color[dep] == _WHITE:
                    color[dep] = _GRAY
                    path.append(dep)
                    stack.append(iter(edges[dep]))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = _BLACK
                stack.pop()
    return None


def execution_levels(
    edges: Mapping[str, Iterable[str]],
    weight: Optional[Callable[[str], int]] = None,
) -> List[List[str]]:
    """Kahn's algorithm producing parallel execution levels.

    Level 0 holds nodes without dependencies; each later level holds nodes
    whose dependencies are all in earlier levels. Within a level, nodes are
    sorted by descending ``weight`` then by mapping order. Nodes on a cycle
    never reach in-degree zero and are left out.
    """
    order = {node: i for i, node in enumerate(edges)}
    deps: Dict[str, Set[str]] = {n: {d for d in edges[n] if d in order and d != n} for n in edges}
    in_degree = {n: len(d) for n, d in deps.items()}
    dependents: Dict[str, Set[str]] = {n: set() for n in edges}
    for node, node_deps in deps.items():
        for dep in node_deps:
            dependents[dep].add(node)

    def sort_key(node: str):
        return (-(weight(node) if weight else 0), order[node])

    levels: List[List[str]] = []
    current = sorted((n for n, deg in in_degree.items() if deg == 0), key=sort_key)
    while current:
        levels.append(current)
        following: List[str] = []
        for node in current:
            for dependent in dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    following.append(dependent)
        current = sorted(following, key=sort_key)
    return levels


def reverse_edges(edges: Mapping[str, Iterable[str]]) -> Dict[str, Set[str]]:
    """``node -> nodes that depend on it``."""
    result: Dict[str, Set[str]] = {n: set() for n in edges}
    for node, node_deps in edges.items():
        for dep in node_deps:
            if dep in result:
                result[dep].add(node)
    return result
