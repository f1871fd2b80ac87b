"""Swarm-scoped dependency graph checks.

The graph is kept as plain edge sets keyed by task id (``task -> depends_on``)
so validation never walks live objects. Every edge-adding mutation is checked
here before anything is written.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping

from swarm_engine.errors import ValidationError


def normalize_dependency_ids(depends_on: Iterable[str]) -> tuple[str, ...]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""

    seen: dict[str, None] = {}
    for raw in depends_on:
        value = raw.strip()
        if value:
            seen.setdefault(value, None)
    return tuple(seen)


def validate_dependencies(
    *,
    task_id: str,
    swarm_id: str,
    depends_on: Iterable[str],
    edges: Mapping[str, Collection[str]],
    task_swarms: Mapping[str, str],
) -> tuple[str, ...]:
    """Return normalized dependency ids or raise ValidationError.

    ``edges`` holds the current ``depends_on`` sets of every task in the swarm
    (the edited task's own entry is ignored and replaced by ``depends_on``).
    ``task_swarms`` maps every known referenced id to its swarm.
    """

    dependency_ids = normalize_dependency_ids(depends_on)
    for dependency_id in dependency_ids:
        if dependency_id == task_id:
            raise ValidationError(f"Task {task_id} cannot depend on itself.")
        owner = task_swarms.get(dependency_id)
        if owner is None:
            raise ValidationError(f"Dependency task not found: {dependency_id}")
        if owner != swarm_id:
            raise ValidationError(
                f"Dependency {dependency_id} belongs to swarm {owner}, "
                f"not to swarm {swarm_id}.",
            )

    graph = {key: set(value) for key, value in edges.items() if key != task_id}
    graph[task_id] = set(dependency_ids)
    cycle = find_cycle(graph, start=task_id)
    if cycle is not None:
        raise ValidationError(f"Dependency cycle detected: {' -> '.join(cycle)}")
    return dependency_ids


def find_cycle(graph: Mapping[str, Collection[str]], *, start: str) -> list[str] | None:
    """Return a cycle through ``start`` as a path, or None.

    Iterative DFS with an explicit stack; each node is expanded at most once,
    so the walk is bounded by the number of tasks in the swarm.
    """

    parents: dict[str, str] = {}
    visited: set[str] = set()
    stack = [start]
    while stack:
        node = stack.pop()
        if node in visited:
            continue
        visited.add(node)
        for neighbor in sorted(graph.get(node, ())):
            if neighbor == start:
                return _cycle_path(parents, node, start)
            if neighbor not in visited:
                parents.setdefault(neighbor, node)
                stack.append(neighbor)
    return None


def reverse_edges(graph: Mapping[str, Collection[str]]) -> dict[str, set[str]]:
    """Invert ``task -> depends_on`` into ``task -> triggers_after``."""

    reverse: dict[str, set[str]] = {key: set() for key in graph}
    for task_id, dependency_ids in graph.items():
        for dependency_id in dependency_ids:
            reverse.setdefault(dependency_id, set()).add(task_id)
    return reverse


def _cycle_path(parents: Mapping[str, str], last: str, start: str) -> list[str]:
    path = [last]
    while path[-1] != start:
        path.append(parents[path[-1]])
    path.reverse()
    path.append(start)
    return path
