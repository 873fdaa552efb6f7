"""
Dependency graph over tasks.

Built once per session and read-only afterwards. Cycle detection runs
before anything is scheduled; neighbours are always visited in lexical
order so that both the reported cycle path and the topological order
are reproducible for identical input.
"""

from __future__ import annotations

import heapq
from functools import lru_cache
from typing import Iterable, Mapping

from loguru import logger

from specloop.errors import CyclicDependencyError, TaskDefinitionError, UnknownDependencyError
from specloop.state import TaskStatus

_WHITE, _GREY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Mapping from task name to the set of task names it depends on."""

    def __init__(self, edges: Mapping[str, Iterable[str]]):
        self._deps: dict[str, frozenset[str]] = {
            name: frozenset(deps) for name, deps in edges.items()
        }
        dependents: dict[str, set[str]] = {name: set() for name in self._deps}
        for name, deps in self._deps.items():
            for dep in deps:
                dependents[dep].add(name)
        self._dependents = {name: frozenset(ds) for name, ds in dependents.items()}
        self.depth = lru_cache(maxsize=None)(self._depth)

    # -----------------------------------------------------------------------
    # Construction
    # -----------------------------------------------------------------------

    @classmethod
    def build(cls, declared: Mapping[str, Iterable[str]]) -> "DependencyGraph":
        """
        Validate declared dependencies and return an acyclic graph.

        Raises UnknownDependencyError for a reference to a task that does
        not exist and CyclicDependencyError (carrying the cycle path) when
        the dependencies loop back on themselves.
        """
        edges: dict[str, set[str]] = {}
        for name in sorted(declared):
            deps = set(declared[name])
            if name in deps:
                raise CyclicDependencyError([name, name])
            for dep in sorted(deps):
                if dep not in declared:
                    raise UnknownDependencyError(name, dep)
            edges[name] = deps

        cycle = _find_cycle(edges)
        if cycle:
            logger.error(f"[GRAPH] Cycle detected: {' -> '.join(cycle)}")
            raise CyclicDependencyError(cycle)

        graph = cls(edges)
        logger.debug(f"[GRAPH] Built graph: {len(edges)} tasks, {graph.edge_count} edges")
        return graph

    @classmethod
    def from_tasks(cls, tasks: Iterable) -> "DependencyGraph":
        """Build from anything carrying `.name` and `.dependencies`."""
        declared: dict[str, list[str]] = {}
        for task in tasks:
            if task.name in declared:
                raise TaskDefinitionError(f"Duplicate task id '{task.name}'")
            declared[task.name] = list(task.dependencies)
        return cls.build(declared)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        return sorted(self._deps)

    @property
    def edge_count(self) -> int:
        return sum(len(d) for d in self._deps.values())

    def __contains__(self, name: str) -> bool:
        return name in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def dependencies(self, name: str) -> frozenset[str]:
        return self._deps[name]

    def dependents(self, name: str) -> frozenset[str]:
        return self._dependents[name]

    def transitive_dependents(self, name: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self._dependents[name])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return seen

    def _depth(self, name: str) -> int:
        """Length of the longest dependency chain below `name`."""
        deps = self._deps[name]
        if not deps:
            return 0
        return 1 + max(self.depth(d) for d in deps)

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ties are broken by task name."""
        remaining = {name: len(deps) for name, deps in self._deps.items()}
        heap = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(heap)

        order: list[str] = []
        while heap:
            name = heapq.heappop(heap)
            order.append(name)
            for dependent in self._dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(heap, dependent)

        # build() guarantees acyclicity
        assert len(order) == len(self._deps)
        return order

    def ready(self, statuses: Mapping[str, TaskStatus], resolved: set[str]) -> set[str]:
        """
        Tasks that have not started and whose dependencies are all resolved.

        `resolved` holds the tasks dependents may build on: COMPLETED, or
        PARTIAL with an accepted result.
        """
        return {
            name
            for name, deps in self._deps.items()
            if statuses.get(name) in (TaskStatus.PENDING, TaskStatus.READY)
            and deps <= resolved
        }


def _find_cycle(edges: Mapping[str, set[str]]) -> list[str] | None:
    """Depth-first three-colour search. Returns the first cycle path found."""
    colour = {name: _WHITE for name in edges}
    path: list[str] = []

    for root in sorted(edges):
        if colour[root] != _WHITE:
            continue
        # Iterative DFS: stack of (node, iterator over sorted neighbours)
        stack = [(root, iter(sorted(edges[root])))]
        colour[root] = _GREY
        path.append(root)
        while stack:
            node, neighbours = stack[-1]
            advanced = False
            for nxt in neighbours:
                if colour[nxt] == _GREY:
                    start = path.index(nxt)
                    return path[start:] + [nxt]
                if colour[nxt] == _WHITE:
                    colour[nxt] = _GREY
                    path.append(nxt)
                    stack.append((nxt, iter(sorted(edges[nxt]))))
                    advanced = True
                    break
            if not advanced:
                colour[node] = _BLACK
                path.pop()
                stack.pop()
    return None
