"""Dependency DAG shared by build stages and services.

The graph enforces, at construction time:
- every referenced dependency names a node of the graph;
- the edges form a DAG (no cycles).

Both are structural errors and are raised before anything executes.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping


class CyclicDependencyError(ValueError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, nodes: list[str]) -> None:
        self.nodes = nodes
        super().__init__(
            f"Dependency graph has a cycle involving: {', '.join(nodes)}"
        )


class UnknownDependencyError(ValueError):
    """Raised when a node depends on a name that is not in the graph."""

    def __init__(self, node: str, dependency: str) -> None:
        self.node = node
        self.dependency = dependency
        super().__init__(f"{node!r} depends on unknown {dependency!r}")


class DependencyGraph:
    """Directed acyclic graph of named nodes and their dependencies.

    Parameters
    ----------
    edges:
        Mapping of node name -> names it depends on.  Iteration order of the
        mapping is the declaration order, used to break ties so that
        topological order is deterministic.
    """

    def __init__(self, edges: Mapping[str, Iterable[str]]) -> None:
        self._order: dict[str, int] = {name: i for i, name in enumerate(edges)}
        # Forward edges: node -> its direct dependencies
        self._dependencies: dict[str, list[str]] = {
            name: list(dict.fromkeys(deps)) for name, deps in edges.items()
        }
        # Reverse edges: node -> nodes that depend on it directly
        self._dependents: dict[str, list[str]] = {name: [] for name in edges}

        for name, deps in self._dependencies.items():
            for dep in deps:
                if dep not in self._dependents:
                    raise UnknownDependencyError(name, dep)
                self._dependents[dep].append(name)

        self._topological = self._sort()

    def _sort(self) -> list[str]:
        """Kahn's algorithm; ties broken by declaration order."""
        in_degree = {n: len(deps) for n, deps in self._dependencies.items()}
        queue = deque(sorted((n for n, d in in_degree.items() if d == 0), key=self._order.get))
        result: list[str] = []

        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(self._dependents[node], key=self._order.get):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(result) != len(self._dependencies):
            done = set(result)
            remaining = sorted(
                (n for n in self._dependencies if n not in done),
                key=self._order.get,
            )
            raise CyclicDependencyError(remaining)
        return result

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._dependencies

    def __len__(self) -> int:
        return len(self._dependencies)

    @property
    def nodes(self) -> list[str]:
        """Return all nodes in topological order."""
        return list(self._topological)

    def reverse_order(self) -> list[str]:
        """Return all nodes with dependents before their dependencies."""
        return list(reversed(self._topological))

    def get_dependencies(self, name: str) -> list[str]:
        """Return direct dependencies of a node."""
        return list(self._dependencies[name])

    def get_direct_dependents(self, name: str) -> list[str]:
        """Return nodes that depend directly on *name*."""
        return list(self._dependents[name])

    def get_dependents(self, name: str) -> list[str]:
        """Return all transitive dependents of a node (BFS)."""
        result: list[str] = []
        queue = deque(self._dependents.get(name, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents.get(node, []))
        return result

    def get_ancestors(self, name: str) -> list[str]:
        """Return all transitive dependencies of a node (BFS)."""
        result: list[str] = []
        queue = deque(self._dependencies.get(name, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependencies.get(node, []))
        return result

    def terminals(self) -> list[str]:
        """Return nodes nothing depends on, in topological order."""
        return [n for n in self._topological if not self._dependents[n]]

    def roots(self) -> list[str]:
        """Return nodes with no dependencies, in topological order."""
        return [n for n in self._topological if not self._dependencies[n]]
