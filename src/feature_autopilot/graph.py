"""Dependency graph with cycle detection and deterministic topological ordering.

Edges point from a feature to the features it depends on. Callers are
expected to prune unknown dependency ids before building the graph; edges to
ids that are not nodes are ignored so a dangling reference can never look like
a cycle or skew in-degree counts.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from typing import Iterable, Optional

from .errors import CircularDependencyError
from .models import Feature


class DependencyGraph:
    """Node/edge view of a feature set."""

    def __init__(self) -> None:
        self._nodes: dict[str, None] = {}
        self._edges: dict[str, list[str]] = defaultdict(list)

    @classmethod
    def from_features(cls, features: Iterable[Feature], *, known_only: bool = True) -> "DependencyGraph":
        """Build a graph from features.

        Args:
            features: Features to add as nodes.
            known_only: Skip dependency ids that are not feature ids.

        Returns:
            A populated graph.
        """
        features = list(features)
        graph = cls()
        for feature in features:
            graph.add_node(feature.id)
        for feature in features:
            for dep_id in feature.depends_on:
                if known_only and dep_id not in graph._nodes:
                    continue
                graph.add_edge(feature.id, dep_id)
        return graph

    @property
    def nodes(self) -> list[str]:
        return list(self._nodes)

    def add_node(self, node_id: str) -> None:
        self._nodes.setdefault(node_id, None)

    def add_edge(self, from_id: str, to_id: str) -> None:
        self._edges[from_id].append(to_id)

    def dependencies_of(self, node_id: str) -> list[str]:
        return list(self._edges.get(node_id, []))

    def detect_cycle(self) -> Optional[list[str]]:
        """Return the first cycle found as a closed path, or None.

        The returned path starts at the first node of the cycle and repeats it
        at the end, e.g. ``["01", "02", "03", "01"]``.
        """
        # 0 = unvisited, 1 = on the recursion stack, 2 = finished
        state: dict[str, int] = {node: 0 for node in self._nodes}
        path: list[str] = []

        def dfs(node: str) -> Optional[list[str]]:
            state[node] = 1
            path.append(node)
            for dep in self._edges.get(node, []):
                if dep not in state:
                    continue
                if state[dep] == 1:
                    start = path.index(dep)
                    return path[start:] + [dep]
                if state[dep] == 0:
                    cycle = dfs(dep)
                    if cycle:
                        return cycle
            path.pop()
            state[node] = 2
            return None

        for node in sorted(self._nodes):
            if state[node] == 0:
                cycle = dfs(node)
                if cycle:
                    return cycle
        return None

    def topological_order(self) -> list[str]:
        """Return node ids with every dependency before its dependents.

        Uses Kahn's algorithm; among nodes that become available together the
        smallest id goes first, so the order does not depend on insertion order.

        Raises:
            CircularDependencyError: If the graph has a cycle.
        """
        cycle = self.detect_cycle()
        if cycle:
            raise CircularDependencyError(cycle)

        in_degree: dict[str, int] = {node: 0 for node in self._nodes}
        dependents: dict[str, list[str]] = defaultdict(list)
        for node, deps in self._edges.items():
            if node not in in_degree:
                continue
            for dep in deps:
                if dep not in in_degree:
                    continue
                dependents[dep].append(node)
                in_degree[node] += 1

        ready = [node for node, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for dependent in dependents.get(node, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)
        return order

    def execution_batches(self) -> list[list[str]]:
        """Group the topological order into batches that could run together."""
        order = self.topological_order()
        level: dict[str, int] = {}
        for node in order:
            deps = [dep for dep in self._edges.get(node, []) if dep in self._nodes]
            level[node] = 1 + max((level[dep] for dep in deps), default=-1)
        batches: list[list[str]] = []
        for node in order:
            while len(batches) <= level[node]:
                batches.append([])
            batches[level[node]].append(node)
        return batches
