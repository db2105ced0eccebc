"""Tests for dependency graph cycle detection and ordering."""

from __future__ import annotations

import pytest

from feature_autopilot.errors import CircularDependencyError
from feature_autopilot.graph import DependencyGraph

from conftest import make_feature


def _graph(edges: dict[str, list[str]]) -> DependencyGraph:
    return DependencyGraph.from_features([make_feature(fid, depends_on=deps) for fid, deps in edges.items()])


class TestDetectCycle:
    def test_acyclic_graph_has_no_cycle(self):
        graph = _graph({"01": [], "02": ["01"], "03": ["01", "02"]})
        assert graph.detect_cycle() is None

    def test_three_node_cycle_is_reported_closed(self):
        graph = _graph({"X": ["Y"], "Y": ["Z"], "Z": ["X"]})

        cycle = graph.detect_cycle()

        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"X", "Y", "Z"}

    def test_cycle_path_starts_at_back_edge_target(self):
        # 01 -> 02 -> 03 -> 02: the entry node 01 is not part of the cycle
        graph = _graph({"01": ["02"], "02": ["03"], "03": ["02"]})
        assert graph.detect_cycle() == ["02", "03", "02"]

    def test_self_dependency_is_a_cycle(self):
        graph = _graph({"01": ["01"]})
        assert graph.detect_cycle() == ["01", "01"]

    def test_unknown_dependencies_are_ignored(self):
        graph = DependencyGraph.from_features([make_feature("01", depends_on=["missing"])], known_only=False)
        assert graph.detect_cycle() is None
        assert graph.topological_order() == ["01"]


class TestTopologicalOrder:
    def test_dependencies_come_first(self):
        graph = _graph({"C": ["A", "B"], "B": ["A"], "A": []})
        assert graph.topological_order() == ["A", "B", "C"]

    def test_ties_break_by_ascending_id(self):
        graph = _graph({"03": [], "01": [], "02": []})
        assert graph.topological_order() == ["01", "02", "03"]

    def test_order_does_not_depend_on_insertion_order(self):
        forward = _graph({"01": [], "02": ["01"], "03": ["01"], "04": ["02", "03"]})
        backward = _graph({"04": ["02", "03"], "03": ["01"], "02": ["01"], "01": []})
        assert forward.topological_order() == backward.topological_order() == ["01", "02", "03", "04"]

    def test_every_edge_respected(self):
        edges = {"05": ["01"], "04": ["05", "02"], "03": [], "02": ["03"], "01": []}
        order = _graph(edges).topological_order()
        position = {node: index for index, node in enumerate(order)}
        for node, deps in edges.items():
            for dep in deps:
                assert position[dep] < position[node]

    def test_cycle_raises(self):
        graph = _graph({"X": ["Y"], "Y": ["Z"], "Z": ["X"]})
        with pytest.raises(CircularDependencyError) as excinfo:
            graph.topological_order()
        assert set(excinfo.value.cycle) == {"X", "Y", "Z"}


def test_execution_batches_group_independent_features():
    graph = _graph({"01": [], "02": [], "03": ["01"], "04": ["02", "03"]})
    assert graph.execution_batches() == [["01", "02"], ["03"], ["04"]]
