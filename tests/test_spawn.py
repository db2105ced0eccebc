"""Tests for sub-feature spawning."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from feature_autopilot.constants import FEATURE_FILE, MANIFEST_FILE
from feature_autopilot.errors import (
    DepthExceededError,
    FeatureNotFoundError,
    InvalidSpawnRequestError,
    ParentNotRunningError,
)
from feature_autopilot.manifest import Manifest
from feature_autopilot.models import FeatureStatus, ModelTier
from feature_autopilot.spawn import SpawnHandler, SpawnRequest, parse_spawn_request
from feature_autopilot.timeline import Timeline

from conftest import make_feature


def _spawn_line(tool_input, tool: str = "autopilot_spawn_feature") -> str:
    return json.dumps({"type": "tool_use", "tool": tool, "tool_input": tool_input})


class TestParseSpawnRequest:
    def test_dict_input(self):
        request = parse_spawn_request(
            _spawn_line({"title": "Add login form", "tasks": ["markup", "wire up"], "context_budget": 500})
        )
        assert request == SpawnRequest(title="Add login form", tasks=["markup", "wire up"], context_budget=500)

    def test_string_encoded_input(self):
        request = parse_spawn_request(_spawn_line(json.dumps({"title": "Nested", "model": "haiku"})))
        assert request.title == "Nested"
        assert request.model == "haiku"

    @pytest.mark.parametrize(
        "line",
        [
            "plain text",
            json.dumps({"type": "assistant", "content": "hello"}),
            _spawn_line({"title": "x"}, tool="other_tool"),
        ],
    )
    def test_unrelated_lines(self, line: str):
        assert parse_spawn_request(line) is None

    def test_missing_title_is_rejected(self):
        with pytest.raises(InvalidSpawnRequestError):
            parse_spawn_request(_spawn_line({"description": "no title"}))

    def test_non_object_input_is_rejected(self):
        with pytest.raises(InvalidSpawnRequestError):
            parse_spawn_request(_spawn_line("[1, 2]"))


def _tree_manifest(tmp_path: Path, *, max_depth: int = 3) -> Manifest:
    manifest_dir = tmp_path / "PRD"
    manifest_dir.mkdir()
    return Manifest(
        title="Shop",
        features=[
            make_feature("01", status=FeatureStatus.RUNNING, model=ModelTier.OPUS, context_budget=1000),
            make_feature("02"),
        ],
        max_depth=max_depth,
        path=manifest_dir / MANIFEST_FILE,
    )


class TestSpawnChild:
    def test_creates_persists_and_records_child(self, tmp_path: Path):
        manifest = _tree_manifest(tmp_path)
        timeline = Timeline()
        handler = SpawnHandler(manifest, tmp_path / "PRD", timeline)

        child = handler.spawn_child("01", SpawnRequest(title="Add login form", tasks=["markup"]))

        assert child.id == "01.1"
        assert child.parent_id == "01"
        assert child.depth == 1
        assert child.dir == "01-feature/01.1-add-login-form"
        assert child.model == ModelTier.OPUS
        assert child.context_budget == 500
        assert manifest.get_feature("01").children == ["01.1"]

        feature_md = (tmp_path / "PRD" / child.dir / FEATURE_FILE).read_text()
        assert "## Add login form" in feature_md
        assert "- [ ] markup" in feature_md

        reloaded = Manifest.load(tmp_path / "PRD")
        assert reloaded.get_feature("01.1").parent_id == "01"
        assert timeline.events("01")[0].metadata["child_id"] == "01.1"

    def test_request_model_and_sibling_ids(self, tmp_path: Path):
        manifest = _tree_manifest(tmp_path)
        handler = SpawnHandler(manifest, tmp_path / "PRD")

        handler.spawn_child("01", SpawnRequest(title="First"))
        second = handler.spawn_child("01", SpawnRequest(title="Second", model="haiku", context_budget=50))

        assert second.id == "01.2"
        assert second.model == ModelTier.HAIKU
        assert second.context_budget == 50

    def test_parent_must_be_running(self, tmp_path: Path):
        handler = SpawnHandler(_tree_manifest(tmp_path))
        with pytest.raises(ParentNotRunningError):
            handler.spawn_child("02", SpawnRequest(title="Too early"))

    def test_unknown_parent(self, tmp_path: Path):
        handler = SpawnHandler(_tree_manifest(tmp_path))
        with pytest.raises(FeatureNotFoundError):
            handler.spawn_child("99", SpawnRequest(title="Orphan"))

    def test_depth_limit(self, tmp_path: Path):
        manifest = _tree_manifest(tmp_path, max_depth=1)
        handler = SpawnHandler(manifest)
        child = handler.spawn_child("01", SpawnRequest(title="Level one"))
        manifest.update_feature_status(child.id, FeatureStatus.RUNNING)

        with pytest.raises(DepthExceededError):
            handler.spawn_child(child.id, SpawnRequest(title="Level two"))
        assert manifest.get_feature(child.id).children == []

    def test_without_manifest_path_nothing_is_written(self):
        manifest = Manifest(features=[make_feature("01", status=FeatureStatus.RUNNING)])
        child = SpawnHandler(manifest).spawn_child("01", SpawnRequest(title="In memory"))
        assert manifest.get_feature(child.id) is not None


class TestProcessLine:
    def test_returns_request_when_allowed(self, tmp_path: Path):
        handler = SpawnHandler(_tree_manifest(tmp_path))
        request = handler.process_line("01", _spawn_line({"title": "Child"}))
        assert request.title == "Child"

    def test_ignores_other_lines(self, tmp_path: Path):
        handler = SpawnHandler(_tree_manifest(tmp_path))
        assert handler.process_line("01", json.dumps({"type": "assistant"})) is None

    def test_rejects_at_max_depth(self, tmp_path: Path):
        manifest = _tree_manifest(tmp_path, max_depth=1)
        handler = SpawnHandler(manifest)
        child = handler.spawn_child("01", SpawnRequest(title="Leaf"))
        with pytest.raises(DepthExceededError):
            handler.process_line(child.id, _spawn_line({"title": "Deeper"}))

    def test_rejects_unknown_feature(self, tmp_path: Path):
        handler = SpawnHandler(_tree_manifest(tmp_path))
        with pytest.raises(FeatureNotFoundError):
            handler.process_line("99", _spawn_line({"title": "Ghost"}))
