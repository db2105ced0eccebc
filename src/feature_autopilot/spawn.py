"""Turn a running feature's spawn requests into child features."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import FEATURE_FILE, SPAWN_TOOL_NAME
from .errors import (
    DepthExceededError,
    FeatureNotFoundError,
    InvalidSpawnRequestError,
    ParentNotRunningError,
    PersistenceError,
)
from .generate import FeatureSpec, TaskItem, build_feature_markdown, build_global_context
from .manifest import Manifest
from .models import Feature, FeatureStatus, model_name, parse_model
from .timeline import Timeline
from .utils import _coerce_int, _coerce_string_list, _sanitize_dir_name


@dataclass
class SpawnRequest:
    title: str
    description: str = ""
    tasks: list[str] = field(default_factory=list)
    model: str = ""
    context_budget: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SpawnRequest":
        title = str(data.get("title") or "").strip()
        if not title:
            raise InvalidSpawnRequestError("spawn request is missing a title")
        return cls(
            title=title,
            description=str(data.get("description") or ""),
            tasks=_coerce_string_list(data.get("tasks")),
            model=str(data.get("model") or ""),
            context_budget=max(_coerce_int(data.get("context_budget"), 0), 0),
        )


def parse_spawn_request(line: str) -> Optional[SpawnRequest]:
    """Return the spawn request carried by a stream line, if any.

    Raises:
        InvalidSpawnRequestError: If the line invokes the spawn tool with
            unusable input.
    """
    try:
        message = json.loads(line)
    except (TypeError, ValueError):
        return None
    if not isinstance(message, dict) or message.get("type") != "tool_use":
        return None
    if message.get("tool") != SPAWN_TOOL_NAME:
        return None
    tool_input = message.get("tool_input")
    if isinstance(tool_input, str):
        try:
            tool_input = json.loads(tool_input)
        except ValueError as exc:
            raise InvalidSpawnRequestError(f"spawn request input is not JSON: {exc}") from exc
    if not isinstance(tool_input, dict):
        raise InvalidSpawnRequestError("spawn request input must be an object")
    return SpawnRequest.from_dict(tool_input)


class SpawnHandler:
    """Validates spawn requests against the manifest and records children."""

    def __init__(
        self,
        manifest: Manifest,
        manifest_dir: Optional[Path] = None,
        timeline: Optional[Timeline] = None,
    ) -> None:
        self.manifest = manifest
        self.manifest_dir = manifest_dir
        self.timeline = timeline

    def process_line(self, feature_id: str, line: str) -> Optional[SpawnRequest]:
        """Detect a spawn request from `feature_id`.

        Raises:
            DepthExceededError: If the feature may not spawn any more children.
            InvalidSpawnRequestError: If the request is malformed.
        """
        request = parse_spawn_request(line)
        if request is None:
            return None
        if not self.manifest.can_spawn_child(feature_id):
            feature = self.manifest.get_feature(feature_id)
            if feature is None:
                raise FeatureNotFoundError(feature_id)
            raise DepthExceededError(feature.depth, self.manifest.max_depth)
        return request

    def spawn_child(self, parent_id: str, request: SpawnRequest) -> Feature:
        """Create, attach and persist a child of a running feature."""
        parent = self.manifest.get_feature(parent_id)
        if parent is None:
            raise FeatureNotFoundError(parent_id)
        if parent.status != FeatureStatus.RUNNING:
            raise ParentNotRunningError(parent_id, parent.status.value)

        child_id = self.manifest.next_child_id(parent_id)
        slug = _sanitize_dir_name(request.title)
        child_dir = f"{parent.dir}/{child_id}-{slug}" if parent.dir else f"{child_id}-{slug}"
        model = parse_model(request.model) if request.model else parent.model
        logger.info(
            "Spawning sub-feature parent={} title={!r} depth={} max_depth={} tasks={}",
            parent_id,
            request.title,
            parent.depth + 1,
            self.manifest.max_depth,
            len(request.tasks),
        )
        child = self.manifest.add_child(
            parent_id,
            Feature(
                id=child_id,
                title=request.title,
                dir=child_dir,
                model=model,
                execution=parent.execution,
                context_budget=request.context_budget,
            ),
        )

        if self.manifest_dir is not None:
            self._write_feature_file(self.manifest_dir, child, request)
        if self.manifest.path is not None:
            self.manifest.save()

        if self.timeline is not None:
            self.timeline.record(
                parent_id,
                "spawn",
                "spawn",
                f"Spawned {child.id}: {child.title}",
                child_id=child.id,
                depth=child.depth,
                context_budget=child.context_budget,
            )
        logger.info(
            "Sub-feature created child={} parent={} depth={} context_budget={}",
            child.id,
            parent_id,
            child.depth,
            child.context_budget,
        )
        return child

    def _write_feature_file(self, manifest_dir: Path, child: Feature, request: SpawnRequest) -> None:
        path = manifest_dir / child.dir / FEATURE_FILE
        spec = FeatureSpec(
            title=request.title,
            description=request.description,
            model=model_name(child.model),
            execution=child.execution,
            tasks=[TaskItem(task) for task in request.tasks],
        )
        content = build_feature_markdown(build_global_context(self.manifest.title or child.title), spec)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"failed to write {path}: {exc}") from exc
