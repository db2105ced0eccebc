"""Scaffold the manifest directory from an already-parsed requirements document."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import FEATURE_FILE, MANIFEST_DIR_NAME, MANIFEST_FILE
from .dependencies import parse_dependencies
from .errors import AutopilotError, PersistenceError, ReferenceWarning
from .manifest import Manifest
from .models import Feature, FeatureStatus, parse_model
from .utils import _format_root_id, _sanitize_dir_name


@dataclass
class TaskItem:
    description: str
    completed: bool = False


@dataclass
class FeatureSpec:
    """One feature section as produced by the requirements parser."""

    title: str
    description: str = ""
    raw_content: str = ""
    execution: str = "sequential"
    model: str = "sonnet"
    tasks: list[TaskItem] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)


@dataclass
class GenerationResult:
    manifest: Manifest
    output_dir: Path
    warnings: list[ReferenceWarning] = field(default_factory=list)


def _cleanup_separators(text: str) -> str:
    lines = [line for line in text.splitlines() if line.strip() != "---"]
    text = "\n".join(lines)
    while "\n\n\n" in text:
        text = text.replace("\n\n\n", "\n\n")
    return text.strip()


def build_global_context(title: str, context: str = "") -> str:
    parts = [f"# {title}\n\n"]
    if context:
        parts.append(_cleanup_separators(context) + "\n")
    return "".join(parts)


def build_feature_markdown(global_context: str, spec: FeatureSpec) -> str:
    """Render the standalone `feature.md` handed to the coding agent."""
    lines = [global_context, "\n---\n\n", f"## {spec.title}\n\n"]
    description = _cleanup_separators(spec.description) if spec.description else ""
    if description:
        lines.append(description + "\n\n")
    lines.append(f"Execution: {spec.execution}\n")
    lines.append(f"Model: {spec.model}\n\n")
    if spec.tasks:
        for task in spec.tasks:
            checkbox = "[x]" if task.completed else "[ ]"
            lines.append(f"- {checkbox} {task.description}\n")
        lines.append("\n")
    for criteria in spec.acceptance_criteria:
        lines.append(f"Acceptance: {criteria.strip()}\n")
    return "".join(lines)


def generate_manifest(
    source_path: Path,
    specs: list[FeatureSpec],
    *,
    title: str = "",
    context: str = "",
    force: bool = False,
    output_dir: Optional[Path] = None,
) -> GenerationResult:
    """Write one directory per feature plus the manifest next to the source document.

    Dependencies are resolved and dangling ones pruned with warnings. A cycle
    aborts generation and removes everything written so far.

    Args:
        source_path: The requirements document the features came from.
        specs: Parsed features in document order.
        title: Project title for the shared context header.
        context: Shared context prepended to every feature file.
        force: Replace an existing output directory.
        output_dir: Defaults to `<source dir>/PRD`.

    Raises:
        AutopilotError: If there are no features or the output directory exists.
        CircularDependencyError: If the resolved dependencies form a cycle.
        PersistenceError: If files cannot be written.
    """
    if not specs:
        raise AutopilotError("no features found in requirements document")

    output_dir = output_dir or source_path.parent / MANIFEST_DIR_NAME
    if output_dir.exists():
        if not force:
            raise AutopilotError(f"{output_dir} already exists (use force to overwrite)")
        shutil.rmtree(output_dir)

    try:
        output_dir.mkdir(parents=True)
        global_context = build_global_context(title or source_path.stem, context)
        features: list[Feature] = []
        for ordinal, spec in enumerate(specs, start=1):
            feature_id = _format_root_id(ordinal)
            dir_name = f"{feature_id}-{_sanitize_dir_name(spec.title)}"
            feature_dir = output_dir / dir_name
            feature_dir.mkdir()
            (feature_dir / FEATURE_FILE).write_text(build_feature_markdown(global_context, spec), encoding="utf-8")
            features.append(
                Feature(
                    id=feature_id,
                    title=spec.title,
                    dir=dir_name,
                    status=FeatureStatus.PENDING,
                    depends_on=parse_dependencies(spec.raw_content, spec.description),
                    execution=spec.execution or "sequential",
                    model=parse_model(spec.model or "sonnet"),
                )
            )
            logger.debug("Created {}/{}", dir_name, FEATURE_FILE)
    except OSError as exc:
        shutil.rmtree(output_dir, ignore_errors=True)
        raise PersistenceError(f"failed to write feature directories: {exc}") from exc

    manifest = Manifest(source=source_path.name, title=title, features=features, path=output_dir / MANIFEST_FILE)
    manifest.resolve_dependencies()
    warnings = manifest.remove_missing_dependencies()
    _, cycle_error = manifest.validate_dependencies()
    if cycle_error is not None:
        shutil.rmtree(output_dir, ignore_errors=True)
        logger.error("Dependency validation failed: {}", cycle_error)
        raise cycle_error

    try:
        manifest.save()
    except PersistenceError:
        shutil.rmtree(output_dir, ignore_errors=True)
        raise
    logger.info("Generated manifest with {} feature(s) at {}", len(features), output_dir)
    return GenerationResult(manifest=manifest, output_dir=output_dir, warnings=warnings)
