"""Run at most one feature per invocation and report what happened.

`run_once` loads the manifest, picks the next runnable feature, hands it to
the execution collaborator and blocks until the attempt finishes. When
nothing is runnable it explains why instead. Optional collaborators add
retry decisions, live tier tracking and durable progress on top of the
basic loop.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .config import get_poll_interval, get_retry_config, get_trigger_config, load_autopilot_config
from .constants import (
    ARCHIVE_SUFFIX,
    EVENTS_FILE,
    FEATURE_FILE,
    MANIFEST_DIR_NAME,
    NO_WORK_ALL_BLOCKED,
    NO_WORK_ALL_COMPLETED,
    NO_WORK_BLOCKED_BY_FAILURES,
    NO_WORK_RUNNING_ELSEWHERE,
    NO_WORK_UNKNOWN,
    POLL_INTERVAL_SECONDS,
    STATE_DIR_NAME,
)
from .errors import AutopilotError, PersistenceError
from .escalation import EscalationTracker, TrackerRegistry
from .execution import ExecutionCollaborator, ExecutionState, MeteredInstance, StreamingInstance
from .logging_utils import pretty
from .manifest import BlockedFeature, Manifest, find_manifest_path
from .models import Feature, FeatureStatus, model_name, parse_tier
from .progress import ProgressStore, default_progress_path
from .retry import AdjustmentType, FailureContext, RetryDecision, RetryStrategy
from .spawn import SpawnHandler
from .timeline import Timeline

_BUILD_ERROR_MARKERS = ("build failed", "compilation failed", "compile error", "syntax error")
_TIMEOUT_MARKERS = ("timeout", "timed out")
_TEST_FAILURES_RE = re.compile(r"(\d+)\s+(?:tests?\s+)?failed", re.IGNORECASE)
_OPEN_TASK_RE = re.compile(r"^\s*-\s+\[[ xX]\]\s+", re.MULTILINE)


@dataclass
class RunResult:
    feature_id: str = ""
    feature_title: str = ""
    status: str = ""
    model: str = ""
    duration_seconds: float = 0.0
    error: str = ""
    no_work: bool = False
    blocked: list[BlockedFeature] = field(default_factory=list)
    archived: bool = False
    archive_path: Optional[Path] = None
    retry: Optional[RetryDecision] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "feature_title": self.feature_title,
            "status": self.status,
            "model": self.model,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
            "no_work": self.no_work,
            "blocked": [item.to_dict() for item in self.blocked],
            "archived": self.archived,
            "archive_path": str(self.archive_path) if self.archive_path else None,
            "retry": self.retry.to_dict() if self.retry else None,
        }


def find_manifest_dir(project_dir: Path) -> Path:
    """Return `<project>/PRD`, failing when it or its manifest is missing."""
    manifest_dir = project_dir / MANIFEST_DIR_NAME
    if not manifest_dir.is_dir():
        raise AutopilotError(f"{MANIFEST_DIR_NAME}/ directory not found in {project_dir}")
    if find_manifest_path(manifest_dir) is None:
        raise AutopilotError(f"no manifest found in {manifest_dir}")
    return manifest_dir


def feature_prompt(manifest_dir: Path, feature: Feature) -> str:
    path = manifest_dir / feature.dir / FEATURE_FILE
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(f"failed to read feature file {path}: {exc}") from exc


def classify_no_work(manifest: Manifest) -> RunResult:
    """Explain why nothing is runnable."""
    summary = manifest.summary()
    result = RunResult(no_work=True)
    if summary.completed == summary.total:
        result.status = NO_WORK_ALL_COMPLETED
    elif summary.running > 0:
        result.status = NO_WORK_RUNNING_ELSEWHERE
    elif summary.failed > 0 and summary.pending == 0 and summary.blocked > 0:
        result.status = NO_WORK_BLOCKED_BY_FAILURES
        result.blocked = manifest.blocked_report()
    elif summary.blocked > 0 and summary.pending == 0:
        result.status = NO_WORK_ALL_BLOCKED
        result.blocked = manifest.blocked_report()
    else:
        result.status = NO_WORK_UNKNOWN
    return result


def archive_source(manifest_dir: Path, manifest: Manifest) -> tuple[bool, Optional[Path]]:
    """Move the source document into the manifest directory once everything is done.

    Returns `(False, None)` without touching anything when work remains, the
    source is already archived, or it no longer exists. If the manifest
    cannot be saved afterwards the rename is undone.
    """
    if not manifest.all_completed():
        return False, None
    source = manifest.source
    if not source or f"{ARCHIVE_SUFFIX}.md" in source:
        return False, None
    source_path = manifest_dir.parent / source
    if not source_path.exists():
        return False, None

    archived_name = f"{Path(source).stem}{ARCHIVE_SUFFIX}.md"
    archive_path = manifest_dir / archived_name
    try:
        source_path.rename(archive_path)
    except OSError as exc:
        logger.warning("Failed to archive {}: {}", source_path, exc)
        return False, None

    manifest.set_source(archived_name)
    try:
        manifest.save()
    except PersistenceError as exc:
        logger.warning("Failed to save manifest after archiving, restoring {}: {}", source_path, exc)
        archive_path.rename(source_path)
        manifest.set_source(source)
        return False, None
    logger.info("All features completed; archived source to {}", archive_path)
    return True, archive_path


def exit_code(result: RunResult) -> int:
    if result.no_work or result.status == FeatureStatus.COMPLETED.value:
        return 0
    return 1


def count_tasks(prompt: str) -> int:
    return len(_OPEN_TASK_RE.findall(prompt))


def build_failure_context(
    feature: Feature,
    attempt_num: int,
    error: str,
    task_count: int = 0,
) -> FailureContext:
    """Derive failure signals from the attempt's error text."""
    lower = error.lower()
    match = _TEST_FAILURES_RE.search(error)
    return FailureContext(
        feature_id=feature.id,
        attempt_num=attempt_num,
        current_model=feature.model,
        last_error=error,
        tests_failed=int(match.group(1)) if match else 0,
        has_build_error=any(marker in lower for marker in _BUILD_ERROR_MARKERS),
        has_timeout=any(marker in lower for marker in _TIMEOUT_MARKERS),
        task_count=task_count,
    )


def apply_retry_decision(
    manifest: Manifest,
    strategy: RetryStrategy,
    context: FailureContext,
    progress: Optional[ProgressStore] = None,
) -> RetryDecision:
    """Decide whether a failed feature goes back to pending, and on which tier.

    The manifest is saved when the feature is re-queued.
    """
    if strategy.get_history(context.feature_id) is None:
        if progress is not None and progress.get(context.feature_id).adjustments:
            strategy.adopt_history(progress.get(context.feature_id).to_history())
        else:
            strategy.register_feature(context.feature_id, context.current_model)

    decision = strategy.decide_retry(context)
    logger.info(
        "Retry decision feature={} retry={} adjust={} type={} reason={} {}",
        context.feature_id,
        decision.should_retry,
        decision.should_adjust,
        decision.adjustment_type.value,
        decision.reason.value,
        decision.details,
    )
    if not decision.should_retry:
        return decision

    if decision.should_adjust:
        strategy.record_adjustment(context.feature_id, decision.to_adjustment(context))
        if decision.adjustment_type == AdjustmentType.MODEL_ESCALATION and decision.new_model is not None:
            manifest.update_feature_model(context.feature_id, decision.new_model)
    manifest.update_feature_status(context.feature_id, FeatureStatus.PENDING)
    manifest.save()

    history = strategy.get_history(context.feature_id)
    if progress is not None and history is not None:
        progress.store_history(history)
    return decision


def fold_back_tier(manifest: Manifest, tracker: EscalationTracker) -> bool:
    """Persist the tracker's tier on the feature when it drifted from the stored model."""
    feature = manifest.get_feature(tracker.feature_id)
    if feature is None or not tracker.should_restart():
        return False
    current = tracker.current_model
    if parse_tier(feature.model) == current:
        return False
    manifest.update_feature_model(feature.id, current)
    logger.info("Folded live tier {} back into feature {}", current.value, feature.id)
    return True


def _feed_stream(
    feature_id: str,
    instance: Any,
    tracker: Optional[EscalationTracker],
    spawner: Optional[SpawnHandler],
) -> None:
    if (tracker is None and spawner is None) or not isinstance(instance, StreamingInstance):
        return
    for line in instance.drain_output():
        if tracker is not None:
            tracker.process_line(line)
        if spawner is not None:
            _handle_spawn_line(spawner, feature_id, line)


def _handle_spawn_line(spawner: SpawnHandler, feature_id: str, line: str) -> None:
    """Create a child for a spawn request; a rejected request never fails the attempt."""
    try:
        request = spawner.process_line(feature_id, line)
        if request is not None:
            spawner.spawn_child(feature_id, request)
    except PersistenceError:
        raise
    except AutopilotError as exc:
        logger.warning("Rejected spawn request from feature {}: {}", feature_id, exc)


def run_once(
    project_dir: Path,
    executor: ExecutionCollaborator,
    *,
    strategy: Optional[RetryStrategy] = None,
    trackers: Optional[TrackerRegistry] = None,
    progress: Optional[ProgressStore] = None,
    timeline: Optional[Timeline] = None,
    spawn_children: bool = False,
    poll_interval: float = POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> RunResult:
    """Execute the next runnable feature, or classify why there is none.

    With `spawn_children`, spawn requests in the agent stream become child
    features of the running one. A collaborator that fails while being
    polled marks the attempt failed instead of leaving it running.

    Raises:
        AutopilotError: If the manifest directory or manifest is missing.
        PersistenceError: If the manifest or the feature prompt cannot be
            read, or the manifest cannot be saved.
    """
    manifest_dir = find_manifest_dir(project_dir)
    manifest = Manifest.load(manifest_dir)

    feature = manifest.next_runnable_feature()
    if feature is None:
        result = classify_no_work(manifest)
        logger.info("No runnable feature: {}", result.status)
        return result

    prompt = feature_prompt(manifest_dir, feature)
    result = RunResult(feature_id=feature.id, feature_title=feature.title, model=model_name(feature.model))
    started = time.monotonic()

    manifest.update_feature_status(feature.id, FeatureStatus.RUNNING)
    manifest.save()
    if timeline is not None:
        timeline.record_status_change(feature.id, FeatureStatus.PENDING.value, FeatureStatus.RUNNING.value)

    tracker = trackers.register(feature.id, feature.model) if trackers is not None else None
    spawner = SpawnHandler(manifest, manifest_dir, timeline) if spawn_children else None
    try:
        instance = executor.start(feature.id, feature.model, prompt)
    except Exception as exc:
        logger.error("Failed to start feature {}: {}", feature.id, exc)
        result.status = FeatureStatus.FAILED.value
        result.error = str(exc)
    else:
        try:
            while True:
                _feed_stream(feature.id, instance, tracker, spawner)
                state = ExecutionState(instance.status())
                if state.is_terminal:
                    break
                sleep(poll_interval)
            _feed_stream(feature.id, instance, tracker, spawner)
            result.status = state.value
            if state == ExecutionState.FAILED:
                result.error = instance.error()
            if isinstance(instance, MeteredInstance):
                manifest.update_feature_usage(feature.id, instance.usage())
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error("Lost track of feature {}: {}", feature.id, exc)
            result.status = FeatureStatus.FAILED.value
            result.error = str(exc)
    result.duration_seconds = time.monotonic() - started

    manifest.update_feature_status(feature.id, result.status)
    if tracker is not None:
        fold_back_tier(manifest, tracker)
        if progress is not None:
            progress.record_switches(feature.id, tracker.switches())
        trackers.remove(feature.id)
    manifest.save()
    if timeline is not None:
        timeline.record_status_change(feature.id, FeatureStatus.RUNNING.value, result.status)
    logger.info("Feature {} finished with status {} in {:.1f}s", feature.id, result.status, result.duration_seconds)

    if result.status == FeatureStatus.FAILED.value and strategy is not None:
        finished = manifest.get_feature(feature.id) or feature
        attempt = progress.record_attempt(feature.id, finished.model, result.error) if progress is not None else 1
        context = build_failure_context(finished, attempt, result.error, count_tasks(prompt))
        result.retry = apply_retry_decision(manifest, strategy, context, progress)
    elif progress is not None:
        progress.record_attempt(feature.id, feature.model, result.error)

    if progress is not None:
        progress.save()

    if result.status == FeatureStatus.COMPLETED.value:
        result.archived, result.archive_path = archive_source(manifest_dir, manifest)
        if result.archived and timeline is not None:
            timeline.record(feature.id, "archive", "scheduler", f"Archived source to {result.archive_path}")
    return result


def run_project(project_dir: Path, executor: ExecutionCollaborator) -> RunResult:
    """Run one feature with the project's configured retry and escalation policy.

    Reads `.autopilot/config.yaml`, restores durable progress and mirrors the
    timeline to `.autopilot/events.jsonl` before delegating to `run_once`.
    """
    config, config_err = load_autopilot_config(project_dir)
    if config_err:
        logger.warning("Ignoring unreadable config: {}", config_err)

    manifest = Manifest.load(find_manifest_dir(project_dir))
    timeline = Timeline(project_dir / STATE_DIR_NAME / EVENTS_FILE)
    strategy = RetryStrategy(get_retry_config(config), timeline)
    trackers = TrackerRegistry(get_trigger_config(config, manifest.escalation_config), timeline=timeline)
    progress = ProgressStore.load(default_progress_path(project_dir))

    result = run_once(
        project_dir,
        executor,
        strategy=strategy,
        trackers=trackers,
        progress=progress,
        timeline=timeline,
        spawn_children=True,
        poll_interval=get_poll_interval(config),
    )
    logger.debug("Run result:\n{}", pretty(result.to_dict()))
    return result
