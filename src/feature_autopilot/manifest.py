"""Own the persisted feature set and answer every scheduling query over it.

The manifest keeps a single id-indexed table of features. Parent/child links
are id references into that table, so tree queries never parse ids. All reads
take the shared side of the manifest's read/write lock and every mutation the
exclusive side; saving is additionally serialized per manifest and guarded by
a file lock so concurrent writers cannot interleave partial documents.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import yaml
from filelock import FileLock
from loguru import logger

from .constants import CHILD_ID_SEPARATOR, DEFAULT_MAX_DEPTH, LEGACY_MANIFEST_FILE, MANIFEST_FILE
from .dependencies import resolve_dependency_token
from .errors import (
    CircularDependencyError,
    DepthExceededError,
    FeatureNotFoundError,
    PersistenceError,
    ReferenceWarning,
    ValidationError,
)
from .graph import DependencyGraph
from .io_utils import _load_data_with_error, _save_data
from .locks import ReadWriteLock
from .models import (
    EscalationConfig,
    Feature,
    FeatureStatus,
    ModelValue,
    UsageSnapshot,
    parse_model,
)
from .utils import _coerce_float, _coerce_int, _now_iso


@dataclass(frozen=True)
class ManifestSummary:
    """Aggregate counts; `pending` are runnable, `blocked` wait on dependencies."""

    total: int = 0
    completed: int = 0
    running: int = 0
    failed: int = 0
    pending: int = 0
    blocked: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "running": self.running,
            "failed": self.failed,
            "pending": self.pending,
            "blocked": self.blocked,
        }


@dataclass
class BlockedFeature:
    """A pending feature and the dependencies it is still waiting on."""

    id: str
    title: str
    pending_deps: list[str] = field(default_factory=list)
    pending_dep_titles: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "pending_deps": list(self.pending_deps),
            "pending_dep_titles": list(self.pending_dep_titles),
        }


def find_manifest_path(manifest_dir: Path) -> Optional[Path]:
    """Return the manifest document inside `manifest_dir`, preferring YAML."""
    for name in (MANIFEST_FILE, LEGACY_MANIFEST_FILE):
        candidate = manifest_dir / name
        if candidate.exists():
            return candidate
    return None


class Manifest:
    """The complete feature set plus scheduling metadata."""

    def __init__(
        self,
        source: str = "",
        title: str = "",
        *,
        features: Optional[Iterable[Feature]] = None,
        created: Optional[str] = None,
        updated: Optional[str] = None,
        max_depth: int = 0,
        budget_tokens: int = 0,
        budget_usd: float = 0.0,
        escalation: Optional[EscalationConfig] = None,
        path: Optional[Path] = None,
    ) -> None:
        self._lock = ReadWriteLock()
        self._save_lock = threading.Lock()
        self._path = path
        self.source = source
        self.title = title
        self.created = created or _now_iso()
        self.updated = updated or self.created
        self._max_depth = max_depth
        self.budget_tokens = budget_tokens
        self.budget_usd = budget_usd
        self._escalation = escalation
        self._features: list[Feature] = []
        self._index: dict[str, Feature] = {}
        for feature in features or []:
            self._append_unlocked(feature.copy())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Optional[Path] = None) -> "Manifest":
        raw_features = data.get("features", []) or []
        if not isinstance(raw_features, list):
            raw_features = []
        escalation_raw = data.get("escalation")
        return cls(
            source=str(data.get("source") or ""),
            title=str(data.get("title") or ""),
            features=[Feature.from_dict(item) for item in raw_features if isinstance(item, dict)],
            created=str(data["created"]) if data.get("created") else None,
            updated=str(data["updated"]) if data.get("updated") else None,
            max_depth=_coerce_int(data.get("max_depth"), 0),
            budget_tokens=_coerce_int(data.get("budget_tokens"), 0),
            budget_usd=_coerce_float(data.get("budget_usd"), 0.0),
            escalation=EscalationConfig.from_dict(escalation_raw) if isinstance(escalation_raw, dict) else None,
            path=path,
        )

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        """Load a manifest from a file, or from the manifest inside a directory.

        Raises:
            PersistenceError: If the document is missing or cannot be parsed.
        """
        if path.is_dir():
            found = find_manifest_path(path)
            if found is None:
                raise PersistenceError(f"no {MANIFEST_FILE} or {LEGACY_MANIFEST_FILE} in {path}")
            path = found
        if not path.exists():
            raise PersistenceError(f"failed to read manifest: {path} does not exist")
        data, err = _load_data_with_error(path, {})
        if err:
            raise PersistenceError(f"failed to parse manifest: {err}")
        manifest = cls.from_dict(data, path=path)
        logger.debug("Loaded manifest {} with {} feature(s)", path, len(manifest._features))
        return manifest

    def to_dict(self) -> dict[str, Any]:
        with self._lock.read():
            return self._to_dict_unlocked()

    def _to_dict_unlocked(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "source": self.source,
            "title": self.title,
            "created": self.created,
            "updated": self.updated,
        }
        if self._max_depth > 0:
            data["max_depth"] = self._max_depth
        if self.budget_tokens:
            data["budget_tokens"] = self.budget_tokens
        if self.budget_usd:
            data["budget_usd"] = self.budget_usd
        if self._escalation is not None:
            data["escalation"] = self._escalation.to_dict()
        data["features"] = [feature.to_dict() for feature in self._features]
        return data

    @property
    def path(self) -> Optional[Path]:
        with self._lock.read():
            return self._path

    def set_path(self, path: Path) -> None:
        with self._lock.write():
            self._path = path

    def save(self) -> None:
        """Write the manifest atomically.

        Raises:
            PersistenceError: If no path is set or the write fails.
        """
        with self._save_lock:
            with self._lock.write():
                if self._path is None:
                    raise PersistenceError("manifest path not set")
                self.updated = _now_iso()
                data = self._to_dict_unlocked()
                path = self._path
            try:
                with FileLock(str(path) + ".lock"):
                    _save_data(path, data)
            except (OSError, yaml.YAMLError, TypeError, ValueError) as exc:
                raise PersistenceError(f"failed to write manifest {path}: {exc}") from exc
        logger.debug("Saved manifest {}", path)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _append_unlocked(self, feature: Feature) -> None:
        if feature.id in self._index:
            raise ValidationError(f"duplicate feature id: {feature.id}")
        self._features.append(feature)
        self._index[feature.id] = feature

    def _get_unlocked(self, feature_id: str) -> Feature:
        feature = self._index.get(feature_id)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        return feature

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._features)

    def get_feature(self, feature_id: str) -> Optional[Feature]:
        with self._lock.read():
            feature = self._index.get(feature_id)
            return feature.copy() if feature else None

    def get_feature_by_title(self, title: str) -> Optional[Feature]:
        normalized = title.strip().lower()
        with self._lock.read():
            for feature in self._features:
                if feature.title.strip().lower() == normalized:
                    return feature.copy()
        return None

    def all_features(self) -> list[Feature]:
        with self._lock.read():
            return [feature.copy() for feature in self._features]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_feature(self, feature: Feature) -> None:
        with self._lock.write():
            self._append_unlocked(feature.copy())
            self.updated = _now_iso()

    def update_feature_status(self, feature_id: str, status: Union[FeatureStatus, str]) -> None:
        status = FeatureStatus(status)
        with self._lock.write():
            feature = self._get_unlocked(feature_id)
            previous = feature.status
            feature.status = status
            self.updated = _now_iso()
        logger.info("Feature {} status {} -> {}", feature_id, previous.value, status.value)

    def update_feature_model(self, feature_id: str, model: ModelValue) -> None:
        with self._lock.write():
            feature = self._get_unlocked(feature_id)
            feature.model = parse_model(model)
            self.updated = _now_iso()

    def update_feature_usage(self, feature_id: str, usage: Optional[UsageSnapshot]) -> None:
        with self._lock.write():
            feature = self._get_unlocked(feature_id)
            if usage is not None:
                feature.usage = replace(usage)
            self.updated = _now_iso()

    def set_source(self, source: str) -> None:
        with self._lock.write():
            self.source = source
            self.updated = _now_iso()

    # ------------------------------------------------------------------
    # Dependency resolution and validation
    # ------------------------------------------------------------------

    def resolve_dependency_id(self, token: str) -> str:
        with self._lock.read():
            return resolve_dependency_token(token, self._features)

    def resolve_dependencies(self) -> None:
        """Rewrite every dependency token to its canonical feature id."""
        with self._lock.write():
            for feature in self._features:
                feature.depends_on = [resolve_dependency_token(dep, self._features) for dep in feature.depends_on]

    def remove_missing_dependencies(self) -> list[ReferenceWarning]:
        """Drop dependency ids that name no feature.

        Returns:
            One warning per dropped reference, in feature order.
        """
        removed: list[ReferenceWarning] = []
        with self._lock.write():
            for feature in self._features:
                valid: list[str] = []
                for dep_id in feature.depends_on:
                    if dep_id in self._index:
                        valid.append(dep_id)
                    else:
                        removed.append(ReferenceWarning(feature.id, feature.title, dep_id))
                feature.depends_on = valid
        for warning in removed:
            logger.warning("{}", warning.message)
        return removed

    def validate_dependencies(self) -> tuple[list[ReferenceWarning], Optional[CircularDependencyError]]:
        """Report dangling references and detect cycles among the known ones.

        Returns:
            `(warnings, cycle_error)`; `cycle_error` is None for an acyclic set.
        """
        with self._lock.read():
            warnings = [
                ReferenceWarning(feature.id, feature.title, dep_id)
                for feature in self._features
                for dep_id in feature.depends_on
                if dep_id not in self._index
            ]
            graph = DependencyGraph.from_features(self._features, known_only=True)
        cycle = graph.detect_cycle()
        if cycle:
            return warnings, CircularDependencyError(cycle)
        return warnings, None

    def build_dependency_graph(self) -> DependencyGraph:
        with self._lock.read():
            return DependencyGraph.from_features(self._features, known_only=False)

    def topological_order(self) -> list[str]:
        """Return feature ids in dependency order.

        Raises:
            CircularDependencyError: If the known dependencies form a cycle.
        """
        with self._lock.read():
            graph = DependencyGraph.from_features(self._features, known_only=True)
        return graph.topological_order()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _deps_satisfied_unlocked(self, feature: Feature) -> bool:
        for dep_id in feature.depends_on:
            dep = self._index.get(dep_id)
            if dep is None or dep.status != FeatureStatus.COMPLETED:
                return False
        return True

    def _pending_deps_unlocked(self, feature: Feature) -> list[str]:
        return [
            dep_id
            for dep_id in feature.depends_on
            if dep_id not in self._index or self._index[dep_id].status != FeatureStatus.COMPLETED
        ]

    def is_dependency_satisfied(self, feature_id: str) -> bool:
        with self._lock.read():
            feature = self._index.get(feature_id)
            return feature is not None and self._deps_satisfied_unlocked(feature)

    def pending_dependencies(self, feature_id: str) -> list[str]:
        with self._lock.read():
            feature = self._index.get(feature_id)
            if feature is None:
                return []
            return self._pending_deps_unlocked(feature)

    def next_runnable_feature(self) -> Optional[Feature]:
        """Return the first pending feature, in manifest order, whose dependencies are completed."""
        with self._lock.read():
            for feature in self._features:
                if feature.status == FeatureStatus.PENDING and self._deps_satisfied_unlocked(feature):
                    return feature.copy()
        return None

    def all_runnable_features(self) -> list[Feature]:
        with self._lock.read():
            return [
                feature.copy()
                for feature in self._features
                if feature.status == FeatureStatus.PENDING and self._deps_satisfied_unlocked(feature)
            ]

    def blocked_features(self) -> list[Feature]:
        with self._lock.read():
            return [
                feature.copy()
                for feature in self._features
                if feature.status == FeatureStatus.PENDING and not self._deps_satisfied_unlocked(feature)
            ]

    def blocked_report(self) -> list[BlockedFeature]:
        """Describe each blocked feature with the titles and statuses of its unmet dependencies."""
        report: list[BlockedFeature] = []
        with self._lock.read():
            for feature in self._features:
                if feature.status != FeatureStatus.PENDING or self._deps_satisfied_unlocked(feature):
                    continue
                pending = self._pending_deps_unlocked(feature)
                titles = [
                    f"{self._index[dep_id].title} ({self._index[dep_id].status.value})"
                    for dep_id in pending
                    if dep_id in self._index
                ]
                report.append(BlockedFeature(feature.id, feature.title, pending, titles))
        return report

    def summary(self) -> ManifestSummary:
        completed = running = failed = pending = blocked = 0
        with self._lock.read():
            total = len(self._features)
            for feature in self._features:
                if feature.status == FeatureStatus.COMPLETED:
                    completed += 1
                elif feature.status == FeatureStatus.RUNNING:
                    running += 1
                elif feature.status == FeatureStatus.FAILED:
                    failed += 1
                elif self._deps_satisfied_unlocked(feature):
                    pending += 1
                else:
                    blocked += 1
        return ManifestSummary(total, completed, running, failed, pending, blocked)

    def all_completed(self) -> bool:
        summary = self.summary()
        return summary.total > 0 and summary.completed == summary.total

    # ------------------------------------------------------------------
    # Recursive feature tree
    # ------------------------------------------------------------------

    @property
    def max_depth(self) -> int:
        with self._lock.read():
            return self._max_depth if self._max_depth > 0 else DEFAULT_MAX_DEPTH

    def set_max_depth(self, depth: int) -> None:
        with self._lock.write():
            self._max_depth = depth

    def can_spawn_child(self, feature_id: str) -> bool:
        with self._lock.read():
            feature = self._index.get(feature_id)
            max_depth = self._max_depth if self._max_depth > 0 else DEFAULT_MAX_DEPTH
            return feature is not None and feature.depth < max_depth

    def next_child_id(self, parent_id: str) -> str:
        """Suggest an unused id of the form `<parent>.<n>` for a new child."""
        with self._lock.read():
            parent = self._get_unlocked(parent_id)
            ordinal = len(parent.children) + 1
            while f"{parent_id}{CHILD_ID_SEPARATOR}{ordinal}" in self._index:
                ordinal += 1
            return f"{parent_id}{CHILD_ID_SEPARATOR}{ordinal}"

    def add_child(self, parent_id: str, child: Feature) -> Feature:
        """Attach a new child feature under `parent_id`.

        The child's parent, depth and (unless explicitly non-zero) context
        budget are derived from the parent. Nothing is modified when the
        parent is unknown or the child would exceed `max_depth`.

        Returns:
            A copy of the stored child.

        Raises:
            FeatureNotFoundError: If the parent does not exist.
            DepthExceededError: If the child would sit deeper than `max_depth`.
            ValidationError: If the child id is already taken.
        """
        with self._lock.write():
            parent = self._get_unlocked(parent_id)
            max_depth = self._max_depth if self._max_depth > 0 else DEFAULT_MAX_DEPTH
            if parent.depth + 1 > max_depth:
                raise DepthExceededError(parent.depth, max_depth)
            if child.id in self._index:
                raise ValidationError(f"duplicate feature id: {child.id}")

            stored = child.copy()
            stored.parent_id = parent_id
            stored.depth = parent.depth + 1
            stored.children = []
            if stored.context_budget == 0 and parent.context_budget > 0:
                stored.context_budget = parent.context_budget // 2

            self._append_unlocked(stored)
            parent.children.append(stored.id)
            self.updated = _now_iso()
            result = stored.copy()
        logger.info(
            "Added child {} under {} depth={} context_budget={}",
            result.id,
            parent_id,
            result.depth,
            result.context_budget,
        )
        return result

    def children(self, parent_id: str) -> list[Feature]:
        with self._lock.read():
            parent = self._index.get(parent_id)
            if parent is None:
                return []
            return [self._index[cid].copy() for cid in parent.children if cid in self._index]

    def parent(self, feature_id: str) -> Optional[Feature]:
        with self._lock.read():
            feature = self._index.get(feature_id)
            if feature is None or not feature.parent_id:
                return None
            parent = self._index.get(feature.parent_id)
            return parent.copy() if parent else None

    def root_features(self) -> list[Feature]:
        with self._lock.read():
            return [feature.copy() for feature in self._features if not feature.parent_id]

    def _collect_descendants_unlocked(self, feature_id: str, out: list[Feature], seen: set[str]) -> None:
        feature = self._index.get(feature_id)
        if feature is None:
            return
        for child_id in feature.children:
            child = self._index.get(child_id)
            if child is None or child_id in seen:
                continue
            seen.add(child_id)
            out.append(child.copy())
            self._collect_descendants_unlocked(child_id, out, seen)

    def descendants(self, feature_id: str) -> list[Feature]:
        """Return children, grandchildren, ... depth-first in children order."""
        out: list[Feature] = []
        with self._lock.read():
            self._collect_descendants_unlocked(feature_id, out, {feature_id})
        return out

    def feature_with_descendants(self, feature_id: str) -> list[Feature]:
        with self._lock.read():
            feature = self._index.get(feature_id)
            if feature is None:
                return []
            out = [feature.copy()]
            self._collect_descendants_unlocked(feature_id, out, {feature_id})
        return out

    def ancestors(self, feature_id: str) -> list[Feature]:
        """Return parent, grandparent, ... up to the root."""
        out: list[Feature] = []
        with self._lock.read():
            feature = self._index.get(feature_id)
            if feature is None:
                return []
            seen = {feature_id}
            current = feature.parent_id
            while current and current not in seen:
                parent = self._index.get(current)
                if parent is None:
                    break
                seen.add(current)
                out.append(parent.copy())
                current = parent.parent_id
        return out

    # ------------------------------------------------------------------
    # Budgets, usage, escalation config
    # ------------------------------------------------------------------

    def has_global_budget(self) -> bool:
        with self._lock.read():
            return self.budget_tokens > 0 or self.budget_usd > 0

    def global_budget(self) -> tuple[int, float]:
        with self._lock.read():
            return self.budget_tokens, self.budget_usd

    def feature_budget(self, feature_id: str) -> tuple[int, float]:
        with self._lock.read():
            feature = self._index.get(feature_id)
            if feature is None:
                return 0, 0.0
            return feature.budget_tokens, feature.budget_usd

    def total_usage(self) -> UsageSnapshot:
        total = UsageSnapshot()
        with self._lock.read():
            for feature in self._features:
                if feature.usage is not None:
                    total.add(feature.usage)
        return total

    def tree_usage(self, feature_id: str) -> UsageSnapshot:
        """Sum usage for a feature and all of its descendants."""
        total = UsageSnapshot()
        for feature in self.feature_with_descendants(feature_id):
            if feature.usage is not None:
                total.add(feature.usage)
        return total

    @property
    def escalation_config(self) -> Optional[EscalationConfig]:
        with self._lock.read():
            return self._escalation

    def set_escalation_config(self, config: Optional[EscalationConfig]) -> None:
        with self._lock.write():
            self._escalation = config
            self.updated = _now_iso()

    def is_escalation_enabled(self) -> bool:
        with self._lock.read():
            return self._escalation is not None and self._escalation.enabled
