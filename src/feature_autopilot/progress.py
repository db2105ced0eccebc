"""Persist per-feature attempt history between single-shot invocations."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from filelock import FileLock

from .constants import PROGRESS_FILE, STATE_DIR_NAME
from .errors import PersistenceError
from .escalation import ModelSwitch
from .io_utils import _load_data_with_error, _save_data
from .locks import ReadWriteLock
from .models import ModelValue, model_name
from .retry import Adjustment, AdjustmentHistory
from .utils import _coerce_bool, _coerce_int, _now_iso


@dataclass
class FeatureProgress:
    feature_id: str
    attempts: int = 0
    last_error: str = ""
    current_model: str = ""
    original_model: str = ""
    simplified: bool = False
    adjustments: list[Adjustment] = field(default_factory=list)
    model_switches: list[ModelSwitch] = field(default_factory=list)
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "last_error": self.last_error,
            "current_model": self.current_model,
            "original_model": self.original_model,
            "simplified": self.simplified,
            "adjustments": [adj.to_dict() for adj in self.adjustments],
            "model_switches": [switch.to_dict() for switch in self.model_switches],
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, feature_id: str, data: dict[str, Any]) -> "FeatureProgress":
        return cls(
            feature_id=feature_id,
            attempts=_coerce_int(data.get("attempts"), 0),
            last_error=str(data.get("last_error") or ""),
            current_model=str(data.get("current_model") or ""),
            original_model=str(data.get("original_model") or ""),
            simplified=_coerce_bool(data.get("simplified"), False),
            adjustments=[Adjustment.from_dict(item) for item in data.get("adjustments") or [] if isinstance(item, dict)],
            model_switches=[
                ModelSwitch.from_dict(item) for item in data.get("model_switches") or [] if isinstance(item, dict)
            ],
            updated_at=str(data.get("updated_at") or ""),
        )

    def to_history(self) -> AdjustmentHistory:
        """Rebuild the in-memory adjustment history for the retry strategy."""
        return AdjustmentHistory.from_dict(
            self.feature_id,
            {
                "original_model": self.original_model,
                "current_model": self.current_model,
                "simplified": self.simplified,
                "adjustments": [adj.to_dict() for adj in self.adjustments],
            },
        )


def default_progress_path(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME / PROGRESS_FILE


class ProgressStore:
    """YAML-backed map of feature id to `FeatureProgress`."""

    def __init__(self, path: Path, features: Optional[dict[str, FeatureProgress]] = None) -> None:
        self.path = path
        self._lock = ReadWriteLock()
        self._save_lock = threading.Lock()
        self._features: dict[str, FeatureProgress] = dict(features or {})

    @classmethod
    def load(cls, path: Path) -> "ProgressStore":
        """Load progress, starting empty when the file does not exist yet.

        Raises:
            PersistenceError: If an existing file cannot be parsed, so it is
                never silently overwritten.
        """
        data, err = _load_data_with_error(path, {})
        if err:
            raise PersistenceError(f"failed to read progress: {err}")
        raw = data.get("features") or {}
        features = {
            str(fid): FeatureProgress.from_dict(str(fid), entry)
            for fid, entry in raw.items()
            if isinstance(entry, dict)
        } if isinstance(raw, dict) else {}
        return cls(path, features)

    def save(self) -> None:
        with self._save_lock:
            with self._lock.read():
                data = {
                    "updated_at": _now_iso(),
                    "features": {fid: entry.to_dict() for fid, entry in self._features.items()},
                }
            try:
                with FileLock(str(self.path) + ".lock"):
                    _save_data(self.path, data)
            except (OSError, yaml.YAMLError, TypeError, ValueError) as exc:
                raise PersistenceError(f"failed to write progress {self.path}: {exc}") from exc

    def _entry_unlocked(self, feature_id: str) -> FeatureProgress:
        entry = self._features.get(feature_id)
        if entry is None:
            entry = FeatureProgress(feature_id)
            self._features[feature_id] = entry
        return entry

    def get(self, feature_id: str) -> FeatureProgress:
        with self._lock.read():
            entry = self._features.get(feature_id)
            if entry is None:
                return FeatureProgress(feature_id)
            return FeatureProgress.from_dict(feature_id, entry.to_dict())

    def feature_ids(self) -> list[str]:
        with self._lock.read():
            return list(self._features)

    def record_attempt(self, feature_id: str, model: ModelValue, error: str = "") -> int:
        """Count a finished attempt and return the new attempt number."""
        with self._lock.write():
            entry = self._entry_unlocked(feature_id)
            entry.attempts += 1
            entry.last_error = error
            entry.current_model = model_name(model)
            if not entry.original_model:
                entry.original_model = entry.current_model
            entry.updated_at = _now_iso()
            return entry.attempts

    def store_history(self, history: AdjustmentHistory) -> None:
        with self._lock.write():
            entry = self._entry_unlocked(history.feature_id)
            entry.adjustments = history.adjustments()
            entry.current_model = model_name(history.current_model)
            entry.original_model = entry.original_model or model_name(history.original_model)
            entry.simplified = history.simplified
            entry.updated_at = _now_iso()

    def record_switches(self, feature_id: str, switches: list[ModelSwitch]) -> None:
        """Append tracker switches, skipping the tracker's initial selection."""
        with self._lock.write():
            entry = self._entry_unlocked(feature_id)
            entry.model_switches.extend(switch for switch in switches if switch.from_model is not None)
            entry.updated_at = _now_iso()

    def reset(self, feature_id: str) -> None:
        with self._lock.write():
            self._features.pop(feature_id, None)
