"""Shared activity timeline for scheduling and model decisions.

Both decision engines append here without consulting each other. Events are
kept in memory per feature and, when an events file is configured, mirrored to
a JSONL log under the state directory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .io_utils import _append_event
from .locks import ReadWriteLock
from .utils import _now_iso


@dataclass
class TimelineEvent:
    """One event in the activity timeline."""
    id: str
    feature_id: str
    type: str          # status_change | adjustment | model_switch | spawn | archive
    source: str        # scheduler | retry | escalation | spawn
    summary: str
    timestamp: str = field(default_factory=_now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "type": self.type,
            "source": self.source,
            "summary": self.summary,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


class Timeline:
    """Append-only, thread-safe event stream."""

    def __init__(self, events_path: Optional[Path] = None) -> None:
        self._lock = ReadWriteLock()
        self._events: list[TimelineEvent] = []
        self._counter = 0
        self.events_path = events_path

    def record(
        self,
        feature_id: str,
        type: str,
        source: str,
        summary: str,
        **metadata: Any,
    ) -> TimelineEvent:
        with self._lock.write():
            self._counter += 1
            event = TimelineEvent(
                id=f"ev-{self._counter}",
                feature_id=feature_id,
                type=type,
                source=source,
                summary=summary,
                metadata=metadata,
            )
            self._events.append(event)
        if self.events_path is not None:
            try:
                _append_event(self.events_path, event.to_dict())
            except OSError as exc:
                logger.warning("Failed to append timeline event to {}: {}", self.events_path, exc)
        return event

    def record_status_change(self, feature_id: str, old_status: str, new_status: str) -> TimelineEvent:
        return self.record(
            feature_id,
            "status_change",
            "scheduler",
            f"Status changed: {old_status} -> {new_status}",
            old_status=old_status,
            new_status=new_status,
        )

    def events(self, feature_id: Optional[str] = None) -> list[TimelineEvent]:
        with self._lock.read():
            if feature_id is None:
                return list(self._events)
            return [event for event in self._events if event.feature_id == feature_id]

    def events_by_source(self, source: str) -> list[TimelineEvent]:
        with self._lock.read():
            return [event for event in self._events if event.source == source]

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._events)
