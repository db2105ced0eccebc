"""Watch a running attempt's output stream and move it along the tier ladder.

The tracker is fed one JSON line at a time from the coding agent's stream.
Error bursts escalate, explicit requests jump straight to a tier,
architectural vocabulary escalates, and simple-task vocabulary de-escalates.
De-escalation is only allowed for a tracker that has never seen an error,
even after the error counter was reset by an escalation.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from loguru import logger

from .constants import DEFAULT_DEESCALATE_KEYWORDS, DEFAULT_ERROR_THRESHOLD, DEFAULT_ESCALATE_KEYWORDS
from .locks import ReadWriteLock
from .models import EscalationConfig, ModelTier, ModelValue, parse_tier
from .timeline import Timeline
from .utils import _coerce_bool, _coerce_int, _coerce_string_list, _now_iso


class SwitchReason(str, Enum):
    INITIAL = "initial"
    ERROR_THRESHOLD = "error_threshold"
    EXPLICIT_REQUEST = "explicit_request"
    ARCHITECTURAL_PATTERN = "architectural_pattern"
    DEESCALATE = "deescalate"
    CONFIGURED_BY_USER = "configured_by_user"


@dataclass
class ModelSwitch:
    from_model: Optional[ModelTier]
    to_model: ModelTier
    reason: SwitchReason
    details: str = ""
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "from_model": self.from_model.value if self.from_model else "",
            "to_model": self.to_model.value,
            "reason": self.reason.value,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelSwitch":
        try:
            reason = SwitchReason(str(data.get("reason") or "initial"))
        except ValueError:
            reason = SwitchReason.INITIAL
        return cls(
            from_model=parse_tier(data.get("from_model")),
            to_model=parse_tier(data.get("to_model")) or ModelTier.SONNET,
            reason=reason,
            details=str(data.get("details") or ""),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class TriggerConfig:
    error_threshold: int = DEFAULT_ERROR_THRESHOLD
    enabled: bool = True
    escalate_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_ESCALATE_KEYWORDS))
    deescalate_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_DEESCALATE_KEYWORDS))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TriggerConfig":
        threshold = _coerce_int(data.get("error_threshold"), DEFAULT_ERROR_THRESHOLD)
        return cls(
            error_threshold=threshold if threshold > 0 else DEFAULT_ERROR_THRESHOLD,
            enabled=_coerce_bool(data.get("enabled"), True),
            escalate_keywords=_coerce_string_list(data.get("escalate_keywords")) or list(DEFAULT_ESCALATE_KEYWORDS),
            deescalate_keywords=_coerce_string_list(data.get("deescalate_keywords"))
            or list(DEFAULT_DEESCALATE_KEYWORDS),
        )

    @classmethod
    def from_escalation_config(cls, config: EscalationConfig) -> "TriggerConfig":
        return cls(
            error_threshold=config.error_threshold,
            enabled=config.enabled,
            escalate_keywords=list(config.escalate_keywords),
            deescalate_keywords=list(config.deescalate_keywords),
        )


# (phrase, tier) pairs checked in order against lower-cased assistant text
EXPLICIT_REQUESTS: list[tuple[str, ModelTier]] = [
    ("need opus", ModelTier.OPUS),
    ("needs opus", ModelTier.OPUS),
    ("require opus", ModelTier.OPUS),
    ("requires opus", ModelTier.OPUS),
    ("switch to opus", ModelTier.OPUS),
    ("escalate to opus", ModelTier.OPUS),
    ("need sonnet", ModelTier.SONNET),
    ("needs sonnet", ModelTier.SONNET),
    ("require sonnet", ModelTier.SONNET),
    ("requires sonnet", ModelTier.SONNET),
    ("switch to sonnet", ModelTier.SONNET),
    ("escalate to sonnet", ModelTier.SONNET),
    ("need haiku", ModelTier.HAIKU),
    ("needs haiku", ModelTier.HAIKU),
    ("switch to haiku", ModelTier.HAIKU),
]

ARCHITECTURAL_PATTERNS = [
    re.compile(r"architect(ure|ural)?", re.IGNORECASE),
    re.compile(r"design\s+(pattern|decision|choice)", re.IGNORECASE),
    re.compile(r"refactor(ing)?\s+(strategy|approach|plan)", re.IGNORECASE),
    re.compile(r"trade-?off", re.IGNORECASE),
    re.compile(r"system\s+design", re.IGNORECASE),
    re.compile(r"api\s+design", re.IGNORECASE),
    re.compile(r"database\s+schema", re.IGNORECASE),
    re.compile(r"schema\s+migration", re.IGNORECASE),
    re.compile(r"data\s+model", re.IGNORECASE),
    re.compile(r"major\s+refactor", re.IGNORECASE),
]

_TASK_DEESCALATE_PATTERNS = [
    "test", "format", "lint", "typo", "comment", "documentation", "simple", "trivial", "minor",
]
_TASK_ESCALATE_PATTERNS = [
    "architect", "design", "refactor", "complex", "system", "api design", "database", "schema",
]


def _initial_tier(model: ModelValue) -> ModelTier:
    # "" and "auto" (and any unknown tag) start on the mid rung
    return parse_tier(model) or ModelTier.SONNET


def _matched_keywords(content: str, keywords: Iterable[str]) -> list[str]:
    return [keyword for keyword in keywords if keyword and keyword.lower() in content]


def _contains_architectural_pattern(content: str) -> bool:
    return any(pattern.search(content) for pattern in ARCHITECTURAL_PATTERNS)


def _extract_content(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str) and content:
        return content
    nested = message.get("message")
    if isinstance(nested, dict):
        inner = nested.get("content")
        if isinstance(inner, str) and inner:
            return inner
        if isinstance(inner, list):
            texts = [
                str(block.get("text") or "")
                for block in inner
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            joined = "\n".join(text for text in texts if text)
            if joined:
                return joined
        text = nested.get("text")
        if isinstance(text, str):
            return text
    return ""


class EscalationTracker:
    """Live tier tracker for one feature's in-flight attempt."""

    def __init__(
        self,
        feature_id: str,
        initial_model: ModelValue = "",
        config: Optional[TriggerConfig] = None,
        timeline: Optional[Timeline] = None,
    ) -> None:
        self._lock = ReadWriteLock()
        self.feature_id = feature_id
        self.config = config or TriggerConfig()
        self.timeline = timeline
        start = _initial_tier(initial_model)
        self._initial = start
        self._current = start
        self._error_count = 0
        self._ever_errored = False
        self._switches: list[ModelSwitch] = [
            ModelSwitch(None, start, SwitchReason.INITIAL, "initial model selection"),
        ]

    @property
    def current_model(self) -> ModelTier:
        with self._lock.read():
            return self._current

    @property
    def initial_model(self) -> ModelTier:
        return self._initial

    @property
    def error_count(self) -> int:
        with self._lock.read():
            return self._error_count

    @property
    def ever_errored(self) -> bool:
        with self._lock.read():
            return self._ever_errored

    def switches(self) -> list[ModelSwitch]:
        with self._lock.read():
            return list(self._switches)

    def last_switch(self) -> Optional[ModelSwitch]:
        with self._lock.read():
            return self._switches[-1] if self._switches else None

    def should_restart(self) -> bool:
        """True once any switch beyond the initial selection has happened."""
        with self._lock.read():
            return len(self._switches) > 1 and self._switches[-1].reason != SwitchReason.INITIAL

    def process_line(self, line: str) -> tuple[bool, ModelTier]:
        """Inspect one stream line.

        Returns:
            `(changed, tier)` where `tier` is the tier after processing.
        """
        if not self.config.enabled:
            return False, self.current_model
        try:
            message = json.loads(line)
        except (TypeError, ValueError):
            return False, self.current_model
        if not isinstance(message, dict):
            return False, self.current_model

        msg_type = message.get("type")
        with self._lock.write():
            if msg_type == "error":
                return self._handle_error_unlocked()
            if msg_type == "tool_result":
                if message.get("is_error"):
                    return self._handle_error_unlocked()
                return self._check_content_unlocked(str(message.get("result") or message.get("content") or ""))
            if msg_type == "assistant":
                return self._check_content_unlocked(_extract_content(message))
            return False, self._current

    def _handle_error_unlocked(self) -> tuple[bool, ModelTier]:
        self._error_count += 1
        self._ever_errored = True
        if self._error_count < self.config.error_threshold:
            return False, self._current
        target = self._current.escalated()
        if target == self._current:
            return False, self._current
        details = f"{self._error_count} errors at {self._current.value} level"
        self._error_count = 0
        return self._switch_unlocked(target, SwitchReason.ERROR_THRESHOLD, details)

    def _check_content_unlocked(self, content: str) -> tuple[bool, ModelTier]:
        if not content:
            return False, self._current
        lower = content.lower()

        for phrase, tier in EXPLICIT_REQUESTS:
            if phrase in lower and tier != self._current:
                return self._switch_unlocked(tier, SwitchReason.EXPLICIT_REQUEST, f"explicit request: {phrase!r}")

        if self._current != ModelTier.top():
            matched = _matched_keywords(lower, self.config.escalate_keywords)
            if len(matched) >= 2 or _contains_architectural_pattern(lower):
                details = f"escalation keywords detected: {', '.join(matched)}" if matched else "architectural pattern"
                return self._switch_unlocked(self._current.escalated(), SwitchReason.ARCHITECTURAL_PATTERN, details)

        if self._current != ModelTier.lowest() and not self._ever_errored:
            matched = _matched_keywords(lower, self.config.deescalate_keywords)
            if len(matched) >= 2:
                return self._switch_unlocked(
                    self._current.deescalated(),
                    SwitchReason.DEESCALATE,
                    f"de-escalation keywords detected: {', '.join(matched)}",
                )

        return False, self._current

    def _switch_unlocked(self, target: ModelTier, reason: SwitchReason, details: str) -> tuple[bool, ModelTier]:
        switch = ModelSwitch(self._current, target, reason, details)
        self._switches.append(switch)
        self._current = target
        logger.info(
            "Model switch feature={} {} -> {} reason={} ({})",
            self.feature_id,
            switch.from_model.value if switch.from_model else "",
            target.value,
            reason.value,
            details,
        )
        if self.timeline is not None:
            self.timeline.record(
                self.feature_id,
                "model_switch",
                "escalation",
                f"Model: {switch.from_model.value if switch.from_model else ''} -> {target.value}",
                reason=reason.value,
                details=details,
            )
        return True, target

    def force_model(self, model: ModelValue, details: str = "") -> bool:
        """Apply a manual override; returns False when the tier is unchanged."""
        tier = parse_tier(model)
        if tier is None:
            raise ValueError(f"unknown model tier: {model!r}")
        with self._lock.write():
            if tier == self._current:
                return False
            self._switch_unlocked(tier, SwitchReason.CONFIGURED_BY_USER, details or "manual override")
            return True

    def reset_errors(self) -> None:
        """Clear the resettable error counter; `ever_errored` is kept."""
        with self._lock.write():
            self._error_count = 0


class TrackerRegistry:
    """Owns one tracker per in-flight feature."""

    def __init__(self, config: Optional[TriggerConfig] = None, timeline: Optional[Timeline] = None) -> None:
        self._lock = ReadWriteLock()
        self._trackers: dict[str, EscalationTracker] = {}
        self._config = config or TriggerConfig()
        self.timeline = timeline

    @property
    def config(self) -> TriggerConfig:
        with self._lock.read():
            return self._config

    def set_config(self, config: TriggerConfig) -> None:
        with self._lock.write():
            self._config = config

    def register(self, feature_id: str, initial_model: ModelValue = "") -> EscalationTracker:
        with self._lock.write():
            tracker = EscalationTracker(feature_id, initial_model, self._config, self.timeline)
            self._trackers[feature_id] = tracker
        logger.info("Tracker registered feature={} initial_model={}", feature_id, tracker.initial_model.value)
        return tracker

    def get(self, feature_id: str) -> Optional[EscalationTracker]:
        with self._lock.read():
            return self._trackers.get(feature_id)

    def remove(self, feature_id: str) -> None:
        with self._lock.write():
            self._trackers.pop(feature_id, None)

    def process_line(self, feature_id: str, line: str) -> tuple[bool, Optional[ModelTier]]:
        tracker = self.get(feature_id)
        if tracker is None:
            return False, None
        return tracker.process_line(line)

    def current_model(self, feature_id: str) -> Optional[ModelTier]:
        tracker = self.get(feature_id)
        return tracker.current_model if tracker else None

    def switches(self, feature_id: str) -> list[ModelSwitch]:
        tracker = self.get(feature_id)
        return tracker.switches() if tracker else []


def select_initial_model(task_count: int, keywords: Iterable[str] = ()) -> ModelTier:
    """Pick a starting tier from the task count and title keywords."""
    for keyword in keywords:
        lower = keyword.lower()
        if "architect" in lower or "design" in lower or "refactor" in lower:
            return ModelTier.SONNET
    if task_count <= 2:
        return ModelTier.HAIKU
    return ModelTier.SONNET


def should_deescalate_for_task(task_title: str) -> bool:
    lower = task_title.lower()
    return any(pattern in lower for pattern in _TASK_DEESCALATE_PATTERNS)


def should_escalate_for_task(task_title: str) -> bool:
    lower = task_title.lower()
    return any(pattern in lower for pattern in _TASK_ESCALATE_PATTERNS)
