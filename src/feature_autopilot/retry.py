"""Decide what to change before retrying a failed feature attempt.

The strategy inspects a `FailureContext` describing the last failed attempt
and recommends one of: stop, retry unchanged, retry on the next model tier,
or retry with the task list simplified. Escalation is always tried before
simplification. Deciding never mutates history; callers record the
adjustment they actually applied with `RetryStrategy.record_adjustment`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from loguru import logger

from .constants import DEFAULT_MAX_ADJUSTMENTS, DEFAULT_MAX_RETRIES
from .locks import ReadWriteLock
from .models import ModelTier, ModelValue, model_name, parse_model, parse_tier
from .timeline import Timeline
from .utils import _coerce_bool, _coerce_int, _now_iso


class AdjustmentType(str, Enum):
    NONE = "none"
    MODEL_ESCALATION = "model_escalation"
    TASK_SIMPLIFY = "task_simplify"
    CONTEXT_EXPAND = "context_expand"
    PROMPT_REFINE = "prompt_refine"


class AdjustmentReason(str, Enum):
    NONE = ""
    REPEATED_FAILURES = "repeated_failures"
    TEST_FAILURES = "test_failures"
    COMPILATION_ERRORS = "compilation_errors"
    TIMEOUT = "timeout"
    COMPLEX_TASK = "complex_task"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"


@dataclass
class Adjustment:
    """A single change applied before a retry."""

    type: AdjustmentType
    reason: AdjustmentReason = AdjustmentReason.NONE
    attempt_num: int = 0
    from_value: str = ""
    to_value: str = ""
    details: str = ""
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": self.timestamp,
            "type": self.type.value,
            "reason": self.reason.value,
            "attempt_num": self.attempt_num,
        }
        if self.from_value:
            data["from_value"] = self.from_value
        if self.to_value:
            data["to_value"] = self.to_value
        if self.details:
            data["details"] = self.details
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Adjustment":
        try:
            adj_type = AdjustmentType(str(data.get("type") or "none"))
        except ValueError:
            adj_type = AdjustmentType.NONE
        try:
            reason = AdjustmentReason(str(data.get("reason") or ""))
        except ValueError:
            reason = AdjustmentReason.NONE
        return cls(
            type=adj_type,
            reason=reason,
            attempt_num=_coerce_int(data.get("attempt_num"), 0),
            from_value=str(data.get("from_value") or ""),
            to_value=str(data.get("to_value") or ""),
            details=str(data.get("details") or ""),
            timestamp=str(data.get("timestamp") or ""),
        )

    def describe(self) -> str:
        if self.type == AdjustmentType.MODEL_ESCALATION:
            return f"Model: {self.from_value} -> {self.to_value}"
        if self.type == AdjustmentType.TASK_SIMPLIFY:
            return f"Tasks simplified: {self.details}"
        if self.type == AdjustmentType.CONTEXT_EXPAND:
            return "Context expanded"
        if self.type == AdjustmentType.PROMPT_REFINE:
            return "Prompt refined"
        return self.type.value


class AdjustmentHistory:
    """Append-only adjustment log for one feature."""

    def __init__(self, feature_id: str, initial_model: ModelValue = "") -> None:
        self._lock = ReadWriteLock()
        self.feature_id = feature_id
        self._adjustments: list[Adjustment] = []
        self._current_model: ModelValue = parse_model(initial_model)
        self._original_model: ModelValue = self._current_model
        self._simplified = False

    def add(self, adjustment: Adjustment) -> Adjustment:
        stored = replace(adjustment, timestamp=adjustment.timestamp or _now_iso())
        with self._lock.write():
            self._adjustments.append(stored)
        logger.info(
            "Adjustment recorded feature={} type={} reason={} from={} to={}",
            self.feature_id,
            stored.type.value,
            stored.reason.value,
            stored.from_value,
            stored.to_value,
        )
        return stored

    def adjustments(self) -> list[Adjustment]:
        with self._lock.read():
            return list(self._adjustments)

    def count(self) -> int:
        with self._lock.read():
            return len(self._adjustments)

    def last(self) -> Optional[Adjustment]:
        with self._lock.read():
            return self._adjustments[-1] if self._adjustments else None

    @property
    def current_model(self) -> ModelValue:
        with self._lock.read():
            return self._current_model

    @current_model.setter
    def current_model(self, model: ModelValue) -> None:
        with self._lock.write():
            self._current_model = parse_model(model)

    @property
    def original_model(self) -> ModelValue:
        with self._lock.read():
            return self._original_model

    @property
    def simplified(self) -> bool:
        with self._lock.read():
            return self._simplified

    @simplified.setter
    def simplified(self, value: bool) -> None:
        with self._lock.write():
            self._simplified = value

    def has_model_escalation(self) -> bool:
        with self._lock.read():
            return any(adj.type == AdjustmentType.MODEL_ESCALATION for adj in self._adjustments)

    def summary(self) -> str:
        with self._lock.read():
            if not self._adjustments:
                return "No adjustments made"
            return " | ".join(f"[{adj.attempt_num}] {adj.describe()}" for adj in self._adjustments)

    def to_dict(self) -> dict[str, Any]:
        with self._lock.read():
            return {
                "current_model": model_name(self._current_model),
                "original_model": model_name(self._original_model),
                "simplified": self._simplified,
                "adjustments": [adj.to_dict() for adj in self._adjustments],
            }

    @classmethod
    def from_dict(cls, feature_id: str, data: dict[str, Any]) -> "AdjustmentHistory":
        history = cls(feature_id, data.get("original_model") or data.get("current_model") or "")
        if data.get("current_model"):
            history._current_model = parse_model(data["current_model"])
        history._simplified = _coerce_bool(data.get("simplified"), False)
        for item in data.get("adjustments") or []:
            if isinstance(item, dict):
                history._adjustments.append(Adjustment.from_dict(item))
        return history


@dataclass
class RetryConfig:
    max_adjustments: int = DEFAULT_MAX_ADJUSTMENTS
    max_retries: int = DEFAULT_MAX_RETRIES
    enable_escalation: bool = True
    enable_simplify: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_adjustments": self.max_adjustments,
            "max_retries": self.max_retries,
            "enable_escalation": self.enable_escalation,
            "enable_simplify": self.enable_simplify,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryConfig":
        return cls(
            max_adjustments=_coerce_int(data.get("max_adjustments"), DEFAULT_MAX_ADJUSTMENTS),
            max_retries=_coerce_int(data.get("max_retries"), DEFAULT_MAX_RETRIES),
            enable_escalation=_coerce_bool(data.get("enable_escalation"), True),
            enable_simplify=_coerce_bool(data.get("enable_simplify"), True),
        )


@dataclass
class FailureContext:
    """What is known about the attempt that just failed."""

    feature_id: str
    attempt_num: int
    current_model: ModelValue = ModelTier.SONNET
    last_error: str = ""
    tests_failed: int = 0
    tests_passed: int = 0
    has_build_error: bool = False
    has_timeout: bool = False
    task_count: int = 0
    last_model: ModelValue = ""


@dataclass
class RetryDecision:
    should_retry: bool = False
    should_adjust: bool = False
    adjustment_type: AdjustmentType = AdjustmentType.NONE
    new_model: Optional[ModelTier] = None
    reason: AdjustmentReason = AdjustmentReason.NONE
    details: str = ""
    remaining_retries: int = 0
    remaining_adjusts: int = 0
    simplified_tasks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_retry": self.should_retry,
            "should_adjust": self.should_adjust,
            "adjustment_type": self.adjustment_type.value,
            "new_model": self.new_model.value if self.new_model else None,
            "reason": self.reason.value,
            "details": self.details,
            "remaining_retries": self.remaining_retries,
            "remaining_adjusts": self.remaining_adjusts,
        }

    def to_adjustment(self, context: FailureContext) -> Adjustment:
        return Adjustment(
            type=self.adjustment_type,
            reason=self.reason,
            attempt_num=context.attempt_num,
            from_value=model_name(context.current_model) if self.new_model else "",
            to_value=self.new_model.value if self.new_model else "",
            details=self.details,
        )


def _escalation_reason(context: FailureContext) -> AdjustmentReason:
    if context.has_build_error:
        return AdjustmentReason.COMPILATION_ERRORS
    if context.tests_failed > 0:
        return AdjustmentReason.TEST_FAILURES
    if context.has_timeout:
        return AdjustmentReason.TIMEOUT
    return AdjustmentReason.REPEATED_FAILURES


def _escalation_details(context: FailureContext) -> str:
    details = []
    if context.has_build_error:
        details.append("build errors detected")
    if context.tests_failed > 0:
        details.append(f"{context.tests_failed} test failures")
    if context.attempt_num > 1:
        details.append(f"attempt {context.attempt_num}")
    if not details:
        return "escalating for better capability"
    return ", ".join(details)


class RetryStrategy:
    """Registry of per-feature adjustment histories plus the retry policy.

    One instance is created by the caller and passed to whatever needs it.
    """

    def __init__(self, config: Optional[RetryConfig] = None, timeline: Optional[Timeline] = None) -> None:
        self._lock = ReadWriteLock()
        self._config = config or RetryConfig()
        self._histories: dict[str, AdjustmentHistory] = {}
        self.timeline = timeline

    @property
    def config(self) -> RetryConfig:
        with self._lock.read():
            return replace(self._config)

    def set_config(self, config: RetryConfig) -> None:
        with self._lock.write():
            self._config = replace(config)

    def register_feature(self, feature_id: str, initial_model: ModelValue = "") -> AdjustmentHistory:
        history = AdjustmentHistory(feature_id, initial_model)
        with self._lock.write():
            self._histories[feature_id] = history
        return history

    def adopt_history(self, history: AdjustmentHistory) -> None:
        """Install a history restored from durable progress."""
        with self._lock.write():
            self._histories[history.feature_id] = history

    def get_history(self, feature_id: str) -> Optional[AdjustmentHistory]:
        with self._lock.read():
            return self._histories.get(feature_id)

    def remove_feature(self, feature_id: str) -> None:
        with self._lock.write():
            self._histories.pop(feature_id, None)

    def decide_retry(self, context: FailureContext) -> RetryDecision:
        with self._lock.read():
            config = replace(self._config)
            history = self._histories.get(context.feature_id)

        decision = RetryDecision(should_retry=context.attempt_num < config.max_retries)
        if not decision.should_retry:
            decision.reason = AdjustmentReason.MAX_ATTEMPTS_REACHED
            decision.details = f"Max retries ({config.max_retries}) reached"
            return decision

        adjust_count = history.count() if history is not None else 0
        decision.remaining_retries = config.max_retries - context.attempt_num
        decision.remaining_adjusts = config.max_adjustments - adjust_count
        if decision.remaining_adjusts <= 0:
            decision.details = "Max adjustments reached, retrying without adjustment"
            return decision

        current = parse_tier(context.current_model)
        if config.enable_escalation and current is not None and self._should_escalate(context, current, history):
            decision.should_adjust = True
            decision.adjustment_type = AdjustmentType.MODEL_ESCALATION
            decision.new_model = current.escalated()
            decision.reason = _escalation_reason(context)
            decision.details = _escalation_details(context)
            return decision

        if config.enable_simplify and self._should_simplify(context, history):
            decision.should_adjust = True
            decision.adjustment_type = AdjustmentType.TASK_SIMPLIFY
            decision.reason = AdjustmentReason.COMPLEX_TASK
            decision.details = f"Simplifying {context.task_count} tasks to reduce complexity"
            return decision

        decision.reason = AdjustmentReason.REPEATED_FAILURES
        return decision

    @staticmethod
    def _should_escalate(
        context: FailureContext,
        current: ModelTier,
        history: Optional[AdjustmentHistory],
    ) -> bool:
        if current == ModelTier.top():
            return False
        if context.has_build_error and current == ModelTier.lowest():
            return True
        if context.tests_failed > 0 and context.attempt_num >= 2:
            return True
        escalated_before = history is not None and history.has_model_escalation()
        return not escalated_before and context.attempt_num >= 2

    @staticmethod
    def _should_simplify(context: FailureContext, history: Optional[AdjustmentHistory]) -> bool:
        if context.task_count <= 2 or history is None:
            return False
        if history.simplified:
            return False
        return history.has_model_escalation() and context.attempt_num >= 3

    def record_adjustment(self, feature_id: str, adjustment: Adjustment) -> Adjustment:
        history = self.get_history(feature_id)
        if history is None:
            history = self.register_feature(feature_id, adjustment.from_value)
        stored = history.add(adjustment)
        if adjustment.type == AdjustmentType.MODEL_ESCALATION:
            history.current_model = adjustment.to_value
        elif adjustment.type == AdjustmentType.TASK_SIMPLIFY:
            history.simplified = True
        if self.timeline is not None:
            self.timeline.record(
                feature_id,
                "adjustment",
                "retry",
                stored.describe(),
                adjustment_type=stored.type.value,
                reason=stored.reason.value,
                attempt_num=stored.attempt_num,
            )
        return stored

    def can_retry(self, feature_id: str, attempt_num: int) -> bool:
        with self._lock.read():
            return attempt_num < self._config.max_retries

    def can_adjust(self, feature_id: str) -> bool:
        with self._lock.read():
            history = self._histories.get(feature_id)
            max_adjustments = self._config.max_adjustments
        return history is None or history.count() < max_adjustments

    def summary(self, feature_id: str) -> str:
        history = self.get_history(feature_id)
        if history is None:
            return "No adjustments made"
        return history.summary()
