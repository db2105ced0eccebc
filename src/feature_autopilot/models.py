"""Define the closed enumerations and records persisted in the manifest."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Union

from .constants import DEFAULT_DEESCALATE_KEYWORDS, DEFAULT_ERROR_THRESHOLD, DEFAULT_ESCALATE_KEYWORDS
from .utils import _coerce_bool, _coerce_float, _coerce_int, _coerce_string_list


class FeatureStatus(str, Enum):
    """Represent the lifecycle state of a feature."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class ModelTier(str, Enum):
    """Enumerate the three execution tiers, lowest first."""

    HAIKU = "haiku"
    SONNET = "sonnet"
    OPUS = "opus"

    @classmethod
    def ladder(cls) -> list["ModelTier"]:
        return [cls.HAIKU, cls.SONNET, cls.OPUS]

    @classmethod
    def lowest(cls) -> "ModelTier":
        return cls.HAIKU

    @classmethod
    def top(cls) -> "ModelTier":
        return cls.OPUS

    @property
    def rung(self) -> int:
        return ModelTier.ladder().index(self)

    def escalated(self) -> "ModelTier":
        """Return the next rung up; the top rung escalates to itself."""
        ladder = ModelTier.ladder()
        return ladder[min(self.rung + 1, len(ladder) - 1)]

    def deescalated(self) -> "ModelTier":
        """Return the next rung down; the lowest rung de-escalates to itself."""
        return ModelTier.ladder()[max(self.rung - 1, 0)]


ModelValue = Union[ModelTier, str]


def parse_tier(value: Any) -> Optional[ModelTier]:
    """Map free text to a tier, or None when it names no known tier."""
    if isinstance(value, ModelTier):
        return value
    if value is None:
        return None
    try:
        return ModelTier(str(value).strip().lower())
    except ValueError:
        return None


def parse_model(value: Any) -> ModelValue:
    """Keep known tiers as enums and anything else (e.g. "auto") verbatim."""
    tier = parse_tier(value)
    if tier is not None:
        return tier
    return str(value or "").strip()


def model_name(value: ModelValue) -> str:
    return value.value if isinstance(value, ModelTier) else str(value or "")


def parse_status(value: Any) -> FeatureStatus:
    """Map free text to a status; unknown values load as pending."""
    if isinstance(value, FeatureStatus):
        return value
    try:
        return FeatureStatus(str(value or "").strip().lower())
    except ValueError:
        return FeatureStatus.PENDING


@dataclass
class UsageSnapshot:
    """Token usage recorded for a finished attempt."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_read_tokens + self.cache_write_tokens

    def add(self, other: "UsageSnapshot") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_write_tokens += other.cache_write_tokens
        self.cost_usd += other.cost_usd

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageSnapshot":
        return cls(
            input_tokens=_coerce_int(data.get("input_tokens"), 0),
            output_tokens=_coerce_int(data.get("output_tokens"), 0),
            cache_read_tokens=_coerce_int(data.get("cache_read_tokens"), 0),
            cache_write_tokens=_coerce_int(data.get("cache_write_tokens"), 0),
            cost_usd=_coerce_float(data.get("cost_usd"), 0.0),
        )


@dataclass
class EscalationConfig:
    """Manifest-level configuration for the live escalation tracker."""

    enabled: bool = True
    error_threshold: int = DEFAULT_ERROR_THRESHOLD
    escalate_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_ESCALATE_KEYWORDS))
    deescalate_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_DEESCALATE_KEYWORDS))

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "error_threshold": self.error_threshold,
            "escalate_keywords": list(self.escalate_keywords),
            "deescalate_keywords": list(self.deescalate_keywords),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationConfig":
        escalate = _coerce_string_list(data.get("escalate_keywords"))
        deescalate = _coerce_string_list(data.get("deescalate_keywords"))
        threshold = _coerce_int(data.get("error_threshold"), 0)
        return cls(
            enabled=_coerce_bool(data.get("enabled"), False),
            error_threshold=threshold if threshold > 0 else DEFAULT_ERROR_THRESHOLD,
            escalate_keywords=escalate or list(DEFAULT_ESCALATE_KEYWORDS),
            deescalate_keywords=deescalate or list(DEFAULT_DEESCALATE_KEYWORDS),
        )


@dataclass
class Feature:
    """Store one schedulable unit of work and its place in the feature tree."""

    id: str
    title: str = ""
    dir: str = ""
    status: FeatureStatus = FeatureStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    execution: str = "sequential"
    model: ModelValue = ModelTier.SONNET
    usage: Optional[UsageSnapshot] = None
    budget_tokens: int = 0
    budget_usd: float = 0.0

    parent_id: str = ""
    depth: int = 0
    children: list[str] = field(default_factory=list)
    context_budget: int = 0

    @property
    def is_root(self) -> bool:
        return not self.parent_id

    @property
    def has_children(self) -> bool:
        return bool(self.children)

    def copy(self) -> "Feature":
        return replace(
            self,
            depends_on=list(self.depends_on),
            children=list(self.children),
            usage=replace(self.usage) if self.usage is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the feature for the manifest document.

        Returns:
            A plain dictionary; empty optional fields are omitted.
        """
        data: dict[str, Any] = {
            "id": self.id,
            "dir": self.dir,
            "title": self.title,
            "status": self.status.value,
            "depends_on": list(self.depends_on),
            "execution": self.execution,
            "model": model_name(self.model),
        }
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.budget_tokens:
            data["budget_tokens"] = self.budget_tokens
        if self.budget_usd:
            data["budget_usd"] = self.budget_usd
        if self.parent_id:
            data["parent_id"] = self.parent_id
        if self.depth:
            data["depth"] = self.depth
        if self.children:
            data["children"] = list(self.children)
        if self.context_budget:
            data["context_budget"] = self.context_budget
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Feature":
        """Create a `Feature` from a persisted dictionary.

        Documents written before recursive decomposition existed carry no
        parent/depth/children/context_budget keys; those load as a root.
        """
        usage_raw = data.get("usage")
        deps = data.get("depends_on", []) or []
        if not isinstance(deps, list):
            deps = [deps]
        return cls(
            id=str(data.get("id", "")).strip(),
            title=str(data.get("title") or ""),
            dir=str(data.get("dir") or ""),
            status=parse_status(data.get("status")),
            depends_on=[str(dep).strip() for dep in deps if str(dep).strip()],
            execution=str(data.get("execution") or "sequential"),
            model=parse_model(data.get("model") or ModelTier.SONNET),
            usage=UsageSnapshot.from_dict(usage_raw) if isinstance(usage_raw, dict) else None,
            budget_tokens=_coerce_int(data.get("budget_tokens"), 0),
            budget_usd=_coerce_float(data.get("budget_usd"), 0.0),
            parent_id=str(data.get("parent_id") or ""),
            depth=max(_coerce_int(data.get("depth"), 0), 0),
            children=_coerce_string_list(data.get("children")),
            context_budget=max(_coerce_int(data.get("context_budget"), 0), 0),
        )
