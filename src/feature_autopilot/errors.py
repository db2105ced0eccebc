"""Define the error taxonomy shared by the scheduler and decision engines."""

from __future__ import annotations

from dataclasses import dataclass


class AutopilotError(Exception):
    """Base class for all feature_autopilot errors."""


class ValidationError(AutopilotError):
    """Raised when the feature set cannot be scheduled."""


class CircularDependencyError(ValidationError):
    """Raised when the pruned dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"circular dependency detected: {' -> '.join(self.cycle)}")


class FeatureNotFoundError(AutopilotError):
    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"feature not found: {feature_id}")


class DepthExceededError(AutopilotError):
    def __init__(self, parent_depth: int, max_depth: int):
        self.parent_depth = parent_depth
        self.max_depth = max_depth
        super().__init__(f"max depth exceeded: parent at depth {parent_depth}, max is {max_depth}")


class ParentNotRunningError(AutopilotError):
    def __init__(self, parent_id: str, status: str):
        self.parent_id = parent_id
        self.status = status
        super().__init__(f"parent feature {parent_id} is not running (status: {status})")


class InvalidSpawnRequestError(AutopilotError):
    """Raised when a spawn request is missing required data."""


class PersistenceError(AutopilotError):
    """Raised when durable state cannot be read or written."""


@dataclass(frozen=True)
class ReferenceWarning:
    """A dangling dependency reference that was dropped from a feature."""

    feature_id: str
    feature_title: str
    dependency: str

    @property
    def message(self) -> str:
        return (
            f"feature {self.feature_id} ({self.feature_title}) depends on unknown "
            f"feature {self.dependency!r}, treating as no dependency"
        )

    def __str__(self) -> str:
        return self.message
