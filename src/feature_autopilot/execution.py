"""Interfaces for the external coding-agent process the orchestrator drives."""

from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable

from .models import ModelValue, UsageSnapshot


class ExecutionState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self != ExecutionState.RUNNING


class ExecutionInstance(Protocol):
    def status(self) -> ExecutionState:
        ...

    def error(self) -> str:
        ...


@runtime_checkable
class StreamingInstance(Protocol):
    """An instance that also exposes its JSON output stream."""

    def drain_output(self) -> list[str]:
        """Return stream lines produced since the previous call."""
        ...


@runtime_checkable
class MeteredInstance(Protocol):
    def usage(self) -> UsageSnapshot:
        ...


class ExecutionCollaborator(Protocol):
    def start(self, feature_id: str, model: ModelValue, prompt: str) -> ExecutionInstance:
        ...
