"""Provide the public `feature_autopilot` package exports."""

from __future__ import annotations

from .escalation import EscalationTracker, TrackerRegistry
from .generate import FeatureSpec, generate_manifest
from .manifest import Manifest
from .orchestrator import RunResult, exit_code, run_once, run_project
from .retry import FailureContext, RetryDecision, RetryStrategy

__all__ = [
    "EscalationTracker",
    "FailureContext",
    "FeatureSpec",
    "Manifest",
    "RetryDecision",
    "RetryStrategy",
    "RunResult",
    "TrackerRegistry",
    "exit_code",
    "generate_manifest",
    "run_once",
    "run_project",
]
