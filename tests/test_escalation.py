"""Tests for the live escalation tracker."""

from __future__ import annotations

import json

import pytest

from feature_autopilot.escalation import (
    EscalationTracker,
    SwitchReason,
    TrackerRegistry,
    TriggerConfig,
    select_initial_model,
    should_deescalate_for_task,
    should_escalate_for_task,
)
from feature_autopilot.models import EscalationConfig, ModelTier
from feature_autopilot.timeline import Timeline

ERROR_LINE = json.dumps({"type": "error", "result": "boom"})
TOOL_ERROR_LINE = json.dumps({"type": "tool_result", "is_error": True, "result": "build failed"})


def _assistant(text: str) -> str:
    return json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})


class TestErrorThreshold:
    def test_second_error_escalates_and_resets_counter(self):
        tracker = EscalationTracker("01", ModelTier.HAIKU, TriggerConfig(error_threshold=2))

        assert tracker.process_line(ERROR_LINE) == (False, ModelTier.HAIKU)
        assert tracker.error_count == 1

        assert tracker.process_line(TOOL_ERROR_LINE) == (True, ModelTier.SONNET)
        assert tracker.error_count == 0
        assert tracker.last_switch().reason == SwitchReason.ERROR_THRESHOLD
        assert tracker.should_restart()

    def test_escalation_saturates_at_top(self):
        tracker = EscalationTracker("01", ModelTier.HAIKU, TriggerConfig(error_threshold=1))
        assert tracker.process_line(ERROR_LINE) == (True, ModelTier.SONNET)
        assert tracker.process_line(ERROR_LINE) == (True, ModelTier.OPUS)
        assert tracker.process_line(ERROR_LINE) == (False, ModelTier.OPUS)
        assert [s.to_model for s in tracker.switches()] == [ModelTier.HAIKU, ModelTier.SONNET, ModelTier.OPUS]

    def test_successful_tool_result_does_not_count(self):
        tracker = EscalationTracker("01", ModelTier.SONNET)
        tracker.process_line(json.dumps({"type": "tool_result", "result": "ok"}))
        assert tracker.error_count == 0
        assert not tracker.ever_errored


class TestContentSignals:
    def test_explicit_request_switches_directly(self):
        tracker = EscalationTracker("01", ModelTier.HAIKU)
        assert tracker.process_line(_assistant("Honestly this needs opus.")) == (True, ModelTier.OPUS)
        assert tracker.last_switch().reason == SwitchReason.EXPLICIT_REQUEST

    def test_architectural_vocabulary_escalates_one_rung(self):
        tracker = EscalationTracker("01", ModelTier.HAIKU)
        changed, tier = tracker.process_line(_assistant("We should weigh the trade-off here."))
        assert changed and tier == ModelTier.SONNET
        assert tracker.last_switch().reason == SwitchReason.ARCHITECTURAL_PATTERN

    def test_two_escalate_keywords_escalate(self):
        tracker = EscalationTracker("01", ModelTier.SONNET, TriggerConfig(escalate_keywords=["legacy", "rewrite"]))
        assert tracker.process_line(_assistant("A legacy rewrite is required")) == (True, ModelTier.OPUS)

    def test_single_keyword_is_not_enough(self):
        tracker = EscalationTracker("01", ModelTier.SONNET, TriggerConfig(escalate_keywords=["legacy", "rewrite"]))
        assert tracker.process_line(_assistant("Some legacy code")) == (False, ModelTier.SONNET)

    def test_simple_vocabulary_deescalates_one_rung(self):
        tracker = EscalationTracker("01", ModelTier.OPUS)
        changed, tier = tracker.process_line(_assistant("Just fixing a typo and formatting."))
        assert changed and tier == ModelTier.SONNET
        assert tracker.last_switch().reason == SwitchReason.DEESCALATE

    def test_no_deescalation_below_lowest(self):
        tracker = EscalationTracker("01", ModelTier.HAIKU)
        assert tracker.process_line(_assistant("fix typo and formatting")) == (False, ModelTier.HAIKU)

    def test_no_deescalation_after_any_error(self):
        tracker = EscalationTracker("01", ModelTier.HAIKU, TriggerConfig(error_threshold=2))
        tracker.process_line(ERROR_LINE)
        tracker.process_line(ERROR_LINE)
        assert tracker.current_model == ModelTier.SONNET
        assert tracker.error_count == 0

        assert tracker.process_line(_assistant("fix typo and formatting")) == (False, ModelTier.SONNET)

        tracker.reset_errors()
        assert tracker.ever_errored
        assert tracker.process_line(_assistant("fix typo and formatting")) == (False, ModelTier.SONNET)

    def test_plain_content_field_is_scanned(self):
        tracker = EscalationTracker("01", ModelTier.HAIKU)
        line = json.dumps({"type": "assistant", "content": "switch to sonnet please"})
        assert tracker.process_line(line) == (True, ModelTier.SONNET)


class TestIgnoredInput:
    @pytest.mark.parametrize("line", ["not json", "", "[1, 2]", json.dumps({"type": "system"})])
    def test_no_change(self, line: str):
        tracker = EscalationTracker("01", ModelTier.SONNET, TriggerConfig(error_threshold=1))
        assert tracker.process_line(line) == (False, ModelTier.SONNET)
        assert len(tracker.switches()) == 1

    def test_disabled_tracker_ignores_errors(self):
        tracker = EscalationTracker("01", ModelTier.HAIKU, TriggerConfig(enabled=False, error_threshold=1))
        assert tracker.process_line(ERROR_LINE) == (False, ModelTier.HAIKU)
        assert tracker.error_count == 0


class TestForceModel:
    def test_records_configured_by_user(self):
        tracker = EscalationTracker("01", ModelTier.SONNET)
        assert tracker.force_model("opus", "operator override")
        assert tracker.current_model == ModelTier.OPUS
        assert tracker.last_switch().reason == SwitchReason.CONFIGURED_BY_USER

    def test_same_tier_is_noop(self):
        tracker = EscalationTracker("01", ModelTier.SONNET)
        assert not tracker.force_model(ModelTier.SONNET)
        assert len(tracker.switches()) == 1
        assert not tracker.should_restart()

    def test_unknown_tier_rejected(self):
        tracker = EscalationTracker("01", ModelTier.SONNET)
        with pytest.raises(ValueError):
            tracker.force_model("gpt")


@pytest.mark.parametrize("initial", ["", "auto", None])
def test_unset_initial_model_starts_on_mid_rung(initial):
    tracker = EscalationTracker("01", initial)
    assert tracker.current_model == ModelTier.SONNET
    assert tracker.switches()[0].reason == SwitchReason.INITIAL


def test_registry_owns_trackers_per_feature():
    timeline = Timeline()
    registry = TrackerRegistry(TriggerConfig(error_threshold=1), timeline=timeline)
    registry.register("01", ModelTier.HAIKU)
    registry.register("02", ModelTier.OPUS)

    assert registry.process_line("01", ERROR_LINE) == (True, ModelTier.SONNET)
    assert registry.current_model("02") == ModelTier.OPUS
    assert registry.process_line("missing", ERROR_LINE) == (False, None)
    assert len(registry.switches("01")) == 2
    assert [e.source for e in timeline.events("01")] == ["escalation"]

    registry.remove("01")
    assert registry.get("01") is None


def test_trigger_config_from_manifest_escalation():
    config = TriggerConfig.from_escalation_config(EscalationConfig(enabled=False, error_threshold=5))
    assert not config.enabled
    assert config.error_threshold == 5


def test_task_heuristics():
    assert select_initial_model(1) == ModelTier.HAIKU
    assert select_initial_model(4) == ModelTier.SONNET
    assert select_initial_model(1, ["Refactor storage"]) == ModelTier.SONNET
    assert should_escalate_for_task("Design the database schema")
    assert not should_escalate_for_task("Fix typo")
    assert should_deescalate_for_task("Fix typo in README")
    assert not should_deescalate_for_task("Build payment flow")
