"""Tests for the post-failure retry strategy."""

from __future__ import annotations

from feature_autopilot.models import ModelTier
from feature_autopilot.retry import (
    Adjustment,
    AdjustmentHistory,
    AdjustmentReason,
    AdjustmentType,
    FailureContext,
    RetryConfig,
    RetryStrategy,
)
from feature_autopilot.timeline import Timeline


def _apply(strategy: RetryStrategy, context: FailureContext):
    decision = strategy.decide_retry(context)
    if decision.should_adjust:
        strategy.record_adjustment(context.feature_id, decision.to_adjustment(context))
    return decision


class TestDecideRetry:
    def test_stops_at_max_retries(self):
        strategy = RetryStrategy(RetryConfig(max_retries=3))
        decision = strategy.decide_retry(FailureContext("01", attempt_num=3))
        assert not decision.should_retry
        assert decision.reason == AdjustmentReason.MAX_ATTEMPTS_REACHED
        assert "3" in decision.details

    def test_first_failure_retries_unchanged(self):
        strategy = RetryStrategy()
        strategy.register_feature("01", ModelTier.SONNET)
        decision = strategy.decide_retry(FailureContext("01", attempt_num=1, current_model=ModelTier.SONNET))
        assert decision.should_retry
        assert not decision.should_adjust
        assert decision.reason == AdjustmentReason.REPEATED_FAILURES
        assert decision.remaining_retries == 2
        assert decision.remaining_adjusts == 3

    def test_build_error_on_lowest_tier_escalates_immediately(self):
        strategy = RetryStrategy()
        decision = strategy.decide_retry(
            FailureContext("01", attempt_num=1, current_model=ModelTier.HAIKU, has_build_error=True)
        )
        assert decision.should_adjust
        assert decision.adjustment_type == AdjustmentType.MODEL_ESCALATION
        assert decision.new_model == ModelTier.SONNET
        assert decision.reason == AdjustmentReason.COMPILATION_ERRORS

    def test_escalate_then_simplify_scenario(self):
        strategy = RetryStrategy(RetryConfig(max_retries=5))
        strategy.register_feature("01", ModelTier.HAIKU)

        first = _apply(strategy, FailureContext("01", attempt_num=1, current_model=ModelTier.HAIKU, task_count=5))
        assert not first.should_adjust

        second = _apply(
            strategy,
            FailureContext("01", attempt_num=2, current_model=ModelTier.HAIKU, has_build_error=True, task_count=5),
        )
        assert second.adjustment_type == AdjustmentType.MODEL_ESCALATION
        assert second.new_model == ModelTier.SONNET
        assert strategy.get_history("01").current_model == ModelTier.SONNET

        third = _apply(strategy, FailureContext("01", attempt_num=3, current_model=ModelTier.SONNET, task_count=5))
        assert third.should_adjust
        assert third.adjustment_type == AdjustmentType.TASK_SIMPLIFY
        assert third.reason == AdjustmentReason.COMPLEX_TASK
        assert strategy.get_history("01").simplified

    def test_repeated_test_failures_escalate_with_reason(self):
        strategy = RetryStrategy()
        decision = strategy.decide_retry(
            FailureContext("01", attempt_num=2, current_model=ModelTier.SONNET, tests_failed=4)
        )
        assert decision.new_model == ModelTier.OPUS
        assert decision.reason == AdjustmentReason.TEST_FAILURES
        assert "4 test failures" in decision.details

    def test_timeout_reason(self):
        strategy = RetryStrategy()
        strategy.register_feature("01", ModelTier.SONNET)
        decision = strategy.decide_retry(
            FailureContext("01", attempt_num=2, current_model=ModelTier.SONNET, has_timeout=True)
        )
        assert decision.adjustment_type == AdjustmentType.MODEL_ESCALATION
        assert decision.reason == AdjustmentReason.TIMEOUT

    def test_top_tier_never_escalates(self):
        strategy = RetryStrategy()
        strategy.register_feature("01", ModelTier.OPUS)
        decision = strategy.decide_retry(
            FailureContext("01", attempt_num=2, current_model=ModelTier.OPUS, tests_failed=3, has_build_error=True)
        )
        assert decision.adjustment_type != AdjustmentType.MODEL_ESCALATION
        assert decision.new_model is None

    def test_unknown_tier_is_not_escalated(self):
        strategy = RetryStrategy()
        decision = strategy.decide_retry(FailureContext("01", attempt_num=2, current_model="auto", tests_failed=1))
        assert not decision.should_adjust

    def test_escalation_disabled(self):
        strategy = RetryStrategy(RetryConfig(enable_escalation=False))
        decision = strategy.decide_retry(
            FailureContext("01", attempt_num=2, current_model=ModelTier.HAIKU, has_build_error=True)
        )
        assert not decision.should_adjust

    def test_simplify_requires_more_than_two_tasks(self):
        strategy = RetryStrategy(RetryConfig(max_retries=5))
        strategy.record_adjustment(
            "01",
            Adjustment(AdjustmentType.MODEL_ESCALATION, AdjustmentReason.TIMEOUT, 2, "sonnet", "opus"),
        )
        decision = strategy.decide_retry(FailureContext("01", attempt_num=3, current_model=ModelTier.OPUS, task_count=2))
        assert not decision.should_adjust

    def test_decide_does_not_mutate_history(self):
        strategy = RetryStrategy()
        strategy.register_feature("01", ModelTier.HAIKU)
        context = FailureContext("01", attempt_num=2, current_model=ModelTier.HAIKU, has_build_error=True)
        strategy.decide_retry(context)
        strategy.decide_retry(context)
        assert strategy.get_history("01").count() == 0
        assert strategy.get_history("01").current_model == ModelTier.HAIKU


def test_max_adjustments_caps_further_adjustments():
    strategy = RetryStrategy(RetryConfig(max_adjustments=2, max_retries=10))
    for attempt in (1, 2):
        strategy.record_adjustment("01", Adjustment(AdjustmentType.PROMPT_REFINE, attempt_num=attempt))

    assert not strategy.can_adjust("01")
    for attempt in range(2, 10):
        decision = strategy.decide_retry(
            FailureContext("01", attempt_num=attempt, current_model=ModelTier.HAIKU, has_build_error=True, task_count=9)
        )
        assert decision.should_retry
        assert not decision.should_adjust
        assert decision.remaining_adjusts == 0


def test_can_retry_and_summary():
    strategy = RetryStrategy(RetryConfig(max_retries=2))
    assert strategy.can_retry("01", 1)
    assert not strategy.can_retry("01", 2)
    assert strategy.summary("01") == "No adjustments made"

    strategy.record_adjustment(
        "01", Adjustment(AdjustmentType.MODEL_ESCALATION, AdjustmentReason.TIMEOUT, 1, "haiku", "sonnet")
    )
    strategy.record_adjustment("01", Adjustment(AdjustmentType.TASK_SIMPLIFY, AdjustmentReason.COMPLEX_TASK, 2, details="5 tasks"))
    assert strategy.summary("01") == "[1] Model: haiku -> sonnet | [2] Tasks simplified: 5 tasks"

    strategy.remove_feature("01")
    assert strategy.get_history("01") is None


def test_history_serialization_restores_state():
    history = AdjustmentHistory("01", ModelTier.HAIKU)
    history.add(Adjustment(AdjustmentType.MODEL_ESCALATION, AdjustmentReason.COMPILATION_ERRORS, 2, "haiku", "sonnet"))
    history.current_model = ModelTier.SONNET
    history.simplified = True

    restored = AdjustmentHistory.from_dict("01", history.to_dict())

    assert restored.original_model == ModelTier.HAIKU
    assert restored.current_model == ModelTier.SONNET
    assert restored.simplified
    assert restored.has_model_escalation()
    assert restored.last().timestamp


def test_recorded_adjustments_reach_timeline():
    timeline = Timeline()
    strategy = RetryStrategy(timeline=timeline)
    strategy.record_adjustment(
        "01", Adjustment(AdjustmentType.MODEL_ESCALATION, AdjustmentReason.TIMEOUT, 2, "haiku", "sonnet")
    )
    events = timeline.events("01")
    assert len(events) == 1
    assert events[0].source == "retry"
    assert events[0].metadata["adjustment_type"] == "model_escalation"
