from app.domain.queue.assessor import (
    PriorityContext,
    assess_priority,
    assess_priority_with_content,
    detect_crisis_signal,
    priority_explanation,
)
from app.domain.queue.priorities import estimated_delay_ms, is_within_sla, max_priority, next_priority
from app.models.analysis_job import JobPriority

from conftest import at


def test_crisis_signal_forces_urgent() -> None:
    assert assess_priority(PriorityContext(crisis_signal=True)) == JobPriority.URGENT


def test_premium_relationship_entry_is_high() -> None:
    ctx = PriorityContext(user_tier="Premium", relationship_linked=True)
    assert assess_priority(ctx) == JobPriority.HIGH


def test_premium_without_relationship_stays_normal() -> None:
    assert assess_priority(PriorityContext(user_tier="premium")) == JobPriority.NORMAL


def test_unknown_tier_defaults_to_normal() -> None:
    assert assess_priority(PriorityContext(user_tier="platinum-plus", relationship_linked=True)) == JobPriority.NORMAL


def test_explicit_priority_is_a_floor() -> None:
    assert assess_priority(PriorityContext(explicit_priority="high")) == JobPriority.HIGH
    # Never lowered below what the rules assign.
    assert assess_priority(PriorityContext(crisis_signal=True, explicit_priority="normal")) == JobPriority.URGENT


def test_detect_crisis_signal_is_case_insensitive() -> None:
    assert detect_crisis_signal("I feel HOPELESS today")
    assert detect_crisis_signal("sometimes I think everyone is better off dead")
    assert not detect_crisis_signal("a calm walk by the river")
    assert not detect_crisis_signal(None)


def test_content_assessment_lifts_on_distress_keywords() -> None:
    result = assess_priority_with_content(
        PriorityContext(),
        entry_content="long day at work",
        emotional_keywords=["Overwhelmed"],
    )
    assert result.priority == JobPriority.HIGH
    assert "Emotional distress indicators" in result.content_signals


def test_content_assessment_crisis_language_is_urgent() -> None:
    result = assess_priority_with_content(PriorityContext(), entry_content="I just want to end it all")
    assert result.priority == JobPriority.URGENT
    assert "Crisis detection triggered" in result.reasoning


def test_negative_sentiment_lifts_normal_only_to_high() -> None:
    result = assess_priority_with_content(PriorityContext(), sentiment_score=-0.9)
    assert result.priority == JobPriority.HIGH


def test_priority_explanation_for_normal() -> None:
    assert priority_explanation(JobPriority.NORMAL, PriorityContext()) == "Standard processing criteria"


def test_priority_helpers() -> None:
    assert max_priority("normal", None, "urgent", "bogus") == JobPriority.URGENT
    assert max_priority() == JobPriority.NORMAL
    assert next_priority(JobPriority.NORMAL) == JobPriority.HIGH
    assert next_priority(JobPriority.URGENT) is None
    assert estimated_delay_ms("high", 25) == 1000 + 2000
    assert is_within_sla("urgent", at(0), at(seconds=30))
    assert not is_within_sla("urgent", at(0), at(seconds=31))
