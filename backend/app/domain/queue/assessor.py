"""Initial priority assessment for analysis requests.

Rules in order of precedence:

1. an explicit caller priority is a floor, never assigned below;
2. a crisis signal forces ``urgent``;
3. a premium user writing about a linked relationship gets ``high``;
4. everything else is ``normal``.

Content signals (crisis language, strongly negative sentiment, distress
keywords) can only raise the result.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from app.domain.queue.priorities import coerce_priority, max_priority
from app.models.analysis_job import JobPriority


PREMIUM_TIER = "premium"
NEGATIVE_SENTIMENT_THRESHOLD = -0.7

CRISIS_PHRASES: tuple[str, ...] = (
    "suicide",
    "self-harm",
    "hurt myself",
    "end it all",
    "can't go on",
    "hopeless",
    "worthless",
    "trapped",
    "burden",
    "better off dead",
)

DISTRESS_KEYWORDS: frozenset[str] = frozenset(
    {"anxiety", "depression", "panic", "overwhelmed", "devastated"}
)


@dataclass(slots=True)
class PriorityContext:
    user_tier: str | None = None
    relationship_linked: bool = False
    crisis_signal: bool = False
    explicit_priority: JobPriority | str | None = None


@dataclass(slots=True)
class PriorityAssessment:
    priority: JobPriority
    reasoning: str
    content_signals: list[str] = field(default_factory=list)


def _normalized_tier(user_tier: str | None) -> str:
    return (user_tier or "").strip().lower()


def detect_crisis_signal(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(phrase in lowered for phrase in CRISIS_PHRASES)


def assess_priority(context: PriorityContext) -> JobPriority:
    if context.crisis_signal:
        assessed = JobPriority.URGENT
    elif _normalized_tier(context.user_tier) == PREMIUM_TIER and context.relationship_linked:
        assessed = JobPriority.HIGH
    else:
        assessed = JobPriority.NORMAL
    return max_priority(assessed, coerce_priority(context.explicit_priority))


def priority_explanation(priority: JobPriority, context: PriorityContext) -> str:
    reasons: list[str] = []
    explicit = coerce_priority(context.explicit_priority)
    if explicit is not None and explicit == priority:
        reasons.append(f"Explicit {explicit.value} priority requested")
    if priority == JobPriority.URGENT and context.crisis_signal:
        reasons.append("Crisis detection triggered")
    if priority == JobPriority.HIGH:
        if _normalized_tier(context.user_tier) == PREMIUM_TIER:
            reasons.append("Premium user")
        if context.relationship_linked:
            reasons.append("Relationship-specific entry")
    if priority == JobPriority.NORMAL:
        reasons.append("Standard processing criteria")
    return ", ".join(reasons) if reasons else "Default priority assignment"


def assess_priority_with_content(
    context: PriorityContext,
    *,
    entry_content: str | None = None,
    sentiment_score: float | None = None,
    emotional_keywords: Iterable[str] | None = None,
) -> PriorityAssessment:
    signals: list[str] = []
    crisis = context.crisis_signal
    if detect_crisis_signal(entry_content):
        crisis = True
        signals.append("Crisis language detected")

    effective = PriorityContext(
        user_tier=context.user_tier,
        relationship_linked=context.relationship_linked,
        crisis_signal=crisis,
        explicit_priority=context.explicit_priority,
    )
    priority = assess_priority(effective)

    if sentiment_score is not None and sentiment_score < NEGATIVE_SENTIMENT_THRESHOLD:
        signals.append("Extremely negative sentiment")
        priority = max_priority(priority, JobPriority.HIGH)

    if emotional_keywords and any(str(word).lower() in DISTRESS_KEYWORDS for word in emotional_keywords):
        signals.append("Emotional distress indicators")
        priority = max_priority(priority, JobPriority.HIGH)

    reasoning = priority_explanation(priority, effective)
    if signals:
        reasoning = f"{reasoning}; Content analysis: {', '.join(signals)}"
    return PriorityAssessment(priority=priority, reasoning=reasoning, content_signals=signals)
