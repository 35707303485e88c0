"""
Test Fixtures

Explicit, deterministic builders shared by every test package.
No random generation outside hypothesis strategies.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional

from models.contracts import (
    AggregationWindow, ChannelType, ModelKind, ModelOutput, PeriodKey, TraitName,
    window_id_for,
)


# =============================================================================
# FIXED TIMESTAMPS (deterministic)
# =============================================================================

EPOCH = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
# Monday; the default weekly period [2026-01-05, 2026-01-12)
WEEK_START = datetime(2026, 1, 5, 0, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2026, 1, 5, 10, 5, 0, tzinfo=timezone.utc)
T3 = datetime(2026, 1, 6, 9, 30, 0, tzinfo=timezone.utc)
AFTER_WEEK = datetime(2026, 1, 12, 0, 0, 0, tzinfo=timezone.utc)
NEXT_WEEK = datetime(2026, 1, 13, 10, 0, 0, tzinfo=timezone.utc)

PERIOD = PeriodKey(WEEK_START, WEEK_START + timedelta(days=7))
NEXT_PERIOD = PeriodKey(WEEK_START + timedelta(days=7), WEEK_START + timedelta(days=14))
PERIOD_MONTH = "2026-01"

SUBJECT = "subject_1"
ORG = "org_acme"


# =============================================================================
# WINDOWS
# =============================================================================

def make_window(
    subject_id: str = SUBJECT,
    channel: ChannelType = ChannelType.TEAM_CHAT,
    period: PeriodKey = PERIOD,
    **stats
) -> AggregationWindow:
    """Sealed window with a realistic default profile; override any statistic."""
    defaults = dict(
        message_count=60,
        word_count=720,
        length_mean=64.0,
        length_m2=12000.0,
        length_min=4,
        length_max=240,
        sentiment_positive=30,
        sentiment_neutral=24,
        sentiment_negative=6,
        question_count=12,
        exclamation_count=6,
        emoji_count=9,
        formality_sum=60 * 55.0,
        technical_term_count=18,
        vocabulary_estimate=320,
        conversations_initiated=8,
        conversations_participated=14,
        latency_count=30,
        latency_mean=150.0,
        latency_m2=90000.0,
        latency_buckets=(10, 12, 6, 2, 0),
    )
    defaults.update(stats)
    return AggregationWindow(
        window_id=window_id_for(subject_id, channel, period),
        subject_id=subject_id,
        organization_id=ORG,
        channel=channel,
        period=period,
        sealed_at=period.end,
        channels=(channel,),
        **defaults
    )


# =============================================================================
# MODEL OUTPUTS
# =============================================================================

def uniform_traits(score: float) -> Dict[TraitName, float]:
    return {trait: float(score) for trait in TraitName.ordered()}


def make_output(
    kind: ModelKind,
    confidence: float,
    traits: Optional[Mapping[TraitName, float]] = None,
    score: float = 50.0,
    run_id: str = "run_test",
    subject_id: str = SUBJECT,
    tokens: int = 0
) -> ModelOutput:
    return ModelOutput.create(
        run_id=run_id,
        subject_id=subject_id,
        model_kind=kind,
        traits=traits if traits is not None else uniform_traits(score),
        confidence=confidence,
        tokens_consumed=tokens,
    )


# =============================================================================
# RUNNERS
# =============================================================================

class FixedRunner:
    """Runner with a fixed confidence and trait profile."""

    def __init__(self, kind: ModelKind, confidence: float, score: float = 50.0,
                 traits: Optional[Mapping[TraitName, float]] = None):
        self.kind = kind
        self._confidence = confidence
        self._traits = dict(traits) if traits is not None else uniform_traits(score)
        self.calls = 0

    def analyze(self, window, run_id=None):
        self.calls += 1
        return ModelOutput.create(
            run_id=run_id or window.window_id,
            subject_id=window.subject_id,
            model_kind=self.kind,
            traits=self._traits,
            confidence=self._confidence,
        )


class FailingRunner:
    """Runner that always raises."""

    def __init__(self, kind: ModelKind):
        self.kind = kind

    def analyze(self, window, run_id=None):
        raise RuntimeError("runner exploded")


def fixed_runners(lexical: float, sentiment: float, behavioral: float, score: float = 50.0):
    return [
        FixedRunner(ModelKind.LEXICAL, lexical, score),
        FixedRunner(ModelKind.SENTIMENT, sentiment, score),
        FixedRunner(ModelKind.BEHAVIORAL, behavioral, score),
    ]


# =============================================================================
# EVENTS
# =============================================================================

def make_event(
    text: str,
    timestamp: datetime = T1,
    subject_id: str = SUBJECT,
    channel: ChannelType = ChannelType.TEAM_CHAT,
    **extra
) -> Dict[str, object]:
    """Transport-shaped payload (camelCase keys)."""
    payload = {
        "subjectId": subject_id,
        "channel": channel.value,
        "timestamp": timestamp.isoformat(),
        "transientText": text,
        "organizationId": ORG,
    }
    payload.update(extra)
    return payload


SAMPLE_MESSAGES = (
    "Thanks for the update on the invoice, great work!",
    "Is the reconciliation finished yet?",
    "There is an issue with the ledger export, it looks broken.",
    "Let's review the cash flow forecast tomorrow morning.",
    "Perfect, I appreciate the quick turnaround.",
    "fyi the audit call moved to 3pm",
)
