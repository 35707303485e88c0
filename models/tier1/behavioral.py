"""Behavioral runner: latency, message length and initiation patterns."""

from __future__ import annotations
from typing import Dict, Optional

from ..contracts import (
    AggregationWindow, ModelKind, ModelOutput, TraitName, clamp_score,
)


QUICK_RESPONSE_SECONDS = 180.0
SLOW_RESPONSE_SECONDS = 600.0
SHORT_MESSAGE_CHARS = 50.0
LONG_MESSAGE_CHARS = 150.0


class BehavioralRunner:
    """Objective communication-pattern analysis."""

    kind = ModelKind.BEHAVIORAL

    def analyze(
        self,
        window: AggregationWindow,
        run_id: Optional[str] = None
    ) -> ModelOutput:
        latency = window.avg_response_time_seconds
        quick = latency < QUICK_RESPONSE_SECONDS
        slow = latency > SLOW_RESPONSE_SECONDS
        short = window.length_mean < SHORT_MESSAGE_CHARS
        long_ = window.length_mean > LONG_MESSAGE_CHARS

        initiated = window.conversations_initiated
        participated = window.conversations_participated
        high_initiator = initiated > participated * 0.3
        high_participant = participated > initiated * 2

        traits: Dict[TraitName, float] = {
            TraitName.OPENNESS: window.vocabulary_estimate / 500 * 100,
            TraitName.CONSCIENTIOUSNESS: 75 if quick else (40 if slow else 60),
            TraitName.EXTRAVERSION: 80 if high_initiator else (65 if high_participant else 50),
            TraitName.AGREEABLENESS: 75 if high_participant else 55,
            TraitName.NEUROTICISM: 60 if quick and short else 40,
            TraitName.DISC_DOMINANCE: 75 if short and quick else 45,
            TraitName.DISC_INFLUENCE: 80 if high_initiator else 50,
            TraitName.DISC_STEADINESS: 70 if not quick and not slow else 50,
            TraitName.DISC_COMPLIANCE: 75 if long_ and not quick else 50,
            TraitName.EQ_SELF_AWARENESS: 65 if long_ else 50,
            TraitName.EQ_SELF_REGULATION: 70 if not quick else 55,
            TraitName.EQ_MOTIVATION: 75 if high_initiator else 55,
            TraitName.EQ_EMPATHY: 70 if high_participant else 50,
            TraitName.EQ_SOCIAL_SKILLS: 75 if high_participant else 50,
        }
        traits = {t: float(round(clamp_score(v))) for t, v in traits.items()}

        return ModelOutput.create(
            run_id=run_id or window.window_id,
            subject_id=window.subject_id,
            model_kind=self.kind,
            traits=traits,
            confidence=self.confidence(window),
        )

    @staticmethod
    def confidence(window: AggregationWindow) -> float:
        """Volume heuristic, floor 40 (highest Tier-1 base)."""
        confidence = 60.0

        if window.message_count > 100:
            confidence += 20
        elif window.message_count > 50:
            confidence += 15
        elif window.message_count > 20:
            confidence += 10

        total = window.conversations_initiated + window.conversations_participated
        if total > 20:
            confidence += 10
        elif total > 10:
            confidence += 5

        return min(100.0, max(40.0, confidence))
