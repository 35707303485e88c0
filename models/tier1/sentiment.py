"""Sentiment runner: traits from the sentiment histogram."""

from __future__ import annotations
from typing import Dict, Optional

from ..contracts import (
    AggregationWindow, ModelKind, ModelOutput, TraitName, clamp_score,
)


class SentimentRunner:
    """Emotion-distribution analysis."""

    kind = ModelKind.SENTIMENT

    def analyze(
        self,
        window: AggregationWindow,
        run_id: Optional[str] = None
    ) -> ModelOutput:
        positive, neutral, negative = window.sentiment_percentages()
        emoji_rate = window.rate(window.emoji_count)
        question_rate = window.rate(window.question_count)

        traits: Dict[TraitName, float] = {
            TraitName.OPENNESS: positive * 0.6 + emoji_rate * 40,
            TraitName.CONSCIENTIOUSNESS: neutral * 0.8 + 20,
            TraitName.EXTRAVERSION: positive * 0.9,
            TraitName.AGREEABLENESS: positive * 0.85 + 10,
            TraitName.NEUROTICISM: negative * 1.2,
            TraitName.DISC_DOMINANCE: 100 - neutral * 0.7 - question_rate * 100,
            TraitName.DISC_INFLUENCE: positive * 0.85 + 10,
            TraitName.DISC_STEADINESS: neutral * 0.9 + 10,
            TraitName.DISC_COMPLIANCE: neutral * 0.75 + positive * 0.25,
            TraitName.EQ_SELF_AWARENESS: 50 + positive * 0.3 + neutral * 0.2,
            TraitName.EQ_SELF_REGULATION: 100 - negative * 1.5,
            TraitName.EQ_MOTIVATION: positive * 0.8 + 15,
            TraitName.EQ_EMPATHY: positive * 0.7 + neutral * 0.3,
            TraitName.EQ_SOCIAL_SKILLS: positive * 0.6 + neutral * 0.3 + 10,
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
        """Distribution-balance heuristic, floor 35."""
        confidence = 55.0

        if window.message_count > 100:
            confidence += 15
        elif window.message_count > 50:
            confidence += 10

        positive, neutral, negative = window.sentiment_percentages()
        distance = abs(positive - 50) + abs(negative - 20) + abs(neutral - 30)
        if distance < 50:
            confidence += 20
        elif distance < 100:
            confidence += 10

        if window.emoji_count > 0:
            confidence += 10

        return min(100.0, max(35.0, confidence))
