"""Lexical runner: vocabulary, formality and engagement markers."""

from __future__ import annotations
from typing import Dict, Optional

from ..contracts import (
    AggregationWindow, ModelKind, ModelOutput, TraitName, clamp_score,
)


# Unique-word count that maps to a full openness score
VOCABULARY_SATURATION = 600.0


class LexicalRunner:
    """Pattern-matching analysis over linguistic markers."""

    kind = ModelKind.LEXICAL

    def analyze(
        self,
        window: AggregationWindow,
        run_id: Optional[str] = None
    ) -> ModelOutput:
        emoji_rate = window.rate(window.emoji_count)
        question_rate = window.rate(window.question_count)
        exclaim_rate = window.rate(window.exclamation_count)
        positive, neutral, negative = window.sentiment_percentages()
        formality = window.formality_avg

        initiated = window.conversations_initiated
        participated = window.conversations_participated
        total_conversations = initiated + participated
        if total_conversations > 0:
            initiation_ratio = initiated / total_conversations * 100
        else:
            initiation_ratio = 50.0

        openness = clamp_score(window.vocabulary_estimate / VOCABULARY_SATURATION * 100)
        agreeableness = clamp_score(positive * 0.7 + emoji_rate * 30)
        neuroticism = clamp_score(negative * 0.8 + exclaim_rate * 50)
        dominance_base = 70.0 if window.length_mean < 50 else 40.0

        traits: Dict[TraitName, float] = {
            TraitName.OPENNESS: openness,
            TraitName.CONSCIENTIOUSNESS: formality,
            TraitName.EXTRAVERSION: initiation_ratio + 30,
            TraitName.AGREEABLENESS: agreeableness,
            TraitName.NEUROTICISM: neuroticism,
            TraitName.DISC_DOMINANCE: dominance_base - question_rate * 100,
            TraitName.DISC_INFLUENCE: initiation_ratio * 0.6 + emoji_rate * 40,
            TraitName.DISC_STEADINESS: neutral * 0.5 + (
                50 if window.avg_response_time_seconds < 300 else 30
            ),
            TraitName.DISC_COMPLIANCE: formality * 0.6 + window.technical_term_frequency * 2,
            TraitName.EQ_SELF_AWARENESS: (openness + agreeableness) / 2,
            TraitName.EQ_SELF_REGULATION: 100 - neuroticism,
            TraitName.EQ_MOTIVATION: initiated / max(1, total_conversations) * 100,
            TraitName.EQ_EMPATHY: agreeableness,
            TraitName.EQ_SOCIAL_SKILLS: participated / max(1, total_conversations) * 100,
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
        """Data-quality heuristic, floor 30."""
        confidence = 50.0

        if window.message_count > 100:
            confidence += 20
        elif window.message_count > 50:
            confidence += 10
        elif window.message_count > 20:
            confidence += 5

        if window.vocabulary_estimate > 400:
            confidence += 15
        elif window.vocabulary_estimate > 200:
            confidence += 10

        positive, neutral, _ = window.sentiment_percentages()
        if 40 < positive < 80 and neutral > 15:
            confidence += 10

        if window.conversations_participated > 10:
            confidence += 5

        return min(100.0, max(30.0, confidence))
