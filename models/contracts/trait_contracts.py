"""
Trait Contracts

Shared trait taxonomy and model identity for every runner.

WHY ONE TAXONOMY:
=================
Tier-1 runners and the validator may disagree on SCORES, never on which
traits exist. Disagreement between scores is signal consumed by fusion;
disagreement between taxonomies would be a bug.
"""

from __future__ import annotations
from enum import Enum
from typing import Dict, Tuple


class Framework(Enum):
    """Psychometric framework a trait belongs to."""
    BIG_FIVE = "big_five"
    DISC = "disc"
    EMOTIONAL_INTELLIGENCE = "emotional_intelligence"


class TraitName(Enum):
    """The closed set of traits every model scores."""
    OPENNESS = "openness"
    CONSCIENTIOUSNESS = "conscientiousness"
    EXTRAVERSION = "extraversion"
    AGREEABLENESS = "agreeableness"
    NEUROTICISM = "neuroticism"

    DISC_DOMINANCE = "disc_dominance"
    DISC_INFLUENCE = "disc_influence"
    DISC_STEADINESS = "disc_steadiness"
    DISC_COMPLIANCE = "disc_compliance"

    EQ_SELF_AWARENESS = "eq_self_awareness"
    EQ_SELF_REGULATION = "eq_self_regulation"
    EQ_MOTIVATION = "eq_motivation"
    EQ_EMPATHY = "eq_empathy"
    EQ_SOCIAL_SKILLS = "eq_social_skills"

    @property
    def framework(self) -> Framework:
        if self.value.startswith("disc_"):
            return Framework.DISC
        if self.value.startswith("eq_"):
            return Framework.EMOTIONAL_INTELLIGENCE
        return Framework.BIG_FIVE

    @staticmethod
    def ordered() -> Tuple["TraitName", ...]:
        """Canonical trait order used for hashing and serialization."""
        return tuple(sorted(TraitName, key=lambda t: t.value))

    @staticmethod
    def for_framework(framework: Framework) -> Tuple["TraitName", ...]:
        return tuple(t for t in TraitName.ordered() if t.framework == framework)


class ModelKind(Enum):
    """
    Identity of a model source.

    Declaration order is the canonical provenance order used by fusion.
    """
    LEXICAL = "lexical"
    SENTIMENT = "sentiment"
    BEHAVIORAL = "behavioral"
    VALIDATOR = "validator"

    @property
    def is_tier1(self) -> bool:
        return self is not ModelKind.VALIDATOR

    @staticmethod
    def tier1() -> Tuple["ModelKind", ...]:
        return (ModelKind.LEXICAL, ModelKind.SENTIMENT, ModelKind.BEHAVIORAL)


# Base fusion weights over the full model set (sum to 1.0)
DEFAULT_BASE_WEIGHTS: Dict[ModelKind, float] = {
    ModelKind.LEXICAL: 0.25,
    ModelKind.SENTIMENT: 0.25,
    ModelKind.BEHAVIORAL: 0.30,
    ModelKind.VALIDATOR: 0.20,
}

SCORE_MIN = 0.0
SCORE_MAX = 100.0


def clamp_score(value: float) -> float:
    """Clamp a score or confidence into [0, 100]."""
    return max(SCORE_MIN, min(SCORE_MAX, float(value)))


def parse_trait_name(raw: str) -> TraitName:
    """
    Resolve a trait key as produced by external models.

    Accepts the canonical value ("eq_self_awareness") and the camelCase
    spelling generative models tend to echo back ("eq_selfAwareness").
    """
    key = raw.strip()
    try:
        return TraitName(key)
    except ValueError:
        pass
    snake = "".join(f"_{c.lower()}" if c.isupper() else c for c in key)
    return TraitName(snake)
