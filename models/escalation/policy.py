"""
Escalation Policy

Pure decision over Tier-1 outputs, remaining budget and subject history:
should this window be sent to the generative validator?

GUARANTEES:
===========
- No I/O, no clock, no randomness: same inputs -> same decision
- Budget refusal is a recorded degradation, never an exception
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional, Tuple

from ..contracts import ModelKind, ModelOutput, TraitName


# Reasons a window is eligible
REASON_LOW_CONFIDENCE = "low_confidence"
REASON_DISAGREEMENT = "trait_disagreement"
REASON_COLD_START = "cold_start"
REASON_NO_TIER1 = "tier1_absent"

# Reasons an eligible window is refused
REFUSAL_BUDGET_EXHAUSTED = "budget_exhausted"
REFUSAL_BUDGET_HALTED = "budget_halted"

KEY_TRAITS: FrozenSet[TraitName] = frozenset({
    TraitName.EXTRAVERSION,
    TraitName.AGREEABLENESS,
    TraitName.CONSCIENTIOUSNESS,
})


@dataclass(frozen=True)
class EscalationConfig:
    """
    Escalation thresholds.

    spread_traits limits the disagreement check; None checks every trait.
    """
    confidence_threshold: float = 70.0
    spread_threshold: float = 40.0
    spread_traits: Optional[FrozenSet[TraitName]] = KEY_TRAITS
    cold_start_enabled: bool = True


@dataclass(frozen=True)
class SubjectEscalationHistory:
    """What the run ledger knows about a subject's past analyses."""
    subject_id: str
    completed_periods: int = 0
    cold_start_used: bool = False

    @property
    def is_cold_start(self) -> bool:
        return self.completed_periods == 0 and not self.cold_start_used


@dataclass(frozen=True)
class EscalationDecision:
    """
    Result of evaluate_escalation().

    eligible:  at least one trigger fired
    escalate:  eligible and not refused
    """
    eligible: bool
    escalate: bool
    reasons: Tuple[str, ...] = field(default_factory=tuple)
    refusal_reason: Optional[str] = None
    mean_confidence: Optional[float] = None
    max_spread: float = 0.0

    @property
    def refused(self) -> bool:
        return self.eligible and not self.escalate

    @property
    def is_cold_start(self) -> bool:
        return REASON_COLD_START in self.reasons


def mean_confidence(outputs: Mapping[ModelKind, ModelOutput]) -> Optional[float]:
    tier1 = [o.confidence for k, o in outputs.items() if k.is_tier1]
    if not tier1:
        return None
    return sum(tier1) / len(tier1)


def max_trait_spread(
    outputs: Mapping[ModelKind, ModelOutput],
    traits: Optional[FrozenSet[TraitName]] = None
) -> float:
    """Largest (max - min) score for any trait reported by 2+ Tier-1 outputs."""
    vectors = [o.traits for k, o in outputs.items() if k.is_tier1]
    if len(vectors) < 2:
        return 0.0
    candidates = traits if traits is not None else frozenset(TraitName)
    spread = 0.0
    for trait in candidates:
        scores = [v[trait] for v in vectors if trait in v]
        if len(scores) >= 2:
            spread = max(spread, max(scores) - min(scores))
    return spread


def evaluate_escalation(
    tier1_outputs: Mapping[ModelKind, ModelOutput],
    budget_remaining: int,
    history: SubjectEscalationHistory,
    config: Optional[EscalationConfig] = None,
    ledger_halted: bool = False
) -> EscalationDecision:
    """Decide whether to escalate, and why."""
    config = config or EscalationConfig()
    reasons = []

    mean = mean_confidence(tier1_outputs)
    spread = max_trait_spread(tier1_outputs, config.spread_traits)

    if mean is None:
        reasons.append(REASON_NO_TIER1)
    elif mean < config.confidence_threshold:
        reasons.append(REASON_LOW_CONFIDENCE)

    if spread > config.spread_threshold:
        reasons.append(REASON_DISAGREEMENT)

    if config.cold_start_enabled and history.is_cold_start:
        reasons.append(REASON_COLD_START)

    eligible = bool(reasons)
    refusal = None
    if eligible:
        if ledger_halted:
            refusal = REFUSAL_BUDGET_HALTED
        elif budget_remaining <= 0:
            refusal = REFUSAL_BUDGET_EXHAUSTED

    return EscalationDecision(
        eligible=eligible,
        escalate=eligible and refusal is None,
        reasons=tuple(reasons),
        refusal_reason=refusal,
        mean_confidence=mean,
        max_spread=spread,
    )


def should_escalate(
    tier1_outputs: Mapping[ModelKind, ModelOutput],
    budget_remaining: int,
    history: SubjectEscalationHistory,
    config: Optional[EscalationConfig] = None
) -> bool:
    return evaluate_escalation(tier1_outputs, budget_remaining, history, config).escalate
