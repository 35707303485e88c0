"""
Escalation Package

Cost-bounded decision procedure for spending validator budget.
"""

from .policy import (
    EscalationConfig,
    EscalationDecision,
    SubjectEscalationHistory,
    evaluate_escalation,
    should_escalate,
    mean_confidence,
    max_trait_spread,
    KEY_TRAITS,
    REASON_LOW_CONFIDENCE,
    REASON_DISAGREEMENT,
    REASON_COLD_START,
    REASON_NO_TIER1,
    REFUSAL_BUDGET_EXHAUSTED,
    REFUSAL_BUDGET_HALTED,
)

__all__ = [
    'EscalationConfig', 'EscalationDecision', 'SubjectEscalationHistory',
    'evaluate_escalation', 'should_escalate', 'mean_confidence',
    'max_trait_spread', 'KEY_TRAITS',
    'REASON_LOW_CONFIDENCE', 'REASON_DISAGREEMENT', 'REASON_COLD_START',
    'REASON_NO_TIER1', 'REFUSAL_BUDGET_EXHAUSTED', 'REFUSAL_BUDGET_HALTED',
]
