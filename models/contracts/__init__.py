"""
Contracts Module

Explicit data contracts shared by runners, escalation, fusion and the
validator adapter. No component couples to another's internals.

DESIGN PRINCIPLES:
==================
1. All contracts are immutable (frozen dataclasses)
2. Contracts define WHAT, not HOW
3. Windows carry statistics only, never content
"""

from .trait_contracts import (
    Framework,
    TraitName,
    ModelKind,
    DEFAULT_BASE_WEIGHTS,
    SCORE_MIN,
    SCORE_MAX,
    clamp_score,
    parse_trait_name,
)

from .window_contracts import (
    ChannelType,
    PeriodKey,
    AggregationWindow,
    LATENCY_BUCKET_EDGES,
    PERIOD_ANCHOR,
    window_id_for,
)

from .output_contracts import (
    ModelOutput,
    TraitConsensus,
    ConsensusResult,
    TraitModelRunner,
)

from .errors import (
    ErrorCode,
    Error,
    TraitEngineError,
    ConsentDenied,
    IngestionError,
    WindowAlreadySealed,
    EscalationSkippedBudget,
    EscalationTimeout,
    EscalationTransportError,
    FusionInconsistency,
    DuplicateRun,
    InvalidRunTransition,
    RunNotFound,
    BudgetLedgerCorruption,
)

__all__ = [
    # Trait contracts
    'Framework', 'TraitName', 'ModelKind', 'DEFAULT_BASE_WEIGHTS',
    'SCORE_MIN', 'SCORE_MAX', 'clamp_score', 'parse_trait_name',
    # Window contracts
    'ChannelType', 'PeriodKey', 'AggregationWindow',
    'LATENCY_BUCKET_EDGES', 'PERIOD_ANCHOR', 'window_id_for',
    # Output contracts
    'ModelOutput', 'TraitConsensus', 'ConsensusResult', 'TraitModelRunner',
    # Errors
    'ErrorCode', 'Error', 'TraitEngineError', 'ConsentDenied', 'IngestionError', 'WindowAlreadySealed',
    'EscalationSkippedBudget', 'EscalationTimeout', 'EscalationTransportError',
    'FusionInconsistency', 'DuplicateRun', 'InvalidRunTransition', 'RunNotFound',
    'BudgetLedgerCorruption',
]
