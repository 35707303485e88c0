"""
Error Contracts

One taxonomy for every layer. Exceptions cross component boundaries;
Error records are what gets stored and audited.

PROPAGATION:
============
- Per-model failures are isolated (the model is left out of fusion)
- Per-run failures abort only that run
- Only ledger corruption halts escalation organization-wide

Exception messages never carry message text.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


class ErrorCode(Enum):
    """
    Explicit error codes for deterministic error handling.
    No silent fallbacks - every error state is enumerated.
    """
    # Ingestion
    CONSENT_DENIED = "consent_denied"
    MALFORMED_EVENT = "malformed_event"
    WINDOW_SEALED = "window_sealed"

    # Escalation / validator
    ESCALATION_SKIPPED_BUDGET = "escalation_skipped_budget"
    ESCALATION_TIMEOUT = "escalation_timeout"
    ESCALATION_TRANSPORT = "escalation_transport"

    # Fusion / runs
    FUSION_INCONSISTENCY = "fusion_inconsistency"
    DUPLICATE_RUN = "duplicate_run"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    RUN_NOT_FOUND = "run_not_found"

    # Budget
    BUDGET_LEDGER_CORRUPTION = "budget_ledger_corruption"
    BUDGET_EXCEEDED = "budget_exceeded"

    # Generic
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data, not exceptions - they can be stored and queried.
    """
    code: ErrorCode
    message: str
    timestamp: datetime
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class TraitEngineError(Exception):
    """Base of every engine exception."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, **context: str):
        super().__init__(message)
        self.message = message
        self.context = {k: str(v) for k, v in context.items()}

    def to_error(self, timestamp: Optional[datetime] = None) -> Error:
        return Error(
            code=self.code,
            message=self.message,
            timestamp=timestamp or datetime.now(timezone.utc),
            context=tuple(sorted(self.context.items())),
        )


class ConsentDenied(TraitEngineError):
    """Subject has not consented; the event is dropped, not queued."""
    code = ErrorCode.CONSENT_DENIED


class IngestionError(TraitEngineError):
    """Malformed event, or an event for an already sealed window."""
    code = ErrorCode.MALFORMED_EVENT


class WindowAlreadySealed(IngestionError):
    """Late event for a window that was already sealed."""
    code = ErrorCode.WINDOW_SEALED


class EscalationSkippedBudget(TraitEngineError):
    """Escalation was eligible but the organization budget refused it."""
    code = ErrorCode.ESCALATION_SKIPPED_BUDGET


class EscalationTimeout(TraitEngineError):
    """Validator exceeded its deadline; treated as validator absent."""
    code = ErrorCode.ESCALATION_TIMEOUT


class EscalationTransportError(TraitEngineError):
    """Validator transport or parse failure; treated as validator absent."""
    code = ErrorCode.ESCALATION_TRANSPORT


class FusionInconsistency(TraitEngineError):
    """Fusion cannot produce a consensus; fatal to that run only."""
    code = ErrorCode.FUSION_INCONSISTENCY


class DuplicateRun(TraitEngineError):
    """A run for this subject and period is active or already completed."""
    code = ErrorCode.DUPLICATE_RUN


class InvalidRunTransition(TraitEngineError):
    """Attempt to move a run out of a terminal state."""
    code = ErrorCode.INVALID_STATE_TRANSITION


class RunNotFound(TraitEngineError):
    code = ErrorCode.RUN_NOT_FOUND


class BudgetLedgerCorruption(TraitEngineError):
    """Ledger invariant broken; escalation halts org-wide until reconciled."""
    code = ErrorCode.BUDGET_LEDGER_CORRUPTION
