"""
Run Contracts

Lifecycle record of one fusion run.

STATE MACHINE:
==============
    pending -> running -> completed | failed | skipped_budget | skipped_no_data
    pending -> failed | skipped_no_data

Terminal states are written exactly once and never mutated.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple
import hashlib

from models.contracts import ModelKind, PeriodKey


class RunStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_BUDGET = "skipped_budget"
    SKIPPED_NO_DATA = "skipped_no_data"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


ALLOWED_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset({
        RunStatus.RUNNING, RunStatus.FAILED, RunStatus.SKIPPED_NO_DATA,
    }),
    RunStatus.RUNNING: frozenset({
        RunStatus.COMPLETED, RunStatus.FAILED,
        RunStatus.SKIPPED_BUDGET, RunStatus.SKIPPED_NO_DATA,
    }),
}


def run_id_for(subject_id: str, period: PeriodKey, attempt: int) -> str:
    """Deterministic run identity per attempt."""
    seed = f"{subject_id}|{period.label}|{attempt}"
    return f"run_{hashlib.sha256(seed.encode()).hexdigest()[:16]}"


@dataclass(frozen=True)
class RunRecord:
    """Immutable view of one run as stored in the ledger."""
    run_id: str
    subject_id: str
    organization_id: str
    period: PeriodKey
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    models_invoked: Tuple[ModelKind, ...] = field(default_factory=tuple)
    tokens_spent: int = 0
    escalated: bool = False
    escalation_reasons: Tuple[str, ...] = field(default_factory=tuple)
    degraded: bool = False
    error_detail: Optional[str] = None
    attempt: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, object]:
        return {
            'run_id': self.run_id,
            'subject_id': self.subject_id,
            'organization_id': self.organization_id,
            'period_start': self.period.start.isoformat(),
            'period_end': self.period.end.isoformat(),
            'status': self.status.value,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'models_invoked': [m.value for m in self.models_invoked],
            'tokens_spent': self.tokens_spent,
            'escalated': self.escalated,
            'escalation_reasons': list(self.escalation_reasons),
            'degraded': self.degraded,
            'error_detail': self.error_detail,
            'attempt': self.attempt,
        }
