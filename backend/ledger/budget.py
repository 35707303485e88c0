"""
Token Budget Ledger

Per-(organization, month) spend cap for validator escalations.

INVARIANTS:
===========
- spent + reserved <= allocated after every operation, including
  under concurrent callers
- Every reservation is settled exactly once (commit or release)
- A broken invariant halts the ledger until reconcile() is called

Each ledger carries its own lock; there is no process-wide budget state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional, Protocol, Tuple
import itertools
import logging
import threading

from models.contracts import BudgetLedgerCorruption, EscalationSkippedBudget
from models.escalation import REFUSAL_BUDGET_EXHAUSTED, REFUSAL_BUDGET_HALTED

from ..contracts.events import AuditEventType
from ..observability import ObservabilityEngine

logger = logging.getLogger(__name__)


class AllocationProvider(Protocol):
    """Identity collaborator that knows each organization's allocation."""

    def get_org_token_allocation(self, organization_id: str, period_month: str) -> int:
        ...


class FixedAllocations:
    """Allocation table with a default for unlisted organizations."""

    def __init__(self, default: int = 0, overrides: Optional[Mapping[str, int]] = None):
        self._default = default
        self._overrides = dict(overrides or {})

    def get_org_token_allocation(self, organization_id: str, period_month: str) -> int:
        return self._overrides.get(organization_id, self._default)


@dataclass(frozen=True)
class Reservation:
    """Tokens held against a ledger for one in-flight validator call."""
    reservation_id: str
    organization_id: str
    period_month: str
    tokens: int


@dataclass(frozen=True)
class BudgetStatus:
    """Point-in-time view of one ledger."""
    organization_id: str
    period_month: str
    allocated: int
    spent: int
    reserved: int
    halted: bool

    @property
    def remaining(self) -> int:
        return self.allocated - self.spent

    @property
    def available(self) -> int:
        return self.allocated - self.spent - self.reserved

    def to_dict(self) -> Dict[str, object]:
        return {
            'organization_id': self.organization_id,
            'period_month': self.period_month,
            'allocated': self.allocated,
            'spent': self.spent,
            'reserved': self.reserved,
            'remaining': self.remaining,
            'available': self.available,
            'halted': self.halted,
        }


class TokenBudgetLedger:
    """
    Atomic reserve / commit / release over one organization's month.

    reserve() and commit() raise EscalationSkippedBudget when the
    allocation cannot cover the request; the refusal is a recorded
    degradation, never a crash.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        organization_id: str,
        period_month: str,
        allocated: int,
        observability: Optional[ObservabilityEngine] = None
    ):
        if allocated < 0:
            raise ValueError("allocated must be non-negative")
        self.organization_id = organization_id
        self.period_month = period_month
        self._allocated = allocated
        self._spent = 0
        self._reserved = 0
        self._halted = False
        self._outstanding: Dict[str, Reservation] = {}
        self._lock = threading.Lock()
        self._observability = observability

    # =========================================================================
    # READ
    # =========================================================================

    @property
    def allocated(self) -> int:
        return self._allocated

    @property
    def spent(self) -> int:
        with self._lock:
            return self._spent

    @property
    def reserved(self) -> int:
        with self._lock:
            return self._reserved

    @property
    def remaining(self) -> int:
        """Allocation not yet spent; outstanding reservations still count as remaining."""
        with self._lock:
            return self._allocated - self._spent

    @property
    def available(self) -> int:
        """Allocation a new reservation could take right now."""
        with self._lock:
            return self._allocated - self._spent - self._reserved

    @property
    def halted(self) -> bool:
        with self._lock:
            return self._halted

    def status(self) -> BudgetStatus:
        with self._lock:
            return BudgetStatus(
                organization_id=self.organization_id,
                period_month=self.period_month,
                allocated=self._allocated,
                spent=self._spent,
                reserved=self._reserved,
                halted=self._halted,
            )

    # =========================================================================
    # WRITE
    # =========================================================================

    def reserve(self, tokens: int) -> Reservation:
        """Hold tokens for one call. Raises EscalationSkippedBudget if they are not available."""
        if tokens <= 0:
            raise ValueError("Reservation must be positive")
        with self._lock:
            if self._halted:
                raise EscalationSkippedBudget(
                    "Ledger halted", reason=REFUSAL_BUDGET_HALTED,
                    organization_id=self.organization_id,
                )
            if self._spent + self._reserved + tokens > self._allocated:
                raise EscalationSkippedBudget(
                    "Insufficient budget", reason=REFUSAL_BUDGET_EXHAUSTED,
                    organization_id=self.organization_id,
                    requested=str(tokens),
                    available=str(self._allocated - self._spent - self._reserved),
                )
            reservation = Reservation(
                reservation_id=f"rsv_{self.organization_id}_{self.period_month}_{next(self._ids)}",
                organization_id=self.organization_id,
                period_month=self.period_month,
                tokens=tokens,
            )
            self._outstanding[reservation.reservation_id] = reservation
            self._reserved += tokens
        return reservation

    def commit(self, reservation: Reservation, actual_tokens: int) -> int:
        """
        Settle a reservation with the tokens actually used.

        Usage above the reservation is debited only if the remaining
        allocation covers it; otherwise the reservation is released,
        nothing is spent and EscalationSkippedBudget is raised.

        Returns the tokens debited.
        """
        if actual_tokens < 0:
            raise ValueError("actual_tokens must be non-negative")
        with self._lock:
            self._settle(reservation)
            if self._spent + self._reserved + actual_tokens > self._allocated:
                refusal = EscalationSkippedBudget(
                    "Actual usage exceeds allocation", reason=REFUSAL_BUDGET_EXHAUSTED,
                    organization_id=self.organization_id,
                    reserved=str(reservation.tokens),
                    actual=str(actual_tokens),
                )
            else:
                refusal = None
                self._spent += actual_tokens
            spent = self._spent

        if refusal is not None:
            logger.warning(
                "Commit rejected for %s/%s: %d tokens over a %d reservation",
                self.organization_id, self.period_month, actual_tokens, reservation.tokens,
            )
            self._audit("commit_rejected", outcome="refused", actual=str(actual_tokens))
            raise refusal

        self._metric("tokens_spent", actual_tokens)
        self._audit("tokens_committed", actual=str(actual_tokens), spent=str(spent))
        return actual_tokens

    def release(self, reservation: Reservation) -> None:
        """Return a reservation's tokens untouched."""
        with self._lock:
            self._settle(reservation)
        self._audit("reservation_released", tokens=str(reservation.tokens))

    def debit(self, tokens: int) -> bool:
        """
        Compare-and-decrement without a prior reservation.

        Returns False, leaving the ledger unchanged, when the debit would
        exceed the allocation or the ledger is halted.
        """
        if tokens < 0:
            raise ValueError("tokens must be non-negative")
        with self._lock:
            if self._halted or self._spent + self._reserved + tokens > self._allocated:
                return False
            self._spent += tokens
        self._metric("tokens_spent", tokens)
        return True

    def reconcile(self) -> BudgetStatus:
        """
        Rebuild reserved from the outstanding reservations and clear a halt.
        """
        with self._lock:
            self._reserved = sum(r.tokens for r in self._outstanding.values())
            self._spent = min(self._spent, self._allocated)
            self._halted = False
        logger.info("Ledger %s/%s reconciled", self.organization_id, self.period_month)
        self._audit("ledger_reconciled")
        return self.status()

    def _settle(self, reservation: Reservation):
        # Caller holds self._lock
        held = self._outstanding.pop(reservation.reservation_id, None)
        if held is None or held != reservation:
            self._halted = True
            logger.error(
                "Unknown or settled reservation %s on %s/%s; ledger halted",
                reservation.reservation_id, self.organization_id, self.period_month,
            )
            raise BudgetLedgerCorruption(
                "Unknown or already settled reservation",
                organization_id=self.organization_id,
                reservation_id=reservation.reservation_id,
            )
        self._reserved -= held.tokens
        if self._reserved < 0 or self._spent > self._allocated:
            self._halted = True
            raise BudgetLedgerCorruption(
                "Ledger totals out of bounds", organization_id=self.organization_id,
            )

    def _metric(self, name: str, value: float):
        if self._observability:
            self._observability.collect_metric(
                name, value, {'organization_id': self.organization_id}
            )

    def _audit(self, action: str, outcome: str = "success", **metadata: str):
        if self._observability:
            self._observability.log_audit(
                action=action,
                entity_id=f"{self.organization_id}/{self.period_month}",
                entity_type="token_budget_ledger",
                outcome=outcome,
                layer="ledger",
                event_type=AuditEventType.BUDGET,
                **metadata
            )


class BudgetBook:
    """
    Registry of ledgers, created on first use from the allocation provider.
    """

    def __init__(
        self,
        allocations: AllocationProvider,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._allocations = allocations
        self._observability = observability
        self._ledgers: Dict[Tuple[str, str], TokenBudgetLedger] = {}
        self._lock = threading.Lock()

    def ledger(self, organization_id: str, period_month: str) -> TokenBudgetLedger:
        key = (organization_id, period_month)
        with self._lock:
            ledger = self._ledgers.get(key)
            if ledger is None:
                allocated = int(
                    self._allocations.get_org_token_allocation(organization_id, period_month)
                )
                ledger = TokenBudgetLedger(
                    organization_id, period_month, max(0, allocated), self._observability
                )
                self._ledgers[key] = ledger
            return ledger

    def status(self, organization_id: str, period_month: Optional[str] = None) -> BudgetStatus:
        """Status of a ledger; an untouched ledger is reported without being created."""
        month = period_month or current_month()
        with self._lock:
            ledger = self._ledgers.get((organization_id, month))
        if ledger is not None:
            return ledger.status()
        allocated = int(self._allocations.get_org_token_allocation(organization_id, month))
        return BudgetStatus(
            organization_id=organization_id,
            period_month=month,
            allocated=max(0, allocated),
            spent=0,
            reserved=0,
            halted=False,
        )

    def ledgers(self):
        with self._lock:
            return list(self._ledgers.values())


def current_month(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime("%Y-%m")
