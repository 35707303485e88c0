"""
Ledger Layer

RESPONSIBILITY: Durable accounting of spend and of fusion runs
OUTPUTS: TokenBudgetLedger / BudgetBook, RunLedger

WHAT THIS LAYER MUST NOT DO:
============================
- Decide whether to escalate
- Run models
- Mutate a terminal run
"""

from .budget import (
    AllocationProvider, FixedAllocations, Reservation, BudgetStatus,
    TokenBudgetLedger, BudgetBook, current_month,
)
from .runs import STALE_RUN_DETAIL, RunLedger

__all__ = [
    'AllocationProvider', 'FixedAllocations', 'Reservation', 'BudgetStatus',
    'TokenBudgetLedger', 'BudgetBook', 'current_month', 'RunLedger', 'STALE_RUN_DETAIL',
]
