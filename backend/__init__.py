"""
Trait Inference Engine Backend

This package implements a strictly layered backend architecture with
hard boundaries between system responsibilities. Each layer communicates
only through explicit contracts, never through shared mutable state.

LAYER STRUCTURE:
================

1. AGGREGATION LAYER (aggregation/)
   - Responsibility: Fold the event stream into per-period statistics
   - Allowed inputs: CommunicationEvent, consent flags
   - Outputs: AggregationWindow (immutable, statistics only)
   - MUST NOT: Keep, log or return message text

2. LEDGER LAYER (ledger/)
   - Responsibility: Token budgets and the run ledger
   - Allowed inputs: Reservations, run transitions, consensus results
   - Outputs: BudgetStatus, RunRecord, consensus history
   - MUST NOT: Decide escalation, run models, mutate terminal runs

3. ENGINE (engine.py)
   - Responsibility: Seal -> Tier-1 -> escalation -> fusion -> ledger
   - Allowed inputs: Sealed windows from the queue
   - Outputs: Terminal RunRecords
   - MUST NOT: Call a provider except through the adapter package

4. REPORTING API (api/)
   - Responsibility: Read-only HTTP access to consensus, runs and budgets
   - MUST NOT: Ingest, trigger runs or expose stack traces

5. OBSERVABILITY & AUDIT LAYER (observability/)
   - Responsibility: Audit trail and metrics
   - Allowed inputs: Any event stream
   - Outputs: AuditLog, Metrics
   - MUST NOT: Modify system behavior, filter or interpret events

CONSTRAINTS ENFORCED:
=====================
- Privacy: message text never outlives a single aggregator update
- Immutability-first: windows, outputs and consensus are frozen
- Budget: spent <= allocated for every organization and month
- Explicit errors: every failure maps to an ErrorCode
"""
