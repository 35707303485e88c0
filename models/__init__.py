"""
Models Package - Trait Inference Engine

Model-side layer: everything that turns a sealed statistics window into
trait estimates. Each subpackage is isolated and communicates only
through the contracts.

STRUCTURE:
==========

1. CONTRACTS (models/contracts/)
   - Trait taxonomy, windows, model outputs, consensus, errors

2. TIER-1 RUNNERS (models/tier1/)
   - Lexical, sentiment and behavioral heuristics
   - MUST NOT: touch the network, keep state, see message text

3. ESCALATION (models/escalation/)
   - Pure decision on whether to spend validator budget
   - MUST NOT: debit budget, call the validator

4. FUSION (models/fusion/)
   - Confidence-weighted consensus with provenance
   - MUST NOT: persist results

CONSTRAINTS ENFORCED:
=====================
- No shared mutable state
- All inter-package data is immutable
- All functions deterministic and replay-safe
"""
