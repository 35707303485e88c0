"""
Aggregation Layer

RESPONSIBILITY: Turn the live event stream into sealed statistical windows
ALLOWED INPUTS: CommunicationEvents (or transport mappings), consent flags
OUTPUTS: Immutable AggregationWindows

WHAT THIS LAYER MUST NOT DO:
============================
- Persist, log or return message text
- Run models or touch the budget
- Hold a lock across subjects
"""

from .aggregator import (
    Aggregator, AggregatorConfig, ConsentProvider, IngestionSummary, StaticConsent,
)
from .statistics import (
    MessageSignals, RunningWindow, extract_signals, merge_windows, estimate_distinct,
)

__all__ = [
    'Aggregator', 'AggregatorConfig', 'ConsentProvider', 'IngestionSummary', 'StaticConsent',
    'MessageSignals', 'RunningWindow', 'extract_signals', 'merge_windows',
    'estimate_distinct',
]
