"""
Tier-1 Model Runners

Fast, zero-marginal-cost deterministic analyzers over a sealed window.

GUARANTEES:
===========
- No network, no hidden state, bounded time
- A failing runner is reported and left out; the others still count
- run_tier1() is a barrier: it returns once every runner finished or failed
"""

from __future__ import annotations
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence
import logging

from ..contracts import AggregationWindow, ModelKind, ModelOutput, TraitModelRunner
from .lexical import LexicalRunner
from .sentiment import SentimentRunner
from .behavioral import BehavioralRunner

logger = logging.getLogger(__name__)


def default_runners() -> Sequence[TraitModelRunner]:
    return (LexicalRunner(), SentimentRunner(), BehavioralRunner())


@dataclass(frozen=True)
class Tier1Result:
    """Outcome of the Tier-1 stage for one window."""
    outputs: Dict[ModelKind, ModelOutput] = field(default_factory=dict)
    failures: Dict[ModelKind, str] = field(default_factory=dict)

    @property
    def confidences(self) -> Dict[ModelKind, float]:
        return {kind: out.confidence for kind, out in self.outputs.items()}


def run_tier1(
    window: AggregationWindow,
    runners: Optional[Sequence[TraitModelRunner]] = None,
    run_id: Optional[str] = None,
    executor: Optional[Executor] = None
) -> Tier1Result:
    """
    Run every runner concurrently against one window.

    Args:
        window: Sealed window, consumed read-only
        runners: Runners to use (defaults to the three Tier-1 runners)
        run_id: Run the outputs belong to (defaults to the window id)
        executor: Pool to submit to; a private pool is used if None
    """
    runners = tuple(runners) if runners is not None else tuple(default_runners())
    kinds = [r.kind for r in runners]
    if len(set(kinds)) != len(kinds):
        raise ValueError("Duplicate runner kinds")

    own_pool = executor is None
    pool = executor or ThreadPoolExecutor(
        max_workers=max(1, len(runners)), thread_name_prefix="tier1"
    )
    try:
        futures = {r.kind: pool.submit(r.analyze, window, run_id) for r in runners}
        outputs: Dict[ModelKind, ModelOutput] = {}
        failures: Dict[ModelKind, str] = {}
        for kind, future in futures.items():
            try:
                outputs[kind] = future.result()
            except Exception as e:
                failures[kind] = f"{type(e).__name__}: {e}"
                logger.warning(
                    "Tier-1 runner %s failed on window %s: %s",
                    kind.value, window.window_id, type(e).__name__
                )
    finally:
        if own_pool:
            pool.shutdown(wait=True)

    return Tier1Result(outputs=outputs, failures=failures)


__all__ = [
    'LexicalRunner', 'SentimentRunner', 'BehavioralRunner',
    'Tier1Result', 'default_runners', 'run_tier1',
]
