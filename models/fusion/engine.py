"""
Fusion Engine

Confidence-weighted consensus over 1-4 model outputs.

    weight(model) = base_weight(kind) * confidence / 100
    score(trait)  = sum(score * weight) / sum(weight)

GUARANTEES:
===========
- Pure and deterministic: same outputs -> identical ConsensusResult
- Every score and the aggregate confidence lie in [0, 100]
- Iteration follows ModelKind declaration order, never input order
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

import numpy as np

from ..contracts import (
    ConsensusResult, DEFAULT_BASE_WEIGHTS, FusionInconsistency, ModelKind,
    ModelOutput, TraitConsensus, TraitName, clamp_score,
)


DEGRADATION_VALIDATOR_ABSENT = "validator_absent"


@dataclass(frozen=True)
class FusionConfig:
    """Base weights per model kind and output precision."""
    base_weights: Mapping[ModelKind, float] = field(
        default_factory=lambda: dict(DEFAULT_BASE_WEIGHTS)
    )
    precision: int = 2

    def __post_init__(self):
        missing = [k.value for k in ModelKind if k not in self.base_weights]
        if missing:
            raise ValueError(f"Missing base weights for: {', '.join(missing)}")
        if any(w < 0 for w in self.base_weights.values()):
            raise ValueError("Base weights must be non-negative")
        if sum(self.base_weights.values()) <= 0:
            raise ValueError("Base weights must not all be zero")


OutputsArg = Union[Mapping[ModelKind, ModelOutput], Iterable[ModelOutput]]


class FusionEngine:
    """Stateless fuser; safe to share between worker threads."""

    def __init__(self, config: Optional[FusionConfig] = None):
        self._config = config or FusionConfig()

    @property
    def config(self) -> FusionConfig:
        return self._config

    def fuse(
        self,
        outputs: OutputsArg,
        validator_expected: bool = False,
        degradation_reason: Optional[str] = None
    ) -> ConsensusResult:
        """
        Fuse model outputs into one consensus.

        Args:
            outputs: Model outputs of one run, as a list or a kind -> output map
            validator_expected: The validator was eligible for this run
            degradation_reason: Why the validator is absent, if known

        Raises:
            FusionInconsistency: no outputs, duplicate kinds, or outputs
                from different runs/subjects
        """
        ordered = self._canonicalize(outputs)
        kinds = tuple(o.model_kind for o in ordered)
        traits = self._trait_axis(ordered)

        base = np.array([self._config.base_weights[k] for k in kinds], dtype=float)
        confidence = np.array([o.confidence for o in ordered], dtype=float) / 100.0
        weights = base * confidence
        full_mass = float(sum(self._config.base_weights.values()))

        # scores[i, j] is model i's score for trait j; NaN where not reported
        scores = np.full((len(ordered), len(traits)), np.nan)
        for i, output in enumerate(ordered):
            vector = output.traits
            for j, trait in enumerate(traits):
                if trait in vector:
                    scores[i, j] = vector[trait]
        reported = ~np.isnan(scores)

        consensus = []
        for j, trait in enumerate(traits):
            mask = reported[:, j]
            w = weights[mask]
            if w.sum() <= 0:
                # every reporting model has zero confidence; fall back to base weights
                w = base[mask]
            s = scores[mask, j]
            score = float(np.dot(s, w) / w.sum()) if w.sum() > 0 else float(np.mean(s))
            consensus.append(TraitConsensus(
                trait=trait,
                score=self._round(score),
                confidence=self._round(float(weights[mask].sum()) / full_mass * 100),
                models_used=int(mask.sum()),
            ))

        aggregate = self._round(float(weights.sum()) / full_mass * 100)

        degraded = validator_expected and ModelKind.VALIDATOR not in kinds
        reason = None
        if degraded:
            reason = degradation_reason or DEGRADATION_VALIDATOR_ABSENT

        return ConsensusResult(
            run_id=ordered[0].run_id,
            subject_id=ordered[0].subject_id,
            traits=tuple(consensus),
            aggregate_confidence=aggregate,
            contributing_models=kinds,
            degraded=degraded,
            degradation_reason=reason,
            total_tokens=sum(o.tokens_consumed for o in ordered),
        )

    def _round(self, value: float) -> float:
        return round(clamp_score(value), self._config.precision)

    @staticmethod
    def _canonicalize(outputs: OutputsArg) -> Tuple[ModelOutput, ...]:
        if isinstance(outputs, Mapping):
            for kind, output in outputs.items():
                if output.model_kind != kind:
                    raise FusionInconsistency(
                        "Output registered under the wrong model kind",
                        expected=kind.value, actual=output.model_kind.value,
                    )
            items = list(outputs.values())
        else:
            items = list(outputs)

        if not items:
            raise FusionInconsistency("No contributing models")

        by_kind: Dict[ModelKind, ModelOutput] = {}
        for output in items:
            if output.model_kind in by_kind:
                raise FusionInconsistency(
                    "Duplicate model kind", model_kind=output.model_kind.value
                )
            by_kind[output.model_kind] = output

        run_ids = {o.run_id for o in items}
        subject_ids = {o.subject_id for o in items}
        if len(run_ids) != 1 or len(subject_ids) != 1:
            raise FusionInconsistency("Outputs belong to different runs or subjects")

        return tuple(by_kind[k] for k in ModelKind if k in by_kind)

    @staticmethod
    def _trait_axis(outputs: Tuple[ModelOutput, ...]) -> Tuple[TraitName, ...]:
        present = set()
        for output in outputs:
            present.update(output.traits)
        return tuple(t for t in TraitName.ordered() if t in present)


def fuse(
    outputs: OutputsArg,
    validator_expected: bool = False,
    degradation_reason: Optional[str] = None,
    config: Optional[FusionConfig] = None
) -> ConsensusResult:
    """Module-level convenience around FusionEngine.fuse()."""
    return FusionEngine(config).fuse(outputs, validator_expected, degradation_reason)
