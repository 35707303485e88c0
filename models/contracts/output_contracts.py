"""
Output Contracts

Immutable outputs of model runners and of fusion.

OWNERSHIP:
==========
A ModelOutput and a ConsensusResult belong to exactly one run. They are
never mutated after creation; a newer run supersedes, it does not edit.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable
import hashlib
import json

from .trait_contracts import Framework, ModelKind, TraitName, SCORE_MIN, SCORE_MAX
from .window_contracts import AggregationWindow


def _check_range(name: str, value: float) -> None:
    if not SCORE_MIN <= value <= SCORE_MAX:
        raise ValueError(f"{name} must be within [0, 100], got {value}")


# =============================================================================
# MODEL OUTPUT
# =============================================================================

@dataclass(frozen=True)
class ModelOutput:
    """
    Trait vector produced by one model for one run.

    trait_vector is stored as a tuple sorted by trait value so that equal
    outputs compare and hash equal regardless of construction order.
    """
    run_id: str
    subject_id: str
    model_kind: ModelKind
    trait_vector: Tuple[Tuple[TraitName, float], ...]
    confidence: float
    tokens_consumed: int
    checksum: str

    def __post_init__(self):
        _check_range("confidence", self.confidence)
        for trait, score in self.trait_vector:
            _check_range(trait.value, score)
        if self.tokens_consumed < 0:
            raise ValueError("tokens_consumed must be non-negative")

    @property
    def traits(self) -> Dict[TraitName, float]:
        return dict(self.trait_vector)

    @staticmethod
    def compute_checksum(
        run_id: str,
        subject_id: str,
        model_kind: ModelKind,
        trait_vector: Tuple[Tuple[TraitName, float], ...],
        confidence: float,
        tokens_consumed: int
    ) -> str:
        payload = json.dumps({
            'run_id': run_id,
            'subject_id': subject_id,
            'model_kind': model_kind.value,
            'traits': [[t.value, round(s, 6)] for t, s in trait_vector],
            'confidence': round(confidence, 6),
            'tokens': tokens_consumed,
        }, sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()

    @staticmethod
    def create(
        run_id: str,
        subject_id: str,
        model_kind: ModelKind,
        traits: Mapping[TraitName, float],
        confidence: float,
        tokens_consumed: int = 0
    ) -> ModelOutput:
        """Factory that canonicalizes the vector and computes the checksum."""
        vector = tuple(
            (trait, float(traits[trait]))
            for trait in sorted(traits, key=lambda t: t.value)
        )
        confidence = float(confidence)
        checksum = ModelOutput.compute_checksum(
            run_id, subject_id, model_kind, vector, confidence, tokens_consumed
        )
        return ModelOutput(
            run_id=run_id,
            subject_id=subject_id,
            model_kind=model_kind,
            trait_vector=vector,
            confidence=confidence,
            tokens_consumed=tokens_consumed,
            checksum=checksum,
        )

    def verify(self) -> bool:
        """True if the checksum matches the content."""
        return self.checksum == ModelOutput.compute_checksum(
            self.run_id, self.subject_id, self.model_kind,
            self.trait_vector, self.confidence, self.tokens_consumed
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            'run_id': self.run_id,
            'subject_id': self.subject_id,
            'model_kind': self.model_kind.value,
            'traits': {t.value: s for t, s in self.trait_vector},
            'confidence': self.confidence,
            'tokens_consumed': self.tokens_consumed,
            'checksum': self.checksum,
        }


# =============================================================================
# CONSENSUS
# =============================================================================

@dataclass(frozen=True)
class TraitConsensus:
    """Fused score for one trait with its own provenance."""
    trait: TraitName
    score: float
    confidence: float   # weight mass that reported this trait, as a percentage
    models_used: int


@dataclass(frozen=True)
class ConsensusResult:
    """
    Fused trait vector for one run.

    contributing_models follows ModelKind declaration order.
    """
    run_id: str
    subject_id: str
    traits: Tuple[TraitConsensus, ...]
    aggregate_confidence: float
    contributing_models: Tuple[ModelKind, ...]
    degraded: bool = False
    degradation_reason: Optional[str] = None
    total_tokens: int = 0

    def __post_init__(self):
        _check_range("aggregate_confidence", self.aggregate_confidence)
        if not self.contributing_models:
            raise ValueError("ConsensusResult needs at least one contributing model")
        if self.degraded and not self.degradation_reason:
            raise ValueError("Degraded consensus must carry a reason")

    @property
    def trait_vector(self) -> Dict[TraitName, float]:
        return {t.trait: t.score for t in self.traits}

    def score_for(self, trait: TraitName) -> Optional[float]:
        for item in self.traits:
            if item.trait == trait:
                return item.score
        return None

    def for_framework(self, framework: Framework) -> ConsensusResult:
        """Same result with only the traits of one framework."""
        wanted = set(TraitName.for_framework(framework))
        return replace(self, traits=tuple(t for t in self.traits if t.trait in wanted))

    def to_dict(self) -> Dict[str, object]:
        return {
            'run_id': self.run_id,
            'subject_id': self.subject_id,
            'traits': {
                t.trait.value: {
                    'score': t.score,
                    'confidence': t.confidence,
                    'models_used': t.models_used,
                }
                for t in self.traits
            },
            'aggregate_confidence': self.aggregate_confidence,
            'contributing_models': [m.value for m in self.contributing_models],
            'degraded': self.degraded,
            'degradation_reason': self.degradation_reason,
            'total_tokens': self.total_tokens,
        }

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> ConsensusResult:
        """Rebuild a stored consensus."""
        traits = tuple(
            TraitConsensus(
                trait=TraitName(name),
                score=float(item['score']),
                confidence=float(item['confidence']),
                models_used=int(item['models_used']),
            )
            for name, item in sorted(data['traits'].items())
        )
        return ConsensusResult(
            run_id=str(data['run_id']),
            subject_id=str(data['subject_id']),
            traits=traits,
            aggregate_confidence=float(data['aggregate_confidence']),
            contributing_models=tuple(ModelKind(m) for m in data['contributing_models']),
            degraded=bool(data['degraded']),
            degradation_reason=data.get('degradation_reason'),
            total_tokens=int(data.get('total_tokens', 0)),
        )


# =============================================================================
# RUNNER CAPABILITY
# =============================================================================

@runtime_checkable
class TraitModelRunner(Protocol):
    """
    Capability every Tier-1 runner provides.

    analyze() must be deterministic, side-effect free and network free.
    run_id defaults to the window id.
    """
    kind: ModelKind

    def analyze(
        self,
        window: AggregationWindow,
        run_id: Optional[str] = None
    ) -> ModelOutput:
        ...
