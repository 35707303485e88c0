"""
Adapter Contracts

Typed request/response schemas for backend <-> validator communication.

BOUNDARY ENFORCEMENT:
=====================
- All types are FROZEN (immutable)
- All types include explicit version information
- Requests carry window statistics and Tier-1 summaries ONLY

WHY SEPARATE CONTRACTS:
=======================
Model contracts (models/contracts/) describe what runners produce.
These adapter contracts define the INTERFACE to the generative model.
They are deliberately distinct to enforce the boundary.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple
import hashlib
import json

from models.contracts import AggregationWindow, ModelKind, ModelOutput, TraitName


# =============================================================================
# VERSION INFORMATION
# =============================================================================

@dataclass(frozen=True)
class ModelVersionInfo:
    """
    Explicit model version for audit.

    WHY THIS EXISTS:
    A validator output is only interpretable next to the model and config
    that produced it.
    """
    model_id: str
    model_version: str
    weights_hash: str
    config_hash: str
    created_at: datetime

    def as_tuple(self) -> Tuple[str, str, str, str]:
        """Return version info as hashable tuple."""
        return (self.model_id, self.model_version, self.weights_hash, self.config_hash)


@dataclass(frozen=True)
class InvocationMetadata:
    """
    Time-indexed metadata for every validator invocation.

    WHY THIS EXISTS:
    Every invocation must be traceable for audit.
    This contract captures the "when", "what", and "who" of each call.
    """
    invocation_id: str
    invoked_at: datetime
    model_version: ModelVersionInfo
    input_hash: str
    random_seed: int

    @staticmethod
    def create(
        model_version: ModelVersionInfo,
        input_data: str,
        random_seed: int = 42
    ) -> InvocationMetadata:
        """Factory for deterministic metadata creation."""
        now = datetime.now(timezone.utc)
        input_hash = hashlib.sha256(input_data.encode()).hexdigest()
        invocation_id = f"inv_{input_hash[:12]}_{int(now.timestamp())}"

        return InvocationMetadata(
            invocation_id=invocation_id,
            invoked_at=now,
            model_version=model_version,
            input_hash=input_hash,
            random_seed=random_seed
        )


# =============================================================================
# ERROR TYPES
# =============================================================================

class ModelErrorCode(Enum):
    """
    Explicit error codes for validator failures.

    WHY EXPLICIT CODES:
    - No silent fallbacks
    - No default scores
    - Every failure mode is queryable
    """
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    TRANSPORT_ERROR = "transport_error"
    RATE_LIMITED = "rate_limited"
    INVALID_OUTPUT = "invalid_output"
    MODEL_REFUSAL = "model_refusal"
    INVALID_INPUT = "invalid_input"
    INTERNAL_ERROR = "internal_error"

    @property
    def is_timeout(self) -> bool:
        return self in (ModelErrorCode.TIMEOUT, ModelErrorCode.CANCELLED)


@dataclass(frozen=True)
class ModelError:
    """
    Explicit model error with full context.

    WHY THIS EXISTS:
    All error states must be inspectable and actionable.
    No silent failures, no hidden retries.
    """
    error_code: ModelErrorCode
    message: str
    invocation_id: str
    occurred_at: datetime
    retry_allowed: bool = False
    retry_after_seconds: Optional[int] = None

    input_hash: Optional[str] = None
    model_version: Optional[str] = None


# =============================================================================
# INPUT CONTRACTS (Backend -> Validator)
# =============================================================================

@dataclass(frozen=True)
class Tier1Summary:
    """What the validator may learn about one Tier-1 output."""
    model_kind: ModelKind
    confidence: float
    traits: Tuple[Tuple[TraitName, float], ...]

    @staticmethod
    def of(output: ModelOutput) -> Tier1Summary:
        return Tier1Summary(
            model_kind=output.model_kind,
            confidence=output.confidence,
            traits=output.trait_vector,
        )


def window_statistics(window: AggregationWindow) -> Tuple[Tuple[str, float], ...]:
    """Flatten the derived statistics a prompt may cite."""
    positive, neutral, negative = window.sentiment_percentages()
    stats = {
        'message_count': float(window.message_count),
        'avg_message_length': round(window.length_mean, 2),
        'sentiment_positive_pct': round(positive, 2),
        'sentiment_neutral_pct': round(neutral, 2),
        'sentiment_negative_pct': round(negative, 2),
        'questions_per_message': round(window.rate(window.question_count), 4),
        'exclamations_per_message': round(window.rate(window.exclamation_count), 4),
        'emoji_per_message': round(window.rate(window.emoji_count), 4),
        'formality_avg': round(window.formality_avg, 2),
        'vocabulary_diversity': float(window.vocabulary_estimate),
        'technical_term_frequency': round(window.technical_term_frequency, 2),
        'conversations_initiated': float(window.conversations_initiated),
        'conversations_participated': float(window.conversations_participated),
        'avg_response_time_seconds': round(window.avg_response_time_seconds, 2),
    }
    return tuple(sorted(stats.items()))


@dataclass(frozen=True)
class ValidatorRequest:
    """
    Top-level request for validator analysis.

    WHY THIS STRUCTURE:
    - Statistics and Tier-1 summaries only, so nothing verbatim can leak
    - Explicit seed for reproducibility
    - Explicit token ceiling that matches the budget reservation
    """
    request_id: str
    run_id: str
    subject_id: str
    window_id: str
    statistics: Tuple[Tuple[str, float], ...]
    tier1: Tuple[Tier1Summary, ...]
    max_tokens: int = 2048
    random_seed: int = 42

    @staticmethod
    def create(
        run_id: str,
        window: AggregationWindow,
        tier1_outputs: Mapping[ModelKind, ModelOutput],
        max_tokens: int = 2048,
        random_seed: int = 42
    ) -> ValidatorRequest:
        """Factory; Tier-1 summaries follow ModelKind order."""
        summaries = tuple(
            Tier1Summary.of(tier1_outputs[k]) for k in ModelKind if k in tier1_outputs
        )
        return ValidatorRequest(
            request_id=f"vreq_{hashlib.sha256(f'{run_id}|{window.window_id}'.encode()).hexdigest()[:16]}",
            run_id=run_id,
            subject_id=window.subject_id,
            window_id=window.window_id,
            statistics=window_statistics(window),
            tier1=summaries,
            max_tokens=max_tokens,
            random_seed=random_seed,
        )

    def content_hash(self) -> str:
        """Compute deterministic hash of request content."""
        content = json.dumps({
            'window_id': self.window_id,
            'statistics': [[k, v] for k, v in self.statistics],
            'tier1': [
                [s.model_kind.value, s.confidence, [[t.value, v] for t, v in s.traits]]
                for s in self.tier1
            ],
        }, sort_keys=True)
        return hashlib.sha256(content.encode()).hexdigest()


# =============================================================================
# OUTPUT CONTRACTS (Validator -> Backend)
# =============================================================================

@dataclass(frozen=True)
class ValidatorResponse:
    """
    Complete validator response.

    WHY THIS STRUCTURE:
    - Explicit success/failure (no implicit fallbacks)
    - tokens_used reported on failures too, for audit
    """
    response_id: str
    request_id: str
    success: bool
    invocation: InvocationMetadata

    traits: Tuple[Tuple[TraitName, float], ...] = field(default_factory=tuple)
    confidence: float = 0.0
    tokens_used: int = 0

    error: Optional[ModelError] = None
    processing_time_ms: float = 0.0

    @property
    def trait_map(self) -> Dict[TraitName, float]:
        return dict(self.traits)

    @staticmethod
    def success_response(
        request_id: str,
        invocation: InvocationMetadata,
        traits: Mapping[TraitName, float],
        confidence: float,
        tokens_used: int,
        processing_time_ms: float
    ) -> ValidatorResponse:
        """Factory for successful response."""
        response_id = f"resp_{request_id}_{int(datetime.now(timezone.utc).timestamp())}"
        return ValidatorResponse(
            response_id=response_id,
            request_id=request_id,
            success=True,
            invocation=invocation,
            traits=tuple(sorted(traits.items(), key=lambda kv: kv[0].value)),
            confidence=confidence,
            tokens_used=tokens_used,
            processing_time_ms=processing_time_ms
        )

    @staticmethod
    def failure_response(
        request_id: str,
        invocation: InvocationMetadata,
        error: ModelError,
        tokens_used: int = 0
    ) -> ValidatorResponse:
        """Factory for failed response."""
        response_id = f"resp_err_{request_id}_{int(datetime.now(timezone.utc).timestamp())}"
        return ValidatorResponse(
            response_id=response_id,
            request_id=request_id,
            success=False,
            invocation=invocation,
            error=error,
            tokens_used=tokens_used,
        )
