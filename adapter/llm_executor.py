"""
LLM Validator Executor
======================

Real validator executor implementing ValidatorExecutorInterface.

BOUNDARY ENFORCEMENT:
- Read-only access (frozen request input)
- Bounded output schema, validated with pydantic
- Reproducible failure (explicit error responses)

This executor bridges the abstract ValidatorExecutorInterface to
concrete LLM providers via the provider abstraction layer.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Dict
import hashlib
import json
import time

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from models.contracts import TraitName, parse_trait_name

from .contracts import (
    ValidatorRequest,
    ValidatorResponse,
    ModelVersionInfo,
    InvocationMetadata,
    ModelError,
    ModelErrorCode,
)
from .pipeline import ValidatorExecutorInterface
from .prompts import CanonicalPrompt
from .providers.base import (
    LLMProvider,
    ProviderResponse,
    ProviderErrorCode,
    InvocationParams,
)


# Confidence assigned when the model does not report its own
DEFAULT_VALIDATOR_CONFIDENCE = 85.0


class ValidatorPayload(BaseModel):
    """Bounded schema every validator completion must satisfy."""

    model_config = ConfigDict(extra="ignore")

    traits: Dict[str, float]
    confidence: float = Field(default=DEFAULT_VALIDATOR_CONFIDENCE, ge=0, le=100)

    @field_validator("traits")
    @classmethod
    def _check_traits(cls, value: Dict[str, float]) -> Dict[str, float]:
        if not value:
            raise ValueError("traits must not be empty")
        for key, score in value.items():
            parse_trait_name(key)
            if not 0 <= score <= 100:
                raise ValueError(f"score for {key} outside [0, 100]")
        return value

    def trait_map(self) -> Dict[TraitName, float]:
        return {parse_trait_name(k): float(v) for k, v in self.traits.items()}


class ValidatorExecutor(ValidatorExecutorInterface):
    """
    LLM-backed validator with seeded sampling.

    GUARANTEES:
    ===========
    1. Prompt derived only from the frozen request
    2. Output parsed against ValidatorPayload; anything else is INVALID_OUTPUT
    3. Failures are explicit error responses
       - No silent retries, no fallbacks

    EXPLICIT FAILURE STATES:
    - Provider timeout -> TIMEOUT error
    - Network / API failure -> TRANSPORT_ERROR
    - Parse failure -> INVALID_OUTPUT error
    """

    def __init__(
        self,
        provider: LLMProvider,
        temperature: float = 0.3,
        timeout_seconds: float = 30.0
    ):
        """
        Args:
            provider: LLM provider implementation
            temperature: Sampling temperature
            timeout_seconds: Provider-level request timeout
        """
        self._provider = provider
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds
        self._version = self._compute_version()

    def get_version(self) -> ModelVersionInfo:
        return self._version

    def execute(self, request: ValidatorRequest) -> ValidatorResponse:
        start_time = time.monotonic()

        invocation = InvocationMetadata.create(
            model_version=self._version,
            input_data=request.content_hash(),
            random_seed=request.random_seed
        )

        prompt = CanonicalPrompt.create(request)
        params = InvocationParams(
            seed=request.random_seed,
            temperature=self._temperature,
            max_tokens=request.max_tokens,
            timeout_seconds=self._timeout_seconds
        )

        provider_response = self._provider.invoke(
            prompt=prompt.prompt_text,
            params=params,
            system_prompt=prompt.system_text
        )

        if not provider_response.success:
            return self._create_failure_response(request, invocation, provider_response)

        try:
            payload = ValidatorPayload.model_validate_json(provider_response.content)
            traits = payload.trait_map()
        except (ValidationError, ValueError) as e:
            error = ModelError(
                error_code=ModelErrorCode.INVALID_OUTPUT,
                message=f"Failed to parse validator response: {type(e).__name__}",
                invocation_id=invocation.invocation_id,
                occurred_at=datetime.now(timezone.utc),
                input_hash=invocation.input_hash,
                model_version=self._version.model_version
            )
            return ValidatorResponse.failure_response(
                request_id=request.request_id,
                invocation=invocation,
                error=error,
                tokens_used=provider_response.tokens_used
            )

        return ValidatorResponse.success_response(
            request_id=request.request_id,
            invocation=invocation,
            traits=traits,
            confidence=payload.confidence,
            tokens_used=provider_response.tokens_used,
            processing_time_ms=(time.monotonic() - start_time) * 1000
        )

    def _create_failure_response(
        self,
        request: ValidatorRequest,
        invocation: InvocationMetadata,
        provider_response: ProviderResponse
    ) -> ValidatorResponse:
        """Map provider failure to ValidatorResponse."""
        error_code_map = {
            ProviderErrorCode.TIMEOUT: ModelErrorCode.TIMEOUT,
            ProviderErrorCode.RATE_LIMITED: ModelErrorCode.RATE_LIMITED,
            ProviderErrorCode.INVALID_RESPONSE: ModelErrorCode.INVALID_OUTPUT,
            ProviderErrorCode.CONTENT_FILTERED: ModelErrorCode.MODEL_REFUSAL,
            ProviderErrorCode.API_ERROR: ModelErrorCode.TRANSPORT_ERROR,
            ProviderErrorCode.NETWORK_ERROR: ModelErrorCode.TRANSPORT_ERROR,
        }

        error = ModelError(
            error_code=error_code_map.get(
                provider_response.error_code,
                ModelErrorCode.INTERNAL_ERROR
            ),
            message=provider_response.error_message or "Provider error",
            invocation_id=invocation.invocation_id,
            occurred_at=datetime.now(timezone.utc),
            retry_allowed=provider_response.error_code == ProviderErrorCode.RATE_LIMITED,
            input_hash=invocation.input_hash,
            model_version=self._version.model_version
        )

        return ValidatorResponse.failure_response(
            request_id=request.request_id,
            invocation=invocation,
            error=error,
            tokens_used=provider_response.tokens_used
        )

    def _compute_version(self) -> ModelVersionInfo:
        """Compute version info for deterministic envelope."""
        provider_version = self._provider.get_version()

        version_str = provider_version.label

        config = json.dumps({
            "temperature": self._temperature,
            "timeout_seconds": self._timeout_seconds
        }, sort_keys=True)
        config_hash = hashlib.sha256(config.encode()).hexdigest()[:16]

        return ModelVersionInfo(
            model_id=provider_version.provider_id,
            model_version=version_str,
            weights_hash=provider_version.model_id,
            config_hash=config_hash,
            created_at=datetime.now(timezone.utc)
        )
