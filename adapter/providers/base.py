"""
Validator Provider Interface
============================

What the validator needs from a generative-model backend: one call that
takes a prompt and returns either content with its token usage or an
error code. Transport details stay inside each provider.

BOUNDARY ENFORCEMENT:
- invoke() never raises; every failure is a ProviderResponse
- Token usage is reported on failures too, when the backend billed it
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from enum import Enum


class ProviderErrorCode(Enum):
    """Why a provider call produced no usable content."""
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    INVALID_RESPONSE = "invalid_response"
    CONTENT_FILTERED = "content_filtered"
    API_ERROR = "api_error"
    NETWORK_ERROR = "network_error"


@dataclass(frozen=True)
class ProviderVersion:
    """Identifies the backend and model behind a provider."""
    provider_id: str
    model_id: str
    api_version: str

    @property
    def label(self) -> str:
        return f"llm-{self.model_id}-{self.api_version}"


@dataclass(frozen=True)
class InvocationParams:
    """Sampling and transport limits for one call."""
    seed: int
    temperature: float = 0.3
    max_tokens: int = 2048
    timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


@dataclass(frozen=True)
class ProviderResponse:
    """
    Outcome of one provider call.

    INVARIANT: success implies content is set; failure implies error_code is set.
    """
    success: bool
    content: Optional[str] = None
    error_code: Optional[ProviderErrorCode] = None
    error_message: Optional[str] = None
    provider_version: Optional[ProviderVersion] = None
    invoked_at: Optional[datetime] = None
    latency_ms: float = 0.0
    tokens_used: int = 0
    seed_used: Optional[int] = None

    def __post_init__(self):
        if self.success and self.content is None:
            raise ValueError("Successful response must have content")
        if not self.success and self.error_code is None:
            raise ValueError("Failed response must have error_code")
        if self.tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")

    @classmethod
    def completed(
        cls,
        content: str,
        version: ProviderVersion,
        params: InvocationParams,
        invoked_at: datetime,
        latency_ms: float,
        tokens_used: int
    ) -> ProviderResponse:
        return cls(
            success=True,
            content=content,
            provider_version=version,
            invoked_at=invoked_at,
            latency_ms=latency_ms,
            tokens_used=tokens_used,
            seed_used=params.seed,
        )

    @classmethod
    def failed(
        cls,
        code: ProviderErrorCode,
        message: str,
        version: ProviderVersion,
        params: InvocationParams,
        invoked_at: Optional[datetime] = None,
        latency_ms: float = 0.0,
        tokens_used: int = 0
    ) -> ProviderResponse:
        return cls(
            success=False,
            error_code=code,
            error_message=message,
            provider_version=version,
            invoked_at=invoked_at or datetime.now(timezone.utc),
            latency_ms=latency_ms,
            tokens_used=tokens_used,
            seed_used=params.seed,
        )


class LLMProvider(ABC):
    """
    Base class for validator backends.

    Subclasses implement invoke() and get_version(); close() releases
    whatever connections the provider holds.
    """

    @abstractmethod
    def invoke(
        self,
        prompt: str,
        params: InvocationParams,
        system_prompt: Optional[str] = None
    ) -> ProviderResponse:
        """Run one completion. Must return a ProviderResponse, never raise."""

    @abstractmethod
    def get_version(self) -> ProviderVersion:
        ...

    @property
    def provider_id(self) -> str:
        return self.get_version().provider_id

    def close(self) -> None:
        pass
