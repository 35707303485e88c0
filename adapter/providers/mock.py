"""
Mock LLM Provider
=================

Deterministic mock provider for tests and offline runs.

GUARANTEES:
- Same (prompt, seed) -> identical response
- Explicit failure modes can be triggered
- No external dependencies
"""

from __future__ import annotations
import hashlib
import json
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from models.contracts import TraitName

from .base import (
    LLMProvider,
    ProviderVersion,
    ProviderResponse,
    ProviderErrorCode,
    InvocationParams,
)


class MockProvider(LLMProvider):
    """
    Deterministic mock provider.

    Trait scores are derived from hash(prompt + seed + trait).
    """

    def __init__(
        self,
        latency_ms: float = 0.0,
        failure_mode: Optional[ProviderErrorCode] = None,
        tokens_used: int = 500,
        confidence: Optional[float] = None,
        content_override: Optional[str] = None
    ):
        """
        Args:
            latency_ms: Simulated latency
            failure_mode: If set, all invocations fail with this error
            tokens_used: Usage reported on every call
            confidence: Confidence to include in the payload (omitted if None)
            content_override: Raw content returned instead of generated JSON
        """
        self._latency_ms = latency_ms
        self._failure_mode = failure_mode
        self._tokens_used = tokens_used
        self._confidence = confidence
        self._content_override = content_override
        self._lock = threading.Lock()
        self._invocations = 0
        self._version = ProviderVersion(
            provider_id="mock",
            model_id="mock-deterministic-v1",
            api_version="1.0.0"
        )

    @property
    def invocation_count(self) -> int:
        with self._lock:
            return self._invocations

    def get_version(self) -> ProviderVersion:
        return self._version

    def invoke(
        self,
        prompt: str,
        params: InvocationParams,
        system_prompt: Optional[str] = None
    ) -> ProviderResponse:
        """
        Deterministic mock invocation.

        Response content is derived from prompt hash + seed.
        """
        invoked_at = datetime.now(timezone.utc)
        with self._lock:
            self._invocations += 1

        if self._latency_ms:
            time.sleep(self._latency_ms / 1000.0)

        if self._failure_mode is not None:
            return ProviderResponse.failed(
                self._failure_mode,
                f"Mock provider configured to fail: {self._failure_mode.value}",
                self._version, params, invoked_at, self._latency_ms
            )

        content = self._content_override
        if content is None:
            content = self._generate_deterministic_response(prompt, params.seed)

        return ProviderResponse.completed(
            content, self._version, params, invoked_at, self._latency_ms, self._tokens_used
        )

    def _generate_deterministic_response(self, prompt: str, seed: int) -> str:
        """
        Generate deterministic mock response.

        Same (prompt, seed) -> same response.
        """
        traits = {}
        for trait in TraitName.ordered():
            digest = hashlib.sha256(f"{prompt}|{seed}|{trait.value}".encode()).hexdigest()
            traits[trait.value] = 20 + int(digest[:8], 16) % 61  # 20..80

        response = {"traits": traits}
        if self._confidence is not None:
            response["confidence"] = self._confidence
        return json.dumps(response, sort_keys=True)
