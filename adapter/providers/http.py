"""
HTTP Completion Provider
========================

Provider for OpenAI-compatible chat-completions endpoints over httpx.

GUARANTEES:
- JSON-object response format is always requested
- Every transport or protocol failure becomes a ProviderResponse
- The API key is sent as a bearer header and never logged
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
import logging
import time

import httpx

from .base import (
    LLMProvider,
    ProviderVersion,
    ProviderResponse,
    ProviderErrorCode,
    InvocationParams,
)

logger = logging.getLogger(__name__)


class HttpCompletionProvider(LLMProvider):
    """
    Synchronous chat-completions client.

    Pass `client` to reuse a connection pool or to inject a transport.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        api_version: str = "v1"
    ):
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._client = client or httpx.Client()
        self._version = ProviderVersion(
            provider_id="openai_compatible",
            model_id=model,
            api_version=api_version
        )

    def get_version(self) -> ProviderVersion:
        return self._version

    def close(self) -> None:
        self._client.close()

    def invoke(
        self,
        prompt: str,
        params: InvocationParams,
        system_prompt: Optional[str] = None
    ) -> ProviderResponse:
        invoked_at = datetime.now(timezone.utc)
        start = time.monotonic()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self._model,
            "messages": messages,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "seed": params.seed,
            "response_format": {"type": "json_object"},
        }
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            response = self._client.post(
                f"{self._base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=params.timeout_seconds,
            )
        except httpx.TimeoutException:
            return self._failure(
                ProviderErrorCode.TIMEOUT,
                f"Request timed out after {params.timeout_seconds}s",
                invoked_at, start, params
            )
        except httpx.TransportError as e:
            return self._failure(
                ProviderErrorCode.NETWORK_ERROR,
                f"Transport error: {type(e).__name__}",
                invoked_at, start, params
            )

        if response.status_code == 429:
            return self._failure(
                ProviderErrorCode.RATE_LIMITED, "HTTP 429", invoked_at, start, params
            )
        if response.status_code != 200:
            logger.warning("Completion endpoint returned HTTP %s", response.status_code)
            return self._failure(
                ProviderErrorCode.API_ERROR,
                f"HTTP {response.status_code}",
                invoked_at, start, params
            )

        try:
            data = response.json()
            choice = data["choices"][0]
            content = choice["message"]["content"]
            usage = data.get("usage") or {}
            tokens_used = int(usage.get("total_tokens", 0))
        except (ValueError, KeyError, IndexError, TypeError) as e:
            return self._failure(
                ProviderErrorCode.INVALID_RESPONSE,
                f"Unexpected response shape: {type(e).__name__}",
                invoked_at, start, params
            )

        if choice.get("finish_reason") == "content_filter":
            return self._failure(
                ProviderErrorCode.CONTENT_FILTERED,
                "Response blocked by content filter",
                invoked_at, start, params, tokens_used
            )
        if content is None:
            return self._failure(
                ProviderErrorCode.INVALID_RESPONSE,
                "Response has no content",
                invoked_at, start, params, tokens_used
            )

        return ProviderResponse.completed(
            content, self._version, params, invoked_at,
            (time.monotonic() - start) * 1000, tokens_used
        )

    def _failure(
        self,
        code: ProviderErrorCode,
        message: str,
        invoked_at: datetime,
        start: float,
        params: InvocationParams,
        tokens_used: int = 0
    ) -> ProviderResponse:
        return ProviderResponse.failed(
            code, message, self._version, params, invoked_at,
            (time.monotonic() - start) * 1000, tokens_used
        )
