"""
LLM Providers Package
=====================

Provider implementations for validator invocation.

Available providers:
- MockProvider: Deterministic mock for testing and offline runs
- HttpCompletionProvider: OpenAI-compatible chat completions over httpx
"""

from .base import (
    LLMProvider,
    ProviderVersion,
    ProviderResponse,
    ProviderErrorCode,
    InvocationParams,
)
from .mock import MockProvider
from .http import HttpCompletionProvider

__all__ = [
    'LLMProvider',
    'ProviderVersion',
    'ProviderResponse',
    'ProviderErrorCode',
    'InvocationParams',
    'MockProvider',
    'HttpCompletionProvider',
]
