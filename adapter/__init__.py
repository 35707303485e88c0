"""
Model Adapter Package

ARCHITECTURAL BOUNDARY:
=======================
This package is the ONLY allowed interface between the backend and the
generative validator. All validator traffic MUST flow through this adapter.

DIRECTION OF DEPENDENCY:
========================
backend -> adapter -> models

NEVER:
- Models importing from adapter or backend
- Backend talking to a provider directly
- Circular dependencies of any kind

DESIGN PRINCIPLES:
==================
1. Typed request/response schemas only
2. Explicit version tags on all invocations
3. Requests carry statistics, never message content
4. Every failure is an explicit value until the runner raises it
"""

from .contracts import (
    ValidatorRequest,
    ValidatorResponse,
    Tier1Summary,
    ModelError,
    ModelErrorCode,
    ModelVersionInfo,
    InvocationMetadata,
    window_statistics,
)

from .pipeline import (
    ModelInvocationPipeline,
    InvocationConfig,
    InvocationTrace,
    ValidatorExecutorInterface,
)

from .prompts import CanonicalPrompt
from .llm_executor import ValidatorExecutor, ValidatorPayload
from .validator import BudgetHandle, ValidatorResult, ValidatorRunner

__all__ = [
    # Contracts
    'ValidatorRequest', 'ValidatorResponse', 'Tier1Summary',
    'ModelError', 'ModelErrorCode', 'ModelVersionInfo', 'InvocationMetadata',
    'window_statistics',
    # Pipeline
    'ModelInvocationPipeline', 'InvocationConfig', 'InvocationTrace',
    'ValidatorExecutorInterface',
    # Execution
    'CanonicalPrompt', 'ValidatorExecutor', 'ValidatorPayload',
    'BudgetHandle', 'ValidatorResult', 'ValidatorRunner',
]
