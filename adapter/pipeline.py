"""
Model Invocation Pipeline

Deterministic call path from backend -> adapter -> validator.

BOUNDARY ENFORCEMENT:
=====================
- No side effects on backend state
- Time-indexed invocation metadata for every call
- Explicit error handling (no silent retries)
- Hard deadline; a late result is discarded, never returned

WHY THIS PIPELINE EXISTS:
========================
Direct backend->model coupling violates separation of concerns.
This pipeline enforces:
1. All calls go through typed contracts
2. All calls are traced
3. All failures are explicit, including timeout and cancellation
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import hashlib
import logging
import threading
import time

from .contracts import (
    ValidatorRequest,
    ValidatorResponse,
    ModelVersionInfo,
    InvocationMetadata,
    ModelError,
    ModelErrorCode,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class InvocationConfig:
    """
    Configuration for validator invocation.

    WHY FROZEN:
    Config should not change during invocation.
    Changes require new config instance.
    """
    timeout_seconds: float = 30.0
    max_tokens: int = 2048           # also the per-call budget reservation
    random_seed: int = 42
    temperature: float = 0.3
    max_concurrent_calls: int = 4
    poll_interval_seconds: float = 0.05
    enable_tracing: bool = True


# =============================================================================
# INVOCATION TRACE
# =============================================================================

@dataclass(frozen=True)
class InvocationTrace:
    """
    Complete trace of a validator invocation.

    WHY THIS EXISTS:
    Every invocation must be traceable for audit and debugging.
    """
    trace_id: str
    invocation_id: str
    request_hash: str
    started_at: datetime
    completed_at: Optional[datetime]
    model_version: ModelVersionInfo
    success: bool
    error_code: Optional[ModelErrorCode] = None
    tokens_used: int = 0

    def duration_ms(self) -> float:
        """Compute invocation duration."""
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds() * 1000
        return 0.0


# =============================================================================
# EXECUTOR INTERFACE
# =============================================================================

class ValidatorExecutorInterface:
    """
    Abstract interface for validator execution.

    WHY ABSTRACT:
    The pipeline should not know about provider internals.
    Concrete executors implement this interface.
    """

    def execute(self, request: ValidatorRequest) -> ValidatorResponse:
        """Execute validation. Must be deterministic given the request seed."""
        raise NotImplementedError

    def get_version(self) -> ModelVersionInfo:
        """Get current model version."""
        raise NotImplementedError


# =============================================================================
# INVOCATION PIPELINE
# =============================================================================

class ModelInvocationPipeline:
    """
    Traced, deadline-bounded invocation pipeline.

    GUARANTEES:
    ===========
    1. Every invocation is traced
    2. Every invocation uses explicit model version
    3. No side effects on inputs
    4. Failures are explicit, never silent
    5. invoke() returns by the deadline (plus one poll interval)
    """

    def __init__(
        self,
        executor: ValidatorExecutorInterface,
        config: Optional[InvocationConfig] = None
    ):
        self._executor = executor
        self._config = config or InvocationConfig()
        self._pool = ThreadPoolExecutor(
            max_workers=self._config.max_concurrent_calls,
            thread_name_prefix="validator"
        )
        self._traces: List[InvocationTrace] = []
        self._traces_lock = threading.Lock()

    @property
    def config(self) -> InvocationConfig:
        return self._config

    def invoke(
        self,
        request: ValidatorRequest,
        cancel_event: Optional[threading.Event] = None
    ) -> Tuple[ValidatorResponse, InvocationTrace]:
        """
        Invoke validator with full tracing.

        Returns (response, trace) tuple.
        NEVER returns partial results.
        """
        started_at = datetime.now(timezone.utc)
        request_hash = self._compute_request_hash(request)
        model_version = self._executor.get_version()
        trace_id = self._generate_trace_id(request_hash, started_at)

        validation_error = self._validate_request(request)
        if validation_error:
            return self._fail(
                request, request_hash, trace_id, started_at, model_version,
                ModelErrorCode.INVALID_INPUT, validation_error
            )

        future = self._pool.submit(self._executor.execute, request)
        deadline = time.monotonic() + self._config.timeout_seconds

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                logger.warning("Validator call %s timed out", request.request_id)
                return self._fail(
                    request, request_hash, trace_id, started_at, model_version,
                    ModelErrorCode.TIMEOUT,
                    f"Validator timed out after {self._config.timeout_seconds}s"
                )
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                return self._fail(
                    request, request_hash, trace_id, started_at, model_version,
                    ModelErrorCode.CANCELLED, "Validator call cancelled"
                )
            try:
                response = future.result(
                    timeout=min(remaining, self._config.poll_interval_seconds)
                )
                break
            except FutureTimeout:
                continue
            except Exception as e:
                return self._fail(
                    request, request_hash, trace_id, started_at, model_version,
                    ModelErrorCode.INTERNAL_ERROR, f"{type(e).__name__}: {e}"
                )

        trace = InvocationTrace(
            trace_id=trace_id,
            invocation_id=response.invocation.invocation_id,
            request_hash=request_hash,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            model_version=model_version,
            success=response.success,
            error_code=response.error.error_code if response.error else None,
            tokens_used=response.tokens_used
        )
        self._record_trace(trace)
        return (response, trace)

    def _fail(
        self,
        request: ValidatorRequest,
        request_hash: str,
        trace_id: str,
        started_at: datetime,
        model_version: ModelVersionInfo,
        code: ModelErrorCode,
        message: str
    ) -> Tuple[ValidatorResponse, InvocationTrace]:
        invocation = InvocationMetadata.create(
            model_version=model_version,
            input_data=request_hash,
            random_seed=request.random_seed
        )
        trace = InvocationTrace(
            trace_id=trace_id,
            invocation_id=invocation.invocation_id,
            request_hash=request_hash,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            model_version=model_version,
            success=False,
            error_code=code
        )
        self._record_trace(trace)

        error = ModelError(
            error_code=code,
            message=message,
            invocation_id=invocation.invocation_id,
            occurred_at=datetime.now(timezone.utc),
            input_hash=request_hash,
            model_version=model_version.model_version
        )
        return (
            ValidatorResponse.failure_response(
                request_id=request.request_id,
                invocation=invocation,
                error=error
            ),
            trace
        )

    def _validate_request(self, request: ValidatorRequest) -> Optional[str]:
        """Validate request, return a message if invalid."""
        if not request.request_id:
            return "request_id is required"
        if not request.statistics:
            return "statistics are required"
        if request.max_tokens <= 0:
            return "max_tokens must be positive"
        return None

    def _compute_request_hash(self, request: ValidatorRequest) -> str:
        """Compute deterministic hash of request."""
        content = f"{request.request_id}|{request.content_hash()}"
        return hashlib.sha256(content.encode()).hexdigest()

    def _generate_trace_id(self, request_hash: str, timestamp: datetime) -> str:
        """Generate unique trace ID."""
        return f"trace_{request_hash[:12]}_{int(timestamp.timestamp())}"

    def _record_trace(self, trace: InvocationTrace):
        """Record trace for audit."""
        if self._config.enable_tracing:
            with self._traces_lock:
                self._traces.append(trace)

    def get_traces(self) -> List[InvocationTrace]:
        """Get all recorded traces (read-only)."""
        with self._traces_lock:
            return list(self._traces)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
