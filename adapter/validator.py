"""
Validator Runner

Budget-gated escalation to the generative validator.

SEQUENCE:
=========
1. Reserve the per-call token ceiling against the organization ledger
2. Invoke the validator under a hard deadline (cancellable)
3. Success  -> commit actual usage, emit a ModelOutput
   Anything else -> release the reservation, raise

A reservation is always either committed or released, so a timeout or
cancellation never leaves a partial debit.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol
import logging
import threading

from models.contracts import (
    AggregationWindow,
    EscalationTimeout,
    EscalationTransportError,
    ModelKind,
    ModelOutput,
)

from .contracts import ValidatorRequest, ValidatorResponse
from .pipeline import InvocationTrace, ModelInvocationPipeline

logger = logging.getLogger(__name__)


class BudgetHandle(Protocol):
    """
    Token budget of one organization for one month.

    reserve() and commit() raise EscalationSkippedBudget when the
    allocation cannot cover the request.
    """

    def reserve(self, tokens: int) -> Any:
        ...

    def commit(self, reservation: Any, actual_tokens: int) -> int:
        ...

    def release(self, reservation: Any) -> None:
        ...


@dataclass(frozen=True)
class ValidatorResult:
    """Successful validation with its audit trail."""
    output: ModelOutput
    response: ValidatorResponse
    trace: InvocationTrace
    tokens_committed: int


class ValidatorRunner:
    """Wraps the invocation pipeline with budget accounting."""

    def __init__(self, pipeline: ModelInvocationPipeline):
        self._pipeline = pipeline

    @property
    def token_ceiling(self) -> int:
        return self._pipeline.config.max_tokens

    def validate(
        self,
        window: AggregationWindow,
        tier1_outputs: Mapping[ModelKind, ModelOutput],
        run_id: str,
        budget: BudgetHandle,
        cancel_event: Optional[threading.Event] = None
    ) -> ValidatorResult:
        """
        Run one escalation.

        Raises:
            EscalationSkippedBudget: reservation or commit refused
            EscalationTimeout: deadline passed or call cancelled
            EscalationTransportError: provider, transport or parse failure
            BudgetLedgerCorruption: ledger invariant broken
        """
        config = self._pipeline.config
        request = ValidatorRequest.create(
            run_id=run_id,
            window=window,
            tier1_outputs={k: v for k, v in tier1_outputs.items() if k.is_tier1},
            max_tokens=config.max_tokens,
            random_seed=config.random_seed,
        )

        reservation = budget.reserve(config.max_tokens)
        try:
            response, trace = self._pipeline.invoke(request, cancel_event)
        except BaseException:
            budget.release(reservation)
            raise

        if not response.success:
            budget.release(reservation)
            code = response.error.error_code
            logger.info("Validator absent for run %s: %s", run_id, code.value)
            if code.is_timeout:
                raise EscalationTimeout(
                    response.error.message, run_id=run_id, error_code=code.value
                )
            raise EscalationTransportError(
                response.error.message, run_id=run_id, error_code=code.value
            )

        # commit() releases the reservation itself when it rejects the debit
        committed = budget.commit(reservation, response.tokens_used)

        output = ModelOutput.create(
            run_id=run_id,
            subject_id=window.subject_id,
            model_kind=ModelKind.VALIDATOR,
            traits=response.trait_map,
            confidence=response.confidence,
            tokens_consumed=response.tokens_used,
        )
        return ValidatorResult(
            output=output,
            response=response,
            trace=trace,
            tokens_committed=committed,
        )
