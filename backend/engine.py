"""
Engine Orchestration Module

This module provides the unified interface for coordinating all
engine layers while maintaining strict boundary separation.

DESIGN PRINCIPLES:
==================
1. Layers communicate ONLY through contracts
2. Ingestion never blocks on fusion; sealed periods go through a queue
3. A failing run is recorded and never affects other subjects
4. All operations are traceable through observability
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple
import logging
import os
import queue
import threading
import time

from models.contracts import (
    AggregationWindow, BudgetLedgerCorruption, ChannelType, ConsensusResult,
    EscalationSkippedBudget, EscalationTimeout, EscalationTransportError, Framework,
    ModelKind, ModelOutput, PeriodKey, TraitEngineError, TraitModelRunner,
)
from models.escalation import (
    EscalationConfig, EscalationDecision, REFUSAL_BUDGET_EXHAUSTED,
    REFUSAL_BUDGET_HALTED, evaluate_escalation,
)
from models.fusion import FusionConfig, FusionEngine
from models.tier1 import default_runners, run_tier1
from adapter import (
    InvocationConfig, ModelInvocationPipeline, ValidatorExecutor, ValidatorRunner,
)
from adapter.providers import HttpCompletionProvider, LLMProvider

from .aggregation import (
    Aggregator, AggregatorConfig, ConsentProvider, IngestionSummary,
)
from .aggregation.aggregator import EventLike
from .contracts.base import TimeRange
from .contracts.events import AuditEventType
from .contracts.runs import RunRecord, RunStatus
from .ledger import (
    AllocationProvider, BudgetBook, BudgetStatus, FixedAllocations, RunLedger, TokenBudgetLedger,
)
from .observability import ObservabilityConfig, ObservabilityEngine

logger = logging.getLogger(__name__)

DEGRADATION_VALIDATOR_UNAVAILABLE = "validator_unavailable"
INSUFFICIENT_CONFIDENCE = "insufficient confidence"


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Unified configuration for the entire engine."""
    aggregator: AggregatorConfig = None
    escalation: EscalationConfig = None
    fusion: FusionConfig = None
    invocation: InvocationConfig = None
    observability: ObservabilityConfig = None

    ledger_path: str = ":memory:"
    fusion_workers: int = 4
    default_token_allocation: int = 0
    # failed periods are re-queued until they reach this many attempts
    max_attempts: int = 3
    retry_backoff_seconds: float = 30.0
    # pending or running runs older than this are failed on start
    stale_run_seconds: float = 3600.0
    # eligible runs whose escalation is refused for budget become skipped_budget
    require_validator_on_escalation: bool = False

    provider_base_url: Optional[str] = None
    provider_model: str = "gpt-4o-mini"
    provider_api_key: Optional[str] = None

    def __post_init__(self):
        self.aggregator = self.aggregator or AggregatorConfig()
        self.escalation = self.escalation or EscalationConfig()
        self.fusion = self.fusion or FusionConfig()
        self.invocation = self.invocation or InvocationConfig()
        self.observability = self.observability or ObservabilityConfig()
        if self.fusion_workers < 1:
            raise ValueError("fusion_workers must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be non-negative")
        if self.stale_run_seconds <= 0:
            raise ValueError("stale_run_seconds must be positive")

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
        """Build a config from TIE_* environment variables."""
        env = os.environ if environ is None else environ
        return EngineConfig(
            aggregator=AggregatorConfig(
                period_length=timedelta(days=_env_float(env, "TIE_PERIOD_DAYS", 7.0)),
            ),
            escalation=EscalationConfig(
                confidence_threshold=_env_float(env, "TIE_CONFIDENCE_THRESHOLD", 70.0),
                spread_threshold=_env_float(env, "TIE_SPREAD_THRESHOLD", 40.0),
                cold_start_enabled=_env_bool(env, "TIE_COLD_START", True),
            ),
            invocation=InvocationConfig(
                timeout_seconds=_env_float(env, "TIE_VALIDATOR_TIMEOUT_SECONDS", 30.0),
                max_tokens=_env_int(env, "TIE_VALIDATOR_MAX_TOKENS", 2048),
            ),
            ledger_path=env.get("TIE_LEDGER_PATH") or ":memory:",
            fusion_workers=_env_int(env, "TIE_FUSION_WORKERS", 4),
            default_token_allocation=_env_int(env, "TIE_DEFAULT_TOKEN_ALLOCATION", 0),
            max_attempts=_env_int(env, "TIE_MAX_ATTEMPTS", 3),
            retry_backoff_seconds=_env_float(env, "TIE_RETRY_BACKOFF_SECONDS", 30.0),
            stale_run_seconds=_env_float(env, "TIE_STALE_RUN_SECONDS", 3600.0),
            require_validator_on_escalation=_env_bool(env, "TIE_REQUIRE_VALIDATOR", False),
            provider_base_url=env.get("TIE_PROVIDER_BASE_URL") or None,
            provider_model=env.get("TIE_PROVIDER_MODEL") or "gpt-4o-mini",
            provider_api_key=env.get("TIE_PROVIDER_API_KEY") or None,
        )


@dataclass(frozen=True)
class SubjectReport:
    """User-facing view of a subject's latest consensus."""
    subject_id: str
    status: str
    consensus: Optional[ConsensusResult] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            'subject_id': self.subject_id,
            'status': self.status,
            'message': self.message,
            'consensus': self.consensus.to_dict() if self.consensus else None,
        }


class TraitInferenceEngine:
    """
    Unified engine for trait inference.

    LAYER FLOW:
    ===========
    1. Aggregation: events -> open windows -> sealed windows
    2. Queue: sealed (subject, period) pairs wait for fusion
    3. Tier-1: three runners in parallel (barrier)
    4. Escalation: pure decision, then budget-gated validator call
    5. Fusion: weighted consensus with provenance
    6. Run ledger: terminal state + consensus in one transaction
    7. Observability: records all layer activity

    NO LAYER BYPASSES THIS FLOW.
    """

    def __init__(
        self,
        consent: ConsentProvider,
        allocations: Optional[AllocationProvider] = None,
        config: Optional[EngineConfig] = None,
        provider: Optional[LLMProvider] = None,
        runners: Optional[Sequence[TraitModelRunner]] = None
    ):
        self._config = config or EngineConfig()
        self._observability = ObservabilityEngine(self._config.observability)

        self._aggregator = Aggregator(consent, self._config.aggregator, self._observability)
        self._budget = BudgetBook(
            allocations or FixedAllocations(self._config.default_token_allocation),
            self._observability,
        )
        self._runs = RunLedger(self._config.ledger_path)
        self._fusion = FusionEngine(self._config.fusion)
        self._runners = tuple(runners) if runners is not None else tuple(default_runners())

        # providers passed in belong to the caller
        self._owned_provider: Optional[LLMProvider] = None
        if provider is None and self._config.provider_base_url:
            provider = HttpCompletionProvider(
                base_url=self._config.provider_base_url,
                model=self._config.provider_model,
                api_key=self._config.provider_api_key,
            )
            self._owned_provider = provider
        self._pipeline: Optional[ModelInvocationPipeline] = None
        self._validator: Optional[ValidatorRunner] = None
        if provider is not None:
            self._pipeline = ModelInvocationPipeline(
                ValidatorExecutor(
                    provider,
                    temperature=self._config.invocation.temperature,
                    timeout_seconds=self._config.invocation.timeout_seconds,
                ),
                self._config.invocation,
            )
            self._validator = ValidatorRunner(self._pipeline)

        self._tier1_pool = ThreadPoolExecutor(
            max_workers=max(1, len(self._runners)) * self._config.fusion_workers,
            thread_name_prefix="tier1",
        )
        self._queue: "queue.Queue[Tuple[str, PeriodKey]]" = queue.Queue()
        self._queued: Set[Tuple[str, PeriodKey]] = set()
        self._queued_lock = threading.Lock()
        self._retry_windows: Dict[Tuple[str, PeriodKey], AggregationWindow] = {}
        self._retry_lock = threading.Lock()
        # (ready_at monotonic, subject, period) of failed periods awaiting a retry
        self._delayed: List[Tuple[float, str, PeriodKey]] = []

        self._cancel = threading.Event()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    # =========================================================================
    # INGESTION INTERFACE
    # =========================================================================

    def ingest(self, event: EventLike) -> PeriodKey:
        """Fold one event into its window. See Aggregator.ingest()."""
        return self._aggregator.ingest(event)

    def ingest_stream(self, events: Iterable[EventLike]) -> IngestionSummary:
        return self._aggregator.ingest_stream(events)

    # =========================================================================
    # SEALING INTERFACE
    # =========================================================================

    def seal_window(
        self,
        subject_id: str,
        channel: ChannelType,
        period: PeriodKey,
        sealed_at: Optional[datetime] = None
    ) -> AggregationWindow:
        """Seal one window and queue its period for fusion."""
        window = self._aggregator.seal_window(subject_id, channel, period, sealed_at)
        self._enqueue(subject_id, period)
        return window

    def seal_due(self, now: Optional[datetime] = None) -> List[Tuple[str, PeriodKey]]:
        """Seal every window whose period has ended and queue them for fusion."""
        ready = self._aggregator.seal_due(now)
        for subject_id, period in ready:
            self._enqueue(subject_id, period)
        return ready

    def _enqueue(self, subject_id: str, period: PeriodKey):
        key = (subject_id, period)
        with self._queued_lock:
            if key in self._queued:
                return
            self._queued.add(key)
        self._queue.put(key)

    @property
    def pending_work(self) -> int:
        return self._queue.qsize()

    @property
    def scheduled_retries(self) -> int:
        with self._retry_lock:
            return len(self._delayed)

    def attempts_for(self, subject_id: str, period: PeriodKey) -> int:
        return self._runs.attempt_count(subject_id, period)

    def queue_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Queue depth, scheduled retries, stale runs and run counts by status."""
        stats = {
            'pending_work': self.pending_work,
            'scheduled_retries': self.scheduled_retries,
            'stale_runs': len(self._runs.find_stale(self._stale_cutoff(now))),
        }
        for status in RunStatus:
            stats[f'runs_{status.value}'] = 0
        for status, count in self._runs.status_counts().items():
            stats[f'runs_{status}'] = count
        return stats

    def _stale_cutoff(self, now: Optional[datetime]) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now - timedelta(seconds=self._config.stale_run_seconds)

    def recover_stale_runs(self, now: Optional[datetime] = None) -> List[RunRecord]:
        """Fail runs stuck in pending or running so their periods can run again."""
        recovered = self._runs.recover_stale(self._stale_cutoff(now))
        for record in recovered:
            self._audit(
                "run_recovered", record.run_id, AuditEventType.RUN,
                outcome="failure", subject_id=record.subject_id, period=record.period.label,
            )
            self._observability.collect_metric("runs_recovered_total", 1)
        return recovered

    def _schedule_retry(self, record: RunRecord):
        key = (record.subject_id, record.period)
        if record.attempt >= self._config.max_attempts:
            with self._retry_lock:
                self._retry_windows.pop(key, None)
            logger.warning(
                "Run %s failed on attempt %d; giving up", record.run_id, record.attempt
            )
            self._audit(
                "run_retries_exhausted", record.run_id, AuditEventType.RUN,
                outcome="failure", attempts=str(record.attempt),
            )
            return

        delay = self._config.retry_backoff_seconds * 2 ** (record.attempt - 1)
        with self._retry_lock:
            self._delayed.append((time.monotonic() + delay, record.subject_id, record.period))
        logger.info(
            "Retrying %s for %s in %.1fs (attempt %d of %d)",
            record.period.label, record.subject_id, delay,
            record.attempt + 1, self._config.max_attempts,
        )
        self._observability.collect_metric("run_retries_total", 1)

    def _release_retries(self):
        now = time.monotonic()
        with self._retry_lock:
            ready = [item for item in self._delayed if item[0] <= now]
            self._delayed = [item for item in self._delayed if item[0] > now]
        for _, subject_id, period in ready:
            self._enqueue(subject_id, period)

    # =========================================================================
    # FUSION
    # =========================================================================

    def run_fusion(self, subject_id: str, period: PeriodKey) -> RunRecord:
        """
        Run the full pipeline for one subject and period.

        Returns the terminal RunRecord.

        Raises:
            DuplicateRun: a run for this subject and period is pending,
                running or already completed
        """
        started = time.monotonic()
        key = (subject_id, period)

        self._aggregator.seal_subject_period(subject_id, period)
        organization_id = self._aggregator.organization_of(subject_id)
        run = self._runs.begin_run(subject_id, organization_id, period)

        with self._retry_lock:
            window = self._retry_windows.pop(key, None)
        if window is None:
            window = self._aggregator.take_sealed(subject_id, period)

        if window is None or window.is_empty:
            record = self._runs.skip_run(
                run.run_id, RunStatus.SKIPPED_NO_DATA, "No messages in period"
            )
            self._finish(record, started)
            return record

        self._runs.mark_running(run.run_id)
        try:
            record = self._execute_run(run, window)
        except TraitEngineError as e:
            logger.warning("Run %s failed: %s", run.run_id, e)
            error = e.to_error()
            self._audit(
                "run_error", run.run_id, AuditEventType.ERROR,
                outcome="failure", details=error.message, code=error.code.value,
            )
            record = self._runs.fail_run(run.run_id, f"{error.code.value}: {error.message}")
            with self._retry_lock:
                self._retry_windows[key] = window
        except Exception as e:
            logger.exception("Run %s failed unexpectedly", run.run_id)
            record = self._runs.fail_run(run.run_id, f"internal_error: {type(e).__name__}")
            with self._retry_lock:
                self._retry_windows[key] = window

        self._finish(record, started)
        return record

    def _execute_run(self, run: RunRecord, window: AggregationWindow) -> RunRecord:
        run_id = run.run_id

        tier1 = run_tier1(window, self._runners, run_id=run_id, executor=self._tier1_pool)
        for kind, reason in tier1.failures.items():
            self._observability.collect_metric(
                "tier1_failures_total", 1, {'model_kind': kind.value}
            )
            self._audit(
                "tier1_failed", run_id, AuditEventType.MODEL, layer="models",
                outcome="failure", model_kind=kind.value, details=reason,
            )

        ledger = self._budget.ledger(run.organization_id, run.period.month_key)
        decision = evaluate_escalation(
            tier1.outputs,
            budget_remaining=ledger.available,
            history=self._runs.get_escalation_history(run.subject_id),
            config=self._config.escalation,
            ledger_halted=ledger.halted,
        )

        outputs: Dict[ModelKind, ModelOutput] = dict(tier1.outputs)
        tokens_spent = 0
        degradation_reason = None

        if decision.escalate:
            degradation_reason, validator_output, tokens_spent = self._escalate(
                run, window, tier1.outputs, decision, ledger
            )
            if validator_output is not None:
                outputs[ModelKind.VALIDATOR] = validator_output
        elif decision.refused:
            degradation_reason = decision.refusal_reason

        if decision.eligible:
            outcome = "validated" if ModelKind.VALIDATOR in outputs else degradation_reason
            self._observability.collect_metric("escalations_total", 1, {'outcome': outcome})
            self._audit(
                "escalation_evaluated", run_id, AuditEventType.ESCALATION,
                outcome=outcome, reasons=",".join(decision.reasons),
            )

        if (
            self._config.require_validator_on_escalation
            and decision.eligible
            and ModelKind.VALIDATOR not in outputs
            and degradation_reason in (REFUSAL_BUDGET_EXHAUSTED, REFUSAL_BUDGET_HALTED)
        ):
            return self._runs.skip_run(
                run_id, RunStatus.SKIPPED_BUDGET, degradation_reason,
                models_invoked=tuple(outputs), tokens_spent=tokens_spent,
            )

        consensus = self._fusion.fuse(
            outputs,
            validator_expected=decision.eligible,
            degradation_reason=degradation_reason,
        )
        return self._runs.complete_run(run_id, consensus, outputs.values(), tokens_spent)

    def _escalate(
        self,
        run: RunRecord,
        window: AggregationWindow,
        tier1_outputs: Mapping[ModelKind, ModelOutput],
        decision: EscalationDecision,
        ledger: TokenBudgetLedger
    ) -> Tuple[Optional[str], Optional[ModelOutput], int]:
        """Returns (degradation_reason, validator_output, tokens_committed)."""
        if self._validator is None:
            return DEGRADATION_VALIDATOR_UNAVAILABLE, None, 0

        self._runs.note_escalation(run.run_id, decision.reasons)
        try:
            result = self._validator.validate(
                window, tier1_outputs, run.run_id, ledger, self._cancel
            )
        except EscalationSkippedBudget as e:
            return e.context.get('reason', REFUSAL_BUDGET_EXHAUSTED), None, 0
        except (EscalationTimeout, EscalationTransportError) as e:
            logger.info("Validator absent for run %s: %s", run.run_id, e.code.value)
            return e.code.value, None, 0
        except BudgetLedgerCorruption as e:
            logger.error(
                "Budget ledger corrupted for %s; escalation halted: %s",
                run.organization_id, e,
            )
            self._audit(
                "ledger_halted", run.organization_id, AuditEventType.BUDGET,
                layer="ledger", outcome="failure", details=e.message,
            )
            return REFUSAL_BUDGET_HALTED, None, 0

        self._observability.collect_metric("validator_latency_ms", result.trace.duration_ms)
        return None, result.output, result.tokens_committed

    def _finish(self, record: RunRecord, started: float):
        elapsed_ms = (time.monotonic() - started) * 1000
        self._observability.collect_metric(
            "run_duration_ms", elapsed_ms, {'status': record.status.value}
        )
        self._audit(
            "run_finished", record.run_id, AuditEventType.RUN,
            outcome=record.status.value,
            subject_id=record.subject_id,
            period=record.period.label,
            models=",".join(m.value for m in record.models_invoked),
        )
        logger.info(
            "Run %s for %s finished: %s", record.run_id, record.subject_id, record.status.value
        )

    # =========================================================================
    # BATCH / WORKER
    # =========================================================================

    def run_batch(self, max_items: Optional[int] = None) -> List[RunRecord]:
        """
        Drain queued periods with a bounded worker pool.

        Failed periods below max_attempts are re-queued after a backoff
        and picked up by a later batch once it has elapsed.
        Periods that hit DuplicateRun are skipped; every other outcome is
        in the returned records.
        """
        self._release_retries()
        items = []
        while max_items is None or len(items) < max_items:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                break
        if not items:
            return []

        records: List[RunRecord] = []
        with ThreadPoolExecutor(
            max_workers=min(self._config.fusion_workers, len(items)),
            thread_name_prefix="fusion",
        ) as pool:
            futures = [pool.submit(self._run_queued, subject, period) for subject, period in items]
            for future in futures:
                record = future.result()
                if record is not None:
                    records.append(record)
        return records

    def _run_queued(self, subject_id: str, period: PeriodKey) -> Optional[RunRecord]:
        with self._queued_lock:
            self._queued.discard((subject_id, period))
        try:
            record = self.run_fusion(subject_id, period)
        except TraitEngineError as e:
            logger.info("Skipping queued run for %s: %s", subject_id, e)
            return None
        finally:
            self._queue.task_done()
        if record.status is RunStatus.FAILED:
            self._schedule_retry(record)
        return record

    def start(self, poll_interval_seconds: float = 1.0, seal_interval_seconds: float = 60.0):
        """
        Start a background thread that seals due windows and drains the queue.

        Runs left pending or running by a previous process are failed first.
        """
        if self._worker and self._worker.is_alive():
            return
        self.recover_stale_runs()
        self._stop.clear()
        self._cancel.clear()

        def loop():
            last_seal = 0.0
            while not self._stop.is_set():
                if time.monotonic() - last_seal >= seal_interval_seconds:
                    self.seal_due()
                    last_seal = time.monotonic()
                self.run_batch()
                self._stop.wait(poll_interval_seconds)

        self._worker = threading.Thread(target=loop, name="trait-engine", daemon=True)
        self._worker.start()

    def stop(self, timeout: Optional[float] = None):
        """Stop the background worker and cancel in-flight validator calls."""
        self._stop.set()
        self._cancel.set()
        if self._worker:
            self._worker.join(timeout)
            self._worker = None

    def close(self):
        self.stop()
        self._tier1_pool.shutdown(wait=True)
        if self._pipeline:
            self._pipeline.close()
        if self._owned_provider:
            self._owned_provider.close()
        self._runs.close()

    # =========================================================================
    # QUERY INTERFACE (Read-only)
    # =========================================================================

    def get_latest_consensus(
        self,
        subject_id: str,
        framework: Optional[Framework] = None
    ) -> Optional[ConsensusResult]:
        consensus = self._runs.get_latest_consensus(subject_id)
        if consensus is not None and framework is not None:
            return consensus.for_framework(framework)
        return consensus

    def get_consensus_history(self, subject_id: str):
        return self._runs.get_consensus_history(subject_id)

    def get_run_history(
        self,
        subject_id: str,
        time_range: Optional[TimeRange] = None
    ) -> List[RunRecord]:
        return self._runs.get_run_history(subject_id, time_range)

    def get_org_budget_status(
        self,
        organization_id: str,
        period_month: Optional[str] = None
    ) -> BudgetStatus:
        return self._budget.status(organization_id, period_month)

    def reconcile_budget(self, organization_id: str, period_month: str) -> BudgetStatus:
        """Clear a halted ledger after an operator has checked it."""
        return self._budget.ledger(organization_id, period_month).reconcile()

    def get_subject_report(
        self,
        subject_id: str,
        framework: Optional[Framework] = None
    ) -> SubjectReport:
        """Latest consensus, or "insufficient confidence" when missing or degraded."""
        consensus = self.get_latest_consensus(subject_id, framework)
        if consensus is None:
            return SubjectReport(
                subject_id=subject_id, status="insufficient_confidence",
                message=INSUFFICIENT_CONFIDENCE,
            )
        if consensus.degraded:
            return SubjectReport(
                subject_id=subject_id, status="insufficient_confidence",
                consensus=consensus, message=INSUFFICIENT_CONFIDENCE,
            )
        return SubjectReport(subject_id=subject_id, status="ok", consensus=consensus)

    # =========================================================================
    # COMPONENT ACCESS
    # =========================================================================

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def aggregator(self) -> Aggregator:
        return self._aggregator

    @property
    def budget(self) -> BudgetBook:
        return self._budget

    @property
    def runs(self) -> RunLedger:
        return self._runs

    @property
    def observability(self) -> ObservabilityEngine:
        return self._observability

    def _audit(
        self,
        action: str,
        entity_id: str,
        event_type: AuditEventType,
        layer: str = "engine",
        outcome: str = "success",
        details: str = "",
        **metadata: str
    ):
        self._observability.log_audit(
            action=action,
            entity_id=entity_id,
            outcome=outcome,
            details=details,
            layer=layer,
            event_type=event_type,
            **metadata
        )
