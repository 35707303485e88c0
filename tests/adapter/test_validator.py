"""
Validator Runner Tests
======================

INVARIANTS TESTED:
1. Success commits actual usage and emits a VALIDATOR output
2. Failure, timeout and cancellation release the reservation (no partial debit)
3. A refused reservation never reaches the provider
4. Requests carry statistics, never text
"""

import threading

import pytest

from adapter import (
    InvocationConfig, ModelInvocationPipeline, ValidatorExecutor, ValidatorPayload,
    ValidatorRequest, ValidatorRunner,
)
from adapter.contracts import ModelErrorCode
from adapter.providers import MockProvider, ProviderErrorCode
from backend.ledger import TokenBudgetLedger
from models.contracts import (
    EscalationSkippedBudget, EscalationTimeout, EscalationTransportError,
    ModelKind, TraitName,
)
from models.tier1 import run_tier1

from ..fixtures import ORG, PERIOD_MONTH, fixed_runners, make_window


@pytest.fixture
def window():
    return make_window()


@pytest.fixture
def tier1(window):
    return run_tier1(window, runners=fixed_runners(50, 55, 60), run_id="run_v").outputs


def make_runner(provider, **config):
    executor = ValidatorExecutor(provider)
    pipeline = ModelInvocationPipeline(executor, InvocationConfig(**config))
    return ValidatorRunner(pipeline), pipeline


def make_ledger(allocated=10_000):
    return TokenBudgetLedger(ORG, PERIOD_MONTH, allocated)


class TestSuccessfulValidation:

    def test_commits_actual_usage(self, window, tier1):
        runner, pipeline = make_runner(MockProvider(tokens_used=640))
        ledger = make_ledger()
        try:
            result = runner.validate(window, tier1, "run_v", ledger)
        finally:
            pipeline.close()

        assert result.tokens_committed == 640
        assert ledger.spent == 640
        assert ledger.reserved == 0
        assert result.output.model_kind is ModelKind.VALIDATOR
        assert result.output.tokens_consumed == 640
        assert result.output.run_id == "run_v"
        assert result.output.subject_id == window.subject_id

    def test_default_confidence_applied(self, window, tier1):
        runner, pipeline = make_runner(MockProvider())
        try:
            result = runner.validate(window, tier1, "run_v", make_ledger())
        finally:
            pipeline.close()

        assert result.output.confidence == 85.0
        assert set(result.output.traits) == set(TraitName)
        assert all(20 <= s <= 80 for s in result.output.traits.values())

    def test_reported_confidence_used(self, window, tier1):
        runner, pipeline = make_runner(MockProvider(confidence=91.5))
        try:
            result = runner.validate(window, tier1, "run_v", make_ledger())
        finally:
            pipeline.close()
        assert result.output.confidence == 91.5

    def test_same_request_same_output(self, window, tier1):
        runner, pipeline = make_runner(MockProvider())
        try:
            a = runner.validate(window, tier1, "run_v", make_ledger())
            b = runner.validate(window, tier1, "run_v", make_ledger())
        finally:
            pipeline.close()
        assert a.output == b.output

    def test_trace_recorded(self, window, tier1):
        runner, pipeline = make_runner(MockProvider())
        try:
            result = runner.validate(window, tier1, "run_v", make_ledger())
            assert result.trace.success
            assert pipeline.get_traces() == [result.trace]
        finally:
            pipeline.close()


class TestFailures:

    def test_provider_failure_releases_reservation(self, window, tier1):
        runner, pipeline = make_runner(MockProvider(failure_mode=ProviderErrorCode.API_ERROR))
        ledger = make_ledger()
        try:
            with pytest.raises(EscalationTransportError) as info:
                runner.validate(window, tier1, "run_v", ledger)
        finally:
            pipeline.close()

        assert info.value.context["error_code"] == ModelErrorCode.TRANSPORT_ERROR.value
        assert ledger.spent == 0
        assert ledger.reserved == 0

    def test_unparseable_output_is_transport_error(self, window, tier1):
        runner, pipeline = make_runner(MockProvider(content_override="I think they are nice"))
        ledger = make_ledger()
        try:
            with pytest.raises(EscalationTransportError) as info:
                runner.validate(window, tier1, "run_v", ledger)
        finally:
            pipeline.close()

        assert info.value.context["error_code"] == ModelErrorCode.INVALID_OUTPUT.value
        assert ledger.spent == 0

    def test_out_of_range_score_rejected(self, window, tier1):
        content = '{"traits": {"openness": 140}}'
        runner, pipeline = make_runner(MockProvider(content_override=content))
        try:
            with pytest.raises(EscalationTransportError):
                runner.validate(window, tier1, "run_v", make_ledger())
        finally:
            pipeline.close()

    def test_deadline_exceeded_is_timeout(self, window, tier1):
        runner, pipeline = make_runner(MockProvider(latency_ms=1000), timeout_seconds=0.1)
        ledger = make_ledger()
        try:
            with pytest.raises(EscalationTimeout):
                runner.validate(window, tier1, "run_v", ledger)
        finally:
            pipeline.close()

        assert ledger.spent == 0
        assert ledger.reserved == 0

    def test_cancellation_is_timeout(self, window, tier1):
        runner, pipeline = make_runner(MockProvider(latency_ms=500))
        ledger = make_ledger()
        cancel = threading.Event()
        cancel.set()
        try:
            with pytest.raises(EscalationTimeout) as info:
                runner.validate(window, tier1, "run_v", ledger, cancel)
        finally:
            pipeline.close()

        assert info.value.context["error_code"] == ModelErrorCode.CANCELLED.value
        assert ledger.reserved == 0


class TestBudgetGate:

    def test_refused_reservation_never_invokes_provider(self, window, tier1):
        provider = MockProvider()
        runner, pipeline = make_runner(provider)
        ledger = make_ledger(allocated=1000)
        try:
            with pytest.raises(EscalationSkippedBudget) as info:
                runner.validate(window, tier1, "run_v", ledger)
        finally:
            pipeline.close()

        assert info.value.context["reason"] == "budget_exhausted"
        assert provider.invocation_count == 0

    def test_usage_over_allocation_is_refused_at_commit(self, window, tier1):
        runner, pipeline = make_runner(MockProvider(tokens_used=5000))
        ledger = make_ledger(allocated=3000)
        try:
            with pytest.raises(EscalationSkippedBudget):
                runner.validate(window, tier1, "run_v", ledger)
        finally:
            pipeline.close()

        assert ledger.spent == 0
        assert ledger.reserved == 0
        assert not ledger.halted

    def test_reservation_matches_token_ceiling(self, window, tier1):
        runner, pipeline = make_runner(MockProvider(), max_tokens=512)
        ledger = make_ledger(allocated=600)
        try:
            runner.validate(window, tier1, "run_v", ledger)
        finally:
            pipeline.close()
        assert runner.token_ceiling == 512
        assert ledger.spent == 500


class TestRequestShape:

    def test_request_carries_statistics_only(self, window, tier1):
        request = ValidatorRequest.create("run_v", window, tier1)
        keys = {k for k, _ in request.statistics}

        assert "message_count" in keys
        assert all(isinstance(v, float) for _, v in request.statistics)
        assert [s.model_kind for s in request.tier1] == list(ModelKind.tier1())

    def test_request_id_is_deterministic(self, window, tier1):
        a = ValidatorRequest.create("run_v", window, tier1)
        b = ValidatorRequest.create("run_v", window, tier1)
        assert a.request_id == b.request_id
        assert a.content_hash() == b.content_hash()


class TestPayloadSchema:

    def test_camel_case_keys_accepted(self):
        payload = ValidatorPayload.model_validate_json(
            '{"traits": {"eq_selfAwareness": 61, "openness": 40}, "confidence": 77}'
        )
        assert payload.trait_map() == {
            TraitName.EQ_SELF_AWARENESS: 61.0, TraitName.OPENNESS: 40.0,
        }
        assert payload.confidence == 77

    @pytest.mark.parametrize("raw", [
        '{"traits": {}}',
        '{"traits": {"charisma": 50}}',
        '{"traits": {"openness": 50}, "confidence": 150}',
    ])
    def test_invalid_payloads(self, raw):
        with pytest.raises(ValueError):
            ValidatorPayload.model_validate_json(raw)
