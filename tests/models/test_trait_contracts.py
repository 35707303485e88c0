"""
Contract Tests
==============

Immutability, range checks, checksums and the privacy shape of windows.
"""

from dataclasses import FrozenInstanceError, fields
from datetime import datetime, timedelta, timezone

import pytest

from models.contracts import (
    AggregationWindow, ChannelType, ConsensusResult, DuplicateRun, ErrorCode,
    Framework, ModelKind, ModelOutput, PeriodKey, TraitConsensus, TraitName,
    clamp_score, parse_trait_name, window_id_for,
)

from ..fixtures import PERIOD, SUBJECT, T1, WEEK_START, make_output, make_window


class TestTraits:

    def test_fourteen_traits_in_three_frameworks(self):
        assert len(TraitName) == 14
        assert len(TraitName.for_framework(Framework.BIG_FIVE)) == 5
        assert len(TraitName.for_framework(Framework.DISC)) == 4
        assert len(TraitName.for_framework(Framework.EMOTIONAL_INTELLIGENCE)) == 5

    def test_parse_trait_name_accepts_camel_case(self):
        assert parse_trait_name("eq_selfAwareness") is TraitName.EQ_SELF_AWARENESS
        assert parse_trait_name(" openness ") is TraitName.OPENNESS

    def test_parse_trait_name_rejects_unknown(self):
        with pytest.raises(ValueError):
            parse_trait_name("charisma")

    def test_clamp_score(self):
        assert clamp_score(-5) == 0.0
        assert clamp_score(140) == 100.0
        assert clamp_score(42.5) == 42.5

    def test_tier1_kinds(self):
        assert ModelKind.tier1() == (ModelKind.LEXICAL, ModelKind.SENTIMENT, ModelKind.BEHAVIORAL)
        assert not ModelKind.VALIDATOR.is_tier1


class TestPeriodKey:

    def test_weekly_period_aligns_to_monday(self):
        period = PeriodKey.containing(T1)
        assert period == PERIOD
        assert period.start.weekday() == 0

    def test_naive_timestamps_treated_as_utc(self):
        naive = datetime(2026, 1, 5, 10, 0, 0)
        assert PeriodKey.containing(naive) == PERIOD

    def test_half_open(self):
        assert PERIOD.contains(WEEK_START)
        assert not PERIOD.contains(PERIOD.end)
        assert PERIOD.has_ended(PERIOD.end)

    def test_month_key_uses_period_start(self):
        period = PeriodKey(
            datetime(2026, 1, 26, tzinfo=timezone.utc),
            datetime(2026, 2, 2, tzinfo=timezone.utc),
        )
        assert period.month_key == "2026-01"

    def test_end_must_follow_start(self):
        with pytest.raises(ValueError):
            PeriodKey(WEEK_START, WEEK_START)

    def test_custom_length(self):
        period = PeriodKey.containing(T1, length=timedelta(days=1))
        assert period.end - period.start == timedelta(days=1)
        assert period.contains(T1)


class TestWindow:

    def test_window_has_no_text_field(self):
        names = {f.name for f in fields(AggregationWindow)}
        assert not names & {"text", "content", "body", "message", "messages", "transient_text"}

    def test_window_is_frozen(self):
        window = make_window()
        with pytest.raises(FrozenInstanceError):
            window.message_count = 1

    def test_serialization_drops_sketch(self):
        window = make_window(vocabulary_sketch=12345)
        assert "vocabulary_sketch" not in window.to_dict()

    def test_content_hash_is_deterministic(self):
        assert make_window().content_hash() == make_window().content_hash()
        assert make_window().content_hash() != make_window(message_count=61).content_hash()

    def test_window_id_is_deterministic(self):
        a = window_id_for(SUBJECT, ChannelType.EMAIL, PERIOD)
        assert a == window_id_for(SUBJECT, ChannelType.EMAIL, PERIOD)
        assert a != window_id_for(SUBJECT, ChannelType.TEAM_CHAT, PERIOD)

    def test_empty_window(self):
        window = AggregationWindow.empty(SUBJECT, "org", ChannelType.EMAIL, PERIOD, PERIOD.end)
        assert window.is_empty
        assert window.sentiment_percentages() == (0.0, 100.0, 0.0)
        assert window.avg_response_time_seconds == 240.0


class TestModelOutput:

    def test_checksum_verifies(self):
        output = make_output(ModelKind.LEXICAL, 80)
        assert output.verify()

    def test_equal_regardless_of_construction_order(self):
        traits = {TraitName.OPENNESS: 10.0, TraitName.AGREEABLENESS: 90.0}
        reversed_traits = dict(reversed(list(traits.items())))
        assert make_output(ModelKind.LEXICAL, 80, traits=traits) == \
            make_output(ModelKind.LEXICAL, 80, traits=reversed_traits)

    @pytest.mark.parametrize("confidence", [-0.1, 100.1])
    def test_confidence_range_enforced(self, confidence):
        with pytest.raises(ValueError):
            make_output(ModelKind.LEXICAL, confidence)

    def test_score_range_enforced(self):
        with pytest.raises(ValueError):
            make_output(ModelKind.LEXICAL, 80, traits={TraitName.OPENNESS: 101.0})

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError):
            make_output(ModelKind.VALIDATOR, 80, tokens=-1)


class TestConsensusResult:

    def _consensus(self, **overrides):
        values = dict(
            run_id="run_1",
            subject_id=SUBJECT,
            traits=(TraitConsensus(TraitName.OPENNESS, 55.0, 80.0, 3),),
            aggregate_confidence=80.0,
            contributing_models=ModelKind.tier1(),
        )
        values.update(overrides)
        return ConsensusResult(**values)

    def test_dict_round_trip(self):
        consensus = self._consensus(degraded=True, degradation_reason="budget_exhausted")
        assert ConsensusResult.from_dict(consensus.to_dict()) == consensus

    def test_needs_contributing_model(self):
        with pytest.raises(ValueError):
            self._consensus(contributing_models=())

    def test_degraded_needs_reason(self):
        with pytest.raises(ValueError):
            self._consensus(degraded=True)

    def test_for_framework_keeps_only_its_traits(self):
        consensus = self._consensus(traits=(
            TraitConsensus(TraitName.OPENNESS, 55.0, 80.0, 3),
            TraitConsensus(TraitName.DISC_DOMINANCE, 40.0, 80.0, 3),
            TraitConsensus(TraitName.EQ_EMPATHY, 70.0, 80.0, 3),
        ))

        narrowed = consensus.for_framework(Framework.DISC)

        assert [t.trait for t in narrowed.traits] == [TraitName.DISC_DOMINANCE]
        assert narrowed.aggregate_confidence == consensus.aggregate_confidence
        assert narrowed.run_id == consensus.run_id


class TestErrors:

    def test_exception_to_error_record(self):
        exc = DuplicateRun("Run already active", subject_id=SUBJECT)
        error = exc.to_error(T1)

        assert error.code is ErrorCode.DUPLICATE_RUN
        assert error.context == (("subject_id", SUBJECT),)
