"""
Fusion Engine Tests
===================

INVARIANTS TESTED:
1. Confidence-weighted mean per trait with base weights
2. Aggregate confidence = weight mass over full mass
3. Input order never changes the result
4. Missing validator when expected -> degraded with a reason
5. Every score stays inside [0, 100]
"""

import pytest
from hypothesis import given, settings, strategies as st

from models.contracts import FusionInconsistency, ModelKind, TraitName
from models.fusion import DEGRADATION_VALIDATOR_ABSENT, FusionConfig, FusionEngine, fuse

from ..fixtures import make_output, uniform_traits


class TestWeightedConsensus:

    def test_aggregate_confidence_from_tier1_only(self):
        result = fuse([
            make_output(ModelKind.LEXICAL, 80),
            make_output(ModelKind.SENTIMENT, 75),
            make_output(ModelKind.BEHAVIORAL, 60),
        ])

        assert result.aggregate_confidence == pytest.approx(56.75)
        assert result.contributing_models == ModelKind.tier1()
        assert not result.degraded

    def test_weighted_mean_uses_base_weights(self):
        result = fuse([
            make_output(ModelKind.LEXICAL, 100, score=80),
            make_output(ModelKind.SENTIMENT, 100, score=40),
            make_output(ModelKind.BEHAVIORAL, 100, score=60),
        ])

        for trait in TraitName.ordered():
            assert result.score_for(trait) == pytest.approx(60.0)
        assert result.aggregate_confidence == pytest.approx(80.0)

    def test_confidence_shifts_weight(self):
        result = fuse([
            make_output(ModelKind.LEXICAL, 100, score=90),
            make_output(ModelKind.SENTIMENT, 10, score=10),
        ])
        # 0.25 * 90 + 0.025 * 10 over 0.275
        assert result.score_for(TraitName.OPENNESS) == pytest.approx(82.73, abs=0.01)

    def test_full_set_reaches_full_confidence(self):
        result = fuse([make_output(k, 100) for k in ModelKind])
        assert result.aggregate_confidence == pytest.approx(100.0)
        assert result.contributing_models == tuple(ModelKind)

    def test_total_tokens_summed(self):
        result = fuse([
            make_output(ModelKind.LEXICAL, 80),
            make_output(ModelKind.VALIDATOR, 85, tokens=640),
        ])
        assert result.total_tokens == 640

    def test_zero_confidence_falls_back_to_base_weights(self):
        result = fuse([
            make_output(ModelKind.LEXICAL, 0, score=20),
            make_output(ModelKind.BEHAVIORAL, 0, score=75),
        ])
        # (0.25 * 20 + 0.30 * 75) / 0.55
        assert result.score_for(TraitName.OPENNESS) == pytest.approx(50.0)
        assert result.aggregate_confidence == 0.0

    def test_custom_base_weights(self):
        config = FusionConfig(base_weights={
            ModelKind.LEXICAL: 1.0, ModelKind.SENTIMENT: 0.0,
            ModelKind.BEHAVIORAL: 0.0, ModelKind.VALIDATOR: 0.0,
        })
        result = FusionEngine(config).fuse([
            make_output(ModelKind.LEXICAL, 100, score=30),
            make_output(ModelKind.SENTIMENT, 100, score=90),
        ])
        assert result.score_for(TraitName.OPENNESS) == pytest.approx(30.0)

    def test_config_rejects_missing_weight(self):
        with pytest.raises(ValueError):
            FusionConfig(base_weights={ModelKind.LEXICAL: 1.0})


class TestProvenance:

    def test_partial_trait_coverage(self):
        validator_traits = {TraitName.OPENNESS: 90.0}
        result = fuse([
            make_output(ModelKind.LEXICAL, 100, score=50),
            make_output(ModelKind.VALIDATOR, 100, traits=validator_traits),
        ])
        by_trait = {t.trait: t for t in result.traits}

        openness = by_trait[TraitName.OPENNESS]
        assert openness.models_used == 2
        assert openness.confidence == pytest.approx(45.0)
        assert openness.score == pytest.approx(67.78)

        empathy = by_trait[TraitName.EQ_EMPATHY]
        assert empathy.models_used == 1
        assert empathy.confidence == pytest.approx(25.0)
        assert empathy.score == pytest.approx(50.0)

    def test_traits_follow_canonical_order(self):
        result = fuse([make_output(ModelKind.BEHAVIORAL, 70)])
        assert tuple(t.trait for t in result.traits) == TraitName.ordered()

    def test_input_order_is_irrelevant(self):
        a = make_output(ModelKind.LEXICAL, 62, score=20)
        b = make_output(ModelKind.SENTIMENT, 81, score=70)
        c = make_output(ModelKind.BEHAVIORAL, 55, score=45)

        assert fuse([a, b, c]) == fuse([c, a, b])
        assert fuse({ModelKind.BEHAVIORAL: c, ModelKind.LEXICAL: a}) == fuse([a, c])


class TestDegradation:

    def test_missing_validator_when_expected_is_degraded(self):
        result = fuse(
            [make_output(ModelKind.LEXICAL, 50), make_output(ModelKind.SENTIMENT, 50)],
            validator_expected=True,
        )
        assert result.degraded
        assert result.degradation_reason == DEGRADATION_VALIDATOR_ABSENT

    def test_explicit_degradation_reason_kept(self):
        result = fuse(
            [make_output(ModelKind.LEXICAL, 50)],
            validator_expected=True,
            degradation_reason="budget_exhausted",
        )
        assert result.degradation_reason == "budget_exhausted"

    def test_validator_present_is_not_degraded(self):
        result = fuse(
            [make_output(ModelKind.LEXICAL, 50), make_output(ModelKind.VALIDATOR, 85)],
            validator_expected=True,
            degradation_reason="ignored",
        )
        assert not result.degraded
        assert result.degradation_reason is None


class TestInconsistency:

    def test_empty_input(self):
        with pytest.raises(FusionInconsistency):
            fuse([])

    def test_duplicate_kinds(self):
        with pytest.raises(FusionInconsistency):
            fuse([make_output(ModelKind.LEXICAL, 50), make_output(ModelKind.LEXICAL, 60)])

    def test_mixed_runs(self):
        with pytest.raises(FusionInconsistency):
            fuse([
                make_output(ModelKind.LEXICAL, 50, run_id="run_a"),
                make_output(ModelKind.SENTIMENT, 50, run_id="run_b"),
            ])

    def test_mixed_subjects(self):
        with pytest.raises(FusionInconsistency):
            fuse([
                make_output(ModelKind.LEXICAL, 50, subject_id="a"),
                make_output(ModelKind.SENTIMENT, 50, subject_id="b"),
            ])

    def test_mapping_kind_mismatch(self):
        with pytest.raises(FusionInconsistency):
            fuse({ModelKind.SENTIMENT: make_output(ModelKind.LEXICAL, 50)})


# =============================================================================
# PROPERTIES
# =============================================================================

scores = st.floats(min_value=0, max_value=100, allow_nan=False)


@st.composite
def output_sets(draw):
    kinds = draw(st.lists(st.sampled_from(list(ModelKind)), min_size=1, max_size=4, unique=True))
    return [
        make_output(
            kind,
            draw(scores),
            traits={t: draw(scores) for t in TraitName.ordered()},
        )
        for kind in kinds
    ]


class TestProperties:

    @settings(max_examples=100, deadline=None)
    @given(output_sets())
    def test_scores_bounded(self, outputs):
        result = fuse(outputs)
        assert 0.0 <= result.aggregate_confidence <= 100.0
        for item in result.traits:
            assert 0.0 <= item.score <= 100.0
            assert 0.0 <= item.confidence <= 100.0

    @settings(max_examples=50, deadline=None)
    @given(output_sets(), st.randoms())
    def test_deterministic_under_permutation(self, outputs, rnd):
        shuffled = list(outputs)
        rnd.shuffle(shuffled)
        assert fuse(outputs) == fuse(shuffled)

    @settings(max_examples=50, deadline=None)
    @given(st.lists(scores, min_size=1, max_size=3))
    def test_uniform_scores_fuse_to_same_value(self, confidences):
        kinds = ModelKind.tier1()[:len(confidences)]
        outputs = [make_output(k, c, traits=uniform_traits(42.0)) for k, c in zip(kinds, confidences)]
        result = fuse(outputs)
        assert all(t.score == pytest.approx(42.0) for t in result.traits)
