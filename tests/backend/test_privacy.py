"""
Privacy Tests
=============

Message text must not survive ingestion: not in sealed windows, audit
entries, log output, event reprs or exception messages.
"""

import logging

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from backend.aggregation import Aggregator, StaticConsent
from backend.contracts import CommunicationEvent
from backend.observability import ObservabilityEngine
from models.contracts import ChannelType, ConsentDenied

from ..fixtures import AFTER_WEEK, PERIOD, SUBJECT, T1, make_event


# Letters absent from ISO timestamps, hex digests, field names and enum reprs
ALPHABET = "FJKPQXZ"

secret_words = st.text(alphabet=ALPHABET, min_size=8, max_size=24)
messages = st.lists(secret_words, min_size=1, max_size=6).map(" ".join)


def leaks(text: str, haystack: str, width: int = 4) -> bool:
    return any(
        text[i:i + width] in haystack
        for i in range(len(text) - width + 1)
        if " " not in text[i:i + width]
    )


class TestNoTextSurvives:

    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    @given(st.lists(messages, min_size=1, max_size=5))
    def test_sealed_window_and_audit_hold_no_text(self, texts):
        observability = ObservabilityEngine()
        aggregator = Aggregator(StaticConsent(), observability=observability)
        for text in texts:
            aggregator.ingest(make_event(text))

        window = aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)
        artifacts = [window.serialize(), repr(window)]
        artifacts.extend(repr(e) for e in observability.get_unified_log())

        for text in texts:
            for artifact in artifacts:
                assert not leaks(text, artifact)

    def test_log_output_holds_no_text(self, caplog):
        text = "QWERZYXPLM ASDFGHJKL"
        aggregator = Aggregator(StaticConsent(["blocked"]))
        with caplog.at_level(logging.DEBUG):
            aggregator.ingest(make_event(text))
            aggregator.ingest_stream([make_event(text, subject_id="blocked")])
            aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)
        assert "QWERZ" not in caplog.text
        assert "ASDFG" not in caplog.text

    def test_event_repr_hides_text(self):
        event = CommunicationEvent(SUBJECT, ChannelType.EMAIL, T1, transient_text="SECRETPAYLOAD")
        assert "SECRETPAYLOAD" not in repr(event)

    def test_events_equal_regardless_of_text(self):
        a = CommunicationEvent(SUBJECT, ChannelType.EMAIL, T1, transient_text="one")
        b = CommunicationEvent(SUBJECT, ChannelType.EMAIL, T1, transient_text="two")
        assert a == b

    def test_consent_error_holds_no_text(self):
        aggregator = Aggregator(StaticConsent([SUBJECT]))
        with pytest.raises(ConsentDenied) as info:
            aggregator.ingest(make_event("SECRETPAYLOAD"))
        assert "SECRETPAYLOAD" not in str(info.value)
        assert "SECRETPAYLOAD" not in repr(info.value.context)

    def test_vocabulary_sketch_keyed_per_aggregator(self):
        texts = ["ALPHA BRAVO CHARLIE DELTA ECHO"]
        sketches = []
        for _ in range(2):
            aggregator = Aggregator(StaticConsent())
            aggregator.ingest(make_event(texts[0]))
            window = aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)
            sketches.append(window.vocabulary_sketch)
        # identical words land in different positions under different keys
        assert sketches[0] != sketches[1]
