"""
Aggregator Tests
================

INVARIANTS TESTED:
1. Events fold into the window of their (subject, channel, period)
2. Sealing is idempotent; late events for a sealed window are rejected
3. Consent denial drops the event and discards open windows
4. A sealed (subject, period) is handed to fusion exactly once
5. Concurrent ingest loses no event
6. Handed-off windows are forgotten after the retention horizon
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from backend.aggregation import (
    Aggregator, AggregatorConfig, StaticConsent, estimate_distinct, extract_signals,
    merge_windows,
)
from backend.contracts import CommunicationEvent
from backend.observability import ObservabilityEngine
from models.contracts import (
    ChannelType, ConsentDenied, IngestionError, WindowAlreadySealed,
)

from ..fixtures import (
    AFTER_WEEK, NEXT_PERIOD, NEXT_WEEK, ORG, PERIOD, SAMPLE_MESSAGES, SUBJECT, T1, T2, T3,
    make_event,
)


@pytest.fixture
def consent():
    return StaticConsent()


@pytest.fixture
def observability():
    return ObservabilityEngine()


@pytest.fixture
def aggregator(consent, observability):
    return Aggregator(consent, observability=observability)


def ingest_samples(aggregator, channel=ChannelType.TEAM_CHAT, subject_id=SUBJECT):
    for i, text in enumerate(SAMPLE_MESSAGES):
        aggregator.ingest(make_event(
            text, timestamp=T2, subject_id=subject_id, channel=channel,
            conversationId=f"conv_{i % 2}",
            startsConversation=(i == 0),
            repliedToAt=T1.isoformat(),
        ))


class TestIngest:

    def test_event_counted_in_its_period(self, aggregator):
        assert aggregator.ingest(make_event("hello there", timestamp=T1)) == PERIOD
        assert aggregator.ingest(make_event("next week", timestamp=NEXT_WEEK)) == NEXT_PERIOD
        assert aggregator.open_window_count == 2

    def test_sealed_window_statistics(self, aggregator):
        ingest_samples(aggregator)
        window = aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)

        assert window.message_count == 6
        assert window.organization_id == ORG
        assert (window.sentiment_positive, window.sentiment_neutral, window.sentiment_negative) == (2, 3, 1)
        assert window.question_count == 1
        assert window.exclamation_count == 1
        assert window.technical_term_count == 5
        assert window.conversations_initiated == 1
        assert window.conversations_participated == 2
        assert window.latency_count == 6
        assert window.latency_mean == pytest.approx(300.0)
        assert window.latency_buckets == (0, 0, 6, 0, 0)
        assert window.vocabulary_estimate > 20
        assert window.length_min == min(len(m) for m in SAMPLE_MESSAGES)
        assert window.length_max == max(len(m) for m in SAMPLE_MESSAGES)
        assert window.sealed_at == AFTER_WEEK

    def test_accepts_event_objects(self, aggregator):
        event = CommunicationEvent(SUBJECT, ChannelType.EMAIL, T1, transient_text="ok")
        assert aggregator.ingest(event) == PERIOD

    @pytest.mark.parametrize("payload", [
        {"channel": "email", "timestamp": T1.isoformat(), "text": "x"},
        {"subjectId": SUBJECT, "channel": "fax", "timestamp": T1.isoformat()},
        {"subjectId": SUBJECT, "channel": "email", "timestamp": "yesterday"},
        {"subjectId": SUBJECT, "channel": "combined", "timestamp": T1.isoformat()},
        {"subjectId": SUBJECT, "channel": "email", "timestamp": T1.isoformat(), "conversationId": 123},
        {"subjectId": SUBJECT, "channel": "email", "timestamp": T1.isoformat(), "text": 42},
        "not a mapping",
    ])
    def test_malformed_events_rejected(self, aggregator, payload):
        with pytest.raises(IngestionError):
            aggregator.ingest(payload)
        assert aggregator.open_window_count == 0

    @pytest.mark.parametrize("fields", [
        dict(timestamp=None),
        dict(channel="email"),
        dict(subject_id=7),
        dict(conversation_id=123),
        dict(replied_to_at="earlier"),
    ])
    def test_malformed_event_objects_rejected(self, fields):
        values = dict(subject_id=SUBJECT, channel=ChannelType.EMAIL, timestamp=T1)
        values.update(fields)
        with pytest.raises(IngestionError) as info:
            CommunicationEvent(**values)
        assert info.value.context["field"] == next(iter(fields))

    def test_custom_period_length(self, consent):
        from datetime import timedelta
        daily = Aggregator(consent, AggregatorConfig(period_length=timedelta(days=1)))
        assert daily.ingest(make_event("a", timestamp=T1)) != daily.ingest(make_event("b", timestamp=T3))

    def test_invalid_config(self):
        from datetime import timedelta
        with pytest.raises(ValueError):
            AggregatorConfig(period_length=timedelta(0))


class TestConsent:

    def test_revoked_consent_discards_open_windows(self, aggregator, consent, observability):
        aggregator.ingest(make_event("first", timestamp=T1))
        aggregator.ingest(make_event("second", timestamp=T2, channel=ChannelType.EMAIL))
        assert aggregator.open_window_count == 2

        consent.revoke(SUBJECT)
        with pytest.raises(ConsentDenied):
            aggregator.ingest(make_event("third", timestamp=T3))

        assert aggregator.open_window_count == 0
        assert aggregator.seal_due(AFTER_WEEK) == []
        assert aggregator.take_sealed(SUBJECT, PERIOD) is None

        dropped = observability.get_layer_log("aggregation")
        assert any(e.action == "event_dropped" for e in dropped)

    def test_other_subjects_unaffected(self, aggregator, consent):
        aggregator.ingest(make_event("mine", subject_id="other"))
        consent.revoke(SUBJECT)
        with pytest.raises(ConsentDenied):
            aggregator.ingest(make_event("denied"))
        assert aggregator.open_window_count == 1

    def test_regranted_consent_starts_fresh(self, aggregator, consent):
        aggregator.ingest(make_event("before"))
        consent.revoke(SUBJECT)
        with pytest.raises(ConsentDenied):
            aggregator.ingest(make_event("during"))
        consent.grant(SUBJECT)
        aggregator.ingest(make_event("after"))

        window = aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)
        assert window.message_count == 1


class TestSealing:

    def test_seal_is_idempotent(self, aggregator):
        aggregator.ingest(make_event("hello"))
        first = aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)
        second = aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, NEXT_WEEK)
        assert first is second
        assert aggregator.is_sealed(SUBJECT, ChannelType.TEAM_CHAT, PERIOD)

    def test_late_event_rejected(self, aggregator):
        aggregator.ingest(make_event("on time"))
        aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)

        with pytest.raises(WindowAlreadySealed):
            aggregator.ingest(make_event("late", timestamp=T3))

        window = aggregator.sealed_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD)
        assert window.message_count == 1

    def test_late_event_for_another_channel_still_accepted(self, aggregator):
        aggregator.ingest(make_event("chat"))
        aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)
        assert aggregator.ingest(make_event("mail", channel=ChannelType.EMAIL)) == PERIOD

    def test_sealing_without_events_yields_empty_window(self, aggregator):
        window = aggregator.seal_window(SUBJECT, ChannelType.LIVE_CHAT, PERIOD, AFTER_WEEK)
        assert window.is_empty
        assert window.channel is ChannelType.LIVE_CHAT

    def test_seal_due_only_seals_ended_periods(self, aggregator):
        aggregator.ingest(make_event("this week", timestamp=T1))
        aggregator.ingest(make_event("next week", timestamp=NEXT_WEEK))
        aggregator.ingest(make_event("someone else", timestamp=T2, subject_id="subject_0"))

        ready = aggregator.seal_due(AFTER_WEEK)

        assert ready == [("subject_0", PERIOD), (SUBJECT, PERIOD)]
        assert aggregator.open_window_count == 1
        assert not aggregator.is_sealed(SUBJECT, ChannelType.TEAM_CHAT, NEXT_PERIOD)

    def test_seal_audited_with_content_hash(self, aggregator, observability):
        aggregator.ingest(make_event("hello"))
        window = aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)

        entries = [e for e in observability.get_layer_log("aggregation") if e.action == "window_sealed"]
        assert len(entries) == 1
        assert entries[0].entity_id == window.window_id
        assert ("content_hash", window.content_hash()) in entries[0].metadata
        assert observability.get_metrics().total("windows_sealed_total") == 1


class TestHandOff:

    def test_take_sealed_once(self, aggregator):
        aggregator.ingest(make_event("hello"))
        aggregator.seal_subject_period(SUBJECT, PERIOD, AFTER_WEEK)

        window = aggregator.take_sealed(SUBJECT, PERIOD)
        assert window is not None
        assert window.message_count == 1
        assert aggregator.take_sealed(SUBJECT, PERIOD) is None

    def test_nothing_sealed(self, aggregator):
        assert aggregator.take_sealed(SUBJECT, PERIOD) is None

    def test_channels_merged_into_combined_window(self, aggregator):
        ingest_samples(aggregator, ChannelType.TEAM_CHAT)
        aggregator.ingest(make_event("Thanks, looks good", channel=ChannelType.EMAIL))
        sealed = aggregator.seal_subject_period(SUBJECT, PERIOD, AFTER_WEEK)
        assert [w.channel for w in sealed] == [ChannelType.EMAIL, ChannelType.TEAM_CHAT]

        window = aggregator.take_sealed(SUBJECT, PERIOD)
        assert window.channel is ChannelType.COMBINED
        assert window.channels == (ChannelType.EMAIL, ChannelType.TEAM_CHAT)
        assert window.message_count == 7
        assert window.sentiment_positive == 3

    def test_channel_sealed_after_take_is_archived_only(self, aggregator):
        aggregator.ingest(make_event("chat"))
        aggregator.seal_subject_period(SUBJECT, PERIOD, AFTER_WEEK)
        aggregator.take_sealed(SUBJECT, PERIOD)

        aggregator.ingest(make_event("mail", channel=ChannelType.EMAIL))
        aggregator.seal_window(SUBJECT, ChannelType.EMAIL, PERIOD, NEXT_WEEK)

        assert aggregator.take_sealed(SUBJECT, PERIOD) is None
        assert aggregator.sealed_window(SUBJECT, ChannelType.EMAIL, PERIOD).message_count == 1


RETENTION_END = AFTER_WEEK + timedelta(weeks=8)


class TestRetention:

    def test_taken_windows_pruned(self, aggregator):
        aggregator.ingest(make_event("hello"))
        aggregator.seal_subject_period(SUBJECT, PERIOD, AFTER_WEEK)
        aggregator.take_sealed(SUBJECT, PERIOD)

        assert aggregator.prune_archive(RETENTION_END) == 1
        assert aggregator.archived_window_count == 0
        assert aggregator.sealed_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD) is None
        assert aggregator.organization_of(SUBJECT) == "default"

    def test_windows_waiting_for_fusion_kept(self, aggregator):
        aggregator.ingest(make_event("hello"))
        aggregator.seal_subject_period(SUBJECT, PERIOD, AFTER_WEEK)

        assert aggregator.prune_archive(RETENTION_END) == 0
        assert aggregator.take_sealed(SUBJECT, PERIOD).message_count == 1
        assert aggregator.organization_of(SUBJECT) == ORG

    def test_recent_windows_kept(self, aggregator):
        aggregator.ingest(make_event("hello"))
        aggregator.seal_subject_period(SUBJECT, PERIOD, AFTER_WEEK)
        aggregator.take_sealed(SUBJECT, PERIOD)

        assert aggregator.prune_archive(NEXT_WEEK) == 0
        assert aggregator.is_sealed(SUBJECT, ChannelType.TEAM_CHAT, PERIOD)

    def test_events_for_pruned_period_rejected(self, aggregator):
        aggregator.ingest(make_event("hello"))
        aggregator.seal_subject_period(SUBJECT, PERIOD, AFTER_WEEK)
        aggregator.take_sealed(SUBJECT, PERIOD)
        aggregator.prune_archive(RETENTION_END)

        with pytest.raises(WindowAlreadySealed):
            aggregator.ingest(make_event("late", channel=ChannelType.EMAIL))
        assert aggregator.ingest(make_event("current", timestamp=NEXT_WEEK)) == NEXT_PERIOD

    def test_seal_due_prunes(self, consent):
        aggregator = Aggregator(consent, AggregatorConfig(archive_retention=timedelta(days=1)))
        aggregator.ingest(make_event("hello"))
        assert aggregator.seal_due(AFTER_WEEK) == [(SUBJECT, PERIOD)]
        aggregator.take_sealed(SUBJECT, PERIOD)

        aggregator.seal_due(AFTER_WEEK + timedelta(days=2))

        assert aggregator.archived_window_count == 0

    def test_invalid_retention(self):
        with pytest.raises(ValueError):
            AggregatorConfig(archive_retention=timedelta(0))


class TestStream:

    def test_summary_counts_rejections_by_reason(self, aggregator, consent):
        consent.revoke("blocked")
        events = [
            make_event("one"),
            make_event("two", timestamp=T2),
            make_event("nope", subject_id="blocked"),
            {"channel": "email", "timestamp": T1.isoformat()},
        ]
        summary = aggregator.ingest_stream(events)

        assert summary.accepted == 2
        assert summary.rejected == {"consent_denied": 1, "malformed_event": 1}
        assert summary.rejected_total == 2

    def test_bad_field_types_skipped_without_ending_stream(self, aggregator):
        events = [
            make_event("hi there", conversationId=123),
            make_event("ok"),
            make_event("still fine", timestamp=T2, repliedToAt=42),
            make_event("last one", timestamp=T3),
        ]
        summary = aggregator.ingest_stream(events)

        assert summary.accepted == 2
        assert summary.rejected == {"malformed_event": 2}
        window = aggregator.seal_window(SUBJECT, ChannelType.TEAM_CHAT, PERIOD, AFTER_WEEK)
        assert window.message_count == 2

    def test_concurrent_ingest_loses_nothing(self, consent):
        aggregator = Aggregator(consent, AggregatorConfig(lock_stripes=4))
        subjects = [f"subject_{i}" for i in range(8)]

        def feed(subject_id):
            for i in range(50):
                aggregator.ingest(make_event(f"message {i}", subject_id=subject_id))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(feed, subjects))

        ready = aggregator.seal_due(AFTER_WEEK)
        assert len(ready) == 8
        for subject_id in subjects:
            assert aggregator.take_sealed(subject_id, PERIOD).message_count == 50


class TestStatistics:

    def test_signals_for_one_message(self):
        signals = extract_signals("Is the invoice broken?!", b"k" * 32)
        assert signals.sentiment == -1
        assert signals.has_question
        assert signals.has_exclamation
        assert signals.technical_terms == 1
        assert signals.word_count == 4

    def test_distinct_estimate(self):
        assert estimate_distinct(0) == 0
        assert estimate_distinct(0b1111) == 4

    def test_merge_rejects_mixed_subjects(self):
        from ..fixtures import make_window
        with pytest.raises(ValueError):
            merge_windows([
                make_window("a", ChannelType.EMAIL),
                make_window("b", ChannelType.TEAM_CHAT),
            ])

    def test_merge_single_window_unchanged(self):
        from ..fixtures import make_window
        window = make_window()
        assert merge_windows([window]) is window
