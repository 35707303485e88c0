"""
Window Contracts

Privacy-safe statistical summaries consumed by every model.

PRIVACY INVARIANT:
==================
An AggregationWindow holds ONLY derived numbers and identifiers.
There is no field that could hold message text, and serialization
emits numbers, enum values and ids only.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple
import hashlib
import json
import math


class ChannelType(Enum):
    """Communication channel a window summarizes."""
    TEAM_CHAT = "team_chat"
    LIVE_CHAT = "live_chat"
    EMAIL = "email"
    COMBINED = "combined"  # merged view across channels for one period


# Monday 1970-01-05 00:00 UTC; weekly periods align to it
PERIOD_ANCHOR = datetime(1970, 1, 5, tzinfo=timezone.utc)

# Upper edges (seconds) of the response-latency histogram; last bucket is open
LATENCY_BUCKET_EDGES: Tuple[float, ...] = (60.0, 180.0, 600.0, 3600.0)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, order=True)
class PeriodKey:
    """Half-open analysis period [start, end), always UTC."""
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, 'start', _utc(self.start))
        object.__setattr__(self, 'end', _utc(self.end))
        if self.end <= self.start:
            raise ValueError("Period end must be after start")

    @staticmethod
    def containing(
        timestamp: datetime,
        length: timedelta = timedelta(days=7),
        anchor: datetime = PERIOD_ANCHOR
    ) -> PeriodKey:
        """Period of the given length that contains timestamp."""
        ts = _utc(timestamp)
        index = math.floor((ts - anchor) / length)
        start = anchor + index * length
        return PeriodKey(start=start, end=start + length)

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= _utc(timestamp) < self.end

    def has_ended(self, now: datetime) -> bool:
        return _utc(now) >= self.end

    @property
    def month_key(self) -> str:
        """Budget month ("YYYY-MM") the period is charged to."""
        return self.start.strftime("%Y-%m")

    @property
    def label(self) -> str:
        return f"{self.start.isoformat()}/{self.end.isoformat()}"


@dataclass(frozen=True)
class AggregationWindow:
    """
    Sealed statistical summary of one subject's messages in one period.

    Moments are stored Welford-style (mean + sum of squared deviations)
    so windows from different channels can be merged exactly.
    """
    window_id: str
    subject_id: str
    organization_id: str
    channel: ChannelType
    period: PeriodKey
    sealed_at: datetime

    message_count: int = 0
    word_count: int = 0

    # Message length distribution (characters)
    length_mean: float = 0.0
    length_m2: float = 0.0
    length_min: int = 0
    length_max: int = 0

    # Sentiment histogram (message counts)
    sentiment_positive: int = 0
    sentiment_neutral: int = 0
    sentiment_negative: int = 0

    question_count: int = 0
    exclamation_count: int = 0
    emoji_count: int = 0

    # Linguistic markers
    formality_sum: float = 0.0
    technical_term_count: int = 0
    vocabulary_estimate: int = 0
    vocabulary_sketch: int = field(default=0, repr=False)  # keyed-hash bitmap, OR-mergeable

    # Engagement
    conversations_initiated: int = 0
    conversations_participated: int = 0

    # Response latency distribution (seconds)
    latency_count: int = 0
    latency_mean: float = 0.0
    latency_m2: float = 0.0
    latency_buckets: Tuple[int, ...] = field(
        default_factory=lambda: (0,) * (len(LATENCY_BUCKET_EDGES) + 1)
    )

    channels: Tuple[ChannelType, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return self.message_count == 0

    @property
    def length_variance(self) -> float:
        if self.message_count < 2:
            return 0.0
        return self.length_m2 / (self.message_count - 1)

    @property
    def avg_response_time_seconds(self) -> float:
        """Mean reply latency; 240s when no replies were observed."""
        if self.latency_count == 0:
            return 240.0
        return self.latency_mean

    @property
    def formality_avg(self) -> float:
        if self.message_count == 0:
            return 50.0
        return self.formality_sum / self.message_count

    @property
    def technical_term_frequency(self) -> float:
        """Technical terms per 100 messages."""
        if self.message_count == 0:
            return 0.0
        return self.technical_term_count / self.message_count * 100

    def sentiment_percentages(self) -> Tuple[float, float, float]:
        """(positive, neutral, negative) as percentages of messages."""
        if self.message_count == 0:
            return (0.0, 100.0, 0.0)
        total = float(self.message_count)
        return (
            self.sentiment_positive / total * 100,
            self.sentiment_neutral / total * 100,
            self.sentiment_negative / total * 100,
        )

    def rate(self, count: int) -> float:
        """Per-message rate of a counter."""
        if self.message_count == 0:
            return 0.0
        return count / self.message_count

    def to_dict(self) -> Dict[str, object]:
        """Audit serialization: numbers, enum values and ids only."""
        data = asdict(self)
        data['channel'] = self.channel.value
        data['channels'] = [c.value for c in self.channels]
        data['period'] = {
            'start': self.period.start.isoformat(),
            'end': self.period.end.isoformat(),
        }
        data['sealed_at'] = self.sealed_at.isoformat()
        data['latency_buckets'] = list(self.latency_buckets)
        # the sketch is only needed for merging; audit records carry the estimate
        del data['vocabulary_sketch']
        return data

    def serialize(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def content_hash(self) -> str:
        """Deterministic hash of the window's statistics."""
        return hashlib.sha256(self.serialize().encode()).hexdigest()

    @staticmethod
    def empty(
        subject_id: str,
        organization_id: str,
        channel: ChannelType,
        period: PeriodKey,
        sealed_at: Optional[datetime] = None
    ) -> AggregationWindow:
        """Window sealed without any ingested message."""
        return AggregationWindow(
            window_id=window_id_for(subject_id, channel, period),
            subject_id=subject_id,
            organization_id=organization_id,
            channel=channel,
            period=period,
            sealed_at=sealed_at or datetime.now(timezone.utc),
            channels=(channel,),
        )


def window_id_for(subject_id: str, channel: ChannelType, period: PeriodKey) -> str:
    """Deterministic window identity."""
    seed = f"{subject_id}|{channel.value}|{period.label}"
    return f"win_{hashlib.sha256(seed.encode()).hexdigest()[:16]}"
