"""
Window Statistics

Signal extraction from one message and the running accumulator behind
each open window.

PRIVACY:
========
extract_signals() is the only function that reads message text. It
returns counts and keyed hash positions; nothing it returns can be
turned back into a word.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional, Set
import bisect
import hashlib
import math
import re

from models.contracts import (
    AggregationWindow, ChannelType, LATENCY_BUCKET_EDGES, PeriodKey, window_id_for,
)


# =============================================================================
# LEXICONS
# =============================================================================

POSITIVE_PATTERN = re.compile(
    r"\b(great|good|excellent|thanks|perfect|awesome|love|appreciate)\b"
    "|\U0001F60A|\U0001F44D|✅|\U0001F389",
    re.IGNORECASE,
)
NEGATIVE_PATTERN = re.compile(
    r"\b(issue|problem|error|fail|wrong|bad|broken|urgent)\b"
    "|\U0001F614|❌|⚠",
    re.IGNORECASE,
)
INFORMAL_PATTERN = re.compile(
    r"\b(gonna|wanna|yeah|nope|lol|omg|btw|fyi)\b|!{2,}|\.{3,}",
    re.IGNORECASE,
)
TECHNICAL_PATTERN = re.compile(
    r"\b(ledger|invoice|revenue|expense|debit|credit|accrual|depreciation|"
    r"amortization|reconciliation|compliance|audit|tax|gaap|ifrs|ebitda|roi|kpi|"
    r"balance sheet|income statement|cash flow)\b",
    re.IGNORECASE,
)
EMOJI_PATTERN = re.compile(
    "[\U0001F600-\U0001F64F\U0001F300-\U0001F5FF\U0001F680-\U0001F6FF"
    "☀-⛿✀-➿]"
)
WORD_PATTERN = re.compile(r"\b\w+\b")

SKETCH_BITS = 4096


# =============================================================================
# VOCABULARY SKETCH
# =============================================================================

def sketch_position(word: str, key: bytes, bits: int = SKETCH_BITS) -> int:
    digest = hashlib.blake2b(word.encode('utf-8'), key=key, digest_size=8).digest()
    return int.from_bytes(digest, 'big') % bits


def estimate_distinct(bitmap: int, bits: int = SKETCH_BITS) -> int:
    """Linear-counting estimate of distinct items in a bitmap."""
    set_bits = bin(bitmap).count("1")
    zeros = bits - set_bits
    if zeros == 0:
        return int(round(bits * math.log(bits)))
    return int(round(-bits * math.log(zeros / bits)))


# =============================================================================
# PER-MESSAGE SIGNALS
# =============================================================================

@dataclass(frozen=True)
class MessageSignals:
    """Numbers derived from one message; the text itself is not kept."""
    length: int
    word_count: int
    sentiment: int           # +1 positive, -1 negative, 0 neutral
    has_question: bool
    has_exclamation: bool
    emoji_count: int
    formality: float
    technical_terms: int
    word_positions: FrozenSet[int] = field(default_factory=frozenset, repr=False)


def extract_signals(text: str, sketch_key: bytes) -> MessageSignals:
    """Derive MessageSignals from transient text."""
    has_positive = POSITIVE_PATTERN.search(text) is not None
    has_negative = NEGATIVE_PATTERN.search(text) is not None
    if has_positive and not has_negative:
        sentiment = 1
    elif has_negative and not has_positive:
        sentiment = -1
    else:
        sentiment = 0

    tokens = text.split()
    if tokens:
        formality = min(100.0, sum(len(t) for t in tokens) / len(tokens) * 10)
    else:
        formality = 0.0
    if INFORMAL_PATTERN.search(text):
        formality = max(0.0, formality - 30)

    words = WORD_PATTERN.findall(text.lower())

    return MessageSignals(
        length=len(text),
        word_count=len(tokens),
        sentiment=sentiment,
        has_question="?" in text,
        has_exclamation="!" in text,
        emoji_count=len(EMOJI_PATTERN.findall(text)),
        formality=formality,
        technical_terms=len(TECHNICAL_PATTERN.findall(text)),
        word_positions=frozenset(sketch_position(w, sketch_key) for w in words),
    )


def conversation_token(conversation_id: str, key: bytes) -> bytes:
    """Keyed digest standing in for a conversation id inside a window."""
    return hashlib.blake2b(conversation_id.encode('utf-8'), key=key, digest_size=16).digest()


def latency_bucket(seconds: float) -> int:
    return bisect.bisect_right(LATENCY_BUCKET_EDGES, seconds)


# =============================================================================
# RUNNING WINDOW
# =============================================================================

class RunningWindow:
    """
    Mutable accumulator for one open (subject, channel, period).

    Not thread-safe; the aggregator holds the per-window lock around
    every call.
    """

    def __init__(
        self,
        subject_id: str,
        organization_id: str,
        channel: ChannelType,
        period: PeriodKey
    ):
        self.subject_id = subject_id
        self.organization_id = organization_id
        self.channel = channel
        self.period = period

        self.message_count = 0
        self.word_count = 0
        self.length_mean = 0.0
        self.length_m2 = 0.0
        self.length_min = 0
        self.length_max = 0
        self.sentiment = [0, 0, 0]   # positive, neutral, negative
        self.question_count = 0
        self.exclamation_count = 0
        self.emoji_count = 0
        self.formality_sum = 0.0
        self.technical_term_count = 0
        self.sketch = 0
        self.conversations_initiated = 0
        self.loose_participations = 0
        self.conversations: Set[bytes] = set()
        self.latency_count = 0
        self.latency_mean = 0.0
        self.latency_m2 = 0.0
        self.latency_buckets: List[int] = [0] * (len(LATENCY_BUCKET_EDGES) + 1)

    def update(
        self,
        signals: MessageSignals,
        conversation: Optional[bytes] = None,
        starts_conversation: bool = False,
        latency_seconds: Optional[float] = None
    ) -> None:
        self.message_count += 1
        n = self.message_count

        # Welford update of message length moments
        delta = signals.length - self.length_mean
        self.length_mean += delta / n
        self.length_m2 += delta * (signals.length - self.length_mean)
        if n == 1:
            self.length_min = self.length_max = signals.length
        else:
            self.length_min = min(self.length_min, signals.length)
            self.length_max = max(self.length_max, signals.length)

        self.word_count += signals.word_count
        self.sentiment[{1: 0, 0: 1, -1: 2}[signals.sentiment]] += 1
        self.question_count += int(signals.has_question)
        self.exclamation_count += int(signals.has_exclamation)
        self.emoji_count += signals.emoji_count
        self.formality_sum += signals.formality
        self.technical_term_count += signals.technical_terms
        for position in signals.word_positions:
            self.sketch |= 1 << position

        if starts_conversation:
            self.conversations_initiated += 1
        if conversation is not None:
            self.conversations.add(conversation)
        else:
            self.loose_participations += 1

        if latency_seconds is not None:
            self.latency_count += 1
            d = latency_seconds - self.latency_mean
            self.latency_mean += d / self.latency_count
            self.latency_m2 += d * (latency_seconds - self.latency_mean)
            self.latency_buckets[latency_bucket(latency_seconds)] += 1

    def seal(self, sealed_at: datetime) -> AggregationWindow:
        """Freeze into an immutable, statistics-only window."""
        return AggregationWindow(
            window_id=window_id_for(self.subject_id, self.channel, self.period),
            subject_id=self.subject_id,
            organization_id=self.organization_id,
            channel=self.channel,
            period=self.period,
            sealed_at=sealed_at,
            message_count=self.message_count,
            word_count=self.word_count,
            length_mean=self.length_mean,
            length_m2=self.length_m2,
            length_min=self.length_min,
            length_max=self.length_max,
            sentiment_positive=self.sentiment[0],
            sentiment_neutral=self.sentiment[1],
            sentiment_negative=self.sentiment[2],
            question_count=self.question_count,
            exclamation_count=self.exclamation_count,
            emoji_count=self.emoji_count,
            formality_sum=self.formality_sum,
            technical_term_count=self.technical_term_count,
            vocabulary_estimate=estimate_distinct(self.sketch),
            vocabulary_sketch=self.sketch,
            conversations_initiated=self.conversations_initiated,
            conversations_participated=len(self.conversations) + self.loose_participations,
            latency_count=self.latency_count,
            latency_mean=self.latency_mean,
            latency_m2=self.latency_m2,
            latency_buckets=tuple(self.latency_buckets),
            channels=(self.channel,),
        )


# =============================================================================
# MERGING
# =============================================================================

def _merge_moments(n_a: int, mean_a: float, m2_a: float,
                   n_b: int, mean_b: float, m2_b: float):
    n = n_a + n_b
    if n == 0:
        return 0.0, 0.0
    delta = mean_b - mean_a
    mean = mean_a + delta * n_b / n
    m2 = m2_a + m2_b + delta * delta * n_a * n_b / n
    return mean, m2


def merge_windows(
    windows: Iterable[AggregationWindow],
    sealed_at: Optional[datetime] = None
) -> AggregationWindow:
    """
    Combine sealed windows of one subject and period across channels.

    A single window is returned unchanged.
    """
    items = sorted(windows, key=lambda w: w.channel.value)
    if not items:
        raise ValueError("Nothing to merge")
    if len(items) == 1:
        return items[0]

    first = items[0]
    if any(w.subject_id != first.subject_id or w.period != first.period for w in items):
        raise ValueError("Windows belong to different subjects or periods")

    merged = first
    for other in items[1:]:
        length_mean, length_m2 = _merge_moments(
            merged.message_count, merged.length_mean, merged.length_m2,
            other.message_count, other.length_mean, other.length_m2,
        )
        latency_mean, latency_m2 = _merge_moments(
            merged.latency_count, merged.latency_mean, merged.latency_m2,
            other.latency_count, other.latency_mean, other.latency_m2,
        )
        non_empty = [w for w in (merged, other) if w.message_count > 0]
        sketch = merged.vocabulary_sketch | other.vocabulary_sketch
        merged = replace(
            merged,
            message_count=merged.message_count + other.message_count,
            word_count=merged.word_count + other.word_count,
            length_mean=length_mean,
            length_m2=length_m2,
            length_min=min((w.length_min for w in non_empty), default=0),
            length_max=max((w.length_max for w in non_empty), default=0),
            sentiment_positive=merged.sentiment_positive + other.sentiment_positive,
            sentiment_neutral=merged.sentiment_neutral + other.sentiment_neutral,
            sentiment_negative=merged.sentiment_negative + other.sentiment_negative,
            question_count=merged.question_count + other.question_count,
            exclamation_count=merged.exclamation_count + other.exclamation_count,
            emoji_count=merged.emoji_count + other.emoji_count,
            formality_sum=merged.formality_sum + other.formality_sum,
            technical_term_count=merged.technical_term_count + other.technical_term_count,
            vocabulary_sketch=sketch,
            vocabulary_estimate=estimate_distinct(sketch),
            conversations_initiated=merged.conversations_initiated + other.conversations_initiated,
            conversations_participated=merged.conversations_participated + other.conversations_participated,
            latency_count=merged.latency_count + other.latency_count,
            latency_mean=latency_mean,
            latency_m2=latency_m2,
            latency_buckets=tuple(
                a + b for a, b in zip(merged.latency_buckets, other.latency_buckets)
            ),
            channels=merged.channels + other.channels,
        )

    return replace(
        merged,
        window_id=window_id_for(first.subject_id, ChannelType.COMBINED, first.period),
        channel=ChannelType.COMBINED,
        sealed_at=sealed_at or max(w.sealed_at for w in items),
        channels=tuple(sorted(set(merged.channels), key=lambda c: c.value)),
    )
