"""
Aggregator

Folds communication events into per-(subject, channel, period) running
windows and seals them into immutable AggregationWindows.

LOCKING:
========
- A fixed set of striped locks guards the window registry; a subject
  always maps to the same stripe.
- Each open window has its own lock around updates and sealing.
- Lock order is stripe -> window, never the reverse.

PRIVACY:
========
Event text is read once by extract_signals() and is not referenced
afterwards. It never reaches a log line, an audit entry or an exception.
"""

from __future__ import annotations
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple, Union
import logging
import secrets
import threading
import zlib

from models.contracts import (
    AggregationWindow, ChannelType, ConsentDenied, IngestionError, PERIOD_ANCHOR, PeriodKey,
    WindowAlreadySealed,
)

from ..contracts.events import AuditEventType, CommunicationEvent
from ..observability import ObservabilityEngine
from .statistics import RunningWindow, conversation_token, extract_signals, merge_windows

logger = logging.getLogger(__name__)

WindowKey = Tuple[str, ChannelType, PeriodKey]
EventLike = Union[CommunicationEvent, Mapping[str, Any]]


class ConsentProvider(Protocol):
    """Identity collaborator consulted before a window is created or extended."""

    def get_consent(self, subject_id: str) -> bool:
        ...


class StaticConsent:
    """Consent table: everyone consents except the listed subjects."""

    def __init__(self, denied: Iterable[str] = ()):
        self._denied = set(denied)
        self._lock = threading.Lock()

    def get_consent(self, subject_id: str) -> bool:
        with self._lock:
            return subject_id not in self._denied

    def revoke(self, subject_id: str):
        with self._lock:
            self._denied.add(subject_id)

    def grant(self, subject_id: str):
        with self._lock:
            self._denied.discard(subject_id)


@dataclass(frozen=True)
class AggregatorConfig:
    period_length: timedelta = timedelta(days=7)
    period_anchor: datetime = PERIOD_ANCHOR
    lock_stripes: int = 64
    # handed-off windows are forgotten this long after their period ends
    archive_retention: timedelta = timedelta(weeks=8)

    def __post_init__(self):
        if self.period_length <= timedelta(0):
            raise ValueError("period_length must be positive")
        if self.archive_retention <= timedelta(0):
            raise ValueError("archive_retention must be positive")
        if self.lock_stripes < 1:
            raise ValueError("lock_stripes must be at least 1")


@dataclass
class IngestionSummary:
    """Outcome of a stream ingest."""
    accepted: int = 0
    rejected: Dict[str, int] = field(default_factory=dict)

    @property
    def rejected_total(self) -> int:
        return sum(self.rejected.values())

    def reject(self, reason: str):
        self.rejected[reason] = self.rejected.get(reason, 0) + 1


class _OpenWindow:
    __slots__ = ('lock', 'running', 'closed')

    def __init__(self, running: RunningWindow):
        self.lock = threading.Lock()
        self.running = running
        self.closed = False


class Aggregator:
    """
    Incremental, privacy-safe window builder.

    USAGE:
    ======
    >>> aggregator = Aggregator(consent_provider)
    >>> period = aggregator.ingest(event)
    >>> aggregator.seal_due(now)
    [('subject-1', PeriodKey(...))]
    >>> window = aggregator.take_sealed('subject-1', period)
    """

    def __init__(
        self,
        consent: ConsentProvider,
        config: Optional[AggregatorConfig] = None,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._consent = consent
        self._config = config or AggregatorConfig()
        self._observability = observability
        self._sketch_key = secrets.token_bytes(32)

        self._stripes = [threading.Lock() for _ in range(self._config.lock_stripes)]
        # one open-window registry per stripe
        self._open: List[Dict[WindowKey, _OpenWindow]] = [
            {} for _ in range(self._config.lock_stripes)
        ]
        self._sealed: Dict[Tuple[str, PeriodKey], Dict[ChannelType, AggregationWindow]] = {}
        # sealed windows kept as audit artifacts after they are taken
        self._archive: Dict[WindowKey, AggregationWindow] = {}
        self._taken: Set[Tuple[str, PeriodKey]] = set()
        self._organizations: Dict[str, str] = {}
        # periods ending at or before this were pruned and accept no events
        self._pruned_before: Optional[datetime] = None

    @property
    def config(self) -> AggregatorConfig:
        return self._config

    def _shard(self, subject_id: str) -> int:
        return zlib.crc32(subject_id.encode('utf-8')) % len(self._stripes)

    def _stripe(self, subject_id: str) -> threading.Lock:
        return self._stripes[self._shard(subject_id)]

    def _registry(self, subject_id: str) -> Dict[WindowKey, _OpenWindow]:
        return self._open[self._shard(subject_id)]

    def period_for(self, timestamp: datetime) -> PeriodKey:
        return PeriodKey.containing(
            timestamp, self._config.period_length, self._config.period_anchor
        )

    def organization_of(self, subject_id: str) -> str:
        with self._stripe(subject_id):
            return self._organizations.get(subject_id, "default")

    # =========================================================================
    # INGESTION
    # =========================================================================

    def ingest(self, event: EventLike) -> PeriodKey:
        """
        Fold one event into its open window.

        Returns the period the event was counted in.

        Raises:
            IngestionError: malformed event, or its window is already sealed
            ConsentDenied: subject has not consented; their open windows
                are discarded and the event is dropped
        """
        if not isinstance(event, CommunicationEvent):
            event = CommunicationEvent.from_payload(event)

        subject_id = event.subject_id
        if not self._consent.get_consent(subject_id):
            discarded = self.discard_subject(subject_id)
            self._audit(
                "event_dropped", subject_id, AuditEventType.INGESTION,
                outcome="consent_denied", discarded_windows=str(discarded),
            )
            raise ConsentDenied("Subject has not consented", subject_id=subject_id)

        channel = event.channel
        organization_id = event.organization_id
        period = self.period_for(event.timestamp)
        key = (subject_id, channel, period)

        signals = extract_signals(event.transient_text, self._sketch_key)
        conversation = (
            conversation_token(event.conversation_id, self._sketch_key)
            if event.conversation_id else None
        )
        starts_conversation = event.starts_conversation
        latency = event.response_latency_seconds
        del event

        with self._stripe(subject_id):
            if key in self._archive:
                raise WindowAlreadySealed(
                    "Window already sealed", subject_id=subject_id, period=period.label
                )
            if self._pruned_before is not None and period.end <= self._pruned_before:
                raise WindowAlreadySealed(
                    "Period is past retention", subject_id=subject_id, period=period.label
                )
            self._organizations[subject_id] = organization_id
            registry = self._registry(subject_id)
            entry = registry.get(key)
            if entry is None:
                entry = _OpenWindow(RunningWindow(subject_id, organization_id, channel, period))
                registry[key] = entry

        with entry.lock:
            if entry.closed:
                raise WindowAlreadySealed(
                    "Window closed during ingest", subject_id=subject_id, period=period.label
                )
            entry.running.update(
                signals,
                conversation=conversation,
                starts_conversation=starts_conversation,
                latency_seconds=latency,
            )

        self._metric("events_accepted_total", 1, channel=channel.value)
        return period

    def ingest_stream(self, events: Iterable[EventLike]) -> IngestionSummary:
        """Ingest many events; malformed and unconsented ones are logged and skipped."""
        summary = IngestionSummary()
        for event in events:
            try:
                self.ingest(event)
            except ConsentDenied as exc:
                logger.info("Event dropped: %s (%s)", exc, exc.context.get('subject_id'))
                summary.reject(exc.code.value)
                self._metric("events_rejected_total", 1, reason=exc.code.value)
            except IngestionError as exc:
                logger.warning("Skipping malformed event: %s", exc)
                summary.reject(exc.code.value)
                self._metric("events_rejected_total", 1, reason=exc.code.value)
            else:
                summary.accepted += 1
        return summary

    def discard_subject(self, subject_id: str) -> int:
        """Drop every open window of a subject without sealing it."""
        discarded = []
        with self._stripe(subject_id):
            registry = self._registry(subject_id)
            for key in [k for k in registry if k[0] == subject_id]:
                discarded.append(registry.pop(key))
        for entry in discarded:
            with entry.lock:
                entry.closed = True
        if discarded:
            logger.info("Discarded %d open window(s) for %s", len(discarded), subject_id)
        return len(discarded)

    # =========================================================================
    # SEALING
    # =========================================================================

    def seal_window(
        self,
        subject_id: str,
        channel: ChannelType,
        period: PeriodKey,
        sealed_at: Optional[datetime] = None
    ) -> AggregationWindow:
        """
        Seal one window. Sealing an already sealed window returns it
        unchanged; sealing a window that never saw an event yields an
        empty window.
        """
        key = (subject_id, channel, period)
        sealed_at = sealed_at or datetime.now(timezone.utc)

        with self._stripe(subject_id):
            existing = self._archive.get(key)
            if existing is not None:
                return existing

            entry = self._registry(subject_id).pop(key, None)
            if entry is not None:
                with entry.lock:
                    entry.closed = True
                    window = entry.running.seal(sealed_at)
            else:
                window = AggregationWindow.empty(
                    subject_id, self._organizations.get(subject_id, "default"),
                    channel, period, sealed_at,
                )

            self._archive[key] = window
            if (subject_id, period) not in self._taken:
                self._sealed.setdefault((subject_id, period), {})[channel] = window

        self._metric("windows_sealed_total", 1)
        self._audit(
            "window_sealed", window.window_id, AuditEventType.WINDOW,
            entity_type="aggregation_window",
            channel=channel.value,
            period=period.label,
            message_count=str(window.message_count),
            content_hash=window.content_hash(),
        )
        logger.debug("Sealed %s (%d messages)", window.window_id, window.message_count)
        return window

    def seal_subject_period(
        self,
        subject_id: str,
        period: PeriodKey,
        sealed_at: Optional[datetime] = None
    ) -> List[AggregationWindow]:
        """Seal every open channel window of one subject and period."""
        with self._stripe(subject_id):
            channels = sorted(
                {k[1] for k in self._registry(subject_id)
                 if k[0] == subject_id and k[2] == period},
                key=lambda c: c.value,
            )
        return [self.seal_window(subject_id, c, period, sealed_at) for c in channels]

    def seal_due(self, now: Optional[datetime] = None) -> List[Tuple[str, PeriodKey]]:
        """
        Seal every open window whose period has ended.

        Returns the (subject, period) pairs that became ready for fusion.
        """
        now = now or datetime.now(timezone.utc)
        due: List[WindowKey] = []
        for stripe, registry in zip(self._stripes, self._open):
            with stripe:
                due.extend(k for k in registry if k[2].has_ended(now))

        ready = []
        for subject_id, channel, period in due:
            self.seal_window(subject_id, channel, period, sealed_at=now)
            if (subject_id, period) not in ready:
                ready.append((subject_id, period))
        ready.sort(key=lambda item: (item[1].start, item[0]))
        self.prune_archive(now)
        return ready

    def take_sealed(self, subject_id: str, period: PeriodKey) -> Optional[AggregationWindow]:
        """
        Hand the merged sealed window of (subject, period) to fusion.

        Returns None on every call after the first, or when nothing was sealed.
        """
        with self._stripe(subject_id):
            if (subject_id, period) in self._taken:
                return None
            windows = self._sealed.pop((subject_id, period), None)
            if not windows:
                return None
            self._taken.add((subject_id, period))
        return merge_windows(windows.values())

    def is_sealed(self, subject_id: str, channel: ChannelType, period: PeriodKey) -> bool:
        with self._stripe(subject_id):
            return (subject_id, channel, period) in self._archive

    def sealed_window(
        self, subject_id: str, channel: ChannelType, period: PeriodKey
    ) -> Optional[AggregationWindow]:
        """Audit copy of a sealed window."""
        with self._stripe(subject_id):
            return self._archive.get((subject_id, channel, period))

    def prune_archive(self, now: Optional[datetime] = None) -> int:
        """
        Forget handed-off windows whose period ended before the retention
        horizon. Windows still waiting in take_sealed() are kept.

        Events for a pruned period are rejected from then on.
        Returns the number of archived windows evicted.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self._config.archive_retention

        with ExitStack() as stack:
            for stripe in self._stripes:
                stack.enter_context(stripe)

            expired = [
                k for k in self._archive
                if k[2].end <= cutoff and (k[0], k[2]) not in self._sealed
            ]
            for key in expired:
                del self._archive[key]
            self._taken = {k for k in self._taken if k[1].end > cutoff}

            active = {k[0] for k in self._archive}
            active.update(k[0] for k in self._sealed)
            for registry in self._open:
                active.update(k[0] for k in registry)
            for subject_id in [s for s in self._organizations if s not in active]:
                del self._organizations[subject_id]

            if self._pruned_before is None or cutoff > self._pruned_before:
                self._pruned_before = cutoff

        if expired:
            self._metric("windows_pruned_total", len(expired))
            logger.debug("Pruned %d archived window(s) before %s", len(expired), cutoff)
        return len(expired)

    @property
    def archived_window_count(self) -> int:
        return len(self._archive)

    @property
    def open_window_count(self) -> int:
        return sum(len(registry) for registry in self._open)

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================

    def _metric(self, name: str, value: float, **labels: str):
        if self._observability:
            self._observability.collect_metric(name, value, labels or None)

    def _audit(self, action: str, entity_id: str, event_type: AuditEventType, **metadata: str):
        if self._observability:
            self._observability.log_audit(
                action=action,
                entity_id=entity_id,
                layer="aggregation",
                event_type=event_type,
                **metadata
            )
