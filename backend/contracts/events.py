"""
Layer-Specific Contracts

Events crossing backend layers: inbound communication events, audit
entries and metric points.

PRIVACY:
========
CommunicationEvent is the ONLY type that ever holds message text.
Its text field is excluded from repr and comparison, and the event is
dropped by the aggregator before ingest() returns.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

from models.contracts import ChannelType, IngestionError

from .base import Timestamp


# =============================================================================
# INGESTION CONTRACTS
# =============================================================================

def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _parse_time(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        return Timestamp(value).value
    if isinstance(value, str) and value:
        try:
            return Timestamp.from_iso(value).value
        except ValueError:
            raise IngestionError(f"Unparseable {name}", field=name)
    raise IngestionError(f"Missing or invalid {name}", field=name)


@dataclass(frozen=True)
class CommunicationEvent:
    """
    One message as delivered by the transport.

    transient_text is consumed by a single aggregator update and never
    stored, logged or returned.
    """
    subject_id: str
    channel: ChannelType
    timestamp: datetime
    transient_text: str = field(default="", repr=False, compare=False)
    organization_id: str = "default"
    conversation_id: Optional[str] = None
    replied_to_at: Optional[datetime] = None
    starts_conversation: bool = False

    def __post_init__(self):
        if not self.subject_id or not isinstance(self.subject_id, str):
            raise IngestionError("Event has no subject", field="subject_id")
        if not isinstance(self.channel, ChannelType):
            raise IngestionError("Unknown channel", field="channel")
        if self.channel == ChannelType.COMBINED:
            raise IngestionError("Events cannot target the combined channel", field="channel")
        if not isinstance(self.timestamp, datetime):
            raise IngestionError("Missing or invalid timestamp", field="timestamp")
        if self.replied_to_at is not None and not isinstance(self.replied_to_at, datetime):
            raise IngestionError("Missing or invalid replied_to_at", field="replied_to_at")
        if not isinstance(self.transient_text, str):
            raise IngestionError("Event text must be a string", field="transient_text")
        if not isinstance(self.organization_id, str) or not self.organization_id:
            raise IngestionError("Invalid organization", field="organization_id")
        if self.conversation_id is not None and not isinstance(self.conversation_id, str):
            raise IngestionError("Conversation id must be a string", field="conversation_id")
        object.__setattr__(self, 'timestamp', Timestamp(self.timestamp).value)
        if self.replied_to_at is not None:
            object.__setattr__(self, 'replied_to_at', Timestamp(self.replied_to_at).value)

    @property
    def response_latency_seconds(self) -> Optional[float]:
        if self.replied_to_at is None:
            return None
        latency = (self.timestamp - self.replied_to_at).total_seconds()
        return latency if latency >= 0 else None

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> CommunicationEvent:
        """
        Parse a transport payload (camelCase or snake_case keys).

        Raises IngestionError on missing subject, channel or timestamp.
        """
        if not isinstance(payload, Mapping):
            raise IngestionError("Event payload must be a mapping")

        subject_id = _pick(payload, 'subjectId', 'subject_id', 'senderId', 'sender_id')
        if not subject_id or not isinstance(subject_id, str):
            raise IngestionError("Event has no subject", field="subject_id")

        raw_channel = _pick(payload, 'channel', 'channelType', 'channel_type')
        try:
            channel = raw_channel if isinstance(raw_channel, ChannelType) else ChannelType(raw_channel)
        except ValueError:
            raise IngestionError("Unknown channel", field="channel")

        timestamp = _parse_time(_pick(payload, 'timestamp', 'createdAt', 'created_at'), "timestamp")

        replied = _pick(payload, 'repliedToAt', 'replied_to_at')
        replied_to_at = _parse_time(replied, "replied_to_at") if replied is not None else None

        text = _pick(payload, 'transientText', 'transient_text', 'text', 'content') or ""
        if not isinstance(text, str):
            raise IngestionError("Event text must be a string", field="transient_text")

        conversation_id = _pick(payload, 'conversationId', 'conversation_id', 'threadId')
        if conversation_id is not None and not isinstance(conversation_id, str):
            raise IngestionError("Conversation id must be a string", field="conversation_id")

        return CommunicationEvent(
            subject_id=subject_id,
            channel=channel,
            timestamp=timestamp,
            transient_text=text,
            organization_id=str(_pick(payload, 'organizationId', 'organization_id') or "default"),
            conversation_id=conversation_id,
            replied_to_at=replied_to_at,
            starts_conversation=bool(_pick(payload, 'startsConversation', 'starts_conversation')),
        )


# =============================================================================
# OBSERVABILITY CONTRACTS
# =============================================================================

class AuditEventType(Enum):
    """Explicit audit event types."""
    INGESTION = "ingestion"
    WINDOW = "window"
    MODEL = "model"
    ESCALATION = "escalation"
    BUDGET = "budget"
    RUN = "run"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: Timestamp
    layer: str  # Which layer generated this
    action: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    parent_entry_id: Optional[str] = None


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: Timestamp
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
