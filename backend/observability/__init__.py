"""
Observability & Audit Layer

RESPONSIBILITY: Audit trail and metrics for every engine layer
ALLOWED INPUTS: Audit entries and metric points from other layers
OUTPUTS: AuditLog, Metrics, audit reports

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Make decisions based on logged data
- Record message text in any form

BOUNDARY ENFORCEMENT:
=====================
- Receives immutable entries (not references to live state)
- NEVER modifies events or system state
- Provides read-only access to logs and metrics
- Every collector is safe to call from worker threads
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import Enum
import hashlib
import itertools
import logging
import threading

from ..contracts.base import Timestamp, TimeRange
from ..contracts.events import AuditLogEntry, AuditEventType, MetricPoint

logger = logging.getLogger(__name__)

LAYERS = ('aggregation', 'models', 'validator', 'ledger', 'engine')


# =============================================================================
# LOG COLLECTORS (One per layer)
# =============================================================================

class LogCollector:
    """
    Append-only audit collector for one layer.
    """

    def __init__(self, layer_name: str):
        self._layer_name = layer_name
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def collect(self, entry: AuditLogEntry):
        """Collect an audit entry (append-only)."""
        with self._lock:
            self._entries.append(entry)

    def get_entries(
        self,
        time_range: Optional[TimeRange] = None,
        event_type: Optional[AuditEventType] = None
    ) -> List[AuditLogEntry]:
        """Get entries, optionally filtered."""
        with self._lock:
            entries = list(self._entries)

        if time_range:
            entries = [e for e in entries if time_range.contains(e.timestamp)]

        if event_type:
            entries = [e for e in entries if e.event_type == event_type]

        return entries

    @property
    def layer_name(self) -> str:
        return self._layer_name

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricType(Enum):
    """Types of metrics collected."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMING = "timing"


@dataclass
class MetricDefinition:
    """Definition of a metric to collect."""
    name: str
    metric_type: MetricType
    description: str
    labels: Tuple[str, ...] = field(default_factory=tuple)


class MetricsCollector:
    """
    Append-only time series of metric points.

    Supports standard metric types: counter, gauge, histogram, timing.
    """

    def __init__(self):
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._definitions: Dict[str, MetricDefinition] = {}
        self._lock = threading.Lock()
        self._register_default_metrics()

    def _register_default_metrics(self):
        defaults = [
            MetricDefinition(
                name="events_accepted_total",
                metric_type=MetricType.COUNTER,
                description="Events folded into a window",
                labels=("channel",)
            ),
            MetricDefinition(
                name="events_rejected_total",
                metric_type=MetricType.COUNTER,
                description="Events dropped at ingestion",
                labels=("reason",)
            ),
            MetricDefinition(
                name="windows_sealed_total",
                metric_type=MetricType.COUNTER,
                description="Windows sealed"
            ),
            MetricDefinition(
                name="tier1_failures_total",
                metric_type=MetricType.COUNTER,
                description="Tier-1 runner failures",
                labels=("model_kind",)
            ),
            MetricDefinition(
                name="escalations_total",
                metric_type=MetricType.COUNTER,
                description="Escalation decisions",
                labels=("outcome",)
            ),
            MetricDefinition(
                name="tokens_spent",
                metric_type=MetricType.COUNTER,
                description="Validator tokens committed",
                labels=("organization_id",)
            ),
            MetricDefinition(
                name="validator_latency_ms",
                metric_type=MetricType.TIMING,
                description="Validator invocation time in milliseconds"
            ),
            MetricDefinition(
                name="run_duration_ms",
                metric_type=MetricType.TIMING,
                description="Fusion run duration in milliseconds",
                labels=("status",)
            ),
        ]

        for definition in defaults:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        with self._lock:
            self._definitions[definition.name] = definition
            self._metrics.setdefault(definition.name, [])

    def record(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Record a metric data point."""
        label_tuple = tuple(sorted(labels.items())) if labels else ()
        point = MetricPoint(
            metric_name=metric_name,
            value=value,
            timestamp=Timestamp.now(),
            labels=label_tuple
        )
        with self._lock:
            self._metrics.setdefault(metric_name, []).append(point)

    def get_metric(
        self,
        metric_name: str,
        time_range: Optional[TimeRange] = None
    ) -> List[MetricPoint]:
        """Get metric data points, optionally filtered by time range."""
        with self._lock:
            points = list(self._metrics.get(metric_name, []))

        if time_range:
            points = [p for p in points if time_range.contains(p.timestamp)]

        return points

    def get_latest(self, metric_name: str) -> Optional[MetricPoint]:
        with self._lock:
            points = self._metrics.get(metric_name, [])
            return points[-1] if points else None

    def total(self, metric_name: str, **labels: str) -> float:
        """Sum of a metric, optionally restricted to matching labels."""
        wanted = set(labels.items())
        return sum(
            p.value for p in self.get_metric(metric_name)
            if wanted.issubset(set(p.labels))
        )

    def compute_aggregates(
        self,
        metric_name: str,
        time_range: Optional[TimeRange] = None
    ) -> Dict[str, float]:
        """Compute aggregate statistics for a metric."""
        points = self.get_metric(metric_name, time_range)

        if not points:
            return {}

        values = [p.value for p in points]

        return {
            'count': len(values),
            'sum': sum(values),
            'min': min(values),
            'max': max(values),
            'avg': sum(values) / len(values),
        }


# =============================================================================
# OBSERVABILITY ENGINE
# =============================================================================

@dataclass
class ObservabilityConfig:
    """Configuration for observability engine."""
    enable_metrics: bool = True
    enable_audit: bool = True


class ObservabilityEngine:
    """
    Central Observability Engine.

    BOUNDARY ENFORCEMENT:
    - ONLY observes, never modifies
    - Provides read-only access to collected data
    """

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self._config = config or ObservabilityConfig()
        self._collectors: Dict[str, LogCollector] = {
            layer: LogCollector(layer) for layer in LAYERS
        }
        self._metrics = MetricsCollector() if self._config.enable_metrics else None
        self._sequence = itertools.count()

    def collect_audit(self, entry: AuditLogEntry):
        """Collect an audit log entry from any layer."""
        if not self._config.enable_audit:
            return
        collector = self._collectors.get(entry.layer)
        if collector:
            collector.collect(entry)
        else:
            logger.debug("Audit entry for unknown layer %s dropped", entry.layer)

    def log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        outcome: str = "success",
        details: str = "",
        layer: str = "engine",
        event_type: AuditEventType = AuditEventType.SYSTEM,
        entity_type: Optional[str] = None,
        **metadata: str
    ) -> AuditLogEntry:
        """Helper to log audit entry directly."""
        now = Timestamp.now()
        seq = next(self._sequence)
        entry_id = hashlib.sha256(
            f"{layer}_{action}|{entity_id}|{now.value.timestamp()}|{seq}".encode()
        ).hexdigest()[:16]

        entry = AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=event_type,
            timestamp=now,
            layer=layer,
            action=action,
            entity_id=entity_id,
            entity_type=entity_type,
            metadata=(("outcome", outcome), ("details", details))
            + tuple(sorted((k, str(v)) for k, v in metadata.items()))
        )
        self.collect_audit(entry)
        return entry

    def collect_metric(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Collect a metric data point."""
        if self._metrics:
            self._metrics.record(metric_name, value, labels)

    def get_unified_log(
        self,
        time_range: Optional[TimeRange] = None,
        layers: Optional[List[str]] = None
    ) -> List[AuditLogEntry]:
        """Get unified log from all or specified layers."""
        target_layers = layers or list(self._collectors.keys())

        all_entries = []
        for layer_name in target_layers:
            collector = self._collectors.get(layer_name)
            if collector:
                all_entries.extend(collector.get_entries(time_range=time_range))

        all_entries.sort(key=lambda e: e.timestamp.value)
        return all_entries

    def get_layer_log(
        self,
        layer_name: str,
        time_range: Optional[TimeRange] = None,
        event_type: Optional[AuditEventType] = None
    ) -> List[AuditLogEntry]:
        """Get log for a specific layer."""
        collector = self._collectors.get(layer_name)
        if not collector:
            return []
        return collector.get_entries(time_range=time_range, event_type=event_type)

    def get_metrics(self) -> Optional[MetricsCollector]:
        """Get metrics collector (read-only access)."""
        return self._metrics

    def generate_audit_report(
        self,
        time_range: Optional[TimeRange] = None
    ) -> Dict:
        """Generate audit report aggregated by layer and event type."""
        entries = self.get_unified_log(time_range=time_range)

        by_layer: Dict[str, int] = {}
        by_type: Dict[str, int] = {}

        for entry in entries:
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
            by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1

        return {
            'total_entries': len(entries),
            'by_layer': by_layer,
            'by_event_type': by_type,
            'time_range': {
                'start': entries[0].timestamp.to_iso() if entries else None,
                'end': entries[-1].timestamp.to_iso() if entries else None,
            },
            'generated_at': Timestamp.now().to_iso()
        }


__all__ = [
    'LogCollector', 'MetricType', 'MetricDefinition', 'MetricsCollector',
    'ObservabilityConfig', 'ObservabilityEngine', 'LAYERS',
]
