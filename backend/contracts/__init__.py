"""
Contracts Module

This module defines the explicit interfaces and data transfer objects
that form the contracts between backend layers. No layer may import
implementation details from another layer.

DESIGN PRINCIPLES:
==================
1. All contract types are immutable (frozen dataclasses)
2. All contracts include explicit error states
3. All timestamps use UTC and are never mutated
4. Hash-based identity for runs and windows
"""

from .base import Error, ErrorCode, Timestamp, TimeRange
from .events import CommunicationEvent, AuditEventType, AuditLogEntry, MetricPoint
from .runs import RunStatus, RunRecord, ALLOWED_TRANSITIONS, run_id_for

__all__ = [
    'Error', 'ErrorCode', 'Timestamp', 'TimeRange',
    'CommunicationEvent', 'AuditEventType', 'AuditLogEntry', 'MetricPoint',
    'RunStatus', 'RunRecord', 'ALLOWED_TRANSITIONS', 'run_id_for',
]
