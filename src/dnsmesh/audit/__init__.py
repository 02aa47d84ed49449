"""
Audit trail.

Persistent, append-only storage for reconciliation events.
"""

from dnsmesh.audit.database import AuditDatabase, create_database
from dnsmesh.audit.models import Base, EventType, RecordedEvent

__all__ = [
    "AuditDatabase",
    "create_database",
    "Base",
    "EventType",
    "RecordedEvent",
]
