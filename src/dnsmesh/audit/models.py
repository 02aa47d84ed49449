"""
Audit database models.

SQLAlchemy ORM model for the reconciliation event trail.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class EventType(str, Enum):
    """Severity of a recorded event."""

    NORMAL = "Normal"
    WARNING = "Warning"


class RecordedEvent(Base):
    """
    Reconciliation event.

    One row per event emitted against a policy object.
    Append-only: no updates or deletes allowed.
    """

    __tablename__ = "events"

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, default=_utc_now, nullable=False, index=True)
    namespace = Column(String(253), nullable=False, index=True)
    name = Column(String(253), nullable=False, index=True)
    event_type = Column(String(16), nullable=False)
    reason = Column(String(128), nullable=False, index=True)
    message = Column(Text, nullable=True)
    generation = Column(Integer, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "namespace": self.namespace,
            "name": self.name,
            "event_type": self.event_type,
            "reason": self.reason,
            "message": self.message,
            "generation": self.generation,
        }


# Append-only triggers, executed one statement at a time
APPEND_ONLY_TRIGGERS = (
    """
    CREATE TRIGGER IF NOT EXISTS no_delete_events
    BEFORE DELETE ON events
    BEGIN
        SELECT RAISE(ABORT, 'Deletion not permitted on event log');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS no_update_events
    BEFORE UPDATE ON events
    BEGIN
        SELECT RAISE(ABORT, 'Updates not permitted on event log');
    END
    """,
)
