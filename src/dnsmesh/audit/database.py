"""
Audit Database Operations.

Provides append-only storage and queries for reconciliation events, so
operators can see why a policy is not being served long after the
controller logs have rotated.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, func, text
from sqlalchemy.orm import Session, sessionmaker

from dnsmesh.audit.models import (
    APPEND_ONLY_TRIGGERS,
    Base,
    EventType,
    RecordedEvent,
)


logger = logging.getLogger(__name__)


class AuditDatabase:
    """
    High-level interface for the event audit trail.

    Safe to share between reconciler worker threads.
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        create_if_missing: bool = True,
    ) -> None:
        """
        Initialize the audit database.

        Args:
            db_path: Path to SQLite database file
            wal_mode: Enable WAL mode for better concurrency
            create_if_missing: Create database if it doesn't exist
        """
        self.db_path = Path(db_path)

        if create_if_missing:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 5},
        )

        self.Session = sessionmaker(bind=self.engine)

        if create_if_missing or self.db_path.exists():
            self._init_schema()

        if wal_mode:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.commit()

    def _init_schema(self) -> None:
        """Initialize database schema and triggers."""
        Base.metadata.create_all(self.engine)

        with self.engine.connect() as conn:
            for statement in APPEND_ONLY_TRIGGERS:
                conn.execute(text(statement))
            conn.commit()

        logger.info("Database schema initialized: %s", self.db_path)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get a database session context manager.

        Yields:
            SQLAlchemy Session object
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def record_event(
        self,
        namespace: str,
        name: str,
        event_type: EventType | str,
        reason: str,
        message: str = "",
        generation: int | None = None,
    ) -> RecordedEvent:
        """
        Append an event to the trail.

        Args:
            namespace: Policy namespace
            name: Policy name
            event_type: Normal or Warning
            reason: Short machine-readable reason
            message: Human readable message
            generation: Policy generation the event refers to

        Returns:
            The stored event (detached from its session)
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        with self.session() as session:
            event = RecordedEvent(
                namespace=namespace,
                name=name,
                event_type=event_type,
                reason=reason,
                message=message,
                generation=generation,
            )
            session.add(event)
            session.flush()
            session.refresh(event)
            session.expunge(event)
            return event

    def list_events(
        self,
        namespace: str | None = None,
        name: str | None = None,
        event_type: EventType | str | None = None,
        reason: str | None = None,
        since: datetime | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[RecordedEvent]:
        """
        Query events, newest first.

        Args:
            namespace: Filter by policy namespace
            name: Filter by policy name
            event_type: Filter by severity
            reason: Filter by reason
            since: Only events at or after this time
            limit: Maximum number of results
            offset: Number of results to skip

        Returns:
            List of events
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        with self.session() as session:
            query = session.query(RecordedEvent)

            if namespace is not None:
                query = query.filter(RecordedEvent.namespace == namespace)
            if name is not None:
                query = query.filter(RecordedEvent.name == name)
            if event_type is not None:
                query = query.filter(RecordedEvent.event_type == event_type)
            if reason is not None:
                query = query.filter(RecordedEvent.reason == reason)
            if since is not None:
                query = query.filter(RecordedEvent.timestamp >= since)

            query = query.order_by(RecordedEvent.id.desc())

            if offset:
                query = query.offset(offset)
            if limit:
                query = query.limit(limit)

            events = query.all()
            for e in events:
                session.expunge(e)
            return events

    def count_events(
        self,
        namespace: str | None = None,
        name: str | None = None,
        reason: str | None = None,
    ) -> int:
        """Count events matching the given filters."""
        with self.session() as session:
            query = session.query(func.count(RecordedEvent.id))
            if namespace is not None:
                query = query.filter(RecordedEvent.namespace == namespace)
            if name is not None:
                query = query.filter(RecordedEvent.name == name)
            if reason is not None:
                query = query.filter(RecordedEvent.reason == reason)
            return query.scalar() or 0

    def get_statistics(self) -> dict[str, Any]:
        """Event counts grouped by severity and reason."""
        with self.session() as session:
            by_type = dict(
                session.query(RecordedEvent.event_type, func.count(RecordedEvent.id))
                .group_by(RecordedEvent.event_type)
                .all()
            )
            by_reason = dict(
                session.query(RecordedEvent.reason, func.count(RecordedEvent.id))
                .group_by(RecordedEvent.reason)
                .all()
            )
        return {
            "total_events": sum(by_type.values()),
            "warnings": by_type.get(EventType.WARNING.value, 0),
            "by_reason": by_reason,
        }

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
        logger.debug("Database connections closed")


def create_database(db_path: str | Path, wal_mode: bool = True) -> AuditDatabase:
    """
    Create and initialize a new audit database.

    Args:
        db_path: Path for the database file
        wal_mode: Enable WAL mode

    Returns:
        Initialized AuditDatabase instance
    """
    return AuditDatabase(db_path, wal_mode=wal_mode, create_if_missing=True)
