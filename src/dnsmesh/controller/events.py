"""
Event recording.

Events are human-visible breadcrumbs attached to a policy object
(FinalizerAdded, DuplicateHash, Reconciled, ...). Recording is
best-effort: a failing sink is logged and never fails a reconcile.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from dnsmesh.audit.models import EventType
from dnsmesh.policy.models import DnsPolicy, PolicyIdentity, format_time, utc_now

if TYPE_CHECKING:
    from dnsmesh.audit.database import AuditDatabase


logger = logging.getLogger(__name__)


@dataclass
class PolicyEvent:
    """A single event emitted against a policy."""

    identity: PolicyIdentity
    event_type: EventType
    reason: str
    message: str
    generation: int = 0
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "namespace": self.identity.namespace,
            "name": self.identity.name,
            "type": self.event_type.value,
            "reason": self.reason,
            "message": self.message,
            "generation": self.generation,
            "timestamp": format_time(self.timestamp),
        }


class EventRecorder:
    """
    Records events to the log and keeps the most recent ones in memory.

    Subclasses add durable sinks by overriding _persist().
    """

    def __init__(self, component: str = "dnspolicy-controller", max_recent: int = 256) -> None:
        self.component = component
        self._recent: deque[PolicyEvent] = deque(maxlen=max_recent)
        self._lock = threading.Lock()

    def event(
        self,
        policy: DnsPolicy,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> PolicyEvent:
        """
        Record an event against a policy.

        Args:
            policy: Object the event refers to
            event_type: Normal or Warning
            reason: Short CamelCase reason
            message: Human readable message

        Returns:
            The recorded event
        """
        recorded = PolicyEvent(
            identity=policy.identity,
            event_type=event_type,
            reason=reason,
            message=message,
            generation=policy.metadata.generation,
        )

        level = logging.WARNING if event_type == EventType.WARNING else logging.INFO
        logger.log(level, "[%s] %s %s: %s", self.component, recorded.identity, reason, message)

        with self._lock:
            self._recent.append(recorded)

        try:
            self._persist(recorded)
        except Exception as e:
            logger.warning("Failed to persist event %s for %s: %s", reason, recorded.identity, e)

        return recorded

    def normal(self, policy: DnsPolicy, reason: str, message: str) -> PolicyEvent:
        """Record a Normal event."""
        return self.event(policy, EventType.NORMAL, reason, message)

    def warning(self, policy: DnsPolicy, reason: str, message: str) -> PolicyEvent:
        """Record a Warning event."""
        return self.event(policy, EventType.WARNING, reason, message)

    def _persist(self, event: PolicyEvent) -> None:
        """Hook for durable sinks."""

    def recent(
        self,
        identity: PolicyIdentity | None = None,
        reason: str | None = None,
    ) -> list[PolicyEvent]:
        """Recent events, oldest first, optionally filtered."""
        with self._lock:
            events = list(self._recent)
        if identity is not None:
            events = [e for e in events if e.identity == identity]
        if reason is not None:
            events = [e for e in events if e.reason == reason]
        return events

    def reasons(self, identity: PolicyIdentity | None = None) -> list[str]:
        """Reasons of recent events, oldest first."""
        return [e.reason for e in self.recent(identity)]


class DatabaseEventRecorder(EventRecorder):
    """Event recorder that also appends every event to the audit database."""

    def __init__(
        self,
        db: AuditDatabase,
        component: str = "dnspolicy-controller",
        max_recent: int = 256,
    ) -> None:
        super().__init__(component=component, max_recent=max_recent)
        self.db = db

    def _persist(self, event: PolicyEvent) -> None:
        self.db.record_event(
            namespace=event.identity.namespace,
            name=event.identity.name,
            event_type=event.event_type,
            reason=event.reason,
            message=event.message,
            generation=event.generation,
        )
