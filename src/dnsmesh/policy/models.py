"""
Policy data models.

Defines the DnsPolicy object, its status conditions, and the wire
representation served to enforcement agents.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


API_VERSION = "dns.dnspolicies.io/v1alpha1"
KIND = "DnsPolicy"

# Condition types and reasons written by the reconciler
CONDITION_READY = "Ready"


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware, second precision)."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_time(value: datetime | None) -> str | None:
    """Format a timestamp as RFC 3339 with a trailing 'Z'."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: str | datetime | None) -> datetime | None:
    """Parse an RFC 3339 timestamp."""
    if value is None or isinstance(value, datetime):
        return value
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class ConditionStatus(str, Enum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, order=True)
class PolicyIdentity:
    """Immutable (namespace, name) identity of a policy object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str, default_namespace: str = "default") -> PolicyIdentity:
        """Parse 'namespace/name' (or a bare name in the default namespace)."""
        if "/" in value:
            namespace, name = value.split("/", 1)
            return cls(namespace=namespace, name=name)
        return cls(namespace=default_namespace, name=value)


@dataclass
class Condition:
    """
    A named observation about one aspect of a policy's state.

    At most one condition per type is kept on a status.
    """

    type: str
    status: ConditionStatus
    reason: str
    message: str = ""
    observed_generation: int = 0
    last_transition_time: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": format_time(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        """Create from wire dictionary."""
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", ConditionStatus.UNKNOWN.value)),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=int(data.get("observedGeneration", 0)),
            last_transition_time=parse_time(data.get("lastTransitionTime")) or utc_now(),
        )


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """Return the condition of the given type, if present."""
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(conditions: list[Condition], new: Condition) -> bool:
    """
    Insert or update a condition by type.

    The transition time only moves when the status actually changes.

    Returns:
        True if the list was modified
    """
    for i, existing in enumerate(conditions):
        if existing.type != new.type:
            continue
        if existing.status == new.status:
            changed = (
                existing.reason != new.reason
                or existing.message != new.message
                or existing.observed_generation != new.observed_generation
            )
            existing.reason = new.reason
            existing.message = new.message
            existing.observed_generation = new.observed_generation
            return changed
        conditions[i] = new
        return True

    conditions.append(new)
    return True


@dataclass
class ObjectMeta:
    """Object metadata managed jointly by the store and the controller."""

    name: str
    namespace: str = "default"
    generation: int = 1
    resource_version: int = 0
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime | None = None
    creation_timestamp: datetime | None = None
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary, omitting empty fields."""
        result: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "generation": self.generation,
            "resourceVersion": str(self.resource_version),
        }
        if self.creation_timestamp is not None:
            result["creationTimestamp"] = format_time(self.creation_timestamp)
        if self.deletion_timestamp is not None:
            result["deletionTimestamp"] = format_time(self.deletion_timestamp)
        if self.finalizers:
            result["finalizers"] = list(self.finalizers)
        if self.labels:
            result["labels"] = dict(self.labels)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObjectMeta:
        """Create from wire dictionary."""
        if not data.get("name"):
            raise ValueError("metadata.name is required")
        return cls(
            name=data["name"],
            namespace=data.get("namespace") or "default",
            generation=int(data.get("generation", 1)),
            resource_version=int(data.get("resourceVersion", 0) or 0),
            finalizers=list(data.get("finalizers") or []),
            deletion_timestamp=parse_time(data.get("deletionTimestamp")),
            creation_timestamp=parse_time(data.get("creationTimestamp")),
            labels=dict(data.get("labels") or {}),
        )


@dataclass
class PolicySpec:
    """
    Desired state of a DnsPolicy.

    Exactly one of target_selector and subject is expected to be set.
    """

    target_selector: dict[str, str] = field(default_factory=dict)
    subject: dict[str, str] = field(default_factory=dict)
    block_list: list[str] = field(default_factory=list)
    dry_run: bool = False

    def selection_key(self) -> dict[str, str]:
        """Return the selection mapping used for fingerprinting.

        The label selector wins when both forms are populated.
        """
        if self.target_selector:
            return self.target_selector
        return self.subject

    def has_selection_key(self) -> bool:
        """Check if any selection form is populated."""
        return bool(self.target_selector) or bool(self.subject)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary, omitting empty fields."""
        result: dict[str, Any] = {}
        if self.target_selector:
            result["targetSelector"] = dict(self.target_selector)
        if self.subject:
            result["subject"] = dict(self.subject)
        if self.block_list:
            result["blockList"] = list(self.block_list)
        if self.dry_run:
            result["dryRun"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PolicySpec:
        """Create from wire dictionary (accepts legacy 'dryrun')."""
        data = data or {}
        dry_run = data.get("dryRun", data.get("dryrun", False))
        return cls(
            target_selector={str(k): str(v) for k, v in (data.get("targetSelector") or {}).items()},
            subject={str(k): str(v) for k, v in (data.get("subject") or {}).items()},
            block_list=[str(p) for p in (data.get("blockList") or [])],
            dry_run=bool(dry_run),
        )


@dataclass
class PolicyStatus:
    """Observed state of a DnsPolicy, owned by the reconciler."""

    selector_hash: str = ""
    spec_hash: str = ""
    observed_generation: int = 0
    conditions: list[Condition] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary, omitting empty fields."""
        result: dict[str, Any] = {}
        if self.selector_hash:
            result["selectorHash"] = self.selector_hash
        if self.spec_hash:
            result["specHash"] = self.spec_hash
        if self.observed_generation:
            result["observedGeneration"] = self.observed_generation
        if self.conditions:
            result["conditions"] = [c.to_dict() for c in self.conditions]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PolicyStatus:
        """Create from wire dictionary."""
        data = data or {}
        return cls(
            selector_hash=data.get("selectorHash", ""),
            spec_hash=data.get("specHash", ""),
            observed_generation=int(data.get("observedGeneration", 0)),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


@dataclass
class DnsPolicy:
    """
    Complete DnsPolicy object.

    Combines metadata, desired spec and observed status.
    """

    metadata: ObjectMeta
    spec: PolicySpec = field(default_factory=PolicySpec)
    status: PolicyStatus = field(default_factory=PolicyStatus)

    @property
    def identity(self) -> PolicyIdentity:
        """Stable (namespace, name) identity."""
        return PolicyIdentity(self.metadata.namespace, self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        """Check if deletion has been requested."""
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        """Check if the given finalizer is present."""
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer; returns False if it was already there."""
        if finalizer in self.metadata.finalizers:
            return False
        self.metadata.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer; returns False if it was absent."""
        if finalizer not in self.metadata.finalizers:
            return False
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]
        return True

    def copy(self) -> DnsPolicy:
        """Deep copy; the result shares no mutable state with self."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        result: dict[str, Any] = {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
        }
        status = self.status.to_dict()
        if status:
            result["status"] = status
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DnsPolicy:
        """Create from wire dictionary."""
        kind = data.get("kind", KIND)
        if kind != KIND:
            raise ValueError(f"Unexpected kind: {kind}")
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=PolicySpec.from_dict(data.get("spec")),
            status=PolicyStatus.from_dict(data.get("status")),
        )
