"""
Policy Object Store.

The store is the source of truth for DnsPolicy objects. It offers
get/list/create/update/update_status/delete plus change notifications,
with optimistic concurrency on resource versions and two-phase deletion:
an object carrying finalizers is only marked for deletion, and is erased
once its last finalizer is removed.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from dnsmesh.errors import AlreadyExistsError, ConflictError, NotFoundError
from dnsmesh.policy.models import DnsPolicy, PolicyIdentity, PolicyStatus, utc_now


logger = logging.getLogger(__name__)

WatchCallback = Callable[[PolicyIdentity], None]


class ObjectStore(Protocol):
    """Operations the reconciler needs from the object store."""

    def get(self, identity: PolicyIdentity) -> DnsPolicy: ...

    def list(self) -> list[DnsPolicy]: ...

    def update(self, policy: DnsPolicy) -> DnsPolicy: ...

    def update_status(self, policy: DnsPolicy) -> DnsPolicy: ...

    def watch(self, callback: WatchCallback) -> Callable[[], None]: ...


class InMemoryObjectStore:
    """
    Thread-safe in-memory object store.

    Objects handed in and out are copies. Watch callbacks run on the
    writer's thread after the store lock has been released.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[PolicyIdentity, DnsPolicy] = {}
        self._watchers: list[WatchCallback] = []
        self._resource_version = 0

    def _next_version(self) -> int:
        self._resource_version += 1
        return self._resource_version

    def _stored(self, identity: PolicyIdentity) -> DnsPolicy:
        stored = self._objects.get(identity)
        if stored is None:
            raise NotFoundError(f"DnsPolicy {identity} not found")
        return stored

    def _check_version(self, stored: DnsPolicy, policy: DnsPolicy) -> None:
        if policy.metadata.resource_version != stored.metadata.resource_version:
            raise ConflictError(
                f"DnsPolicy {stored.identity} has been modified "
                f"(have {policy.metadata.resource_version}, "
                f"current {stored.metadata.resource_version})"
            )

    def _notify(self, identity: PolicyIdentity) -> None:
        with self._lock:
            watchers = list(self._watchers)
        for callback in watchers:
            try:
                callback(identity)
            except Exception as e:
                logger.error("Watch callback error for %s: %s", identity, e)

    def watch(self, callback: WatchCallback) -> Callable[[], None]:
        """
        Subscribe to change notifications.

        Returns:
            Function that cancels the subscription
        """
        with self._lock:
            self._watchers.append(callback)

        def cancel() -> None:
            with self._lock:
                if callback in self._watchers:
                    self._watchers.remove(callback)

        return cancel

    def get(self, identity: PolicyIdentity) -> DnsPolicy:
        """
        Fetch an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        with self._lock:
            return self._stored(identity).copy()

    def exists(self, identity: PolicyIdentity) -> bool:
        """Check if an object exists (including ones being deleted)."""
        with self._lock:
            return identity in self._objects

    def list(self) -> list[DnsPolicy]:
        """All objects, ordered by identity."""
        with self._lock:
            return [self._objects[key].copy() for key in sorted(self._objects)]

    def create(self, policy: DnsPolicy) -> DnsPolicy:
        """
        Create a new object.

        Status and deletion markers on the input are ignored.

        Raises:
            AlreadyExistsError: If the identity is taken
        """
        identity = policy.identity
        with self._lock:
            if identity in self._objects:
                raise AlreadyExistsError(f"DnsPolicy {identity} already exists")
            stored = policy.copy()
            stored.metadata.generation = 1
            stored.metadata.resource_version = self._next_version()
            stored.metadata.creation_timestamp = utc_now()
            stored.metadata.deletion_timestamp = None
            stored.status = PolicyStatus()
            self._objects[identity] = stored
            result = stored.copy()

        logger.debug("Created %s", identity)
        self._notify(identity)
        return result

    def update(self, policy: DnsPolicy) -> DnsPolicy:
        """
        Update metadata and spec; status is left untouched.

        The generation is bumped when the spec changes. An object that
        is being deleted and no longer carries finalizers is erased.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the resource version is stale
        """
        identity = policy.identity
        with self._lock:
            stored = self._stored(identity)
            self._check_version(stored, policy)

            updated = stored.copy()
            updated.metadata.finalizers = list(policy.metadata.finalizers)
            updated.metadata.labels = dict(policy.metadata.labels)
            if policy.spec != stored.spec:
                updated.spec = policy.copy().spec
                updated.metadata.generation += 1
            updated.metadata.resource_version = self._next_version()

            if updated.is_deleting and not updated.metadata.finalizers:
                del self._objects[identity]
                erased = True
            else:
                self._objects[identity] = updated
                erased = False
            result = updated.copy()

        if erased:
            logger.debug("Erased %s after last finalizer was removed", identity)
        self._notify(identity)
        return result

    def update_status(self, policy: DnsPolicy) -> DnsPolicy:
        """
        Replace the status subresource.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the resource version is stale
        """
        identity = policy.identity
        with self._lock:
            stored = self._stored(identity)
            self._check_version(stored, policy)
            stored.status = policy.copy().status
            stored.metadata.resource_version = self._next_version()
            result = stored.copy()

        self._notify(identity)
        return result

    def delete(self, identity: PolicyIdentity) -> None:
        """
        Request deletion.

        Objects with finalizers are only marked; the rest are erased.

        Raises:
            NotFoundError: If the object does not exist
        """
        with self._lock:
            stored = self._stored(identity)
            if stored.metadata.finalizers:
                if stored.metadata.deletion_timestamp is None:
                    stored.metadata.deletion_timestamp = utc_now()
                    stored.metadata.resource_version = self._next_version()
            else:
                del self._objects[identity]

        logger.debug("Deletion requested for %s", identity)
        self._notify(identity)

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)
