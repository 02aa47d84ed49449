"""
Policy Index.

In-memory, thread-safe lookup of the current policy snapshot by selector
hash, with a reverse map from policy identity to its hash. Both maps sit
behind a single reader/writer lock so readers never see half an update.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Generator

from dnsmesh.errors import DuplicateHashError
from dnsmesh.policy.models import DnsPolicy, PolicyIdentity


logger = logging.getLogger(__name__)


class ReadWriteLock:
    """
    Writer-preferring reader/writer lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. Once a writer is waiting, new readers queue behind it.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer_active or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer_active = True

    def release_write(self) -> None:
        with self._cond:
            self._writer_active = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Generator[None, None, None]:
        """Hold the lock shared for the duration of the block."""
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Generator[None, None, None]:
        """Hold the lock exclusively for the duration of the block."""
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class PolicyIndex:
    """
    Bidirectional policy index keyed by selector hash.

    Every stored policy is a private deep copy and every returned policy
    is a fresh copy, so callers can never mutate index state.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        # selector hash -> policy snapshot (one policy per hash)
        self._by_hash: dict[str, DnsPolicy] = {}
        # identity -> selector hash, for re-keying and deletes
        self._hash_by_identity: dict[PolicyIdentity, str] = {}

    def upsert(self, policy: DnsPolicy, selector_hash: str) -> None:
        """
        Add or update a policy under the given selector hash.

        If the policy was previously indexed under a different hash, the
        old entry is dropped in the same critical section.

        Args:
            policy: Policy to index (copied)
            selector_hash: Fingerprint to index it under

        Raises:
            DuplicateHashError: If another identity owns selector_hash
        """
        snapshot = policy.copy()
        identity = snapshot.identity

        with self._lock.write_locked():
            current = self._by_hash.get(selector_hash)
            if current is not None and current.identity != identity:
                raise DuplicateHashError(selector_hash, current.identity, identity)

            old_hash = self._hash_by_identity.get(identity)
            if old_hash is not None and old_hash != selector_hash:
                del self._by_hash[old_hash]

            self._by_hash[selector_hash] = snapshot
            self._hash_by_identity[identity] = selector_hash

        if old_hash is not None and old_hash != selector_hash:
            logger.debug("Re-keyed %s: %s -> %s", identity, old_hash, selector_hash)

    def get(self, selector_hash: str) -> DnsPolicy | None:
        """
        Look up a policy by selector hash.

        Returns:
            Copy of the indexed policy, or None if no policy matches
        """
        with self._lock.read_locked():
            policy = self._by_hash.get(selector_hash)
            if policy is None:
                return None
            return policy.copy()

    def delete(self, identity: PolicyIdentity) -> bool:
        """
        Remove a policy from the index.

        Unknown identities are ignored.

        Returns:
            True if an entry was removed
        """
        with self._lock.write_locked():
            selector_hash = self._hash_by_identity.pop(identity, None)
            if selector_hash is None:
                return False
            del self._by_hash[selector_hash]
            return True

    def get_all(self) -> list[DnsPolicy]:
        """Snapshot copies of every indexed policy."""
        with self._lock.read_locked():
            return [policy.copy() for policy in self._by_hash.values()]

    def owner_of(self, selector_hash: str) -> PolicyIdentity | None:
        """Identity currently owning a selector hash."""
        with self._lock.read_locked():
            policy = self._by_hash.get(selector_hash)
            return policy.identity if policy is not None else None

    def fingerprint_of(self, identity: PolicyIdentity) -> str | None:
        """Selector hash an identity is indexed under."""
        with self._lock.read_locked():
            return self._hash_by_identity.get(identity)

    def size(self) -> int:
        """Number of indexed policies."""
        with self._lock.read_locked():
            return len(self._by_hash)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, identity: object) -> bool:
        if not isinstance(identity, PolicyIdentity):
            return False
        return self.fingerprint_of(identity) is not None
