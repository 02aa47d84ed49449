"""
Manifest synchronisation.

Applies the DnsPolicy objects declared in YAML manifests to the object
store: new objects are created, changed ones updated, and objects no
longer declared are deleted. Objects created by other means are left
alone.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from dnsmesh.controller.store import InMemoryObjectStore
from dnsmesh.errors import ConflictError, NotFoundError, StoreError
from dnsmesh.policy.models import DnsPolicy, PolicyIdentity
from dnsmesh.policy.parser import MANIFEST_SUFFIXES, PolicyParseError, load_manifests


logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """What one sync pass changed."""

    created: list[PolicyIdentity] = field(default_factory=list)
    updated: list[PolicyIdentity] = field(default_factory=list)
    deleted: list[PolicyIdentity] = field(default_factory=list)
    skipped: list[PolicyIdentity] = field(default_factory=list)
    unchanged: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "created": [str(i) for i in self.created],
            "updated": [str(i) for i in self.updated],
            "deleted": [str(i) for i in self.deleted],
            "skipped": [str(i) for i in self.skipped],
            "unchanged": self.unchanged,
        }


class ManifestSync:
    """
    Keeps the object store in line with a manifest file or directory.

    Call sync() once, or start() a polling thread that re-syncs whenever
    the manifests change on disk.
    """

    def __init__(
        self,
        store: InMemoryObjectStore,
        path: str | Path,
        poll_interval: float = 5.0,
    ) -> None:
        self.store = store
        self.path = Path(path)
        self.poll_interval = poll_interval

        self._managed: set[PolicyIdentity] = set()
        self._signature: tuple | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def sync(self) -> SyncResult:
        """
        Apply the manifests to the store.

        Raises:
            FileNotFoundError: If the manifest path is missing
            PolicyParseError: If a manifest is invalid or declares the same
                policy twice; the store is untouched
        """
        signature = self._files_signature()
        desired: dict[PolicyIdentity, DnsPolicy] = {}
        for policy in load_manifests(self.path):
            if policy.identity in desired:
                raise PolicyParseError(f"{policy.identity}: declared more than once")
            desired[policy.identity] = policy
        result = SyncResult()

        for identity, policy in desired.items():
            try:
                current = self.store.get(identity)
            except NotFoundError:
                self.store.create(policy)
                result.created.append(identity)
                continue

            if current.is_deleting:
                logger.warning("%s is being deleted; skipping until it is gone", identity)
                result.skipped.append(identity)
                continue

            if current.spec == policy.spec and current.metadata.labels == policy.metadata.labels:
                result.unchanged += 1
                continue

            current.spec = policy.spec
            current.metadata.labels = dict(policy.metadata.labels)
            try:
                self.store.update(current)
            except ConflictError as e:
                logger.warning("Conflict updating %s from manifest: %s", identity, e)
                result.skipped.append(identity)
                continue
            result.updated.append(identity)

        for identity in sorted(self._managed - desired.keys()):
            try:
                self.store.delete(identity)
            except NotFoundError:
                continue
            result.deleted.append(identity)

        self._managed = set(desired)
        # Skipped objects keep the pass pending so the next poll retries
        self._signature = None if result.skipped else signature

        if result.changed:
            logger.info(
                "Manifests applied: %d created, %d updated, %d deleted",
                len(result.created), len(result.updated), len(result.deleted),
            )
        return result

    def _files_signature(self) -> tuple:
        if self.path.is_dir():
            files = sorted(
                p for p in self.path.iterdir()
                if p.is_file() and p.suffix in MANIFEST_SUFFIXES
            )
        elif self.path.exists():
            files = [self.path]
        else:
            files = []
        signature = []
        for f in files:
            stat = f.stat()
            signature.append((str(f), stat.st_mtime_ns, stat.st_size))
        return tuple(signature)

    def poll_once(self) -> SyncResult | None:
        """Re-sync if the manifests changed since the last pass."""
        signature = self._files_signature()
        if signature == self._signature:
            return None
        try:
            result = self.sync()
        except (FileNotFoundError, PolicyParseError, StoreError) as e:
            logger.error("Failed to apply manifests from %s: %s", self.path, e)
            return None
        return result

    def start(self) -> None:
        """Start the polling thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll_loop, name="dnsmesh-manifests", daemon=True)
        self._thread.start()
        logger.info("Watching %s for manifest changes every %.1fs", self.path, self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the polling thread."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            self.poll_once()
