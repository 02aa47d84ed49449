"""
Controller Manager.

Wires the object store's change notifications to the reconciler through
a work queue, and runs a fixed pool of worker threads:

    store.watch() -> WorkQueue -> worker threads -> Reconciler.reconcile()

Failed reconciliations are retried with exponential backoff and never
stop a worker.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from dnsmesh.controller.reconciler import Reconciler, ReconcileResult
from dnsmesh.controller.store import ObjectStore
from dnsmesh.controller.workqueue import ShutDown, WorkQueue
from dnsmesh.errors import ReconcileError
from dnsmesh.policy.models import PolicyIdentity


logger = logging.getLogger(__name__)


class ControllerManager:
    """
    Runs the reconcile loop for DnsPolicy objects.

    The work queue guarantees that one identity is reconciled by at most
    one worker at a time; different identities proceed in parallel.
    """

    def __init__(
        self,
        store: ObjectStore,
        reconciler: Reconciler,
        workers: int = 4,
        backoff_base: float = 0.005,
        backoff_max: float = 1000.0,
        resync_interval: float = 0.0,
    ) -> None:
        """
        Initialize the manager.

        Args:
            store: Object store to watch
            reconciler: Reconciler invoked per identity
            workers: Number of worker threads
            backoff_base: First retry delay in seconds
            backoff_max: Maximum retry delay in seconds
            resync_interval: Seconds between full re-enqueues (0 disables)
        """
        self.store = store
        self.reconciler = reconciler
        self.workers = workers
        self.resync_interval = resync_interval
        self.queue: WorkQueue[PolicyIdentity] = WorkQueue(
            backoff_base=backoff_base,
            backoff_max=backoff_max,
        )

        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._cancel_watch: Callable[[], None] | None = None
        self._lock = threading.Lock()
        self._stats = {
            "reconciled": 0,
            "failed": 0,
            "requeued": 0,
        }
        self.running = False

    def enqueue(self, identity: PolicyIdentity) -> None:
        """Schedule a reconciliation for an identity."""
        self.queue.add(identity)

    def enqueue_all(self) -> int:
        """Schedule every object currently in the store."""
        policies = self.store.list()
        for policy in policies:
            self.queue.add(policy.identity)
        return len(policies)

    def start(self) -> None:
        """Subscribe to the store and start the workers."""
        if self.running:
            return
        self.running = True
        self._stop_event.clear()

        self._cancel_watch = self.store.watch(self.enqueue)
        queued = self.enqueue_all()
        logger.info("Controller starting with %d workers (%d policies queued)", self.workers, queued)

        for i in range(self.workers):
            thread = threading.Thread(
                target=self._worker,
                name=f"dnsmesh-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        if self.resync_interval > 0:
            thread = threading.Thread(target=self._resync_loop, name="dnsmesh-resync", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching, drain the queue and join the workers."""
        if not self.running:
            return
        logger.info("Stopping controller...")
        self.running = False
        self._stop_event.set()

        if self._cancel_watch is not None:
            self._cancel_watch()
            self._cancel_watch = None

        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Thread %s did not stop within %.1fs", thread.name, timeout)
        self._threads.clear()
        logger.info("Controller stopped")

    def wait_idle(self, timeout: float = 5.0, poll: float = 0.01) -> bool:
        """
        Block until nothing is queued, delayed or being processed.

        Returns:
            True if the controller went idle within the timeout
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if (
                len(self.queue) == 0
                and self.queue.processing() == 0
                and self.queue.pending_delayed() == 0
            ):
                return True
            time.sleep(poll)
        return False

    def process_next(self, timeout: float | None = None) -> bool:
        """
        Take one identity off the queue and reconcile it.

        Returns:
            False once the queue is shut down, True otherwise
        """
        try:
            identity = self.queue.get(timeout=timeout)
        except ShutDown:
            return False
        if identity is None:
            return True

        try:
            self._reconcile(identity)
        finally:
            self.queue.done(identity)
        return True

    def _reconcile(self, identity: PolicyIdentity) -> ReconcileResult | None:
        try:
            result = self.reconciler.reconcile(identity)
        except ReconcileError as e:
            delay = self.queue.add_rate_limited(identity)
            with self._lock:
                self._stats["failed"] += 1
                self._stats["requeued"] += 1
            logger.warning(
                "Reconcile of %s failed (%s): %s; retrying in %.3fs",
                identity, e.reason, e, delay,
            )
            return None
        except Exception as e:
            delay = self.queue.add_rate_limited(identity)
            with self._lock:
                self._stats["failed"] += 1
                self._stats["requeued"] += 1
            logger.error(
                "Unexpected error reconciling %s: %s; retrying in %.3fs",
                identity, e, delay, exc_info=True,
            )
            return None

        self.queue.forget(identity)
        with self._lock:
            self._stats["reconciled"] += 1
        logger.debug("Reconciled %s -> %s", identity, result.phase)
        return result

    def _worker(self) -> None:
        while self.process_next():
            pass
        logger.debug("Worker %s exiting", threading.current_thread().name)

    def _resync_loop(self) -> None:
        while not self._stop_event.wait(self.resync_interval):
            count = self.enqueue_all()
            logger.debug("Periodic resync queued %d policies", count)

    def get_statistics(self) -> dict[str, Any]:
        """Get controller statistics."""
        with self._lock:
            stats = dict(self._stats)
        return {
            **stats,
            "running": self.running,
            "workers": self.workers,
            "queued": len(self.queue),
            "processing": self.queue.processing(),
            "delayed": self.queue.pending_delayed(),
        }
