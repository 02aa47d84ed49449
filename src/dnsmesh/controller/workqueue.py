"""
Work queue for policy reconciliation.

Deduplicates pending identities and guarantees that a given identity is
never handed to two workers at the same time. An identity added while it
is being processed is parked and re-queued when the worker calls done().

Failed items are re-added with per-item exponential backoff:

    delay = base * 2 ** failures   (capped at max_delay)
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Generic, Hashable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


@dataclass(order=True)
class _Delayed:
    ready_at: float
    seq: int
    item: object = field(compare=False)


class ShutDown(Exception):
    """Raised by get() once the queue has been shut down and drained."""


class WorkQueue(Generic[T]):
    """
    Thread-safe deduplicating work queue with delayed and rate-limited adds.

    Usage:
        item = queue.get()
        try:
            process(item)
            queue.forget(item)
        except Exception:
            queue.add_rate_limited(item)
        finally:
            queue.done(item)
    """

    def __init__(self, backoff_base: float = 0.005, backoff_max: float = 1000.0) -> None:
        """
        Initialize the queue.

        Args:
            backoff_base: Delay in seconds for the first retry
            backoff_max: Upper bound on any retry delay
        """
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self._cond = threading.Condition()
        self._queue: deque[T] = deque()
        self._dirty: set[T] = set()
        self._processing: set[T] = set()
        self._delayed: list[_Delayed] = []
        self._failures: dict[T, int] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    # =========================================================================
    # Adding work
    # =========================================================================

    def add(self, item: T) -> None:
        """Queue an item unless it is already pending."""
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: T) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            # Re-queued by done()
            return
        self._queue.append(item)
        self._cond.notify()

    def add_after(self, item: T, delay: float) -> None:
        """Queue an item once the delay (seconds) has elapsed."""
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(
                self._delayed,
                _Delayed(time.monotonic() + delay, next(self._seq), item),
            )
            self._cond.notify()

    def add_rate_limited(self, item: T) -> float:
        """
        Queue an item after its backoff delay and count the failure.

        Returns:
            The delay applied, in seconds
        """
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        delay = self.backoff_for(failures)
        self.add_after(item, delay)
        return delay

    def backoff_for(self, failures: int) -> float:
        """Delay for an item that has failed the given number of times."""
        try:
            delay = self.backoff_base * (2 ** failures)
        except OverflowError:
            return self.backoff_max
        return min(delay, self.backoff_max)

    def forget(self, item: T) -> None:
        """Reset an item's failure count after it succeeded."""
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: T) -> int:
        """Number of rate-limited re-adds since the last forget()."""
        with self._cond:
            return self._failures.get(item, 0)

    # =========================================================================
    # Consuming work
    # =========================================================================

    def _promote_due_locked(self) -> float | None:
        """Move due delayed items to the queue; return seconds to the next one."""
        now = time.monotonic()
        while self._delayed and self._delayed[0].ready_at <= now:
            entry = heapq.heappop(self._delayed)
            self._add_locked(entry.item)  # type: ignore[arg-type]
        if self._delayed:
            return self._delayed[0].ready_at - now
        return None

    def get(self, timeout: float | None = None) -> T | None:
        """
        Take the next item, blocking until one is available.

        Args:
            timeout: Seconds to wait; None waits forever

        Returns:
            The item, or None if the timeout elapsed

        Raises:
            ShutDown: If the queue is shut down and nothing is left
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._dirty.discard(item)
                    self._processing.add(item)
                    return item
                if self._shutting_down:
                    raise ShutDown()

                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, item: T) -> None:
        """Mark an item as finished; re-queue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def shutdown(self) -> None:
        """Stop accepting work and wake all waiting workers."""
        with self._cond:
            self._shutting_down = True
            self._delayed.clear()
            self._cond.notify_all()
        logger.debug("Work queue shut down")

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def processing(self) -> int:
        """Number of items currently held by workers."""
        with self._cond:
            return len(self._processing)

    def pending_delayed(self) -> int:
        """Number of items waiting on a delay."""
        with self._cond:
            return len(self._delayed)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
