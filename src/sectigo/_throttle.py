"""
Concurrency throttle for the sectigo SDK.

Bounds the number of requests a client has in flight at once. Threads that
exceed the limit block until a slot frees up (or their cancellation token
fires).

Example:
    >>> throttle = ConcurrencyThrottle(limit=4)
    >>> with throttle.acquire():
    ...     response = session.get(url)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from sectigo._cancellation import OperationCancelledError, raise_if_cancelled

if TYPE_CHECKING:
    from sectigo._cancellation import CancellationToken

logger = logging.getLogger(__name__)


class ConcurrencyThrottle:
    """
    Counting-semaphore limit on simultaneous in-flight requests.

    With `limit=None` the throttle is a pass-through. No fairness is
    guaranteed between waiting threads.

    Args:
        limit: Maximum number of concurrent requests, or None for unbounded.
        poll_interval: How often (seconds) a waiting thread re-checks its
            cancellation token.
    """

    def __init__(self, limit: int | None = None, poll_interval: float = 0.05):
        assert limit is None or limit >= 1, f"limit must be >= 1 or None, got {limit}"
        assert poll_interval > 0, "poll_interval must be greater than 0."

        self.limit = limit
        self._poll_interval = poll_interval
        self._semaphore = threading.BoundedSemaphore(limit) if limit is not None else None
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        """True when a concurrency limit is configured."""
        return self._semaphore is not None

    @property
    def in_flight(self) -> int:
        """Number of slots currently held."""
        with self._lock:
            return self._in_flight

    def _wait_for_slot(self, cancellation: CancellationToken | None) -> None:
        assert self._semaphore is not None

        if cancellation is None:
            self._semaphore.acquire()
            return

        while not self._semaphore.acquire(timeout=self._poll_interval):
            if cancellation.is_cancelled():
                raise OperationCancelledError("Cancelled while waiting for a concurrency slot.")

        # Cancelled while we were being handed the slot: give it back.
        if cancellation.is_cancelled():
            self._semaphore.release()
            raise OperationCancelledError("Cancelled while waiting for a concurrency slot.")

    @contextmanager
    def acquire(self, cancellation: CancellationToken | None = None) -> Iterator[None]:
        """
        Hold a slot for the duration of the `with` block.

        The slot is released when the block exits, whether it returned
        normally or raised.

        Raises:
            OperationCancelledError: If cancelled while waiting for a slot.
        """
        if self._semaphore is None:
            raise_if_cancelled(cancellation)
            yield
            return

        self._wait_for_slot(cancellation)
        with self._lock:
            self._in_flight += 1
        try:
            yield
        finally:
            with self._lock:
                self._in_flight -= 1
            self._semaphore.release()

    def __repr__(self) -> str:
        return f"ConcurrencyThrottle(limit={self.limit}, in_flight={self.in_flight})"
