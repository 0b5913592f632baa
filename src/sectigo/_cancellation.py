"""
Cooperative cancellation for the sectigo SDK.

Every public entry point of the request pipeline accepts an optional
CancellationToken. The pipeline checks it before dispatching a request,
while waiting for a throttle slot, during retry delays and between page
fetches. A request already handed to the transport is not interrupted.

Example:
    >>> token = CancellationToken()
    >>> # From another thread
    >>> token.cancel()
    >>> token.raise_if_cancelled()
    Traceback (most recent call last):
    ...
    sectigo._cancellation.OperationCancelledError: Operation was cancelled.
"""

from __future__ import annotations

import threading


class OperationCancelledError(Exception):
    """Raised when an operation observes a cancelled CancellationToken."""

    def __init__(self, message: str = "Operation was cancelled."):
        super().__init__(message)


class CancellationToken:
    """
    Thread-safe cancellation flag.

    Once cancelled a token stays cancelled; create a new one per logical
    operation.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        self._event.set()

    def is_cancelled(self) -> bool:
        """Return True if cancellation has been requested."""
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """
        Raise OperationCancelledError if cancellation has been requested.

        Raises:
            OperationCancelledError: If the token is cancelled.
        """
        if self._event.is_set():
            raise OperationCancelledError()

    def wait(self, seconds: float) -> bool:
        """
        Block for up to `seconds`, returning early if cancelled.

        Returns:
            True if the token was cancelled during (or before) the wait.
        """
        return self._event.wait(timeout=max(0.0, seconds))

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled()})"


def raise_if_cancelled(cancellation: CancellationToken | None) -> None:
    """Check an optional token, raising OperationCancelledError if cancelled."""
    if cancellation is not None:
        cancellation.raise_if_cancelled()
