"""
Retry with exponential backoff for the sectigo SDK.

The retry loop decides on HTTP status codes, not exceptions: a transient
response (429, or 5xx other than 501) is discarded and the attempt repeated
after a delay; any other response, or the last transient one, is returned
as-is. Turning an error response into an exception is the caller's job and
happens once, after the loop.

Example:
    >>> retrying = Retrying(RetryPolicy(max_attempts=3, initial_delay=0.5))
    >>> response = retrying.execute(lambda: session.get(url))
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from http import HTTPStatus
from typing import TYPE_CHECKING

import requests

from sectigo._cancellation import raise_if_cancelled
from sectigo._utils import interruptible_sleep, utcnow

if TYPE_CHECKING:
    from sectigo._cancellation import CancellationToken

logger = logging.getLogger(__name__)

SleepFunction = Callable[[float, "CancellationToken | None"], None]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry settings, fixed for the lifetime of a client.

    Attributes:
        max_attempts: Total number of attempts, including the first one (>= 1).
        initial_delay: Seconds to wait before the first retry. Each following
            retry waits twice as long as the previous one: d, 2d, 4d...
    """

    max_attempts: int = 5
    initial_delay: float = 1.0

    def __post_init__(self) -> None:
        assert self.max_attempts >= 1, f"max_attempts must be >= 1, got {self.max_attempts}"
        assert self.initial_delay >= 0, f"initial_delay must be >= 0, got {self.initial_delay}"


def is_transient(status_code: int) -> bool:
    """
    Return True for statuses worth retrying.

    HTTP 429 and server errors are transient, except 501 Not Implemented,
    which reports a permanent server limitation.
    """
    if status_code == HTTPStatus.TOO_MANY_REQUESTS:
        return True
    return 500 <= status_code < 600 and status_code != HTTPStatus.NOT_IMPLEMENTED


def parse_retry_after(header: str | None, now: datetime) -> float | None:
    """
    Parse a Retry-After header value.

    Supports both delta-seconds ("120") and HTTP-date
    ("Wed, 21 Oct 2015 07:28:00 GMT") formats. Dates in the past yield 0.

    Args:
        header: The raw header value.
        now: Current UTC time, used to resolve HTTP-dates.

    Returns:
        The wait time in seconds, or None if absent or unparseable.
    """
    if not header:
        return None

    value = header.strip()
    if value.isdigit():
        return float(value)

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=now.tzinfo)
    return max(0.0, (retry_at - now).total_seconds())


class Retrying:
    """
    Executes an HTTP attempt with exponential backoff on transient statuses.

    Args:
        policy: Attempt count and initial delay.
        sleep: Called as `sleep(seconds, cancellation)` between attempts.
            The default blocks and aborts with OperationCancelledError when
            the token is cancelled. Tests inject a recorder instead.
        clock: Returns the current UTC time, used for HTTP-date Retry-After.
        logger_prefix: Prefix for log messages (e.g., "SectigoClient").
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: SleepFunction | None = None,
        clock: Callable[[], datetime] = utcnow,
        logger_prefix: str = "",
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or interruptible_sleep
        self._clock = clock
        self.logger_prefix = logger_prefix

    def execute(
        self,
        attempt_fn: Callable[[], requests.Response],
        cancellation: CancellationToken | None = None,
    ) -> requests.Response:
        """
        Run `attempt_fn` until it returns a non-transient response or the
        attempts are exhausted.

        Args:
            attempt_fn: Performs one HTTP exchange and returns its response.
            cancellation: Optional token checked before each attempt and
                honoured while waiting.

        Returns:
            The last response received, successful or not.

        Raises:
            OperationCancelledError: If cancelled before an attempt or during a delay.
            requests.RequestException: Transport failures from `attempt_fn`, unchanged.
        """
        prefix = f"{self.logger_prefix} | " if self.logger_prefix else ""
        max_attempts = self.policy.max_attempts
        delay = self.policy.initial_delay
        attempt = 0

        while True:
            raise_if_cancelled(cancellation)
            response = attempt_fn()
            status = response.status_code

            if not is_transient(status):
                return response

            if attempt >= max_attempts - 1:
                if max_attempts > 1:
                    logger.error(
                        f"{prefix}Max attempts ({max_attempts}) exhausted. Last response: HTTP {status}"
                    )
                return response

            wait_time = self._calculate_wait_time(response, delay)
            logger.warning(
                f"{prefix}Attempt {attempt + 1}/{max_attempts} failed with HTTP {status}. "
                f"Retrying in {wait_time:.1f}s..."
            )
            response.close()
            self._sleep(wait_time, cancellation)

            delay *= 2
            attempt += 1

    def _calculate_wait_time(self, response: requests.Response, delay: float) -> float:
        """
        Use Retry-After on 429 responses when present, else the current backoff delay.
        """
        if response.status_code == HTTPStatus.TOO_MANY_REQUESTS:
            retry_after = parse_retry_after(response.headers.get("Retry-After"), self._clock())
            if retry_after is not None:
                return retry_after
        return delay
