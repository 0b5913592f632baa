"""
ETag validator store for conditional GET requests.

Only validators are kept, never response bodies. When a validator is known
for a URL the next request carries `If-None-Match`; a `304 Not Modified`
answer is handed back to the caller, who reuses whatever it obtained before.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import MutableMapping
from http import HTTPStatus

import requests

logger = logging.getLogger(__name__)


def is_not_modified(response: requests.Response) -> bool:
    """Return True if the response is a `304 Not Modified`."""
    return response.status_code == HTTPStatus.NOT_MODIFIED


class ETagCache:
    """
    Thread-safe map of request URL to the last ETag seen for it.

    Keys are the exact URL strings (query string included); no
    canonicalisation is performed. Entries never expire.

    Example:
        >>> cache = ETagCache()
        >>> cache.update("https://api/v1/x", response)  # 200 with ETag: "v1"
        >>> headers = {}
        >>> cache.apply("https://api/v1/x", headers)
        >>> headers
        {'If-None-Match': '"v1"'}
    """

    def __init__(self) -> None:
        self._validators: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> str | None:
        """Return the stored validator for `url`, if any."""
        with self._lock:
            return self._validators.get(url)

    def apply(self, url: str, headers: MutableMapping[str, str]) -> None:
        """Add `If-None-Match` to `headers` when a validator is stored for `url`."""
        validator = self.get(url)
        if validator is not None:
            logger.debug(f"ETag cache hit for {url}: sending If-None-Match {validator}")
            headers["If-None-Match"] = validator

    def update(self, url: str, response: requests.Response) -> None:
        """Store the response's ETag for `url` if the response is 2xx and carries one."""
        if not 200 <= response.status_code < 300:
            return
        etag = response.headers.get("ETag")
        if not etag:
            return
        with self._lock:
            self._validators[url] = etag

    def clear(self) -> None:
        """Forget every stored validator."""
        with self._lock:
            self._validators.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._validators)
