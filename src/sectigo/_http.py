"""
HTTP transport and request pipeline for the sectigo SDK.

Every logical API call made through a SectigoClient flows through the same
pipeline:

    credentials -> throttle slot -> If-None-Match -> retry loop -> classify -> ETag

Available transports:
    - HttpClient: Abstract transport. Implement it to plug in a custom stack.
    - RequestsHttpClient: `requests.Session`-backed transport. Default.

Example:
    >>> from sectigo import ApiConfig, SectigoClient
    >>> config = ApiConfig(customer_uri="acme", username="api-user", password="s3cret")
    >>> with SectigoClient(config) as client:
    ...     certificate = client.get_json("v1/certificate/42")
    ...     for order in client.iter_collection("v1/order", page_size=50):
    ...         print(order["id"])
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, Self, override

import requests

from sectigo._auth import ClientCredentialsTokenProvider, CredentialState
from sectigo._cache import ETagCache, is_not_modified
from sectigo._cancellation import raise_if_cancelled
from sectigo._errors import ClientClosedError, raise_for_error
from sectigo._pagination import DEFAULT_PAGE_SIZE, FetchPage, PageCursor, PaginationStyle, Paginator
from sectigo._retry import RetryPolicy, Retrying, SleepFunction
from sectigo._throttle import ConcurrencyThrottle
from sectigo._utils import build_query, utcnow

if TYPE_CHECKING:
    from sectigo._auth import TokenRefreshCallback
    from sectigo._cancellation import CancellationToken
    from sectigo._config import ApiConfig

logger = logging.getLogger(__name__)

# Owned by CredentialState; never taken from caller-supplied headers.
_AUTH_HEADER_NAMES = frozenset({"authorization", "login", "password"})


def _without_auth_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Copy `headers` minus any authentication header, matched case-insensitively."""
    return {name: value for name, value in (headers or {}).items() if name.lower() not in _AUTH_HEADER_NAMES}


def _token_refresh_for(config: ApiConfig, clock: Callable[[], datetime]) -> TokenRefreshCallback | None:
    """The configured refresh callback, or a client credentials provider built from the config."""
    if config.token_refresh is not None:
        return config.token_refresh
    if config.has_client_credentials():
        return ClientCredentialsTokenProvider(
            token_url=config.token_url,
            client_id=config.client_id,
            client_secret=config.client_secret,
            timeout=config.request_timeout,
            clock=clock,
        )
    return None


# =============================================================================
# Transport
# =============================================================================


class HttpClient(ABC):
    """
    Abstract base class for HTTP transports.

    A transport performs exactly one HTTP exchange per call and knows nothing
    about credentials, retries or error classification; the SectigoClient
    pipeline layers those on top.

    Example:
        >>> class MyHttpClient(HttpClient):
        ...     def request(self, method, url, headers=None, data=None, timeout=30):
        ...         return requests.request(method, url, headers=headers, json=data, timeout=timeout)
    """

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        data: Any = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute a single HTTP request.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE...).
            url: The full URL to request.
            headers: Headers to send as-is.
            data: JSON-serializable body, or None for no body.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response, whatever its status.

        Raises:
            requests.RequestException: If the HTTP exchange fails.
        """
        pass

    def close(self) -> None:  # noqa: B027
        """Release transport resources. No-op by default."""


class RequestsHttpClient(HttpClient):
    """
    Transport backed by a `requests.Session`.

    Args:
        client_certificate: Client TLS certificate, either a PEM path or a
            `(cert, key)` tuple, sent on every request.
        configure_session: Hook called once with the newly created session,
            e.g. to mount adapters or set proxies.
    """

    def __init__(
        self,
        client_certificate: str | tuple[str, str] | None = None,
        configure_session: Callable[[requests.Session], None] | None = None,
    ):
        self._session = requests.Session()
        if client_certificate is not None:
            self._session.cert = client_certificate
        if configure_session is not None:
            configure_session(self._session)

    @property
    def session(self) -> requests.Session:
        return self._session

    @override
    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        data: Any = None,
        timeout: float = 30,
    ) -> requests.Response:
        assert method, "HTTP method cannot be empty."
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        return self._session.request(
            method,
            url,
            headers=headers,
            json=data,
            timeout=timeout,
        )

    @override
    def close(self) -> None:
        self._session.close()


# =============================================================================
# Client
# =============================================================================


class SectigoClient:
    """
    Entry point for calls to the Sectigo Certificate Manager API.

    A client owns its credential state, throttle, ETag cache and retry
    policy; nothing is shared between client instances. It is safe to use
    from multiple threads.

    Args:
        config: Validated settings. `config.validate()` is called again here.
        http_client: Transport to use. When omitted a RequestsHttpClient is
            created and closed together with the client.
        sleep: Called as `sleep(seconds, cancellation)` between retries.
            Tests inject a recorder; the default really waits.
        clock: Returns the current UTC time. Used for token expiry and
            HTTP-date Retry-After values.
    """

    def __init__(
        self,
        config: ApiConfig,
        http_client: HttpClient | None = None,
        sleep: SleepFunction | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        assert config is not None, "config cannot be None."
        assert http_client is None or isinstance(http_client, HttpClient), \
            "http_client must be an HttpClient instance."

        self.config = config.validate()
        self.base_url = config.normalized_base_url

        self._owns_transport = http_client is None
        self._http = http_client or RequestsHttpClient(
            client_certificate=config.client_certificate,
            configure_session=config.configure_session,
        )
        self._credentials = CredentialState(
            username=config.username,
            password=config.password,
            token=config.token,
            expires_at=config.token_expires_at,
            refresh_callback=_token_refresh_for(config, clock),
            refresh_threshold=config.refresh_threshold_delta,
            clock=clock,
        )
        self._retrying = Retrying(
            policy=RetryPolicy(
                max_attempts=config.retry_max_attempts,
                initial_delay=config.retry_initial_delay,
            ),
            sleep=sleep,
            clock=clock,
            logger_prefix="SectigoClient",
        )
        self._throttle = ConcurrencyThrottle(limit=config.concurrency_limit)
        self._etag_cache = ETagCache() if config.enable_etag_cache else None

        self._closed = False
        self._close_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def credentials(self) -> CredentialState:
        return self._credentials

    @property
    def throttle(self) -> ConcurrencyThrottle:
        return self._throttle

    @property
    def etag_cache(self) -> ETagCache | None:
        """The ETag store, or None when conditional requests are disabled."""
        return self._etag_cache

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def url_for(self, path: str) -> str:
        """
        Resolve a path relative to the base URL.

        Absolute http(s) URLs are returned unchanged.

        Example:
            >>> client.url_for("/v1/certificate")
            'https://cert-manager.com/api/v1/certificate'
        """
        if path.startswith(("http://", "https://")):
            return path
        return self.base_url + path.lstrip("/")

    def _default_headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "customerUri": self.config.customer_uri}

    def send(
        self,
        method: str,
        path: str,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> requests.Response:
        """
        Execute one logical API call through the full pipeline.

        Transient statuses (429, 5xx except 501) are retried with backoff. A
        `304 Not Modified` is returned as-is; see `is_not_modified()`. Any
        other non-2xx final response is raised as a typed error, once.

        Args:
            method: HTTP method.
            path: Path relative to the base URL (a leading slash is ignored).
            body: JSON-serializable request body.
            headers: Extra headers. Authorization, login and password entries
                are dropped; credentials always come from the client.
            cancellation: Optional token checked before each attempt, while
                waiting for a throttle slot and during retry delays.

        Returns:
            The successful (or 304) response.

        Raises:
            ClientClosedError: If the client has been closed.
            ApiAuthenticationError: On 401/403.
            ApiValidationError: On 400.
            ApiRequestError: On any other non-2xx final status.
            OperationCancelledError: If the operation was cancelled.
            requests.RequestException: On transport failures.
        """
        assert method, "HTTP method cannot be empty."
        assert path is not None, "path cannot be None."

        self._ensure_open()
        raise_if_cancelled(cancellation)

        url = self.url_for(path)
        method = method.upper()
        self._credentials.ensure_valid(cancellation)

        with self._throttle.acquire(cancellation):
            request_headers = {**self._default_headers(), **_without_auth_headers(headers)}
            if self._etag_cache is not None and method == "GET":
                self._etag_cache.apply(url, request_headers)

            def attempt() -> requests.Response:
                self._ensure_open()
                # Auth headers are re-read so a token refreshed by another thread is picked up.
                attempt_headers = {**request_headers, **self._credentials.auth_headers()}
                logger.debug(f"{method} {url}")
                return self._http.request(
                    method,
                    url,
                    headers=attempt_headers,
                    data=body,
                    timeout=self.config.request_timeout,
                )

            response = self._retrying.execute(attempt, cancellation)

        if is_not_modified(response):
            logger.debug(f"{method} {url} -> 304 Not Modified")
            return response

        raise_for_error(response)

        if self._etag_cache is not None and method == "GET":
            self._etag_cache.update(url, response)
        return response

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClientClosedError()

    # -------------------------------------------------------------------------
    # Shortcuts
    # -------------------------------------------------------------------------

    def get(
        self,
        path: str,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> requests.Response:
        return self.send("GET", path, headers=headers, cancellation=cancellation)

    def post(
        self,
        path: str,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> requests.Response:
        return self.send("POST", path, body=body, headers=headers, cancellation=cancellation)

    def put(
        self,
        path: str,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> requests.Response:
        return self.send("PUT", path, body=body, headers=headers, cancellation=cancellation)

    def delete(
        self,
        path: str,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> requests.Response:
        return self.send("DELETE", path, headers=headers, cancellation=cancellation)

    def get_json(
        self,
        path: str,
        cancellation: CancellationToken | None = None,
    ) -> Any:
        """
        GET `path` and decode the JSON body.

        Returns:
            The decoded body, or None for 304 and empty responses.
        """
        response = self.get(path, cancellation=cancellation)
        if is_not_modified(response) or not response.content:
            return None
        return response.json()

    # -------------------------------------------------------------------------
    # Pagination
    # -------------------------------------------------------------------------

    def enumerate_pages(
        self,
        fetch_page: FetchPage,
        page_size: int = DEFAULT_PAGE_SIZE,
        style: PaginationStyle = PaginationStyle.POSITION,
        cancellation: CancellationToken | None = None,
    ) -> Paginator:
        """Wrap `fetch_page` in a restartable Paginator bound to this client's lifetime."""
        self._ensure_open()
        return Paginator(fetch_page, page_size=page_size, style=style, cancellation=cancellation)

    def iter_collection(
        self,
        path: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        params: Mapping[str, Any] | None = None,
        style: PaginationStyle = PaginationStyle.POSITION,
        cancellation: CancellationToken | None = None,
    ) -> Iterator[Any]:
        """
        Iterate over every item of a list endpoint returning a JSON array.

        POSITION style sends `size` and `position`; PAGE_NUMBER style sends
        `page` and `size`. Extra `params` are appended after them.

        Example:
            >>> for cert in client.iter_collection("v1/certificate", params={"status": "Issued"}):
            ...     print(cert["sslId"])
        """

        def fetch_page(cursor: PageCursor, token: CancellationToken | None) -> Sequence[Any]:
            if style == PaginationStyle.PAGE_NUMBER:
                query: dict[str, Any] = {"page": cursor.page, "size": cursor.page_size}
            else:
                query = {"size": cursor.page_size, "position": cursor.position}
            query.update(params or {})

            items = self.get_json(build_query(path, query), cancellation=token)
            if items is None:
                return []
            if not isinstance(items, list):
                raise ValueError(f"Expected a JSON array from {path}, got {type(items).__name__}.")
            return items

        return iter(self.enumerate_pages(fetch_page, page_size=page_size, style=style, cancellation=cancellation))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """
        Close the client. Idempotent.

        The transport is closed only if the client created it.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        if self._owns_transport:
            self._http.close()
        logger.debug("SectigoClient closed.")

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SectigoClient(base_url={self.base_url!r}, customer_uri={self.config.customer_uri!r}, closed={self._closed})"
