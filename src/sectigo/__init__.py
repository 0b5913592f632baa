"""
Sectigo Certificate Manager SDK for Python.

A thread-safe client for the Sectigo Certificate Manager REST API. Every
call goes through one request pipeline that handles authentication and
token refresh, bounded concurrency, conditional GETs, retries with backoff
and typed error reporting.

Quick Start:
    >>> from sectigo import ApiConfig, SectigoClient
    >>> config = ApiConfig(
    ...     base_url="https://cert-manager.com/api",
    ...     customer_uri="acme",
    ...     username="api-user",
    ...     password="s3cret",
    ... )
    >>> with SectigoClient(config) as client:
    ...     for cert in client.iter_collection("v1/certificate", page_size=100):
    ...         print(cert["sslId"])

Configuration:
    - ApiConfig: Immutable client settings (with_overrides / with_env_vars).
    - ApiVersion: Supported API versions.
    - load_config: Read settings from SECTIGO_* env vars or a credentials file.
    - write_token / read_token: Persist and reload a bearer token.
    - ConfigEnvVarError, ConfigValidationError, ConfigFileError.

Client:
    - SectigoClient: Request pipeline entry point.
    - HttpClient: Abstract transport.
    - RequestsHttpClient: requests.Session-backed transport. Default.

Authentication:
    - CredentialState: Credentials with single-flight token refresh.
    - TokenInfo: Bearer token with expiry.
    - ClientCredentialsTokenProvider: OAuth2 client credentials token fetcher.
    - AuthenticationError: Token endpoint failure.

Resilience:
    - RetryPolicy / Retrying: Exponential backoff on 429 and 5xx (except 501).
    - ConcurrencyThrottle: Bound on in-flight requests.
    - ETagCache / is_not_modified: Conditional GET support.
    - CancellationToken / OperationCancelledError: Cooperative cancellation.

Pagination:
    - Paginator / paginate: Lazy iteration over paged endpoints.
    - PageCursor, PaginationStyle.

Errors:
    - ApiRequestError: Base class for non-success responses.
    - ApiAuthenticationError: 401/403.
    - ApiValidationError: 400.
    - ApiError / ApiErrorCode: Error envelope and well-known codes.
    - ClientClosedError: Use of a closed client.
"""

from importlib.metadata import PackageNotFoundError, version

from sectigo._auth import (
    AuthenticationError,
    ClientCredentialsTokenProvider,
    CredentialState,
    TokenInfo,
    TokenRefreshCallback,
)
from sectigo._cache import ETagCache, is_not_modified
from sectigo._cancellation import CancellationToken, OperationCancelledError
from sectigo._config import (
    ApiConfig,
    ApiVersion,
    ConfigEnvVarError,
    ConfigFileError,
    ConfigValidationError,
    load_config,
    read_token,
    write_token,
)
from sectigo._errors import (
    ApiAuthenticationError,
    ApiError,
    ApiErrorCode,
    ApiRequestError,
    ApiValidationError,
    ClientClosedError,
)
from sectigo._http import HttpClient, RequestsHttpClient, SectigoClient
from sectigo._pagination import PageCursor, PaginationStyle, Paginator, paginate
from sectigo._retry import RetryPolicy, Retrying, is_transient
from sectigo._throttle import ConcurrencyThrottle

try:
    __version__ = version("sectigo-cm-sdk")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    # Client
    "SectigoClient",
    "HttpClient",
    "RequestsHttpClient",
    # Configuration
    "ApiConfig",
    "ApiVersion",
    "load_config",
    "read_token",
    "write_token",
    "ConfigEnvVarError",
    "ConfigFileError",
    "ConfigValidationError",
    # Authentication
    "CredentialState",
    "TokenInfo",
    "TokenRefreshCallback",
    "ClientCredentialsTokenProvider",
    "AuthenticationError",
    # Resilience
    "RetryPolicy",
    "Retrying",
    "is_transient",
    "ConcurrencyThrottle",
    "ETagCache",
    "is_not_modified",
    "CancellationToken",
    "OperationCancelledError",
    # Pagination
    "Paginator",
    "PageCursor",
    "PaginationStyle",
    "paginate",
    # Errors
    "ApiError",
    "ApiErrorCode",
    "ApiRequestError",
    "ApiAuthenticationError",
    "ApiValidationError",
    "ClientClosedError",
]
