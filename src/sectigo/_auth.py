"""
Credential management for the sectigo SDK.

A client authenticates either with static `login`/`password` headers or
with a bearer token that may expire. When a refresh callback is configured,
the token is renewed shortly before it expires; concurrent callers that see
a stale token coalesce into a single refresh.

Example:
    >>> from datetime import datetime, timedelta, UTC
    >>> def refresh(cancellation):
    ...     return TokenInfo("new-token", datetime.now(UTC) + timedelta(hours=1))
    >>> state = CredentialState(token="old-token", expires_at=datetime.now(UTC), refresh_callback=refresh)
    >>> state.ensure_valid()
    >>> state.auth_headers()
    {'Authorization': 'Bearer new-token'}
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import requests

from sectigo._cancellation import raise_if_cancelled
from sectigo._utils import utcnow

if TYPE_CHECKING:
    from sectigo._cancellation import CancellationToken

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class TokenInfo:
    """
    Bearer token with expiration metadata.

    Attributes:
        token: The bearer token value (without "Bearer" prefix).
        expires_at: Timezone-aware UTC time when the token expires.
    """

    token: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"TokenInfo(token='***', expires_at={self.expires_at.isoformat()})"


TokenRefreshCallback = Callable[["CancellationToken | None"], TokenInfo]
"""Callable invoked with the caller's cancellation token; returns a fresh TokenInfo."""


# =============================================================================
# Credential State
# =============================================================================


class CredentialState:
    """
    Credentials owned by a single client instance.

    Holds either a `(username, password)` pair or a bearer token with an
    optional expiry and refresh callback. A token, when present, always takes
    priority over username/password.

    The token and its expiry are only ever replaced together, under the
    state's lock.

    Args:
        username: Login used for header authentication.
        password: Password used for header authentication.
        token: Initial bearer token.
        expires_at: Expiry of `token` (timezone-aware). None means unknown.
        refresh_callback: Produces a new TokenInfo when the token is near expiry.
        refresh_threshold: Refresh when less than this remains before expiry.
        clock: Returns the current UTC time (injectable for tests).
    """

    DEFAULT_REFRESH_THRESHOLD = timedelta(minutes=1)

    def __init__(
        self,
        username: str | None = None,
        password: str | None = None,
        token: str | None = None,
        expires_at: datetime | None = None,
        refresh_callback: TokenRefreshCallback | None = None,
        refresh_threshold: timedelta = DEFAULT_REFRESH_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ):
        assert token or refresh_callback or (username and password), \
            "Either a token, a refresh callback or username and password must be provided."
        assert refresh_threshold >= timedelta(0), "refresh_threshold must be non-negative."

        self._username = username
        self._password = password
        self._token = token or None
        self._expires_at = expires_at
        self._refresh_callback = refresh_callback
        self._refresh_threshold = refresh_threshold
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def uses_token(self) -> bool:
        """True when requests authenticate with a bearer token."""
        return self._token is not None or self._refresh_callback is not None

    @property
    def token_info(self) -> TokenInfo | None:
        """Snapshot of the current token and expiry, if both are set."""
        with self._lock:
            if self._token is None:
                return None
            return TokenInfo(self._token, self._expires_at) if self._expires_at else None

    def _needs_refresh(self) -> bool:
        if self._token is None or self._expires_at is None:
            return True
        return self._expires_at - self._clock() <= self._refresh_threshold

    def ensure_valid(self, cancellation: CancellationToken | None = None) -> None:
        """
        Make sure auth headers are usable for the next request.

        No-op without a refresh callback or while the token is outside the
        refresh threshold. Otherwise refreshes under the lock, re-checking
        after acquiring it so concurrent callers trigger a single refresh.

        Raises:
            OperationCancelledError: If cancelled before the refresh starts.
            Exception: Anything raised by the refresh callback, unchanged.
        """
        if self._refresh_callback is None:
            return
        if not self._needs_refresh():
            return

        with self._lock:
            if not self._needs_refresh():
                return

            raise_if_cancelled(cancellation)
            logger.debug("Access token is missing or near expiry. Refreshing...")
            info = self._refresh_callback(cancellation)
            assert isinstance(info, TokenInfo), "refresh_callback must return a TokenInfo instance."
            self._token = info.token
            self._expires_at = info.expires_at
            logger.debug(f"Access token refreshed. New expiry: {info.expires_at.isoformat()}")

    def auth_headers(self) -> dict[str, str]:
        """
        Return the authentication headers for the next request.

        Exactly one scheme is emitted: `Authorization: Bearer <token>` when a
        token is available, otherwise `login` and `password`.
        """
        with self._lock:
            if self._token is not None:
                return {"Authorization": f"Bearer {self._token}"}
        if self._username and self._password:
            return {"login": self._username, "password": self._password}
        return {}

    def __repr__(self) -> str:
        scheme = "token" if self.uses_token else "password"
        return f"CredentialState(scheme={scheme!r}, refreshable={self._refresh_callback is not None})"


# =============================================================================
# OAuth2 Client Credentials
# =============================================================================


class AuthenticationError(Exception):
    """
    Raised when a bearer token cannot be obtained from the token endpoint.

    Distinct from ApiAuthenticationError, which reports an API call rejected
    with 401/403.

    Attributes:
        message: Description of the failure.
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ClientCredentialsTokenProvider:
    """
    Fetches bearer tokens with the OAuth2 client credentials grant.

    Instances are TokenRefreshCallbacks: pass one as `refresh_callback` (or
    configure `token_url`, `client_id` and `client_secret` on ApiConfig) and
    CredentialState calls it whenever the token is missing or near expiry.
    Caching and single-flight are CredentialState's job; every call here
    performs one token request.

    Example:
        >>> provider = ClientCredentialsTokenProvider(
        ...     token_url="https://auth.sectigo.com/auth/realms/apiclients/protocol/openid-connect/token",
        ...     client_id="my-client-id",
        ...     client_secret="my-client-secret",
        ... )
        >>> state = CredentialState(refresh_callback=provider)

    Args:
        token_url: OAuth2 token endpoint.
        client_id: OAuth2 client ID.
        client_secret: OAuth2 client secret.
        timeout: Request timeout in seconds.
        clock: Returns the current UTC time (injectable for tests).
    """

    DEFAULT_TOKEN_LIFETIME = 300  # seconds, when the response has no usable expires_in

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        assert token_url, "token_url cannot be empty"
        assert client_id, "client_id cannot be empty"
        assert client_secret, "client_secret cannot be empty"
        assert timeout > 0, "timeout must be greater than 0."

        self.token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._clock = clock

    def __call__(self, cancellation: CancellationToken | None = None) -> TokenInfo:
        """
        Request a new token.

        Raises:
            AuthenticationError: If the request fails or the response has no access token.
            OperationCancelledError: If cancelled before the request is sent.
        """
        raise_if_cancelled(cancellation)
        try:
            response = requests.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            data = response.json()
            token = data["access_token"]
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            raise AuthenticationError(
                f"Failed to obtain access token (HTTP {status}): {e}",
                cause=e,
            ) from e
        except requests.RequestException as e:
            raise AuthenticationError(
                f"Failed to obtain access token: {e}",
                cause=e,
            ) from e
        except (KeyError, TypeError) as e:
            raise AuthenticationError(
                f"Invalid token response: missing '{e}' field",
                cause=e,
            ) from e
        except ValueError as e:
            raise AuthenticationError(
                f"Invalid token response: {e}",
                cause=e,
            ) from e

        if not token or not isinstance(token, str):
            raise AuthenticationError("Invalid token response: empty 'access_token'")

        expires_in = data.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, int | float) or expires_in <= 0:
            expires_in = self.DEFAULT_TOKEN_LIFETIME

        logger.debug(f"Obtained access token from {self.token_url}, valid for {expires_in}s.")
        return TokenInfo(token=token, expires_at=self._clock() + timedelta(seconds=expires_in))

    def __repr__(self) -> str:
        return f"ClientCredentialsTokenProvider(token_url={self.token_url!r}, client_id={self._client_id!r})"
