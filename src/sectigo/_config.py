"""
Configuration for the sectigo SDK.

`ApiConfig` is an immutable dataclass holding everything a SectigoClient
needs: endpoint, tenant, credentials, retry/concurrency settings and
transport hooks.

Hierarchy of precedence (highest to lowest):
1. Values passed to the ApiConfig constructor or `.with_overrides()`
2. Environment variables (SECTIGO_*) applied via `.with_env_vars()`
3. Hardcoded defaults (in dataclass fields)

Example:
    >>> from sectigo import ApiConfig
    >>> config = ApiConfig(
    ...     base_url="https://cert-manager.com/api",
    ...     customer_uri="acme",
    ...     username="api-user",
    ...     password="s3cret",
    ... ).with_overrides({"concurrency_limit": 4, "enable_etag_cache": True})
    >>>
    >>> # Or read SECTIGO_* environment variables / ~/.sectigo/credentials.json
    >>> config = load_config()
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from dataclasses import Field, dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

from sectigo._auth import TokenInfo
from sectigo._utils import load_json_file, save_json_file, utcnow

if TYPE_CHECKING:
    import requests

    from sectigo._auth import TokenRefreshCallback

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://cert-manager.com/api"
DEFAULT_CREDENTIALS_PATH = Path.home() / ".sectigo" / "credentials.json"
DEFAULT_TOKEN_PATH = Path.home() / ".sectigo" / "token.json"


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when a SECTIGO_* environment variable cannot be converted."""

    def __init__(self, env_var: str, value: str, expected: str):
        self.env_var = env_var
        self.value = value
        super().__init__(f"{env_var}={value!r} is not a valid {expected}")


class ConfigValidationError(ValueError):
    """
    Raised by `ApiConfig.validate()`.

    Attributes:
        field: Offending field name, or a group name such as "credentials".
        value: The rejected value. None for secrets and field groups.
    """

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        super().__init__(f"ApiConfig.{field}={value!r}: {message}")


class ConfigFileError(ValueError):
    """Raised when a credentials file cannot be read or parsed."""


# =============================================================================
# API Versions
# =============================================================================


class ApiVersion(StrEnum):
    """Sectigo Certificate Manager API versions."""

    V25_4 = "25.4"
    V25_5 = "25.5"
    V25_6 = "25.6"

    @classmethod
    def latest(cls) -> ApiVersion:
        return cls.V25_6

    @classmethod
    def parse(cls, value: str | None) -> ApiVersion:
        """
        Parse a version string leniently.

        Accepts "25.5", "v25.5", "V25_5" or "25_5". Blank or unknown values
        fall back to the latest version.

        Example:
            >>> ApiVersion.parse("v25.4")
            <ApiVersion.V25_4: '25.4'>
        """
        if value is None or not value.strip():
            return cls.latest()

        normalized = value.strip().lstrip("vV").replace("_", ".")
        try:
            return cls(normalized)
        except ValueError:
            logger.warning(f"Unknown API version '{value}'. Using {cls.latest().value}.")
            return cls.latest()


# =============================================================================
# Environment Variables
# =============================================================================


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# Keyed by the field annotation with any "| None" removed (annotations are strings here).
_ENV_CONVERTERS: dict[str, Callable[[str], Any]] = {
    "int": int,
    "float": float,
    "bool": _parse_bool,
}


def read_env_var(f: Field[Any]) -> Any:
    """
    Read the SECTIGO_* variable declared in a field's metadata.

    The converter comes from `metadata["converter"]` when present, else from
    the field annotation; anything else is kept as a string.

    Returns:
        The converted value, or None when the field declares no variable or
        the variable is unset or empty.

    Raises:
        ConfigEnvVarError: If the value cannot be converted.
    """
    env_var = f.metadata.get("env")
    raw = os.environ.get(env_var) if env_var else None
    if not raw:
        return None

    annotation = str(f.type).replace(" | None", "")
    converter = f.metadata.get("converter") or _ENV_CONVERTERS.get(annotation, str)
    try:
        return converter(raw)
    except (ValueError, TypeError) as e:
        raise ConfigEnvVarError(env_var, raw, annotation) from e


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """Frozen config that derives new instances from partial updates or the environment."""

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a copy with the given fields replaced. None values are skipped.

        Raises:
            ValueError: If `overrides` names a field this config doesn't have.
        """
        unknown = set(overrides) - {f.name for f in fields(self)}
        if unknown:
            raise ValueError(f"Unknown {type(self).__name__} fields: {sorted(unknown)}")

        changes = {name: value for name, value in overrides.items() if value is not None}
        return replace(self, **changes) if changes else self

    def with_env_vars(self) -> Self:
        """
        Return a copy with every set SECTIGO_* variable applied on top.

        Raises:
            ConfigEnvVarError: If a variable has an invalid value.
        """
        return self.with_overrides({f.name: read_env_var(f) for f in fields(self)})


# =============================================================================
# Configuration Dataclass
# =============================================================================


@dataclass(frozen=True)
class ApiConfig(OverridableConfig):
    """
    Settings for a SectigoClient.

    Attributes:
        base_url: Root URL of the API. A trailing slash is normalised by the client.
            Env var: SECTIGO_BASE_URL

        customer_uri: Tenant identifier sent in the `customerUri` header.
            Env var: SECTIGO_CUSTOMER_URI

        username: Login for header authentication.
            Env var: SECTIGO_USERNAME

        password: Password for header authentication. Never shown in repr.
            Env var: SECTIGO_PASSWORD

        token: Bearer token. Takes priority over username/password. Never shown in repr.
            Env var: SECTIGO_TOKEN

        token_expires_at: Expiry of `token` (timezone-aware).

        token_refresh: Callable returning a fresh TokenInfo when the token is near expiry.

        token_url: OAuth2 endpoint for the client credentials grant.
            Env var: SECTIGO_TOKEN_URL

        client_id: OAuth2 client ID. Used with token_url and client_secret when no
            token_refresh callback is given.
            Env var: SECTIGO_CLIENT_ID

        client_secret: OAuth2 client secret. Never shown in repr.
            Env var: SECTIGO_CLIENT_SECRET

        refresh_threshold: Seconds before expiry at which the token is refreshed.
            Env var: SECTIGO_REFRESH_THRESHOLD

        api_version: API version the client targets.
            Env var: SECTIGO_API_VERSION

        client_certificate: Client TLS certificate: a PEM path, or a (cert, key) tuple.
            Env var: SECTIGO_CLIENT_CERTIFICATE

        configure_session: Hook called with the requests.Session the client creates.

        retry_max_attempts: Total attempts per request, including the first.
            Env var: SECTIGO_RETRY_MAX_ATTEMPTS

        retry_initial_delay: Seconds before the first retry; doubles per retry.
            Env var: SECTIGO_RETRY_INITIAL_DELAY

        concurrency_limit: Maximum requests in flight, or None for unbounded.
            Env var: SECTIGO_CONCURRENCY_LIMIT

        enable_etag_cache: Send If-None-Match for URLs with a known ETag.
            Env var: SECTIGO_ENABLE_ETAG_CACHE

        request_timeout: Transport timeout in seconds for each attempt.
            Env var: SECTIGO_REQUEST_TIMEOUT
    """

    base_url: str = field(default=DEFAULT_BASE_URL, metadata={"env": "SECTIGO_BASE_URL"})
    customer_uri: str | None = field(default=None, metadata={"env": "SECTIGO_CUSTOMER_URI"})
    username: str | None = field(default=None, metadata={"env": "SECTIGO_USERNAME"})
    password: str | None = field(default=None, repr=False, metadata={"env": "SECTIGO_PASSWORD"})
    token: str | None = field(default=None, repr=False, metadata={"env": "SECTIGO_TOKEN"})
    token_expires_at: datetime | None = None
    token_refresh: TokenRefreshCallback | None = field(default=None, repr=False)
    token_url: str | None = field(default=None, metadata={"env": "SECTIGO_TOKEN_URL"})
    client_id: str | None = field(default=None, metadata={"env": "SECTIGO_CLIENT_ID"})
    client_secret: str | None = field(default=None, repr=False, metadata={"env": "SECTIGO_CLIENT_SECRET"})
    refresh_threshold: float = field(default=60.0, metadata={"env": "SECTIGO_REFRESH_THRESHOLD"})
    api_version: ApiVersion = field(
        default=ApiVersion.V25_6,
        metadata={"env": "SECTIGO_API_VERSION", "converter": ApiVersion.parse},
    )
    client_certificate: str | tuple[str, str] | None = field(
        default=None, metadata={"env": "SECTIGO_CLIENT_CERTIFICATE"}
    )
    configure_session: Callable[[requests.Session], None] | None = field(default=None, repr=False)
    retry_max_attempts: int = field(default=5, metadata={"env": "SECTIGO_RETRY_MAX_ATTEMPTS"})
    retry_initial_delay: float = field(default=1.0, metadata={"env": "SECTIGO_RETRY_INITIAL_DELAY"})
    concurrency_limit: int | None = field(default=None, metadata={"env": "SECTIGO_CONCURRENCY_LIMIT"})
    enable_etag_cache: bool = field(default=False, metadata={"env": "SECTIGO_ENABLE_ETAG_CACHE"})
    request_timeout: float = field(default=30.0, metadata={"env": "SECTIGO_REQUEST_TIMEOUT"})

    @property
    def normalized_base_url(self) -> str:
        """`base_url` with exactly one trailing slash."""
        return self.base_url.rstrip("/") + "/"

    def has_client_credentials(self) -> bool:
        """Check if token_url, client_id and client_secret are all set."""
        return bool(self.token_url and self.client_id and self.client_secret)

    def has_credentials(self) -> bool:
        """Check if any complete authentication scheme is configured."""
        return bool(
            self.token
            or self.token_refresh
            or self.has_client_credentials()
            or (self.username and self.password)
        )

    def validate(self) -> Self:
        """
        Validate configuration fields.

        Raises:
            ConfigValidationError: If any field holds an invalid value.
        """
        if not self.base_url or not self.base_url.startswith(("http://", "https://")):
            raise ConfigValidationError(
                "base_url", self.base_url,
                "Must start with 'http://' or 'https://'."
            )
        if not self.customer_uri:
            raise ConfigValidationError(
                "customer_uri", self.customer_uri,
                "Must not be empty."
            )
        if not self.has_credentials():
            raise ConfigValidationError(
                "credentials", None,
                "Provide a token, a token_refresh callback, client credentials, or both username and password."
            )
        if any((self.token_url, self.client_id, self.client_secret)) and not self.has_client_credentials():
            raise ConfigValidationError(
                "client_credentials", None,
                "token_url, client_id and client_secret must be set together."
            )
        if self.token_url and not self.token_url.startswith(("http://", "https://")):
            raise ConfigValidationError(
                "token_url", self.token_url,
                "Must start with 'http://' or 'https://'."
            )
        if self.token_refresh is not None and not callable(self.token_refresh):
            raise ConfigValidationError(
                "token_refresh", self.token_refresh,
                "Must be callable."
            )
        if self.token_expires_at is not None and self.token_expires_at.tzinfo is None:
            raise ConfigValidationError(
                "token_expires_at", self.token_expires_at,
                "Must be timezone-aware."
            )
        if self.refresh_threshold < 0:
            raise ConfigValidationError(
                "refresh_threshold", self.refresh_threshold,
                "Must be >= 0."
            )
        if self.retry_max_attempts < 1:
            raise ConfigValidationError(
                "retry_max_attempts", self.retry_max_attempts,
                "Must be >= 1."
            )
        if self.retry_initial_delay < 0:
            raise ConfigValidationError(
                "retry_initial_delay", self.retry_initial_delay,
                "Must be >= 0."
            )
        if self.concurrency_limit is not None and self.concurrency_limit < 1:
            raise ConfigValidationError(
                "concurrency_limit", self.concurrency_limit,
                "Must be >= 1 or None."
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0."
            )
        return self

    @property
    def refresh_threshold_delta(self) -> timedelta:
        return timedelta(seconds=self.refresh_threshold)


# =============================================================================
# Loading
# =============================================================================

# Either set is enough to configure a client from the environment alone.
_REQUIRED_ENV_VARS = (
    ("SECTIGO_BASE_URL", "SECTIGO_CUSTOMER_URI", "SECTIGO_USERNAME", "SECTIGO_PASSWORD"),
    ("SECTIGO_BASE_URL", "SECTIGO_CUSTOMER_URI", "SECTIGO_TOKEN_URL", "SECTIGO_CLIENT_ID", "SECTIGO_CLIENT_SECRET"),
)

# JSON keys (lower-cased) accepted in credentials files.
_FILE_KEYS = {
    "baseurl": "base_url",
    "base_url": "base_url",
    "username": "username",
    "password": "password",
    "customeruri": "customer_uri",
    "customer_uri": "customer_uri",
    "token": "token",
    "tokenurl": "token_url",
    "token_url": "token_url",
    "clientid": "client_id",
    "client_id": "client_id",
    "clientsecret": "client_secret",
    "client_secret": "client_secret",
    "apiversion": "api_version",
    "api_version": "api_version",
}


def load_config(path: str | Path | None = None) -> ApiConfig:
    """
    Load configuration from environment variables or a JSON credentials file.

    When SECTIGO_BASE_URL and SECTIGO_CUSTOMER_URI are set together with
    either SECTIGO_USERNAME and SECTIGO_PASSWORD or SECTIGO_TOKEN_URL,
    SECTIGO_CLIENT_ID and SECTIGO_CLIENT_SECRET, configuration comes from the
    environment. Otherwise it is read from `path`, falling back to
    SECTIGO_CREDENTIALS_PATH and then `~/.sectigo/credentials.json`.
    Keys in the file are matched case-insensitively (e.g. "baseUrl",
    "customerUri", "apiVersion").

    Returns:
        A validated ApiConfig.

    Raises:
        ConfigFileError: If the file is missing or malformed.
        ConfigValidationError: If the resulting configuration is invalid.
    """
    if any(all(os.environ.get(name) for name in names) for names in _REQUIRED_ENV_VARS):
        logger.debug("Loading Sectigo configuration from environment variables.")
        return ApiConfig().with_env_vars().validate()

    if path is None:
        env_path = os.environ.get("SECTIGO_CREDENTIALS_PATH")
        path = Path(env_path) if env_path else DEFAULT_CREDENTIALS_PATH

    file_path = Path(path)
    logger.debug(f"Loading Sectigo configuration from {file_path}.")
    try:
        data = load_json_file(file_path)
    except OSError as e:
        raise ConfigFileError(f"Unable to read configuration file {file_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigFileError(f"Invalid JSON in configuration file {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigFileError(f"Invalid configuration file {file_path}: expected a JSON object.")

    overrides: dict[str, Any] = {}
    for key, value in data.items():
        name = _FILE_KEYS.get(str(key).lower())
        if name is None or value in (None, ""):
            continue
        overrides[name] = ApiVersion.parse(str(value)) if name == "api_version" else value

    return ApiConfig().with_overrides(overrides).validate()


def write_token(info: TokenInfo, path: str | Path | None = None) -> None:
    """
    Persist a token and its expiry as JSON (default `~/.sectigo/token.json`).

    Raises:
        RuntimeError: If the file cannot be written.
    """
    file_path = Path(path) if path is not None else DEFAULT_TOKEN_PATH
    save_json_file(
        {"token": info.token, "expiresAt": info.expires_at.isoformat()},
        file_path,
    )


def read_token(path: str | Path | None = None) -> TokenInfo | None:
    """
    Load a token previously saved with `write_token`.

    Returns:
        The TokenInfo, or None if the file is missing, malformed or the
        token has already expired.
    """
    file_path = Path(path) if path is not None else DEFAULT_TOKEN_PATH
    if not file_path.exists():
        return None

    try:
        data = load_json_file(file_path)
        token = data["token"]
        expires_at = datetime.fromisoformat(data["expiresAt"])
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"⚠️ Ignoring unreadable token cache {file_path.name}: {e}")
        return None

    if not token or expires_at.tzinfo is None or expires_at <= utcnow():
        return None

    return TokenInfo(token=token, expires_at=expires_at)
