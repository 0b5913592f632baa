"""
Remote error taxonomy and classification for the sectigo SDK.

A failed HTTP exchange is turned into exactly one typed exception:

- ApiAuthenticationError: 401/403, credentials rejected or expired.
- ApiValidationError: 400, the request was malformed.
- ApiRequestError: any other non-2xx status (base class of the two above).

The exception message concatenates the HTTP status, a short body snippet and
the server's own error description, so printing it is informative as-is:

    StatusCode: 401 (Unauthorized), Body: {"code":-16,"description":"Unknown user"}, Error: Unknown user

Example:
    >>> try:
    ...     client.get("v1/certificate/42")
    ... except ApiAuthenticationError as e:
    ...     print(e.code, e)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from enum import IntEnum
from http import HTTPStatus
from typing import Any

import requests

from sectigo._utils import truncate

BODY_SNIPPET_LIMIT = 200


# =============================================================================
# Error Codes
# =============================================================================


class ApiErrorCode(IntEnum):
    """
    Well-known error codes returned in the remote error envelope.

    Codes not listed here are still surfaced as plain integers.
    """

    UNKNOWN_ERROR = -1
    INTERNAL_ERROR = -2
    NOT_AUTHORIZED_TO_PERFORM = -3
    REQUIRED_FIELD_MISSING = -7
    CSR_NOT_VALID_BASE64 = -9
    CSR_DECODING_ERROR = -10
    CSR_UNSUPPORTED_ALGORITHM = -11
    CSR_UNSUPPORTED_KEY_SIZE = -13
    UNKNOWN_USER = -16
    NOT_AUTHORIZED_TO_EXECUTE = -25
    INVALID_SERVER_TYPE = -35
    INVALID_TERM_FOR_PROFILE = -36
    ACCESS_DENIED = -37
    INVALID_CERTIFICATE_PROFILE_ID = -39
    MISSING_MANDATORY_CUSTOM_FIELD = -62
    ONLY_ISSUED_CERTIFICATES_CAN_BE_REVOKED = -102
    CERTIFICATE_NOT_COLLECTED_YET = -103
    DCV_INCOMPLETE_OR_EXPIRED = -107
    CERTIFICATE_NOT_AVAILABLE_TRY_LATER = -109
    CERTIFICATE_REVOKED_CANNOT_DOWNLOAD = -110
    NO_PROFILE_FOUND_BY_ID = -111
    WRONG_SSL_CERTIFICATE_ID = -124
    INVALID_CSR = -138
    CERTIFICATE_ALREADY_REVOKED = -159
    CA_NOT_AVAILABLE_TRY_LATER = -195
    CUSTOMER_NOT_FOUND = -410
    INCORRECT_LOGIN_CREDENTIALS = -970
    ORGANIZATION_NOT_FOUND = -1023
    INVALID_ORDER_NUMBER = -1104
    REQUEST_BEING_PROCESSED = -1400
    FIELD_HAS_INVALID_VALUE = -1601
    MODIFIED_BY_ANOTHER_USER = -3114
    CERTIFICATE_NOT_FOUND = -5101
    DEVICE_PROFILE_NOT_FOUND = -5109
    TOO_MANY_REQUESTS = 429


# =============================================================================
# Error Envelope
# =============================================================================


@dataclass(frozen=True)
class ApiError:
    """
    Error envelope returned by the API (or synthesized when it can't be parsed).

    Attributes:
        code: Remote error code, or the HTTP status when the envelope has none.
        description: Human-readable description.
    """

    code: int
    description: str

    @property
    def known_code(self) -> ApiErrorCode | None:
        """The code as an ApiErrorCode member, if it is a well-known one."""
        try:
            return ApiErrorCode(self.code)
        except ValueError:
            return None


# =============================================================================
# Exceptions
# =============================================================================


class ApiRequestError(Exception):
    """
    Raised when the API answers with a non-success status.

    Attributes:
        error: The ApiError whose description holds the composite message.
        code: Numeric error code, for programmatic matching.
        status_code: HTTP status of the failed response.
    """

    def __init__(self, error: ApiError, status_code: int):
        super().__init__(error.description)
        self.error = error
        self.code = error.code
        self.status_code = status_code


class ApiAuthenticationError(ApiRequestError):
    """Raised on 401/403: credentials were rejected or have expired."""


class ApiValidationError(ApiRequestError):
    """Raised on 400: the request was rejected as invalid."""


class ClientClosedError(RuntimeError):
    """Raised when an operation is attempted on a closed client."""

    def __init__(self, message: str = "The client has been closed and can no longer send requests."):
        super().__init__(message)


# =============================================================================
# Classification
# =============================================================================


def _status_name(response: requests.Response) -> str:
    try:
        return HTTPStatus(response.status_code).phrase
    except ValueError:
        return response.reason or "Unknown"


def _parse_error(payload: Any, status_code: int) -> ApiError:
    """
    Build an ApiError from a decoded JSON payload.

    Raises:
        ValueError: If the payload is not a JSON object.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")

    code = payload.get("code")
    if isinstance(code, bool) or not isinstance(code, int):
        code = status_code

    description = payload.get("description") or payload.get("message") or payload.get("error") or ""
    return ApiError(code=code, description=str(description))


def classify(response: requests.Response) -> ApiRequestError | None:
    """
    Translate a response into the exception it warrants.

    Args:
        response: The final response of a logical call.

    Returns:
        None for 2xx responses; otherwise the typed exception to raise.
    """
    status = response.status_code
    if 200 <= status < 300:
        return None

    status_name = _status_name(response)
    body = response.text or ""
    snippet = truncate(body.strip(), BODY_SNIPPET_LIMIT)

    try:
        error = _parse_error(json.loads(body), status)
    except ValueError as e:
        error = ApiError(
            code=status,
            description=f"HTTP {status} {status_name}; failed to parse error response: {e}",
        )

    message = f"StatusCode: {status} ({status_name})"
    if snippet:
        message += f", Body: {snippet}"
    if error.description:
        message += f", Error: {error.description}"
    error = replace(error, description=message)

    if status in (HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN):
        return ApiAuthenticationError(error, status)
    if status == HTTPStatus.BAD_REQUEST:
        return ApiValidationError(error, status)
    return ApiRequestError(error, status)


def raise_for_error(response: requests.Response) -> None:
    """
    Raise the typed exception for a non-2xx response; no-op on success.

    The response is closed before raising.

    Raises:
        ApiAuthenticationError: On 401/403.
        ApiValidationError: On 400.
        ApiRequestError: On any other non-2xx status.
    """
    exception = classify(response)
    if exception is None:
        return
    response.close()
    raise exception
