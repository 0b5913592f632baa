"""
Utility functions for the sectigo SDK.

This module provides internal helper functions used throughout the client.
These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote

from sectigo._cancellation import CancellationToken, OperationCancelledError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def interruptible_sleep(seconds: float, cancellation: CancellationToken | None = None) -> None:
    """
    Sleep for the given duration, aborting early if cancelled.

    Args:
        seconds: Sleep duration in seconds. Negative values are treated as zero.
        cancellation: Optional token; when cancelled the sleep ends immediately.

    Raises:
        OperationCancelledError: If the token is cancelled before or during the sleep.
    """
    seconds = max(0.0, seconds)
    if cancellation is None:
        time.sleep(seconds)
        return

    if cancellation.wait(seconds):
        raise OperationCancelledError()


def truncate(text: str, limit: int = 200) -> str:
    """
    Cap `text` at `limit` characters, appending an ellipsis when truncated.

    Example:
        >>> truncate("abcdef", limit=3)
        'abc...'
    """
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def build_query(path: str, params: Mapping[str, Any] | None = None) -> str:
    """
    Append query-string parameters to a relative path.

    None values and blank strings are skipped; strings are percent-encoded;
    parameters keep their insertion order.

    Example:
        >>> build_query("v1/certificate", {"size": 10, "position": 0, "commonName": None})
        'v1/certificate?size=10&position=0'
    """
    if not params:
        return path

    parts: list[str] = []
    for name, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            parts.append(f"{name}={str(value).lower()}")
        elif isinstance(value, int | float):
            parts.append(f"{name}={value}")
        else:
            text = str(value)
            if not text.strip():
                continue
            parts.append(f"{name}={quote(text, safe='')}")

    if not parts:
        return path

    separator = "&" if "?" in path else "?"
    return path + separator + "&".join(parts)


def save_json_file(data: dict[str, Any], file_path: Path) -> None:
    """
    Save data as JSON to the specified file path, creating parent folders.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Destination path for the JSON file.

    Raises:
        RuntimeError: If the file cannot be written (wraps the original exception).
    """
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with file_path.open(mode="w", encoding="utf-8") as file:
            json.dump(
                data, file,
                indent=4, ensure_ascii=False, default=str
            )
    except OSError as e:
        logger.error(
            f"❌ Error while writing JSON file to disk ({file_path.name}): {e}",
            exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        raise RuntimeError(f"It's not possible to save JSON file in the disk ({file_path.name}): {e}") from e


def load_json_file(file_path: Path) -> Any:
    """
    Read and parse a JSON file.

    Raises:
        OSError: If the file cannot be read.
        json.JSONDecodeError: If the content is not valid JSON.
    """
    with file_path.open(mode="r", encoding="utf-8") as file:
        return json.load(file)
