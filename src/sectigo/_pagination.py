"""
Lazy iteration over paged list endpoints.

List endpoints return one page per request. A Paginator turns them into a
single sequence of items, fetching pages on demand until an empty or short
page shows that the collection is exhausted.

Two cursor styles are supported:

- POSITION: `position` starts at 0 and advances by `page_size` per page.
- PAGE_NUMBER: `page` starts at 1 and advances by 1 per page.

Example:
    >>> def fetch(cursor, cancellation):
    ...     return client.get_json(f"v1/order?size={cursor.page_size}&position={cursor.position}")
    >>> for order in Paginator(fetch, page_size=50):
    ...     print(order["id"])
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Generic, TypeVar

from sectigo._cancellation import raise_if_cancelled

if TYPE_CHECKING:
    from sectigo._cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 200


class PaginationStyle(StrEnum):
    """How the cursor advances between pages."""

    POSITION = "position"
    PAGE_NUMBER = "page"


@dataclass(frozen=True)
class PageCursor:
    """
    Location of the page to fetch.

    Attributes:
        page_size: Number of items requested per page.
        position: Zero-based offset of the first item (POSITION style).
        page: One-based page number (PAGE_NUMBER style).
    """

    page_size: int
    position: int = 0
    page: int = 1

    def advance(self, style: PaginationStyle) -> PageCursor:
        """Return the cursor of the following page."""
        if style == PaginationStyle.PAGE_NUMBER:
            return PageCursor(page_size=self.page_size, position=self.position, page=self.page + 1)
        return PageCursor(page_size=self.page_size, position=self.position + self.page_size, page=self.page)


FetchPage = Callable[[PageCursor, "CancellationToken | None"], Sequence[T] | None]
"""Fetches one page for the given cursor; None or an empty sequence ends iteration."""


class Paginator(Generic[T]):
    """
    Restartable lazy sequence over a paged endpoint.

    Each call to `iter()` starts a fresh enumeration from the first page.
    Items are yielded in server order, page after page, without reordering
    or de-duplication. Iteration stops after an empty page or a page with
    fewer than `page_size` items.

    Args:
        fetch_page: Called as `fetch_page(cursor, cancellation)` for each page.
        page_size: Items requested per page.
        style: Cursor style (POSITION or PAGE_NUMBER).
        cancellation: Optional token, checked before every page fetch and
            forwarded to `fetch_page`.
    """

    def __init__(
        self,
        fetch_page: FetchPage[T],
        page_size: int = DEFAULT_PAGE_SIZE,
        style: PaginationStyle = PaginationStyle.POSITION,
        cancellation: CancellationToken | None = None,
    ):
        assert fetch_page is not None, "fetch_page cannot be None."
        assert page_size >= 1, f"page_size must be >= 1, got {page_size}"

        self.fetch_page = fetch_page
        self.page_size = page_size
        self.style = PaginationStyle(style)
        self.cancellation = cancellation

    def __iter__(self) -> Iterator[T]:
        cursor = PageCursor(page_size=self.page_size)
        pages_fetched = 0

        while True:
            raise_if_cancelled(self.cancellation)
            page = self.fetch_page(cursor, self.cancellation)
            pages_fetched += 1

            if not page:
                break

            yield from page

            if len(page) < self.page_size:
                break

            cursor = cursor.advance(self.style)

        logger.debug(f"Pagination finished after {pages_fetched} page(s).")


def paginate(
    fetch_page: FetchPage[T],
    page_size: int = DEFAULT_PAGE_SIZE,
    style: PaginationStyle = PaginationStyle.POSITION,
    cancellation: CancellationToken | None = None,
) -> Iterator[T]:
    """Iterate once over every item of a paged endpoint. See Paginator."""
    return iter(Paginator(fetch_page, page_size=page_size, style=style, cancellation=cancellation))
