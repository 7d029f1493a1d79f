"""Aggregation of paginated list responses.

A list endpoint returns one page at a time, with ``links.next`` pointing at
the following page. :func:`paginate_all` walks that chain and merges every
page into one response, in order. The engine is transport-agnostic: it only
needs the first page and a ``fetch_next(url)`` callable, which in practice is
:meth:`~ascli.client.dispatcher.RequestDispatcher.fetch_page` (and therefore
goes through the redirect guard).

A ``next`` link that was already followed, or a chain longer than
``max_pages``, raises :class:`~ascli.exceptions.PaginationError` instead of
looping forever.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from ascli.exceptions import PaginationError

DEFAULT_MAX_PAGES = 1000


class PaginatedResponse(Protocol):
    """What the engine needs from a page type (:class:`~ascli.models.Page` implements it)."""

    def next_url(self) -> str:
        """Return the next page URL, or ``""`` on the last page."""
        ...

    def merge(self, other: "PaginatedResponse") -> "PaginatedResponse":
        """Return a new response with *other*'s items appended."""
        ...


P = TypeVar("P", bound=PaginatedResponse)

PageObserver = Callable[[int, str], None]


def paginate_all(
    first_page: P,
    fetch_next: Callable[[str], P],
    *,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> P:
    """Follow ``next`` links from *first_page* and merge every page.

    Args:
        first_page: The already-fetched first page.
        fetch_next: Fetches the page at a ``next`` URL. Called exactly
            ``N - 1`` times for ``N`` pages.
        max_pages: Upper bound on the number of pages, first page included.

    Returns:
        All items of all pages, in page order.

    Raises:
        PaginationError: On a revisited ``next`` URL or when the chain
            exceeds *max_pages*.
    """
    return paginate_all_with_observer(first_page, fetch_next, None, max_pages=max_pages)


def paginate_all_with_observer(
    first_page: P,
    fetch_next: Callable[[str], P],
    observer: Optional[PageObserver],
    *,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> P:
    """Like :func:`paginate_all`, reporting progress after each page.

    ``observer(page_number, next_url)`` is called once per page, starting at
    ``1``; ``next_url`` is ``""`` for the last page.
    """
    if max_pages < 1:
        raise ValueError("max_pages must be at least 1")

    result = first_page
    current = first_page
    page_number = 1
    seen: set[str] = set()

    while True:
        next_url = current.next_url()
        if observer is not None:
            observer(page_number, next_url)
        if not next_url:
            return result
        if next_url in seen:
            raise PaginationError(f"Pagination loop detected: {next_url} was already fetched")
        if page_number >= max_pages:
            raise PaginationError(f"Pagination exceeded {max_pages} pages")
        seen.add(next_url)

        current = fetch_next(next_url)
        page_number += 1
        result = result.merge(current)


async def paginate_all_async(
    first_page: P,
    fetch_next: Callable[[str], Awaitable[P]],
    observer: Optional[PageObserver] = None,
    *,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> P:
    """Coroutine version of :func:`paginate_all_with_observer` for async fetchers."""
    if max_pages < 1:
        raise ValueError("max_pages must be at least 1")

    result = first_page
    current = first_page
    page_number = 1
    seen: set[str] = set()

    while True:
        next_url = current.next_url()
        if observer is not None:
            observer(page_number, next_url)
        if not next_url:
            return result
        if next_url in seen:
            raise PaginationError(f"Pagination loop detected: {next_url} was already fetched")
        if page_number >= max_pages:
            raise PaginationError(f"Pagination exceeded {max_pages} pages")
        seen.add(next_url)

        current = await fetch_next(next_url)
        page_number += 1
        result = result.merge(current)
