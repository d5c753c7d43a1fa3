"""Paginated fetcher for external listing endpoints.

Walks ``fetch_page(page, page_size) -> {"data": [...], "hasMore": bool}``
from page 1 until the remote says there is nothing more, a page comes back
short, or ``max_pages`` is hit. A malformed page ends the walk early with
whatever was collected -- partial data is still useful to a sync pass that
retries missing entities individually.

Two entry points:
- iter_pages(): async generator of PageProgress events (lazy, caller-paced)
- fetch_all_pages(): drains iter_pages() into a PaginatedResult
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from typing import Any

import structlog

from src.app.pricebook.schemas import PageProgress, PaginatedResult

logger = structlog.get_logger(__name__)

PageFetch = Callable[[int, int], Awaitable[Mapping[str, Any]]]

DEFAULT_PAGE_SIZE = 500
DEFAULT_MAX_PAGES = 100


class _PageWalk:
    """Mutable walk state shared between iter_pages and its caller."""

    def __init__(self) -> None:
        self.pages_fetched = 0
        self.complete = True


def _extract_page(
    response: Any,
    items_key: str,
    has_more_key: str,
) -> tuple[list[Any], bool] | None:
    """Return (items, has_more) or None when the response is malformed."""
    if not isinstance(response, Mapping):
        return None
    items = response.get(items_key)
    if isinstance(items, (str, bytes)) or not isinstance(items, Sequence):
        return None
    return list(items), bool(response.get(has_more_key, False))


async def _walk(
    fetch_page: PageFetch,
    walk: _PageWalk,
    *,
    page_size: int,
    max_pages: int,
    items_key: str,
    has_more_key: str,
) -> AsyncIterator[PageProgress]:
    running_total = 0
    page = 1

    while page <= max_pages:
        response = await fetch_page(page, page_size)
        walk.pages_fetched = page

        extracted = _extract_page(response, items_key, has_more_key)
        if extracted is None:
            walk.complete = False
            logger.warning(
                "pagination.malformed_page",
                page=page,
                collected=running_total,
            )
            return

        items, has_more = extracted
        running_total += len(items)
        yield PageProgress(
            page=page,
            items=items,
            fetched=len(items),
            running_total=running_total,
        )

        if not has_more or len(items) < page_size:
            return
        page += 1

    walk.complete = False
    logger.warning(
        "pagination.page_limit_reached",
        max_pages=max_pages,
        collected=running_total,
        detail="results may be incomplete",
    )


def iter_pages(
    fetch_page: PageFetch,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_pages: int = DEFAULT_MAX_PAGES,
    items_key: str = "data",
    has_more_key: str = "hasMore",
) -> AsyncIterator[PageProgress]:
    """Yield one PageProgress per page fetched, in order.

    Exceptions raised by ``fetch_page`` (network errors, RateLimited)
    propagate to the consumer; only malformed bodies are absorbed.
    """
    return _walk(
        fetch_page,
        _PageWalk(),
        page_size=page_size,
        max_pages=max_pages,
        items_key=items_key,
        has_more_key=has_more_key,
    )


async def fetch_all_pages(
    fetch_page: PageFetch,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_pages: int = DEFAULT_MAX_PAGES,
    items_key: str = "data",
    has_more_key: str = "hasMore",
) -> PaginatedResult:
    """Fetch every page and return the concatenated items.

    Returns:
        PaginatedResult with ``complete=False`` when the walk stopped on a
        malformed page or on the page limit.
    """
    walk = _PageWalk()
    items: list[Any] = []
    async for progress in _walk(
        fetch_page,
        walk,
        page_size=page_size,
        max_pages=max_pages,
        items_key=items_key,
        has_more_key=has_more_key,
    ):
        items.extend(progress.items)

    return PaginatedResult(items=items, pages_fetched=walk.pages_fetched, complete=walk.complete)


class PageCollector:
    """Async iterator over pages that remembers whether the walk finished cleanly.

    Used by the sync engine, which merges page by page but still needs to
    report truncation on the run result.
    """

    def __init__(
        self,
        fetch_page: PageFetch,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        items_key: str = "data",
        has_more_key: str = "hasMore",
    ) -> None:
        self._walk_state = _PageWalk()
        self._iterator = _walk(
            fetch_page,
            self._walk_state,
            page_size=page_size,
            max_pages=max_pages,
            items_key=items_key,
            has_more_key=has_more_key,
        )

    def __aiter__(self) -> AsyncIterator[PageProgress]:
        return self._iterator

    @property
    def complete(self) -> bool:
        return self._walk_state.complete

    @property
    def pages_fetched(self) -> int:
        return self._walk_state.pages_fetched
