"""Entra Graph Samples — Paged collection walking.

Microsoft Graph returns large collections (users, groups, memberOf) one page
at a time, with an ``@odata.nextLink`` pointing at the next page.  This module
walks those pages:

  - :func:`accumulate_pages` collects every item, or the first *N* items when
    a bound is given, and stops fetching as soon as the bound is reached.
  - :func:`filter_pages` collects only items matching a predicate.
  - :func:`collect_groups` keeps the ``group`` entries of a mixed
    ``/me/memberOf`` collection and reports service errors as an outcome.

Page fetches are sequential awaits.  Every fetch honours an optional
cancellation event and per-page timeout supplied by the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Generic, Protocol, TypeVar

import structlog
from kiota_abstractions.api_error import APIError

from src.graph.cae import GraphOutcome
from src.middleware.tracing import record_pages_fetched

logger = structlog.get_logger(__name__)

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

GROUP_ODATA_TYPE = "#microsoft.graph.group"


class PagingCancelledError(Exception):
    """Raised when a page walk is cancelled before the next fetch."""


# ── Cursor protocol ────────────────────────────────────────────────────────


class PageCursor(Protocol[T_co]):
    """One page of a server-paginated collection plus a way to get the next."""

    def current_page(self) -> list[T_co]: ...

    def has_next_page(self) -> bool: ...

    async def fetch_next_page(self) -> PageCursor[T_co]: ...


class GraphPageCursor(Generic[T]):
    """Adapts a msgraph collection response to :class:`PageCursor`.

    Args:
        response: A Graph collection response (``value`` + ``odata_next_link``),
            or ``None`` for an empty collection.
        request_builder: The builder that produced *response*; its
            ``with_url(next_link)`` is used to request following pages.
    """

    def __init__(self, response: Any, request_builder: Any) -> None:
        self._response = response
        self._request_builder = request_builder

    def current_page(self) -> list[T]:
        if self._response is None:
            return []
        return list(getattr(self._response, "value", None) or [])

    @property
    def next_link(self) -> str | None:
        if self._response is None:
            return None
        return getattr(self._response, "odata_next_link", None) or None

    def has_next_page(self) -> bool:
        return self.next_link is not None

    async def fetch_next_page(self) -> GraphPageCursor[T]:
        link = self.next_link
        if link is None:
            raise RuntimeError("Collection has no next page")
        response = await self._request_builder.with_url(link).get()
        return GraphPageCursor(response, self._request_builder)


# ── Helpers ────────────────────────────────────────────────────────────────


async def _advance(
    cursor: PageCursor[T],
    cancel_event: asyncio.Event | None,
    page_timeout: float | None,
) -> PageCursor[T]:
    if cancel_event is not None and cancel_event.is_set():
        raise PagingCancelledError("Page walk cancelled before next fetch")
    if page_timeout is None:
        return await cursor.fetch_next_page()
    async with asyncio.timeout(page_timeout):
        return await cursor.fetch_next_page()


def is_group(item: Any) -> bool:
    """Return True when a directory object is a group (not a role etc.)."""
    return getattr(item, "odata_type", None) == GROUP_ODATA_TYPE


# ── Page walkers ───────────────────────────────────────────────────────────


async def accumulate_pages(
    cursor: PageCursor[T],
    max_items: int | None = None,
    *,
    cancel_event: asyncio.Event | None = None,
    page_timeout: float | None = None,
) -> list[T]:
    """Collect items across pages, stopping at *max_items* when given.

    The result never holds more than *max_items* items, and no page is
    fetched once the bound has been reached.  Fetch failures propagate to
    the caller; items collected so far are discarded with the exception.

    Args:
        cursor: The first page, already fetched.
        max_items: Upper bound on returned items. ``None`` means unbounded.
        cancel_event: Checked before every next-page fetch.
        page_timeout: Seconds allowed for each next-page fetch.

    Returns:
        Items in page order, then in-page order.

    Raises:
        ValueError: For a negative *max_items*.
        PagingCancelledError: When *cancel_event* is set before a fetch.
        TimeoutError: When a fetch exceeds *page_timeout*.
    """
    if max_items is not None and max_items < 0:
        raise ValueError(f"max_items must be >= 0 or None, got {max_items}")

    items: list[T] = []
    pages = 0
    if max_items == 0:
        return items

    while True:
        page = cursor.current_page()
        for position, item in enumerate(page, start=1):
            items.append(item)
            if max_items is not None and len(items) >= max_items:
                record_pages_fetched(pages)
                logger.info(
                    "graph.paging.complete",
                    items=len(items),
                    pages_fetched=pages,
                    truncated=position < len(page) or cursor.has_next_page(),
                )
                return items

        if not cursor.has_next_page():
            break
        cursor = await _advance(cursor, cancel_event, page_timeout)
        pages += 1

    record_pages_fetched(pages)
    logger.info(
        "graph.paging.complete",
        items=len(items),
        pages_fetched=pages,
        truncated=False,
    )
    return items


async def filter_pages(
    cursor: PageCursor[T],
    predicate: Callable[[T], bool],
    *,
    cancel_event: asyncio.Event | None = None,
    page_timeout: float | None = None,
) -> list[T]:
    """Walk every page and keep the items for which *predicate* is true."""
    kept: list[T] = []
    pages = 0
    while True:
        kept.extend(item for item in cursor.current_page() if predicate(item))
        if not cursor.has_next_page():
            break
        cursor = await _advance(cursor, cancel_event, page_timeout)
        pages += 1

    record_pages_fetched(pages)
    logger.debug("graph.paging.filtered", kept=len(kept), pages_fetched=pages)
    return kept


async def collect_groups(
    cursor: PageCursor[Any] | None,
    *,
    cancel_event: asyncio.Event | None = None,
    page_timeout: float | None = None,
) -> GraphOutcome[list[Any]]:
    """Keep only the groups of a ``/me/memberOf`` collection.

    The collection mixes groups with directory roles and administrative
    units.  A Graph service error during the walk aborts it and is returned
    as a failed outcome, distinct from a successful empty list.
    """
    if cursor is None:
        return GraphOutcome.success([])

    try:
        groups = await filter_pages(
            cursor,
            is_group,
            cancel_event=cancel_event,
            page_timeout=page_timeout,
        )
    except APIError as exc:
        logger.error(
            "graph.member_of.page_error",
            error=str(exc),
            status_code=getattr(exc, "response_status_code", None),
        )
        return GraphOutcome.failure(exc)

    return GraphOutcome.success(groups)
