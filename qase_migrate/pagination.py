"""Offset/limit pagination over Qase list endpoints."""

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PageFunc = Callable[[int, int], Awaitable[list[T]]]

DEFAULT_MAX_PAGES = 1000


@dataclass(slots=True)
class FetchResult(Generic[T]):
    """Everything a paginated fetch collected.

    ``truncated`` is set when the page ceiling stopped the loop before the
    service ran out of data; ``stalled`` when a full page brought no new ids.
    """

    items: list[T] = field(default_factory=list)
    pages: int = 0
    truncated: bool = False
    stalled: bool = False


class PaginatedFetcher:
    """Walks an offset/limit endpoint until it is exhausted.

    A failing page call propagates and discards everything fetched so far, so
    callers either get the whole collection or an exception.
    """

    def __init__(
        self,
        max_pages: int = DEFAULT_MAX_PAGES,
        page_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_pages = max_pages
        self.page_delay = page_delay
        self._sleep = sleep

    async def fetch(
        self,
        fetch_page: PageFunc[T],
        *,
        page_size: int,
        dedup_key: Callable[[T], Hashable] | None = None,
        label: str = "items",
    ) -> FetchResult[T]:
        """Fetch every page.

        Args:
            fetch_page: Coroutine function called as
                ``fetch_page(offset=..., limit=...)``.
            page_size: Requested page length; a shorter page ends the loop.
            dedup_key: When given, elements whose key was already seen are
                dropped and a full page without new keys stops the loop.
            label: Name used in progress logs.

        Returns:
            FetchResult with the collected items.
        """
        result: FetchResult[T] = FetchResult()
        seen: set[Hashable] = set()
        offset = 0
        log = logger.bind(label=label, page_size=page_size)

        while True:
            if result.pages >= self.max_pages:
                result.truncated = True
                log.warning(
                    "Page limit reached, results may be incomplete",
                    max_pages=self.max_pages,
                    total=len(result.items),
                )
                break

            if result.pages > 0 and self.page_delay > 0:
                await self._sleep(self.page_delay)

            page = await fetch_page(offset=offset, limit=page_size)
            result.pages += 1

            if dedup_key is None:
                result.items.extend(page)
                added = len(page)
            else:
                added = 0
                for item in page:
                    key = dedup_key(item)
                    if key in seen:
                        continue
                    seen.add(key)
                    result.items.append(item)
                    added += 1

            log.info(
                "Fetched page",
                page=result.pages,
                offset=offset,
                page_items=len(page),
                total=len(result.items),
            )

            if len(page) < page_size:
                break

            if dedup_key is not None and added == 0:
                result.stalled = True
                log.warning(
                    "Page contained no new entries, stopping",
                    page=result.pages,
                    total=len(result.items),
                )
                break

            offset += len(page)

        log.info(
            "Fetch complete",
            pages=result.pages,
            total=len(result.items),
            truncated=result.truncated,
        )
        return result
