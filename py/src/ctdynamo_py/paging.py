from __future__ import annotations

import asyncio
import concurrent.futures
from collections import deque
from collections.abc import AsyncIterator, Callable, Coroutine, Iterator
from typing import TYPE_CHECKING, Any

import structlog

from .capacity import CapacityUsed
from .codec import WireRecord
from .errors import UsageError
from .query import encode_cursor

if TYPE_CHECKING:
    from .index import Index

logger = structlog.get_logger()

type PageFetcher = Callable[[WireRecord | None], Coroutine[Any, Any, dict[str, Any]]]


class IterableResult[T]:
    """Single-pass, limit-aware sequence of decoded items spanning as many pages as needed.

    The first page is requested on construction (unless ``limit == 0``). At most one page
    fetch is ever in flight: as soon as a page is accepted and known to be non-terminal the
    next one is requested, so the network overlaps with consumption. A page that reaches the
    limit is the last one; if it overshoots, it is cut to the remaining allowance and the
    resume cursor becomes the stored key of the last kept record instead of the service's
    page boundary. Records past the cut are never decoded.

    A result built by ``invoke()`` is consumed with ``for``; one built by ``invoke_async()``
    is consumed with ``async for``. Not safe to share between threads or tasks.
    """

    def __init__(
        self,
        index: Index[T],
        *,
        fetch: PageFetcher,
        limit: int = -1,
        start_key: WireRecord | None = None,
        blocking: bool = True,
        token_sort: str | None = None,
    ) -> None:
        self._index = index
        self._fetch = fetch
        self._limit = limit
        self._blocking = blocking
        self._token_sort = token_sort

        self._page: deque[T] = deque()
        self._pending: concurrent.futures.Future[dict[str, Any]] | asyncio.Future[dict[str, Any]] | None = None
        self._cursor: WireRecord | None = dict(start_key) if start_key else None
        self._pages = 0

        self.items_returned = 0
        self.items_found = 0
        self.items_scanned = 0
        self.capacity = CapacityUsed()

        if limit != 0:
            self._schedule(self._cursor)

    @property
    def limit(self) -> int:
        return self._limit

    def _schedule(self, start_key: WireRecord | None) -> None:
        coro = self._fetch(start_key)
        if self._blocking:
            self._pending = self._index.submit_blocking(coro)
        else:
            self._pending = asyncio.ensure_future(coro)

    def _accept(self, response: dict[str, Any]) -> None:
        raw_items = response.get("Items") or []
        found = int(response.get("Count", len(raw_items)))
        self.items_found += found
        self.items_scanned += int(response.get("ScannedCount", found))
        self.capacity.add(response.get("ConsumedCapacity"))
        self._pages += 1

        last_key = response.get("LastEvaluatedKey") or None

        if self._limit >= 0 and self.items_returned + len(raw_items) >= self._limit:
            allowance = self._limit - self.items_returned
            if len(raw_items) > allowance:
                raw_items = raw_items[:allowance]
                if raw_items:
                    # stored key values, never re-encoded from the decoded item
                    last_kept = raw_items[-1]
                    self._cursor = {a: last_kept[a] for a in self._index.key_attributes}
                logger.debug(
                    "page_truncated",
                    table=self._index.table_name,
                    index=self._index.index_name,
                    page=self._pages,
                    kept=allowance,
                )
            else:
                self._cursor = last_key
        elif last_key:
            self._cursor = last_key
            self._schedule(last_key)
        else:
            self._cursor = None

        items = [self._index.decode(record) for record in raw_items]
        self.items_returned += len(items)
        self._page.extend(items)

    def has_next(self) -> bool:
        if not self._blocking:
            raise UsageError("this result was created by invoke_async(); use has_next_async()")
        while not self._page:
            pending, self._pending = self._pending, None
            if pending is None:
                return False
            self._accept(pending.result())
        return True

    async def has_next_async(self) -> bool:
        if self._blocking:
            raise UsageError("this result was created by invoke(); use has_next()")
        while not self._page:
            pending, self._pending = self._pending, None
            if pending is None:
                return False
            self._accept(await pending)
        return True

    def __iter__(self) -> Iterator[T]:
        if not self._blocking:
            raise UsageError("this result was created by invoke_async(); iterate it with async for")
        return self

    def __next__(self) -> T:
        if not self.has_next():
            raise StopIteration
        return self._page.popleft()

    def __aiter__(self) -> AsyncIterator[T]:
        if self._blocking:
            raise UsageError("this result was created by invoke(); iterate it with for")
        return self

    async def __anext__(self) -> T:
        if not await self.has_next_async():
            raise StopAsyncIteration
        return self._page.popleft()

    @property
    def exclusive_start(self) -> WireRecord | None:
        """Where a later read should resume; None once the keyspace is exhausted."""
        if self._pending is not None or self._page:
            raise UsageError("exclusive_start is only available after the result is fully consumed")
        return self._cursor

    def next_token(self) -> str | None:
        return encode_cursor(self.exclusive_start, index=self._index.index_name, sort=self._token_sort) or None


class QueryResult[T](IterableResult[T]):
    def __init__(self, index: Index[T], *, partition_value: Any, **kwargs: Any) -> None:
        self.partition_value = partition_value
        super().__init__(index, **kwargs)


class ScanResult[T](IterableResult[T]):
    def __init__(self, index: Index[T], *, segment: int = 0, **kwargs: Any) -> None:
        self.segment = segment
        super().__init__(index, **kwargs)
