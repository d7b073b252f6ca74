"""Paginated transaction log source.

The remote analytical store is an external collaborator. This module only
describes how its pages are consumed: a :class:`PaginatedTransactionSource`
is a lazy, finite and restartable iterable of :class:`TransactionEvent`.
Every iteration opens its own connection through the caller-supplied
``connect`` factory and releases it once the stream is drained or an error
escapes.

Termination follows the store's contract: a page with fewer rows than the
requested page size is the last one. If the final page happens to be
exactly full, one more request is issued and the empty page it returns ends
the stream.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, ContextManager, Iterator, Mapping, Protocol, Sequence

from clv_estimator.errors import InvalidInputError
from clv_estimator.foundation.transactions import TransactionEvent

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10_000


class PageFetcher(Protocol):
    """Fetch one page of raw rows from an open connection."""

    def __call__(
        self, connection: Any, offset: int, limit: int
    ) -> Sequence[Mapping[str, Any]]: ...


class PaginatedTransactionSource:
    """Lazy, restartable sequence of transaction events read page by page.

    Parameters
    ----------
    connect:
        Zero-argument callable returning a context manager that yields an
        open connection and closes it on exit.
    fetch_page:
        Callable ``fetch_page(connection, offset, limit)`` returning at most
        ``limit`` raw rows with ``customer_id``, ``amount`` and ``timestamp``.
    page_size:
        Rows requested per page.
    drop_non_positive:
        Filter rows whose amount is zero or negative (refunds, voids) before
        they reach the aggregator. When False such rows raise
        :class:`InvalidInputError`.

    Examples
    --------
    >>> from contextlib import nullcontext
    >>> rows = [{"customer_id": "C1", "amount": 5.0, "timestamp": "2024-01-01T00:00:00"}]
    >>> source = PaginatedTransactionSource(
    ...     connect=lambda: nullcontext(rows),
    ...     fetch_page=lambda conn, offset, limit: conn[offset:offset + limit],
    ...     page_size=100,
    ... )
    >>> [event.customer_id for event in source]
    ['C1']
    """

    def __init__(
        self,
        connect: Callable[[], ContextManager[Any]],
        fetch_page: PageFetcher,
        page_size: int = DEFAULT_PAGE_SIZE,
        drop_non_positive: bool = True,
    ) -> None:
        if page_size <= 0:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self.connect = connect
        self.fetch_page = fetch_page
        self.page_size = page_size
        self.drop_non_positive = drop_non_positive

    def pages(self) -> Iterator[Sequence[Mapping[str, Any]]]:
        """Yield raw pages until a short page signals the end of the stream."""
        with self.connect() as connection:
            offset = 0
            while True:
                page = self.fetch_page(connection, offset, self.page_size)
                if len(page) > self.page_size:
                    raise InvalidInputError(
                        f"Page at offset {offset} returned {len(page)} rows, "
                        f"more than the requested page size {self.page_size}"
                    )
                logger.debug(f"Fetched {len(page)} rows at offset {offset}")
                yield page
                if len(page) < self.page_size:
                    break
                offset += len(page)

    def __iter__(self) -> Iterator[TransactionEvent]:
        index = 0
        dropped = 0
        for page in self.pages():
            for row in page:
                if self.drop_non_positive and _non_positive_amount(row):
                    dropped += 1
                else:
                    yield TransactionEvent.from_mapping(row, index=index)
                index += 1
        if dropped:
            logger.warning(f"Dropped {dropped} rows with non-positive amount")
        logger.info(f"Read {index - dropped} transaction events from source")


def _non_positive_amount(row: Mapping[str, Any]) -> bool:
    try:
        return float(row.get("amount")) <= 0
    except (TypeError, ValueError):
        # Unparseable amounts are reported by TransactionEvent validation
        return False
