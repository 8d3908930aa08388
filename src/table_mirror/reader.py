"""
Source stream reader: every source row, ascending by primary key, page by page.
"""

import logging
from collections.abc import Iterator

from .endpoints import SourceEndpoint
from .rows import KeyProjection, Row

logger = logging.getLogger(__name__)


class SourceStreamReader:
    """
    Lazy, forward-only iteration over a source table.

    Each page asks for keys strictly greater than the last key of the previous
    page, so a page boundary never skips or repeats a row. A page shorter
    than ``page_size`` ends the stream. Iterating again restarts from the
    first key.
    """

    def __init__(self, endpoint: SourceEndpoint, page_size: int = 5000):
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self.endpoint = endpoint
        self.page_size = page_size
        self.projection = KeyProjection(endpoint.key_columns)
        self.pages_fetched = 0
        self.rows_read = 0

    def pages(self) -> Iterator[list[Row]]:
        last_key: tuple | None = None
        while True:
            page = self.endpoint.fetch_page(last_key, self.page_size)
            self.pages_fetched += 1
            self.rows_read += len(page)
            if page:
                yield page
                last_key = self.projection.project(page[-1])
            if len(page) < self.page_size:
                logger.debug(
                    f"Source {self.endpoint.label} exhausted after {self.pages_fetched} "
                    f"page(s), {self.rows_read} row(s)"
                )
                return

    def __iter__(self) -> Iterator[Row]:
        for page in self.pages():
            yield from page
