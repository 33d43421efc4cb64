"""
N+1 sentinel pagination.

A page of ``page_size`` entities is fetched by asking for ``page_size + 1``;
if the extra (sentinel) entity comes back there is another page. Nothing
here ever issues a COUNT query.

Queries that return several rows per entity (label rows) paginate on the
entity in a subquery; pass ``key`` so the sentinel is counted in entities,
not rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .sparql import get_bindings, term_value

logger = logging.getLogger(__name__)

QueryBuilder = Callable[[int, int], str]

DEFAULT_PAGE_SIZE = 200


@dataclass(frozen=True)
class Page:
    rows: tuple[dict, ...]
    has_more: bool
    offset: int
    page_size: int

    @property
    def next_offset(self) -> int:
        return self.offset + self.page_size

    def values(self, var: str) -> list[str]:
        """Distinct values of a variable, in row order."""
        seen = dict.fromkeys(term_value(row, var) for row in self.rows)
        return [value for value in seen if value is not None]


def _split_sentinel(rows: list[dict], page_size: int, key: str | None) -> tuple[list[dict], bool]:
    if key is None:
        if len(rows) > page_size:
            return rows[:page_size], True
        return rows, False

    keys = list(dict.fromkeys(term_value(row, key) for row in rows))
    if len(keys) <= page_size:
        return rows, False
    kept = set(keys[:page_size])
    return [row for row in rows if term_value(row, key) in kept], True


async def fetch_page(
    query_builder: QueryBuilder,
    page_size: int,
    offset: int,
    client,
    key: str | None = None,
    retries: int | None = None,
    signal: Any = None,
) -> Page:
    """Fetch one page.

    Args:
        query_builder: ``(limit, offset) -> query``; called with page_size + 1.
        page_size: Entities per page.
        offset: Offset of this page.
        client: Object with an ``execute`` coroutine.
        key: Variable identifying an entity when rows repeat per entity.
        retries: Passed through to the client.
        signal: Passed through to the client.

    Raises:
        SPARQLError: Transport failures propagate unchanged.
    """
    query = query_builder(page_size + 1, offset)
    results = await client.execute(query, retries=retries, signal=signal)
    rows, has_more = _split_sentinel(list(get_bindings(results)), page_size, key)
    logger.debug("Fetched page offset=%d size=%d rows=%d has_more=%s", offset, page_size, len(rows), has_more)
    return Page(rows=tuple(rows), has_more=has_more, offset=offset, page_size=page_size)


async def fetch_all(
    query_builder: QueryBuilder,
    page_size: int,
    client,
    var: str,
    on_page: Callable[[int], Any] | None = None,
    retries: int | None = None,
) -> list[str]:
    """Fetch every value of ``var`` across all pages.

    Args:
        on_page: Called with the running count after each page.
    """
    values: list[str] = []
    seen: set[str] = set()
    offset = 0
    while True:
        page = await fetch_page(query_builder, page_size, offset, client, retries=retries)
        for value in page.values(var):
            if value not in seen:
                seen.add(value)
                values.append(value)
        if on_page is not None:
            on_page(len(values))
        if not page.has_more:
            return values
        offset = page.next_offset


@dataclass
class PageState:
    """Pagination state of one scope (a scheme or a parent node)."""

    scope: str
    page_size: int = DEFAULT_PAGE_SIZE
    offset: int = 0
    has_more: bool = False
    entities: list = field(default_factory=list)
    loading: bool = False
    loaded: bool = False

    @property
    def next_offset(self) -> int:
        return self.offset + self.page_size if self.loaded else 0


class PageTracker:
    """Per-scope page state with one fetch in flight per scope."""

    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE):
        self.page_size = page_size
        self._states: dict[str, PageState] = {}

    def state(self, scope: str) -> PageState:
        if scope not in self._states:
            self._states[scope] = PageState(scope=scope, page_size=self.page_size)
        return self._states[scope]

    def reset(self, scope: str | None = None) -> None:
        if scope is None:
            self._states.clear()
        else:
            self._states.pop(scope, None)

    def try_begin(self, scope: str) -> bool:
        """Mark a fetch for ``scope`` as running; False if one already is."""
        state = self.state(scope)
        if state.loading:
            logger.debug("Page load for %s already in progress", scope)
            return False
        state.loading = True
        return True

    def end(self, scope: str) -> None:
        self.state(scope).loading = False

    def commit(self, scope: str, offset: int, has_more: bool, entities: list | None = None) -> PageState:
        """Record a fetched page. A first page replaces the scope's entities."""
        state = self.state(scope)
        state.offset = offset
        state.has_more = has_more
        state.loaded = True
        if entities is not None:
            if offset == 0:
                state.entities = list(entities)
            else:
                state.entities.extend(entities)
        return state

    async def load(
        self,
        scope: str,
        query_builder: QueryBuilder,
        client,
        offset: int | None = None,
        key: str | None = None,
        retries: int | None = None,
    ) -> Page | None:
        """Fetch a page for a scope and record it.

        ``offset`` defaults to the page after the last one loaded. Returns
        None without querying if a fetch for this scope is already running.
        On failure the scope keeps its previous offset and has_more.
        """
        if not self.try_begin(scope):
            return None
        state = self.state(scope)
        if offset is None:
            offset = state.next_offset
        try:
            page = await fetch_page(query_builder, state.page_size, offset, client, key=key, retries=retries)
        finally:
            self.end(scope)

        self.commit(scope, page.offset, page.has_more)
        return page
