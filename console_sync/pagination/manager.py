"""
Cursor pagination for list views, with filter-driven resets.
"""
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from console_sync.cache.coalescer import RequestCoordinator
from console_sync.errors import RequestCancelledError
from .models import FilterSet, Page, PageState, filters_equal, filters_key, normalize_filters

logger = logging.getLogger("pagination.manager")

PageFetcher = Callable[[FilterSet, Optional[Any], int], Awaitable[Page]]


class PaginationCursorManager:
    """
    Loads pages of a list view and appends them in server order.

    - load_first_page() starts over for a filter set, cancelling any load
      still running for the previous one
    - load_next_page() appends the next page, or returns the state
      unchanged when there is no cursor or that page is already loading
    - Responses that arrive after a reset are discarded

    Items are never reordered or de-duplicated here; the server's cursor is
    responsible for not repeating rows.
    """

    def __init__(
        self,
        coordinator: RequestCoordinator,
        fetch_page: PageFetcher,
        page_size: int = 20,
        name: str = "list",
    ):
        """
        Args:
            coordinator: Shared request coordinator
            fetch_page: Called as fetch_page(filters, cursor, limit)
            page_size: Passed to the backend as the page limit
            name: Prefix for this list's query keys
        """
        self._coordinator = coordinator
        self._fetch_page = fetch_page
        self.page_size = page_size
        self.name = name
        self._epoch = 0
        self._keys: Dict[str, int] = {}

    def request_key(self, filters: Mapping[str, Any], cursor: Optional[Any]) -> str:
        """Query key for one page: list name, filter set and cursor."""
        position = "start" if cursor is None else str(cursor)
        return f"{self.name}:{filters_key(filters)}:{position}"

    @property
    def epoch(self) -> int:
        return self._epoch

    async def load_first_page(self, filters: Optional[Mapping[str, Any]]) -> Optional[PageState]:
        """
        Discard everything loaded so far and fetch the first page.

        Returns:
            A new PageState, or None if another reset superseded this load
            before it finished

        Raises:
            Exception: Fetch failures propagate to the caller
        """
        filters = normalize_filters(filters)
        self.reset()
        epoch = self._epoch
        logger.debug(f"Loading first page of {self.name} for {filters}")

        try:
            page = await self._fetch(filters, None)
        except RequestCancelledError:
            logger.debug(f"First page load cancelled for {self.name}")
            return None

        if epoch != self._epoch:
            logger.debug(f"Discarding superseded first page for {self.name}")
            return None

        return PageState(
            items=list(page.items),
            cursor=page.next_cursor,
            has_more=bool(page.has_more and page.next_cursor is not None),
            filters=filters,
            total=page.total,
        )

    async def load_next_page(self, state: PageState) -> PageState:
        """
        Append the next page to a state.

        Returns the same state unchanged if there is nothing more to load,
        the page is already being fetched, or a reset happened meanwhile.
        On failure the state is left as it was (so the view can retry) and
        the error propagates.
        """
        if not state.can_load_more:
            return state

        key = self.request_key(state.filters, state.cursor)
        if self._coordinator.is_in_flight(key):
            logger.debug(f"Page already loading: {key}")
            return state

        epoch = self._epoch
        try:
            page = await self._fetch(state.filters, state.cursor)
        except RequestCancelledError:
            logger.debug(f"Next page load cancelled: {key}")
            return state

        if epoch != self._epoch:
            logger.debug(f"Discarding superseded page: {key}")
            return state

        return replace(
            state,
            items=state.items + list(page.items),
            cursor=page.next_cursor,
            has_more=bool(page.has_more and page.next_cursor is not None),
            total=page.total if page.total is not None else state.total,
        )

    async def apply_filters(
        self,
        state: Optional[PageState],
        filters: Optional[Mapping[str, Any]],
    ) -> Optional[PageState]:
        """
        Keep the current state if filters are unchanged, otherwise start over.

        Filters are compared by value, not identity.
        """
        if state is not None and filters_equal(state.filters, filters):
            return state
        return await self.load_first_page(filters)

    def reset(self) -> None:
        """Invalidate cursors and cancel every load this manager started."""
        self._epoch += 1
        for key in list(self._keys):
            self._coordinator.cancel(key)
        self._keys.clear()

    def dispose(self) -> None:
        """Called when the list view goes away."""
        self.reset()
        logger.debug(f"Disposed paginator {self.name}")

    async def _fetch(self, filters: FilterSet, cursor: Optional[Any]) -> Page:
        key = self.request_key(filters, cursor)
        epoch = self._epoch
        self._keys[key] = epoch
        try:
            return await self._coordinator.run(
                key,
                lambda: self._fetch_page(dict(filters), cursor, self.page_size),
            )
        finally:
            if self._keys.get(key) == epoch:
                del self._keys[key]
