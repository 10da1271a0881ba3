"""
PaginatedQuery - URL-aware, cached, flicker-free access to one paginated collection.

Ties the pieces together: the navigator says which page, the key builder
names it, the cache store fetches it, and the placeholder tracker keeps the
previous page on screen until the new one arrives.
"""

import functools
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from loguru import logger
from pydantic import BaseModel

from pagequery.navigation.url_state import NavigationSynchronizer
from pagequery.queries.placeholder import PlaceholderTracker
from pagequery.services.cache import CacheEntry, CacheStore, EntryStatus, Subscription
from pagequery.services.keys import QueryKey, build_key

PageFetcher = Callable[[QueryKey], Awaitable[Any]]
ViewListener = Callable[["PaginatedView"], None]
Filters = Mapping[str, Any] | BaseModel | None


@dataclass(frozen=True)
class PaginatedView:
    """What the rendering layer gets for the current page."""

    page_number: int
    page_size: int
    items: list[Any] = field(default_factory=list)
    total_pages: int = 0
    has_next_page: bool = False
    has_previous_page: bool = False
    is_loading: bool = False  # Nothing to show yet
    is_fetching: bool = False  # Any fetch, including background refetch
    is_error: bool = False
    error: Exception | None = None
    is_placeholder_data: bool = False  # Previous page shown while this one loads


class PaginatedQuery:
    """
    Usage:
        query = PaginatedQuery(store, navigator, "projects", fetch_page)

        view = query.read()        # returns at once, may show placeholder data
        view = await query.wait()  # after the current page has resolved
        query.next_page()
    """

    def __init__(
        self,
        store: CacheStore,
        navigator: NavigationSynchronizer,
        namespace: str,
        fetch_page: PageFetcher,
        filters: Filters = None,
        *,
        stale_time: timedelta | None = None,
        gc_time: timedelta | None = None,
    ):
        self._store = store
        self._navigator = navigator
        self.namespace = namespace
        self._fetch_page = fetch_page
        self._filters = filters
        self._stale_time = stale_time
        self._gc_time = gc_time

        self._tracker = PlaceholderTracker()
        self._subscription: Subscription | None = None
        self._listeners: list[ViewListener] = []
        self._last_view: PaginatedView | None = None

    @property
    def filters(self) -> Filters:
        return self._filters

    @property
    def last_view(self) -> PaginatedView | None:
        return self._last_view

    def current_key(self) -> QueryKey:
        state = self._navigator.read()
        return build_key(self.namespace, self._filters, state.page_number, state.page_size)

    def _fetcher_for(self, key: QueryKey) -> Callable[[], Awaitable[Any]]:
        return functools.partial(self._fetch_page, key)

    def read(self) -> PaginatedView:
        """Snapshot of the current page; schedules a fetch if needed."""
        key = self.current_key()
        entry = self._store.ensure(
            key,
            self._fetcher_for(key),
            stale_time=self._stale_time,
            gc_time=self._gc_time,
            # a failed page gets a fresh attempt whenever it is navigated to
            refetch_errors=key != self._tracker.active_key,
        )
        self._activate(key)
        return self._build_view(key, entry)

    async def wait(self) -> PaginatedView:
        """Wait for the current page's fetch to settle, then read."""
        key = self.current_key()
        self.read()
        await self._store.wait(key)
        return self.read()

    def _activate(self, key: QueryKey) -> None:
        previous_key = self._tracker.active_key
        previous_entry = self._store.peek(previous_key) if previous_key else None
        if not self._tracker.observe(key, previous_entry):
            return

        if self._subscription is not None:
            self._subscription.unsubscribe()
        self._subscription = self._store.subscribe(key, self._on_entry_change)
        logger.debug(f"PaginatedQuery '{self.namespace}' now observing {key}")

    def _on_entry_change(self, entry: CacheEntry) -> None:
        if entry.key != self._tracker.active_key:
            return

        if entry.invalidated and not entry.is_fetching:
            # refetch right away; the resulting LOADING transition notifies listeners
            self._store.ensure(
                entry.key,
                self._fetcher_for(entry.key),
                stale_time=self._stale_time,
                gc_time=self._gc_time,
            )
            return

        view = self._build_view(entry.key, entry)
        for listener in list(self._listeners):
            listener(view)

    def _build_view(self, key: QueryKey, entry: CacheEntry | None) -> PaginatedView:
        resolved = self._tracker.resolve(entry)
        data = resolved.data
        is_fetching = entry is not None and entry.is_fetching

        view = PaginatedView(
            page_number=key.page_number,
            page_size=key.page_size,
            items=list(data.items) if data else [],
            total_pages=data.total_pages if data else 0,
            has_next_page=data.has_next_page if data else False,
            has_previous_page=data.has_previous_page if data else False,
            is_loading=data is None and is_fetching,
            is_fetching=is_fetching,
            is_error=entry is not None and entry.status == EntryStatus.ERROR,
            error=entry.error if entry is not None else None,
            is_placeholder_data=resolved.is_placeholder,
        )
        self._last_view = view
        return view

    # Navigation

    def go_to_page(self, page_number: int) -> PaginatedView:
        self._navigator.go_to_page(page_number)
        return self.read()

    def next_page(self) -> PaginatedView:
        """Advance one page if the current data says there is one."""
        view = self.read()
        if view.has_next_page:
            return self.go_to_page(view.page_number + 1)
        return view

    def previous_page(self) -> PaginatedView:
        view = self.read()
        if view.has_previous_page and view.page_number > 1:
            return self.go_to_page(view.page_number - 1)
        return view

    def set_page_size(self, page_size: int) -> PaginatedView:
        self._navigator.set_page_size(page_size)
        return self.read()

    def set_filters(self, filters: Filters) -> PaginatedView:
        """Replace the filter; the page number goes back to 1."""
        self._filters = filters
        self._navigator.reset_page()
        return self.read()

    def refetch(self) -> PaginatedView:
        key = self.current_key()
        self._store.refetch(key, self._fetcher_for(key))
        return self.read()

    # Observers

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """Call listener with a fresh view on every change of the current entry."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._listeners.clear()
        self._tracker.reset()

    def __enter__(self) -> "PaginatedQuery":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
