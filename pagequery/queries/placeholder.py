"""
Placeholder data - keep showing the previous page while the next one loads.
"""

from dataclasses import dataclass

from pagequery.services.cache import CacheEntry
from pagequery.services.envelope import PaginationEnvelope
from pagequery.services.keys import QueryKey


@dataclass(frozen=True)
class Resolved:
    data: PaginationEnvelope | None
    is_placeholder: bool


class PlaceholderTracker:
    """
    Remembers the key observed just before the current one.

    Placeholder data only ever comes from that immediately-preceding key,
    so jumping back to page 1 never flashes a page 5 that happens to be
    cached.
    """

    def __init__(self):
        self._active_key: QueryKey | None = None
        self._previous_key: QueryKey | None = None
        self._placeholder: PaginationEnvelope | None = None

    @property
    def active_key(self) -> QueryKey | None:
        return self._active_key

    @property
    def previous_key(self) -> QueryKey | None:
        return self._previous_key

    def observe(self, key: QueryKey, previous_entry: CacheEntry | None = None) -> bool:
        """
        Record that key is now active.

        Args:
            key: Newly active key
            previous_entry: Cache entry of the key that was active until now

        Returns:
            True if the active key changed
        """
        if key == self._active_key:
            return False

        self._previous_key = self._active_key
        self._active_key = key
        if previous_entry is not None and previous_entry.key == self._previous_key:
            self._placeholder = previous_entry.data
        else:
            self._placeholder = None
        return True

    def resolve(self, entry: CacheEntry | None) -> Resolved:
        """Pick what to show for the active key's entry."""
        if entry is not None and entry.data is not None:
            self._placeholder = None
            return Resolved(entry.data, is_placeholder=False)

        fetching = entry is None or entry.is_fetching
        if self._placeholder is not None and fetching:
            return Resolved(self._placeholder, is_placeholder=True)
        return Resolved(None, is_placeholder=False)

    def reset(self) -> None:
        self._active_key = None
        self._previous_key = None
        self._placeholder = None
