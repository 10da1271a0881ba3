"""
URL-reflected pagination state.
"""

from pagequery.navigation.url_state import (
    DEFAULT_PAGE_SIZE,
    Location,
    MemoryLocation,
    NavigationState,
    NavigationSynchronizer,
)

__all__ = [
    "DEFAULT_PAGE_SIZE",
    "Location",
    "MemoryLocation",
    "NavigationState",
    "NavigationSynchronizer",
]
