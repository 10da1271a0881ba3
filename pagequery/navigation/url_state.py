"""
Navigation state synchronizer - page/pageSize live in the URL.

The URL is the only source of truth: every read parses it again, and every
write rewrites it with parameters equal to their default removed.
"""

from dataclasses import dataclass
from typing import Protocol

import httpx
from loguru import logger

PAGE_PARAM = "page"
PAGE_SIZE_PARAM = "pageSize"
DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10


class Location(Protocol):
    """Address bar the synchronizer reads and writes."""

    @property
    def url(self) -> str: ...

    def replace(self, url: str) -> None: ...

    def push(self, url: str) -> None: ...


class MemoryLocation:
    """In-process Location that keeps a history list."""

    def __init__(self, url: str = "/"):
        self.history: list[str] = [url]

    @property
    def url(self) -> str:
        return self.history[-1]

    def replace(self, url: str) -> None:
        self.history[-1] = url

    def push(self, url: str) -> None:
        self.history.append(url)

    def back(self) -> str:
        if len(self.history) > 1:
            self.history.pop()
        return self.url


@dataclass(frozen=True)
class NavigationState:
    page_number: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE


def parse_positive_int(raw: str | None, default: int) -> int:
    """Parse a plain positive decimal integer, falling back to default."""
    if raw is None:
        return default
    raw = raw.strip()
    # digits only: rejects signs, exponents, decimals and non-ASCII digits
    if not (raw.isascii() and raw.isdigit()):
        return default
    value = int(raw)
    return value if value >= 1 else default


def _check_positive(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


class NavigationSynchronizer:
    """
    Read/write adapter between a Location and NavigationState.

    Usage:
        nav = NavigationSynchronizer(MemoryLocation("/projects?page=3"))
        nav.read()            # NavigationState(page_number=3, page_size=10)
        nav.set_page_size(20) # URL becomes /projects?pageSize=20
    """

    def __init__(self, location: Location, default_page_size: int = DEFAULT_PAGE_SIZE):
        self.location = location
        self.default_page_size = _check_positive("default_page_size", default_page_size)

    def read(self) -> NavigationState:
        params = httpx.URL(self.location.url).params
        return NavigationState(
            page_number=parse_positive_int(params.get(PAGE_PARAM), DEFAULT_PAGE),
            page_size=parse_positive_int(
                params.get(PAGE_SIZE_PARAM), self.default_page_size
            ),
        )

    def go_to_page(self, page_number: int) -> NavigationState:
        """Rewrite the page parameter (page 1 removes it)."""
        page_number = _check_positive("page_number", page_number)
        url = self._with_param(
            httpx.URL(self.location.url), PAGE_PARAM, page_number, DEFAULT_PAGE
        )
        return self._replace(url)

    def set_page_size(self, page_size: int) -> NavigationState:
        """Rewrite pageSize and reset to page 1."""
        page_size = _check_positive("page_size", page_size)
        url = httpx.URL(self.location.url).copy_remove_param(PAGE_PARAM)
        url = self._with_param(url, PAGE_SIZE_PARAM, page_size, self.default_page_size)
        return self._replace(url)

    def next_page(self) -> NavigationState:
        return self.go_to_page(self.read().page_number + 1)

    def previous_page(self) -> NavigationState:
        current = self.read().page_number
        if current <= DEFAULT_PAGE:
            return self.read()
        return self.go_to_page(current - 1)

    def reset_page(self) -> NavigationState:
        return self.go_to_page(DEFAULT_PAGE)

    @staticmethod
    def _with_param(url: httpx.URL, name: str, value: int, default: int) -> httpx.URL:
        if value == default:
            return url.copy_remove_param(name)
        return url.copy_set_param(name, str(value))

    def _replace(self, url: httpx.URL) -> NavigationState:
        self.location.replace(str(url))
        logger.debug(f"Navigation: {url}")
        return self.read()
