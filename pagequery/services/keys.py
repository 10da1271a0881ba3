"""
Query keys - canonical identifiers for a (resource, filter, page, page size) query.

Two keys are equal when their canonical serializations are equal, so the
order in which a filter dict was built never matters, and filters mapped
to None or "" are treated as absent.
"""

import hashlib
import json
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel


def _normalize_value(value: Any) -> Any:
    """Reduce a filter value to a JSON-friendly, order-stable form."""
    if isinstance(value, Enum):
        return _normalize_value(value.value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted((_normalize_value(v) for v in value), key=repr))
    if isinstance(value, (list, tuple)):
        return tuple(_normalize_value(v) for v in value)
    return value


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def canonicalize_filters(
    filters: Mapping[str, Any] | BaseModel | None,
) -> tuple[tuple[str, Any], ...]:
    """Drop empty filter values and sort the rest by name."""
    if filters is None:
        return ()
    if isinstance(filters, BaseModel):
        filters = filters.model_dump(by_alias=True, exclude_none=True)

    return tuple(
        sorted(
            (str(name), _normalize_value(value))
            for name, value in filters.items()
            if not _is_empty(value)
        )
    )


def _check_positive(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


class QueryKey:
    """Immutable, hashable identifier of one page of one filtered collection."""

    __slots__ = ("namespace", "filters", "page_number", "page_size", "_canonical")

    def __init__(
        self,
        namespace: str,
        filters: tuple[tuple[str, Any], ...],
        page_number: int,
        page_size: int,
    ):
        self.namespace = namespace
        self.filters = filters
        self.page_number = page_number
        self.page_size = page_size
        self._canonical = json.dumps(
            [namespace, dict(filters), page_number, page_size],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )

    @property
    def canonical(self) -> str:
        """Deterministic serialization used for equality and hashing."""
        return self._canonical

    @property
    def digest(self) -> str:
        """Short stable hash, handy for log lines."""
        return hashlib.md5(self._canonical.encode()).hexdigest()[:12]

    def filter_dict(self) -> dict[str, Any]:
        return dict(self.filters)

    def to_params(self) -> dict[str, Any]:
        """Query parameters for the HTTP GET that backs this key."""
        params: dict[str, Any] = {}
        for name, value in self.filters:
            params[name] = list(value) if isinstance(value, tuple) else value
        params["pageNumber"] = self.page_number
        params["pageSize"] = self.page_size
        return params

    def matches(self, namespace: str) -> bool:
        return self.namespace == namespace

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QueryKey):
            return NotImplemented
        return self._canonical == other._canonical

    def __hash__(self) -> int:
        return hash(self._canonical)

    def __repr__(self) -> str:
        return f"QueryKey({self._canonical})"

    def __str__(self) -> str:
        return self._canonical


def build_key(
    namespace: str,
    filters: Mapping[str, Any] | BaseModel | None,
    page_number: int,
    page_size: int,
) -> QueryKey:
    """
    Build the cache key for one page of a filtered collection.

    Args:
        namespace: Resource namespace, e.g. "projects"
        filters: Filter fields; None and "" values are dropped
        page_number: 1-based page number
        page_size: Items per page

    Raises:
        ValueError: If namespace is empty or page values are not positive ints
    """
    if not namespace:
        raise ValueError("namespace must be a non-empty string")

    return QueryKey(
        namespace=namespace,
        filters=canonicalize_filters(filters),
        page_number=_check_positive("page_number", page_number),
        page_size=_check_positive("page_size", page_size),
    )
