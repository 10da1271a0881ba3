"""
UI-facing queries built on the service layer.
"""

from pagequery.queries.paginated import PaginatedQuery, PaginatedView
from pagequery.queries.placeholder import PlaceholderTracker

__all__ = [
    "PaginatedQuery",
    "PaginatedView",
    "PlaceholderTracker",
]
