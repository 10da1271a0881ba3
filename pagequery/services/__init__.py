"""
Service layer - cached, single-flight access to paginated REST collections.

Provides:
- QueryKey/build_key: canonical cache keys
- CacheStore: query cache with stale-while-revalidate and GC
- FetchExecutor: single-flight fetches with retry
- RetryPolicy: retry/backoff decisions
- HttpTransport: httpx client mapped onto the error taxonomy
- ResourceService/QueryClient: per-collection services and their composition root
"""

from pagequery.services.errors import (
    ServiceError,
    QueryError,
    ClientError,
    TransientError,
    RequestTimeoutError,
    MalformedResponse,
)
from pagequery.services.keys import QueryKey, build_key
from pagequery.services.envelope import PaginationEnvelope, normalize_envelope
from pagequery.services.retry import Operation, Retry, RetryPolicy, Surface
from pagequery.services.executor import Attempt, FetchExecutor
from pagequery.services.cache import CacheEntry, CacheStore, EntryStatus, Subscription
from pagequery.services.transport import HttpTransport
from pagequery.services.resources import (
    ProjectFilter,
    ProjectStatus,
    ProjectVisibility,
    ResourceService,
)
from pagequery.services.client import QueryClient

__all__ = [
    # Errors
    "ServiceError",
    "QueryError",
    "ClientError",
    "TransientError",
    "RequestTimeoutError",
    "MalformedResponse",
    # Keys and envelopes
    "QueryKey",
    "build_key",
    "PaginationEnvelope",
    "normalize_envelope",
    # Retry
    "Operation",
    "Retry",
    "RetryPolicy",
    "Surface",
    # Execution and cache
    "Attempt",
    "FetchExecutor",
    "CacheEntry",
    "CacheStore",
    "EntryStatus",
    "Subscription",
    # Transport and resources
    "HttpTransport",
    "ProjectFilter",
    "ProjectStatus",
    "ProjectVisibility",
    "ResourceService",
    "QueryClient",
]
