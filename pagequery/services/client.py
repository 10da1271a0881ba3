"""
QueryClient - one session's worth of transport, executor and cache.

Combines:
- HttpTransport for the network
- FetchExecutor for single-flight fetches with retry
- CacheStore for query-keyed caching and GC
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from loguru import logger

from pagequery.services.cache import CacheStore
from pagequery.services.executor import FetchExecutor, SleepFn
from pagequery.services.resources import ResourceService, Transport
from pagequery.services.retry import RetryPolicy
from pagequery.services.transport import HttpTransport
from pagequery.settings import Settings, global_settings


class QueryClient:
    """
    Composition root for the query layer.

    Usage:
        async with QueryClient() as client:
            projects = client.projects()
            page = await projects.list_page(page_number=2)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: Transport | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: SleepFn | None = None,
    ):
        self.settings = settings or global_settings
        self.transport: Transport = transport or HttpTransport(
            self.settings.api_base_url,
            timeout=self.settings.api_request_timeout,
        )
        self.executor = FetchExecutor(
            policy=policy,
            sleep=sleep,
            debug=self.settings.query_debug,
        )
        self.store = CacheStore(
            executor=self.executor,
            stale_time=self.settings.stale_time,
            gc_time=self.settings.gc_time,
            sweep_interval=self.settings.sweep_interval,
            clock=clock,
            debug=self.settings.query_debug,
        )
        self._resources: dict[str, ResourceService] = {}

    def resource(self, namespace: str, path: str, paginated: bool = True) -> ResourceService:
        """Get or register the service for a REST collection."""
        service = self._resources.get(namespace)
        if service is None:
            service = ResourceService(
                namespace,
                path,
                self.transport,
                self.store,
                self.executor,
                stale_time=self.settings.paginated_stale if paginated else None,
                gc_time=self.settings.paginated_gc if paginated else None,
                default_page_size=self.settings.default_page_size,
            )
            self._resources[namespace] = service
            logger.debug(f"Registered resource: {namespace} -> {service.path}")
        return service

    def projects(self) -> ResourceService:
        return self.resource("projects", "/Projects")

    def users(self) -> ResourceService:
        return self.resource("users", "/Users")

    def start(self) -> None:
        """Start background cache maintenance (needs a running loop)."""
        if not self.store.is_running:
            self.store.start()

    async def close(self) -> None:
        """Dispose the cache and close the transport."""
        await self.store.dispose()
        await self.transport.close()
        logger.debug("QueryClient closed")

    async def __aenter__(self) -> "QueryClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_health_status(self) -> dict[str, Any]:
        return {
            "cache": self.store.get_stats().to_dict(),
            "executor": self.executor.get_stats().to_dict(),
            "resources": sorted(self._resources),
        }
