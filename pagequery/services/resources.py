"""
Resource services - paginated reads and namespace-invalidating writes.
"""

import functools
from datetime import timedelta
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from pagequery.services.cache import CacheStore
from pagequery.services.envelope import PaginationEnvelope
from pagequery.services.executor import FetchExecutor
from pagequery.services.keys import QueryKey, build_key

if TYPE_CHECKING:
    from pagequery.navigation.url_state import NavigationSynchronizer
    from pagequery.queries.paginated import Filters, PaginatedQuery


class Transport(Protocol):
    """What the resource layer needs from an HTTP client."""

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any: ...

    async def post(
        self, path: str, json_data: Any = None, params: dict[str, Any] | None = None
    ) -> Any: ...

    async def put(
        self, path: str, json_data: Any = None, params: dict[str, Any] | None = None
    ) -> Any: ...

    async def delete(self, path: str, params: dict[str, Any] | None = None) -> Any: ...

    async def close(self) -> None: ...


class ResourceService:
    """
    One REST collection, e.g. /Projects.

    Usage:
        projects = ResourceService("projects", "/Projects", transport, store)
        page = await projects.list_page({"search": "api"}, page_number=2)
        await projects.create({...})  # every cached "projects" page goes stale
    """

    def __init__(
        self,
        namespace: str,
        path: str,
        transport: Transport,
        store: CacheStore,
        executor: FetchExecutor | None = None,
        stale_time: timedelta | None = None,
        gc_time: timedelta | None = None,
        default_page_size: int = 10,
    ):
        self.namespace = namespace
        self.path = "/" + path.strip("/")
        self._transport = transport
        self._store = store
        self._executor = executor or store.executor
        self._stale_time = stale_time
        self._gc_time = gc_time
        self.default_page_size = default_page_size

    def key(
        self,
        filters: Any = None,
        page_number: int = 1,
        page_size: int | None = None,
    ) -> QueryKey:
        return build_key(
            self.namespace, filters, page_number, page_size or self.default_page_size
        )

    async def fetch_page(self, key: QueryKey) -> Any:
        """GET one page; the raw body is normalized by the executor."""
        return await self._transport.get(self.path, params=key.to_params())

    async def list_page(
        self,
        filters: Any = None,
        page_number: int = 1,
        page_size: int | None = None,
    ) -> PaginationEnvelope:
        key = self.key(filters, page_number, page_size)
        return await self._store.fetch(
            key,
            functools.partial(self.fetch_page, key),
            stale_time=self._stale_time,
            gc_time=self._gc_time,
        )

    def paginated(
        self,
        navigator: "NavigationSynchronizer",
        filters: "Filters" = None,
    ) -> "PaginatedQuery":
        from pagequery.queries.paginated import PaginatedQuery

        return PaginatedQuery(
            self._store,
            navigator,
            self.namespace,
            self.fetch_page,
            filters,
            stale_time=self._stale_time,
            gc_time=self._gc_time,
        )

    async def get(self, item_id: str) -> Any:
        return await self._transport.get(f"{self.path}/{item_id}")

    async def create(self, body: Any) -> Any:
        result = await self._executor.mutate(
            lambda: self._transport.post(self.path, _to_json(body)),
            description=f"create {self.namespace}",
        )
        self.invalidate()
        return result

    async def update(self, item_id: str, body: Any) -> Any:
        result = await self._executor.mutate(
            lambda: self._transport.put(f"{self.path}/{item_id}", _to_json(body)),
            description=f"update {self.namespace}/{item_id}",
        )
        self.invalidate()
        return result

    async def delete(self, item_id: str) -> Any:
        result = await self._executor.mutate(
            lambda: self._transport.delete(f"{self.path}/{item_id}"),
            description=f"delete {self.namespace}/{item_id}",
        )
        self.invalidate()
        return result

    def invalidate(self) -> int:
        """Mark every cached page of this namespace stale."""
        count = self._store.invalidate_namespace(self.namespace)
        logger.debug(f"Invalidated {count} cached '{self.namespace}' pages")
        return count


def _to_json(body: Any) -> Any:
    if isinstance(body, BaseModel):
        return body.model_dump(by_alias=True, mode="json")
    return body


class ProjectStatus(IntEnum):
    PENDING = 0
    IN_PROGRESS = 1
    COMPLETED = 2


class ProjectVisibility(IntEnum):
    PUBLIC = 0
    PRIVATE = 1


class ProjectFilter(BaseModel):
    """Filter fields accepted by GET /Projects."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    search: str | None = None
    category_id: str | None = Field(default=None, alias="categoryId")
    status: ProjectStatus | None = None
    visibility: ProjectVisibility | None = None
    technology_id: str | None = Field(default=None, alias="technologyId")
