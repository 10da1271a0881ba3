import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # API Configuration
    api_base_url: str = Field(
        default="https://localhost:7226/api/v1", alias="API_BASE_URL"
    )
    api_request_timeout: float = Field(default=10.0, alias="API_REQUEST_TIMEOUT")

    # Query cache defaults (seconds)
    query_stale_time: float = Field(default=300, alias="QUERY_STALE_TIME")
    query_gc_time: float = Field(default=600, alias="QUERY_GC_TIME")
    cache_sweep_interval: float = Field(default=60, alias="CACHE_SWEEP_INTERVAL")

    # Paginated collections
    paginated_stale_time: float = Field(default=30, alias="PAGINATED_STALE_TIME")
    paginated_gc_time: float = Field(default=300, alias="PAGINATED_GC_TIME")
    default_page_size: int = Field(default=10, alias="DEFAULT_PAGE_SIZE", ge=1)

    # Verbose cache / executor tracing
    query_debug: bool = Field(default=False, alias="QUERY_DEBUG")

    @property
    def stale_time(self) -> timedelta:
        return timedelta(seconds=self.query_stale_time)

    @property
    def gc_time(self) -> timedelta:
        return timedelta(seconds=self.query_gc_time)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(seconds=self.cache_sweep_interval)

    @property
    def paginated_stale(self) -> timedelta:
        return timedelta(seconds=self.paginated_stale_time)

    @property
    def paginated_gc(self) -> timedelta:
        return timedelta(seconds=self.paginated_gc_time)


def load_settings() -> Settings:
    """Build Settings from the process environment (after .env is loaded)."""
    return Settings.model_validate(
        {name: value for name, value in os.environ.items() if name.isupper()}
    )


global_settings = load_settings()
