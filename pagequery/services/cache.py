"""
CacheStore - query-keyed cache with stale-while-revalidate and observer GC.

Features:
- One entry per QueryKey, handed out as immutable snapshots
- Staleness (stale_at) and eviction (expires_at) are independent clocks
- At most one fetch per key; late responses from superseded attempts are dropped
- Observers are notified on every entry transition
- Background sweep removes expired entries nobody observes
"""

import asyncio
import functools
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from pagequery.services.envelope import PaginationEnvelope
from pagequery.services.errors import TransientError
from pagequery.services.executor import Attempt, FetchExecutor, Fetcher
from pagequery.services.keys import QueryKey

Observer = Callable[["CacheEntry"], None]
KeyPredicate = Callable[[QueryKey], bool]


class EntryStatus(str, Enum):
    """Cache entry states."""

    IDLE = "IDLE"  # Created, never fetched
    LOADING = "LOADING"  # Fetch in flight
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of the cached state for one query key."""

    key: QueryKey
    created_at: datetime
    last_accessed_at: datetime
    stale_at: datetime
    expires_at: datetime
    stale_time: timedelta
    gc_time: timedelta
    status: EntryStatus = EntryStatus.IDLE
    data: PaginationEnvelope | None = None
    error: Exception | None = None
    updated_at: datetime | None = None
    in_flight_attempt: int | None = None
    invalidated: bool = False

    @classmethod
    def create(
        cls,
        key: QueryKey,
        now: datetime,
        stale_time: timedelta,
        gc_time: timedelta,
    ) -> "CacheEntry":
        return cls(
            key=key,
            created_at=now,
            last_accessed_at=now,
            stale_at=now + stale_time,
            expires_at=now + gc_time,
            stale_time=stale_time,
            gc_time=gc_time,
        )

    @property
    def is_fetching(self) -> bool:
        return self.in_flight_attempt is not None

    @property
    def has_data(self) -> bool:
        return self.data is not None

    @property
    def is_error(self) -> bool:
        return self.status == EntryStatus.ERROR

    def is_stale(self, now: datetime) -> bool:
        """Stale entries are still served, but refetched in the background."""
        return self.invalidated or self.data is None or now >= self.stale_at

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class Subscription:
    """Handle returned by CacheStore.subscribe."""

    def __init__(self, store: "CacheStore", key: QueryKey, callback: Observer):
        self._store = store
        self.key = key
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._store._unsubscribe(self.key, self._callback)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.unsubscribe()


class CacheStore:
    """
    Process-wide query cache, created once per session.

    Usage:
        store = CacheStore(executor=FetchExecutor())
        store.start()  # inside a running event loop, schedules the GC sweep

        entry = store.ensure(key, fetcher)  # returns at once, fetches if needed
        envelope = await store.fetch(key, fetcher)  # waits for the data

        store.invalidate(lambda k: k.matches("projects"))
        await store.dispose()
    """

    def __init__(
        self,
        executor: FetchExecutor | None = None,
        stale_time: timedelta = timedelta(seconds=30),
        gc_time: timedelta = timedelta(minutes=5),
        sweep_interval: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] | None = None,
        debug: bool = False,
    ):
        self._executor = executor or FetchExecutor(debug=debug)
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._observers: dict[QueryKey, list[Observer]] = {}
        self._attempts: dict[QueryKey, Attempt] = {}
        self._default_stale_time = stale_time
        self._default_gc_time = gc_time
        self._sweep_interval = sweep_interval
        self._clock = clock or datetime.now
        self._scheduler: AsyncIOScheduler | None = None
        self._debug = debug
        self._stats = CacheStats()

    @property
    def executor(self) -> FetchExecutor:
        return self._executor

    def now(self) -> datetime:
        return self._clock()

    # Reads

    def get(self, key: QueryKey) -> CacheEntry | None:
        """Non-blocking read of the current entry for key."""
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key}")
            return None

        now = self._clock()
        entry = self._touch(entry, now)
        if entry.has_data and entry.is_stale(now):
            self._stats.stale_hits += 1
            self._log(f"STALE HIT: {key}")
        elif entry.has_data:
            self._stats.hits += 1
            self._log(f"HIT: {key}")
        return entry

    def peek(self, key: QueryKey) -> CacheEntry | None:
        """Read without touching access time or stats."""
        return self._entries.get(key)

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # Fetching

    def ensure(
        self,
        key: QueryKey,
        fetcher: Fetcher,
        *,
        stale_time: timedelta | None = None,
        gc_time: timedelta | None = None,
        refetch_errors: bool = False,
    ) -> CacheEntry:
        """
        Return the entry for key, scheduling a fetch if it is missing or stale.

        Must be called from a running event loop. Concurrent callers share
        the in-flight attempt. An errored entry is retried once its stale
        time has passed since the failure, or at once with refetch_errors
        (a new observer of the key passes it).
        """
        return self._ensure(key, fetcher, stale_time, gc_time, refetch_errors)

    def refetch(self, key: QueryKey, fetcher: Fetcher) -> CacheEntry:
        """Start a new attempt for key, superseding any in-flight one."""
        now = self._clock()
        entry = self._entries.get(key) or self._new_entry(key, now, None, None)
        self._touch(entry, now)
        return self._start_attempt(key, fetcher, force=True)

    async def fetch(
        self,
        key: QueryKey,
        fetcher: Fetcher,
        *,
        stale_time: timedelta | None = None,
        gc_time: timedelta | None = None,
    ) -> PaginationEnvelope:
        """
        Return the data for key, fetching it if needed.

        Fresh data is returned without a network call.

        Raises:
            QueryError: The terminal error recorded on the entry
        """
        self._ensure(key, fetcher, stale_time, gc_time, refetch_errors=True)
        entry = await self.wait(key)

        if entry is None:
            raise TransientError(f"Entry for {key} was removed while fetching")
        if entry.status == EntryStatus.ERROR and entry.error is not None:
            raise entry.error
        if entry.data is None:
            raise TransientError(f"Fetch for {key} was cancelled")
        return entry.data

    async def wait(self, key: QueryKey) -> CacheEntry | None:
        """Wait until no attempt for key is in flight and return the entry."""
        while True:
            attempt = self._attempts.get(key)
            if attempt is None:
                break
            # asyncio.wait leaves the shared task running if we are cancelled
            await asyncio.wait({attempt.task})
            if self._attempts.get(key) is attempt:
                await asyncio.sleep(0)
                if self._attempts.get(key) is attempt:
                    break
        return self._entries.get(key)

    def set_data(
        self,
        key: QueryKey,
        data: PaginationEnvelope,
        *,
        stale_time: timedelta | None = None,
        gc_time: timedelta | None = None,
    ) -> CacheEntry:
        """
        Seed or overwrite key with successful data.

        A fetch still in flight for key is disowned; its response is discarded.
        """
        now = self._clock()
        entry = self._entries.get(key) or self._new_entry(key, now, stale_time, gc_time)
        self._attempts.pop(key, None)
        entry = replace(
            entry,
            status=EntryStatus.SUCCESS,
            data=data,
            error=None,
            updated_at=now,
            stale_at=now + entry.stale_time,
            in_flight_attempt=None,
            invalidated=False,
        )
        self._set(entry)
        self._log(f"SET: {key}")
        return entry

    def _ensure(
        self,
        key: QueryKey,
        fetcher: Fetcher,
        stale_time: timedelta | None,
        gc_time: timedelta | None,
        refetch_errors: bool,
    ) -> CacheEntry:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key}")
            entry = self._new_entry(key, now, stale_time, gc_time)
        else:
            if stale_time is not None and stale_time != entry.stale_time:
                base = entry.updated_at or entry.created_at
                entry = replace(entry, stale_time=stale_time, stale_at=base + stale_time)
            if gc_time is not None:
                entry = replace(entry, gc_time=gc_time)
            if entry.has_data and entry.is_stale(now):
                self._stats.stale_hits += 1
            elif entry.has_data:
                self._stats.hits += 1

        entry = self._touch(entry, now)

        if entry.is_fetching:
            if entry.invalidated:
                return self._start_attempt(key, fetcher, force=True)
            return entry

        if (
            entry.status == EntryStatus.IDLE
            or entry.invalidated
            or (entry.status == EntryStatus.SUCCESS and entry.is_stale(now))
            or (
                entry.status == EntryStatus.ERROR
                and (refetch_errors or now >= entry.stale_at)
            )
        ):
            return self._start_attempt(key, fetcher, force=False)
        return entry

    def _new_entry(
        self,
        key: QueryKey,
        now: datetime,
        stale_time: timedelta | None,
        gc_time: timedelta | None,
    ) -> CacheEntry:
        entry = CacheEntry.create(
            key,
            now,
            stale_time if stale_time is not None else self._default_stale_time,
            gc_time if gc_time is not None else self._default_gc_time,
        )
        self._entries[key] = entry
        return entry

    def _start_attempt(self, key: QueryKey, fetcher: Fetcher, force: bool) -> CacheEntry:
        attempt = self._executor.start(key, fetcher, force=force)
        entry = self._entries[key]
        if entry.in_flight_attempt == attempt.token:
            return entry

        self._attempts[key] = attempt
        self._stats.fetches += 1
        entry = replace(
            entry,
            status=EntryStatus.LOADING,
            in_flight_attempt=attempt.token,
            invalidated=False,
        )
        self._set(entry)
        attempt.task.add_done_callback(
            functools.partial(self._on_attempt_done, key, attempt.token)
        )
        self._log(f"FETCH: attempt #{attempt.token} for {key}")
        return entry

    def _on_attempt_done(
        self,
        key: QueryKey,
        token: int,
        task: "asyncio.Task[PaginationEnvelope]",
    ) -> None:
        error = None if task.cancelled() else task.exception()

        entry = self._entries.get(key)
        if entry is None or entry.in_flight_attempt != token:
            self._stats.discarded += 1
            self._log(f"DISCARD: superseded response of attempt #{token} for {key}")
            return

        if self._attempts.get(key) is not None and self._attempts[key].token == token:
            self._attempts.pop(key)

        now = self._clock()
        if task.cancelled():
            entry = replace(
                entry,
                status=EntryStatus.SUCCESS if entry.has_data else EntryStatus.IDLE,
                in_flight_attempt=None,
            )
        elif error is not None:
            logger.warning(f"Query {key} failed: {error}")
            entry = replace(
                entry,
                status=EntryStatus.ERROR,
                error=error,
                stale_at=now + entry.stale_time,
                in_flight_attempt=None,
            )
        else:
            entry = replace(
                entry,
                status=EntryStatus.SUCCESS,
                data=task.result(),
                error=None,
                updated_at=now,
                stale_at=now + entry.stale_time,
                in_flight_attempt=None,
            )
        self._set(entry)

    # Invalidation and removal

    def invalidate(self, predicate: KeyPredicate) -> int:
        """
        Mark matching entries stale.

        Observed entries refetch on their next observation; in-flight
        attempts for them are superseded by that refetch.

        Returns:
            Number of entries invalidated
        """
        now = self._clock()
        matched = [key for key in self._entries if predicate(key)]
        for key in matched:
            entry = self._entries[key]
            self._set(replace(entry, invalidated=True, stale_at=min(entry.stale_at, now)))

        if matched:
            self._log(f"INVALIDATE: {len(matched)} entries")
        return len(matched)

    def invalidate_namespace(self, namespace: str) -> int:
        return self.invalidate(lambda key: key.matches(namespace))

    def remove(self, key: QueryKey) -> bool:
        """Drop key; a late response for it will be discarded."""
        self._attempts.pop(key, None)
        if self._entries.pop(key, None) is not None:
            self._log(f"DELETE: {key}")
            return True
        return False

    def clear(self) -> None:
        """Drop every entry. Observers stay registered."""
        count = len(self._entries)
        self._entries.clear()
        self._attempts.clear()
        self._log(f"CLEAR: {count} entries removed")

    # Observers

    def subscribe(self, key: QueryKey, callback: Observer) -> Subscription:
        """Call callback with the new snapshot whenever key's entry changes."""
        self._observers.setdefault(key, []).append(callback)
        entry = self._entries.get(key)
        if entry is not None:
            self._touch(entry, self._clock())
        return Subscription(self, key, callback)

    def _unsubscribe(self, key: QueryKey, callback: Observer) -> None:
        callbacks = self._observers.get(key)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)
            if not callbacks:
                del self._observers[key]
        entry = self._entries.get(key)
        if entry is not None:
            # GC countdown starts when the last observer leaves
            self._touch(entry, self._clock())

    def observer_count(self, key: QueryKey) -> int:
        return len(self._observers.get(key, ()))

    def _set(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        for callback in list(self._observers.get(entry.key, ())):
            try:
                callback(entry)
            except Exception:
                logger.exception(f"Observer for {entry.key} raised")

    def _touch(self, entry: CacheEntry, now: datetime) -> CacheEntry:
        entry = replace(entry, last_accessed_at=now, expires_at=now + entry.gc_time)
        self._entries[entry.key] = entry
        return entry

    # Garbage collection and lifecycle

    def sweep(self) -> int:
        """Remove expired entries that have no observers and no fetch in flight."""
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if not self._observers.get(key)
            and not entry.is_fetching
            and entry.is_expired(now)
        ]
        for key in expired:
            del self._entries[key]
            self._stats.evictions += 1

        if expired:
            self._log(f"CLEANUP: {len(expired)} expired entries removed")
        return len(expired)

    async def _sweep_job(self) -> None:
        self.sweep()

    def start(self) -> None:
        """Schedule the background sweep on the running event loop."""
        if self._scheduler is not None:
            logger.warning("Cache sweep is already running")
            return

        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self._sweep_job,
            trigger="interval",
            seconds=self._sweep_interval.total_seconds(),
            id="pagequery_cache_sweep",
            name="Query cache sweep",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Cache sweep started: every {self._sweep_interval.total_seconds():g}s"
        )

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    async def dispose(self) -> None:
        """Stop the sweep, cancel fetches and drop all state."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Cache sweep stopped")

        await self._executor.cancel_all()
        self._entries.clear()
        self._attempts.clear()
        self._observers.clear()

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._entries)
        self._stats.in_flight = len(self._attempts)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    fetches: int = 0
    discarded: int = 0
    evictions: int = 0
    size: int = 0
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "fetches": self.fetches,
            "discarded": self.discarded,
            "evictions": self.evictions,
            "size": self.size,
            "in_flight": self.in_flight,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
