"""
FetchExecutor - single-flight fetches with retry and envelope normalization.

When several callers ask for the same query key while a fetch is running,
only one network call is made and every caller awaits the same attempt.
Each attempt carries a token; the cache store uses it to discard responses
from attempts that have since been superseded.
"""

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from loguru import logger

from pagequery.services.envelope import PaginationEnvelope, normalize_envelope
from pagequery.services.errors import QueryError, TransientError
from pagequery.services.keys import QueryKey
from pagequery.services.retry import DEFAULT_RETRY_POLICY, Operation, RetryPolicy, Surface

T = TypeVar("T")

Fetcher = Callable[[], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Attempt:
    """A running fetch for one key."""

    key: QueryKey
    token: int
    task: "asyncio.Task[PaginationEnvelope]"

    def done(self) -> bool:
        return self.task.done()


class FetchExecutor:
    """
    Issues fetches for query keys.

    Usage:
        executor = FetchExecutor()

        envelope = await executor.execute(
            key,
            lambda: transport.get("/Projects", params=key.to_params()),
        )
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: SleepFn | None = None,
        debug: bool = False,
    ):
        self._policy = policy or DEFAULT_RETRY_POLICY
        self._sleep = sleep or asyncio.sleep
        self._in_flight: dict[QueryKey, Attempt] = {}
        self._tokens = itertools.count(1)
        self._debug = debug
        self._stats = ExecutorStats()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def start(self, key: QueryKey, fetcher: Fetcher, *, force: bool = False) -> Attempt:
        """
        Start a fetch for key, or attach to the one already running.

        Args:
            key: Query key being fetched
            fetcher: Zero-arg coroutine function returning the raw body
            force: Start a new attempt even if one is in flight

        Returns:
            The Attempt callers should await
        """
        existing = self._in_flight.get(key)
        if existing is not None and not existing.done() and not force:
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: attaching to attempt #{existing.token} for {key}")
            return existing

        token = next(self._tokens)
        task = asyncio.create_task(
            self._run(key, fetcher, token),
            name=f"pagequery-fetch-{key.digest}-{token}",
        )
        attempt = Attempt(key=key, token=token, task=task)
        self._in_flight[key] = attempt
        self._stats.total += 1
        if existing is not None and not existing.done():
            self._stats.superseded += 1
            self._log(f"SUPERSEDE: attempt #{existing.token} -> #{token} for {key}")
        else:
            self._log(f"NEW: attempt #{token} for {key}")
        return attempt

    async def execute(self, key: QueryKey, fetcher: Fetcher) -> PaginationEnvelope:
        """Fetch key with single-flight de-duplication."""
        attempt = self.start(key, fetcher)
        return await asyncio.shield(attempt.task)

    def in_flight(self, key: QueryKey) -> Attempt | None:
        """Latest running attempt for key, if any."""
        attempt = self._in_flight.get(key)
        if attempt is None or attempt.done():
            return None
        return attempt

    async def _run(self, key: QueryKey, fetcher: Fetcher, token: int) -> PaginationEnvelope:
        try:
            return await self._with_retry(
                lambda: self._fetch_envelope(key, fetcher),
                Operation.READ,
                label=str(key),
            )
        finally:
            current = self._in_flight.get(key)
            if current is not None and current.token == token:
                self._in_flight.pop(key, None)
            self._log(f"DONE: attempt #{token} for {key}")

    async def _fetch_envelope(self, key: QueryKey, fetcher: Fetcher) -> PaginationEnvelope:
        body = await fetcher()
        return normalize_envelope(body, key.page_number)

    async def mutate(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "mutation",
    ) -> T:
        """
        Run a mutating call under the mutation retry rules.

        Mutations are never de-duplicated.
        """
        return await self._with_retry(operation, Operation.MUTATION, label=description)

    async def _with_retry(
        self,
        call: Callable[[], Awaitable[T]],
        operation: Operation,
        label: str,
    ) -> T:
        attempt_count = 0
        while True:
            try:
                return await call()
            except QueryError as e:
                error: QueryError = e
            except Exception as e:
                error = TransientError.from_cause(e)
                error.__cause__ = e

            decision = self._policy.decide(error, attempt_count, operation)
            if isinstance(decision, Surface):
                if attempt_count:
                    logger.warning(
                        f"Giving up on {label} after {attempt_count} retries: {error}"
                    )
                raise error

            attempt_count += 1
            self._stats.retries += 1
            logger.info(
                f"Retrying {label} in {decision.delay_ms}ms "
                f"(retry {attempt_count}, {error.kind}: {error})"
            )
            await self._sleep(decision.delay_seconds)

    async def cancel_all(self) -> int:
        """Cancel all in-flight attempts."""
        count = 0
        for attempt in list(self._in_flight.values()):
            if not attempt.done():
                attempt.task.cancel()
                count += 1
        self._in_flight.clear()
        if count:
            self._log(f"CANCEL_ALL: {count} attempts cancelled")
        return count

    def get_in_flight_count(self) -> int:
        return sum(1 for attempt in self._in_flight.values() if not attempt.done())

    def get_stats(self) -> "ExecutorStats":
        """Get execution statistics."""
        self._stats.in_flight = self.get_in_flight_count()
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[FetchExecutor] {message}")


class ExecutorStats:
    """Statistics for fetch execution."""

    def __init__(self):
        self.total: int = 0  # Attempts started
        self.deduplicated: int = 0  # Callers attached to a running attempt
        self.superseded: int = 0  # Attempts replaced before finishing
        self.retries: int = 0  # Retries across all calls
        self.in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_attempts": self.total,
            "deduplicated": self.deduplicated,
            "superseded": self.superseded,
            "retries": self.retries,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
