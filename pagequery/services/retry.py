"""
RetryPolicy - decides whether a failed call is retried and after how long.

Rules:
- ClientError (4xx) and MalformedResponse surface immediately
- Reads retry while attempt_count < 3 with capped exponential backoff
- Mutations retry while attempt_count < 1 with a flat delay
"""

from dataclasses import dataclass
from enum import Enum

from pagequery.services.errors import QueryError


class Operation(str, Enum):
    """Kind of call being retried."""

    READ = "READ"
    MUTATION = "MUTATION"


@dataclass(frozen=True)
class Retry:
    """Try again after delay_ms."""

    delay_ms: int

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms / 1000


@dataclass(frozen=True)
class Surface:
    """Give up and hand the error to the caller."""

    reason: str = ""


Decision = Retry | Surface


@dataclass(frozen=True)
class RetryPolicy:
    """Pure retry/backoff decision function."""

    max_read_retries: int = 3
    max_mutation_retries: int = 1
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    mutation_delay_ms: int = 1000

    def decide(
        self,
        error: QueryError,
        attempt_count: int,
        operation: Operation = Operation.READ,
    ) -> Decision:
        """
        Decide what to do after a failed attempt.

        Args:
            error: Classified failure of the last attempt
            attempt_count: Retries already performed (0 after the first failure)
            operation: READ or MUTATION

        Returns:
            Retry(delay_ms) or Surface
        """
        if not error.retryable:
            return Surface(f"{error.kind} error is not retryable")

        if operation == Operation.MUTATION:
            if attempt_count < self.max_mutation_retries:
                return Retry(self.mutation_delay_ms)
            return Surface("mutation retries exhausted")

        if attempt_count < self.max_read_retries:
            return Retry(self.backoff_ms(attempt_count))
        return Surface("read retries exhausted")

    def backoff_ms(self, attempt_count: int) -> int:
        return min(self.base_delay_ms * 2**attempt_count, self.max_delay_ms)


DEFAULT_RETRY_POLICY = RetryPolicy()
