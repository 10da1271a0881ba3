"""
Service layer exceptions.

Every failure that reaches the query core is one of three kinds:

- ClientError: the server rejected the request (HTTP 4xx), retrying won't help
- TransientError: network failure, 5xx or timeout, worth retrying
- MalformedResponse: the body does not have the expected shape
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class QueryError(ServiceError):
    """Base for the failures the retry policy knows how to classify."""

    kind: str = "query"
    retryable: bool = True


class ClientError(QueryError):
    """HTTP 4xx response."""

    kind = "client"
    retryable = False

    def __init__(
        self,
        status: int,
        message: str | None = None,
        service_id: str | None = None,
    ):
        self.status = status
        super().__init__(message or f"HTTP {status}", service_id=service_id)


class TransientError(QueryError):
    """Network failure, 5xx response or anything without a status code."""

    kind = "transient"

    def __init__(
        self,
        message: str,
        status: int | None = None,
        cause: BaseException | None = None,
        service_id: str | None = None,
    ):
        self.status = status
        self.cause = cause
        super().__init__(message, service_id=service_id)

    @classmethod
    def from_cause(cls, cause: BaseException) -> "TransientError":
        return cls(f"{type(cause).__name__}: {cause}", cause=cause)


class RequestTimeoutError(TransientError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class MalformedResponse(QueryError):
    """Response body missing the expected envelope fields."""

    kind = "malformed"
    retryable = False

    def __init__(self, detail: str, service_id: str | None = None):
        self.detail = detail
        super().__init__(f"Malformed response: {detail}", service_id=service_id)
