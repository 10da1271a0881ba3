"""
HttpTransport - async HTTP collaborator that speaks the error taxonomy.

Every httpx failure is mapped to ClientError, TransientError or
MalformedResponse here, so nothing above this layer inspects httpx types.
"""

from typing import Any

import httpx
from loguru import logger

from pagequery.services.errors import (
    ClientError,
    MalformedResponse,
    RequestTimeoutError,
    TransientError,
)


def _extract_message(response: httpx.Response) -> str:
    """Best human-readable message from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase

    if isinstance(body, dict):
        for field in ("message", "detail", "title"):
            value = body.get(field)
            if isinstance(value, str) and value:
                return value
        errors = body.get("errors")
        if isinstance(errors, dict) and errors:
            first = next(iter(errors.values()))
            if isinstance(first, list) and first:
                return str(first[0])
    return response.text[:200] or response.reason_phrase


class HttpTransport:
    """
    Thin JSON-over-HTTP client.

    Usage:
        async with HttpTransport("https://api.example.com/v1") as transport:
            body = await transport.get("/Projects", params={"pageNumber": 2})
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        service_id: str = "api",
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.service_id = service_id
        self._headers = {"Content-Type": "application/json", **(headers or {})}

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = client
        self._owns_client = client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=self._headers,
                follow_redirects=True,
            )
        return self._http_client

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(
        self,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        return await self.request("POST", path, params=params, json_data=json_data)

    async def put(
        self,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        return await self.request("PUT", path, params=params, json_data=json_data)

    async def delete(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("DELETE", path, params=params)

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> Any:
        """
        Execute the HTTP request and decode the JSON body.

        Returns:
            Decoded JSON body, None for empty responses, or the raw text
            of a non-JSON reply to a write

        Raises:
            ClientError: For 4xx responses
            RequestTimeoutError: If the request times out
            TransientError: For 5xx responses and network failures
            MalformedResponse: If a GET body is not valid JSON
        """
        client = await self._get_http_client()

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json_data,
            )
            response.raise_for_status()

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.service_id, self.timeout) from e

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            message = f"HTTP {status}: {_extract_message(e.response)}"
            if 400 <= status < 500:
                raise ClientError(status, message, service_id=self.service_id) from e
            raise TransientError(
                message, status=status, cause=e, service_id=self.service_id
            ) from e

        except httpx.RequestError as e:
            raise TransientError(
                f"{type(e).__name__}: {e}", cause=e, service_id=self.service_id
            ) from e

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            if method != "GET":
                # Accepted writes may acknowledge with plain text
                return response.text
            raise MalformedResponse(
                f"{method} {path} returned non-JSON body", service_id=self.service_id
            ) from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None
        logger.debug(f"HttpTransport '{self.service_id}' closed")

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
