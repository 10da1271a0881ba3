"""Test doubles shared across unit tests."""

from datetime import datetime, timedelta

from pagequery.services.envelope import PaginationEnvelope


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)

    @property
    def delays_ms(self) -> list[int]:
        return [round(d * 1000) for d in self.delays]


class FakeTransport:
    """Records calls and answers GETs from a route table."""

    def __init__(self, pages=None):
        self.pages = pages or {}
        self.calls: list[tuple[str, str, object]] = []
        self.mutation_errors: list[Exception] = []
        self.closed = False

    async def get(self, path, params=None):
        self.calls.append(("GET", path, params))
        if params and "pageNumber" in params:
            body = self.pages.get(params["pageNumber"], [])
        else:
            body = self.pages.get(path, {})
        if isinstance(body, Exception):
            raise body
        return body

    async def _mutation(self, method, path, body):
        self.calls.append((method, path, body))
        if self.mutation_errors:
            raise self.mutation_errors.pop(0)
        return {"ok": True, "method": method}

    async def post(self, path, json_data=None, params=None):
        return await self._mutation("POST", path, json_data)

    async def put(self, path, json_data=None, params=None):
        return await self._mutation("PUT", path, json_data)

    async def delete(self, path, params=None):
        return await self._mutation("DELETE", path, None)

    async def close(self):
        self.closed = True

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


def make_envelope(page: int = 1, total_pages: int = 3, count: int = 10, prefix: str = "item"):
    return PaginationEnvelope(
        items=[f"{prefix}-{page}-{i}" for i in range(count)],
        page_number=page,
        total_pages=total_pages,
        has_previous_page=page > 1,
        has_next_page=page < total_pages,
    )
