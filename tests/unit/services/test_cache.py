"""Unit tests for CacheStore."""

import asyncio
from datetime import timedelta

import pytest

from pagequery.services.cache import CacheStore, EntryStatus
from pagequery.services.errors import ClientError, TransientError
from pagequery.services.executor import FetchExecutor
from pagequery.services.keys import build_key
from tests.helpers import make_envelope


def make_store(clock, sleeps=None, **kwargs) -> CacheStore:
    return CacheStore(
        executor=FetchExecutor(sleep=sleeps),
        stale_time=timedelta(seconds=30),
        gc_time=timedelta(minutes=5),
        clock=clock,
        **kwargs,
    )


class GatedFetcher:
    """Fetcher that blocks until released, counting calls."""

    def __init__(self, result):
        self.result = result
        self.calls = 0
        self.gate = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.gate.wait()
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


KEY = build_key("projects", {}, 1, 10)


class TestEnsure:
    """Test ensure() scheduling and single-flight behaviour."""

    @pytest.mark.asyncio
    async def test_concurrent_ensure_fetches_once(self, clock):
        store = make_store(clock)
        fetcher = GatedFetcher(make_envelope())

        first = store.ensure(KEY, fetcher)
        second = store.ensure(KEY, fetcher)
        assert first.in_flight_attempt == second.in_flight_attempt
        assert first.status == EntryStatus.LOADING

        fetcher.gate.set()
        entry = await store.wait(KEY)

        assert fetcher.calls == 1
        assert entry.status == EntryStatus.SUCCESS
        assert entry.data == make_envelope()
        assert entry.in_flight_attempt is None

    @pytest.mark.asyncio
    async def test_concurrent_fetch_callers_share_result(self, clock):
        store = make_store(clock)
        fetcher = GatedFetcher(make_envelope())

        tasks = [asyncio.create_task(store.fetch(KEY, fetcher)) for _ in range(3)]
        await asyncio.sleep(0)
        fetcher.gate.set()
        results = await asyncio.gather(*tasks)

        assert fetcher.calls == 1
        assert all(result == make_envelope() for result in results)

    @pytest.mark.asyncio
    async def test_fresh_entry_not_refetched(self, clock):
        store = make_store(clock)
        fetcher = GatedFetcher(make_envelope())
        fetcher.gate.set()

        await store.fetch(KEY, fetcher)
        clock.advance(seconds=10)
        entry = store.ensure(KEY, fetcher)

        assert fetcher.calls == 1
        assert not entry.is_fetching

    @pytest.mark.asyncio
    async def test_stale_entry_served_while_revalidating(self, clock):
        store = make_store(clock)
        store.set_data(KEY, make_envelope(prefix="old"))
        clock.advance(seconds=31)

        fetcher = GatedFetcher(make_envelope(prefix="new"))
        entry = store.ensure(KEY, fetcher)

        assert entry.status == EntryStatus.LOADING
        assert entry.data == make_envelope(prefix="old")
        assert entry.is_fetching

        fetcher.gate.set()
        entry = await store.wait(KEY)
        assert entry.data == make_envelope(prefix="new")
        assert entry.stale_at == clock.now + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_per_call_stale_time(self, clock):
        store = make_store(clock)
        store.set_data(KEY, make_envelope())
        clock.advance(seconds=5)

        fetcher = GatedFetcher(make_envelope())
        entry = store.ensure(KEY, fetcher, stale_time=timedelta(seconds=1))

        assert entry.is_fetching
        fetcher.gate.set()
        await store.wait(KEY)


class TestStaleResponseDiscard:
    """Only the latest attempt for a key is committed."""

    @pytest.mark.asyncio
    async def test_late_response_of_superseded_attempt_discarded(self, clock):
        store = make_store(clock)
        fetch_a = GatedFetcher(make_envelope(prefix="A"))
        fetch_b = GatedFetcher(make_envelope(prefix="B"))

        store.ensure(KEY, fetch_a)
        attempt_a = store.executor.in_flight(KEY)
        store.refetch(KEY, fetch_b)
        attempt_b = store.executor.in_flight(KEY)
        assert attempt_b.token > attempt_a.token

        fetch_b.gate.set()
        await asyncio.wait({attempt_b.task})
        await asyncio.sleep(0)
        assert store.peek(KEY).data == make_envelope(prefix="B")

        fetch_a.gate.set()
        await asyncio.wait({attempt_a.task})
        await asyncio.sleep(0)

        entry = store.peek(KEY)
        assert entry.data == make_envelope(prefix="B")
        assert entry.status == EntryStatus.SUCCESS
        assert store.get_stats().discarded == 1

    @pytest.mark.asyncio
    async def test_early_response_of_superseded_attempt_discarded(self, clock):
        store = make_store(clock)
        fetch_a = GatedFetcher(make_envelope(prefix="A"))
        fetch_b = GatedFetcher(make_envelope(prefix="B"))

        store.ensure(KEY, fetch_a)
        store.refetch(KEY, fetch_b)

        fetch_a.gate.set()
        await asyncio.sleep(0.01)
        assert store.peek(KEY).data is None
        assert store.peek(KEY).is_fetching

        fetch_b.gate.set()
        entry = await store.wait(KEY)
        assert entry.data == make_envelope(prefix="B")

    @pytest.mark.asyncio
    async def test_set_data_wins_over_in_flight_fetch(self, clock):
        store = make_store(clock)
        fetcher = GatedFetcher(make_envelope(prefix="fetched"))
        store.ensure(KEY, fetcher)
        attempt = store.executor.in_flight(KEY)

        entry = store.set_data(KEY, make_envelope(prefix="seeded"))
        assert not entry.is_fetching

        fetcher.gate.set()
        await asyncio.wait({attempt.task})
        await asyncio.sleep(0)

        entry = store.peek(KEY)
        assert entry.data == make_envelope(prefix="seeded")
        assert entry.status == EntryStatus.SUCCESS
        assert store.get_stats().discarded == 1


class TestErrors:
    """Test terminal error recording."""

    @pytest.mark.asyncio
    async def test_error_recorded_and_raised(self, clock, sleeps):
        store = make_store(clock, sleeps)
        fetcher = GatedFetcher(ClientError(404, "HTTP 404: not found"))
        fetcher.gate.set()

        with pytest.raises(ClientError):
            await store.fetch(KEY, fetcher)

        entry = store.peek(KEY)
        assert entry.status == EntryStatus.ERROR
        assert isinstance(entry.error, ClientError)
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_observers_receive_error(self, clock, sleeps):
        store = make_store(clock, sleeps)
        seen = []
        store.subscribe(KEY, seen.append)
        fetcher = GatedFetcher(TransientError("HTTP 503", status=503))
        fetcher.gate.set()

        store.ensure(KEY, fetcher)
        await store.wait(KEY)

        assert [e.status for e in seen] == [EntryStatus.LOADING, EntryStatus.ERROR]
        assert fetcher.calls == 4
        assert sleeps.delays_ms == [1000, 2000, 4000]

    @pytest.mark.asyncio
    async def test_errored_entry_not_refetched_within_stale_time(self, clock, sleeps):
        store = make_store(clock, sleeps)
        fetcher = GatedFetcher(ClientError(400))
        fetcher.gate.set()
        store.ensure(KEY, fetcher)
        await store.wait(KEY)

        clock.advance(seconds=10)
        entry = store.ensure(KEY, fetcher)
        assert entry.status == EntryStatus.ERROR
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_errored_entry_refetched_after_stale_time(self, clock, sleeps):
        store = make_store(clock, sleeps)
        failing = GatedFetcher(TransientError("HTTP 503", status=503))
        failing.gate.set()
        store.ensure(KEY, failing)
        await store.wait(KEY)
        assert store.peek(KEY).status == EntryStatus.ERROR

        clock.advance(minutes=10)
        recovered = GatedFetcher(make_envelope())
        recovered.gate.set()
        entry = store.ensure(KEY, recovered)
        assert entry.is_fetching

        entry = await store.wait(KEY)
        assert entry.status == EntryStatus.SUCCESS
        assert entry.data == make_envelope()
        assert recovered.calls == 1

    @pytest.mark.asyncio
    async def test_refetch_errors_retries_at_once(self, clock, sleeps):
        store = make_store(clock, sleeps)
        failing = GatedFetcher(ClientError(404))
        failing.gate.set()
        store.ensure(KEY, failing)
        await store.wait(KEY)

        recovered = GatedFetcher(make_envelope())
        recovered.gate.set()
        entry = store.ensure(KEY, recovered, refetch_errors=True)

        assert entry.is_fetching
        assert (await store.wait(KEY)).data == make_envelope()

    @pytest.mark.asyncio
    async def test_error_keeps_previous_data(self, clock, sleeps):
        store = make_store(clock, sleeps)
        store.set_data(KEY, make_envelope())
        store.invalidate(lambda key: True)

        fetcher = GatedFetcher(ClientError(403))
        fetcher.gate.set()
        store.ensure(KEY, fetcher)
        entry = await store.wait(KEY)

        assert entry.status == EntryStatus.ERROR
        assert entry.data == make_envelope()


class TestInvalidate:
    """Test predicate invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_marks_matching_stale(self, clock):
        store = make_store(clock)
        projects_1 = build_key("projects", {}, 1, 10)
        projects_2 = build_key("projects", {"search": "x"}, 2, 10)
        users = build_key("users", {}, 1, 10)
        for key in (projects_1, projects_2, users):
            store.set_data(key, make_envelope())

        assert store.invalidate_namespace("projects") == 2

        assert store.peek(projects_1).invalidated
        assert store.peek(projects_2).invalidated
        assert not store.peek(users).invalidated

    @pytest.mark.asyncio
    async def test_invalidated_entry_refetched_on_next_observation(self, clock):
        store = make_store(clock)
        store.set_data(KEY, make_envelope(prefix="old"))
        store.invalidate(lambda key: key.matches("projects"))

        fetcher = GatedFetcher(make_envelope(prefix="new"))
        entry = store.ensure(KEY, fetcher)
        assert entry.is_fetching
        assert entry.data == make_envelope(prefix="old")
        assert not entry.invalidated

        fetcher.gate.set()
        entry = await store.wait(KEY)
        assert entry.data == make_envelope(prefix="new")

    @pytest.mark.asyncio
    async def test_invalidate_during_fetch_supersedes_attempt(self, clock):
        store = make_store(clock)
        before = GatedFetcher(make_envelope(prefix="before"))
        after = GatedFetcher(make_envelope(prefix="after"))

        first = store.ensure(KEY, before)
        store.invalidate(lambda key: True)
        second = store.ensure(KEY, after)
        assert second.in_flight_attempt > first.in_flight_attempt

        before.gate.set()
        after.gate.set()
        entry = await store.wait(KEY)
        await asyncio.sleep(0)

        assert store.peek(KEY).data == make_envelope(prefix="after")
        assert entry.status == EntryStatus.SUCCESS


class TestObservers:
    """Test subscribe/unsubscribe."""

    @pytest.mark.asyncio
    async def test_observer_notified_on_transitions(self, clock):
        store = make_store(clock)
        seen = []
        subscription = store.subscribe(KEY, seen.append)
        fetcher = GatedFetcher(make_envelope())
        fetcher.gate.set()

        await store.fetch(KEY, fetcher)
        assert [e.status for e in seen] == [EntryStatus.LOADING, EntryStatus.SUCCESS]

        subscription.unsubscribe()
        store.set_data(KEY, make_envelope(prefix="x"))
        assert len(seen) == 2
        assert store.observer_count(KEY) == 0

    def test_failing_observer_does_not_break_others(self, clock):
        store = make_store(clock)
        seen = []

        def broken(entry):
            raise RuntimeError("boom")

        store.subscribe(KEY, broken)
        store.subscribe(KEY, seen.append)
        store.set_data(KEY, make_envelope())

        assert len(seen) == 1
        assert store.peek(KEY).data == make_envelope()

    def test_subscription_context_manager(self, clock):
        store = make_store(clock)
        with store.subscribe(KEY, lambda entry: None) as subscription:
            assert store.observer_count(KEY) == 1
        assert not subscription.active
        assert store.observer_count(KEY) == 0


class TestSweep:
    """Test garbage collection of unobserved entries."""

    def test_expired_unobserved_entry_removed(self, clock):
        store = make_store(clock)
        store.set_data(KEY, make_envelope())

        clock.advance(minutes=4)
        assert store.sweep() == 0

        clock.advance(minutes=2)
        assert store.sweep() == 1
        assert KEY not in store
        assert store.get_stats().evictions == 1

    def test_observed_entry_survives(self, clock):
        store = make_store(clock)
        store.set_data(KEY, make_envelope())
        subscription = store.subscribe(KEY, lambda entry: None)

        clock.advance(minutes=10)
        assert store.sweep() == 0

        subscription.unsubscribe()
        clock.advance(minutes=4)
        assert store.sweep() == 0
        clock.advance(minutes=2)
        assert store.sweep() == 1

    def test_stale_and_expiry_are_independent(self, clock):
        store = make_store(clock)
        store.set_data(KEY, make_envelope())
        clock.advance(minutes=1)

        entry = store.get(KEY)
        assert entry.is_stale(clock.now)
        assert not entry.is_expired(clock.now)
        assert store.sweep() == 0

    def test_get_touches_access_time(self, clock):
        store = make_store(clock)
        store.set_data(KEY, make_envelope())
        clock.advance(minutes=4)
        store.get(KEY)
        clock.advance(minutes=4)
        assert store.sweep() == 0


class TestLifecycle:
    """Test start/dispose and bookkeeping."""

    @pytest.mark.asyncio
    async def test_start_and_dispose(self, clock):
        store = make_store(clock, sweep_interval=timedelta(seconds=1))
        store.start()
        assert store.is_running
        store.set_data(KEY, make_envelope())

        await store.dispose()
        assert not store.is_running
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_dispose_discards_in_flight(self, clock):
        store = make_store(clock)
        fetcher = GatedFetcher(make_envelope())
        store.ensure(KEY, fetcher)

        await store.dispose()
        await asyncio.sleep(0)
        assert store.peek(KEY) is None

    def test_get_miss_and_hit_stats(self, clock):
        store = make_store(clock)
        assert store.get(KEY) is None
        store.set_data(KEY, make_envelope())
        assert store.get(KEY) is not None

        stats = store.get_stats()
        assert stats.misses == 1
        assert stats.hits == 1
        assert stats.to_dict()["size"] == 1

    def test_remove_and_clear(self, clock):
        store = make_store(clock)
        store.set_data(KEY, make_envelope())
        assert store.remove(KEY)
        assert not store.remove(KEY)

        store.set_data(KEY, make_envelope())
        store.clear()
        assert store.keys() == []
