"""
Tests for the durable counter stores. Window semantics and atomicity run against
both the in-memory store and RedisCounterStore on fakeredis, so the Lua script
itself is exercised.
"""
import threading
from datetime import datetime, timedelta
from unittest.mock import Mock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from apptrack.core.errors import StoreUnavailable
from apptrack.core.quota_policies import DAY, HOUR, WindowType
from apptrack.services.counter_store import (
    CONSUME_SCRIPT,
    CounterWindow,
    InMemoryCounterStore,
    RedisCounterStore,
    from_epoch_ms,
    to_epoch_ms,
)

T0 = datetime(2026, 3, 2, 12, 0, 0)
MIDNIGHT = datetime(2026, 3, 2, 0, 0, 0)


def sliding(key="k", limit=3, window_seconds=HOUR):
    return CounterWindow(key, limit, window_seconds, WindowType.SLIDING)


def fixed(key="upload", limit=2, window_seconds=DAY):
    return CounterWindow(key, limit, window_seconds, WindowType.FIXED)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return InMemoryCounterStore()
    return RedisCounterStore(request.getfixturevalue("fake_redis"))


class TestEpochConversion:
    def test_millisecond_precision_survives(self):
        moment = datetime(2026, 3, 2, 12, 0, 0, 123000)
        assert from_epoch_ms(to_epoch_ms(moment)) == moment


class TestSlidingWindow:
    def test_admits_up_to_limit_then_denies(self, store):
        results = [store.increment([sliding()], T0 + timedelta(seconds=i))[0] for i in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert results[2].remaining == 0
        # Denied request is not left in the log
        assert results[3].count == 3
        assert results[3].reset_at == T0 + timedelta(hours=1, milliseconds=1)

    def test_request_exactly_one_window_old_still_counts(self, store):
        for _ in range(2):
            store.increment([sliding(limit=2)], T0)

        just_before = store.increment([sliding(limit=2)], T0 + timedelta(hours=1) - timedelta(milliseconds=1))
        at_boundary = store.increment([sliding(limit=2)], T0 + timedelta(hours=1))
        just_after = store.increment([sliding(limit=2)], T0 + timedelta(hours=1, milliseconds=1))

        assert just_before[0].allowed is False
        assert at_boundary[0].allowed is False
        assert just_after[0].allowed is True

    def test_no_double_burst_across_clock_hour(self, store):
        end_of_hour = T0.replace(minute=59, second=59)
        for _ in range(3):
            assert store.increment([sliding()], end_of_hour)[0].allowed

        assert store.increment([sliding()], end_of_hour + timedelta(seconds=2))[0].allowed is False

    def test_peek_does_not_mutate(self, store):
        store.increment([sliding()], T0)

        for _ in range(5):
            peeked = store.peek([sliding()], T0)[0]
            assert peeked.count == 1
            assert peeked.remaining == 2

        assert store.increment([sliding()], T0)[0].count == 2

    def test_peek_counts_the_closed_interval(self, store):
        store.increment([sliding()], T0)

        assert store.peek([sliding()], T0 + timedelta(hours=1))[0].count == 1
        assert store.peek([sliding()], T0 + timedelta(hours=1, milliseconds=1))[0].count == 0

    def test_empty_window_resets_one_window_from_now(self, store):
        peeked = store.peek([sliding(key="unused")], T0)[0]
        assert peeked.count == 0
        assert peeked.reset_at == T0 + timedelta(hours=1)


class TestFixedWindow:
    def test_counts_within_bucket_and_resets_at_bucket_end(self, store):
        results = [store.increment([fixed()], MIDNIGHT + timedelta(hours=h))[0] for h in range(3)]

        assert [r.allowed for r in results] == [True, True, False]
        assert results[2].count == 2
        assert results[2].reset_at == datetime(2026, 3, 3, 0, 0, 0)
        assert store.peek([fixed()], MIDNIGHT + timedelta(hours=5))[0].count == 2

    def test_next_bucket_starts_over(self, store):
        store.increment([fixed(key="upload:20514", limit=1)], MIDNIGHT)

        result = store.increment([fixed(key="upload:20515", limit=1)], MIDNIGHT + timedelta(days=1, seconds=1))[0]
        assert result.allowed is True
        assert result.count == 1


class TestSeveralWindows:
    def windows(self):
        return [sliding(key="k:hour", limit=3, window_seconds=HOUR), sliding(key="k:day", limit=5, window_seconds=DAY)]

    def test_hourly_limit_denies_before_daily(self, store):
        results = [store.increment(self.windows(), T0) for _ in range(4)]

        hour, day = results[3]
        assert hour.allowed is False
        assert day.allowed is True
        assert day.count == 3

    def test_daily_limit_denies_after_hour_frees_up(self, store):
        for _ in range(3):
            store.increment(self.windows(), T0)
        later = T0 + timedelta(hours=2)
        for _ in range(2):
            assert all(r.allowed for r in store.increment(self.windows(), later))

        hour, day = store.increment(self.windows(), later)

        assert hour.allowed is True
        assert day.allowed is False
        assert day.reset_at == T0 + timedelta(days=1, milliseconds=1)

    def test_denied_request_is_counted_in_no_window(self, store):
        for _ in range(3):
            store.increment(self.windows(), T0)
        store.increment(self.windows(), T0)

        hour, day = store.peek(self.windows(), T0)
        assert (hour.count, day.count) == (3, 3)

    def test_sliding_and_fixed_windows_together(self, store):
        windows = [sliding(key="mix:hour", limit=5), fixed(key="mix:day", limit=2)]

        results = [store.increment(windows, T0) for _ in range(3)]

        assert [all(r.allowed for r in result) for result in results] == [True, True, False]
        assert store.peek(windows, T0)[0].count == 2


class TestConcurrency:
    def test_concurrent_increments_never_exceed_limit(self, store):
        workers = 25
        barrier = threading.Barrier(workers)
        allowed = []
        allowed_lock = threading.Lock()
        windows = [sliding(key="race:hour", limit=10), sliding(key="race:day", limit=20, window_seconds=DAY)]

        def worker():
            barrier.wait()
            results = store.increment(windows, T0)
            with allowed_lock:
                allowed.append(all(r.allowed for r in results))

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(allowed) == workers
        assert sum(allowed) == 10
        assert [r.count for r in store.peek(windows, T0)] == [10, 10]


class TestInMemoryAvailability:
    def test_unavailable_store_raises(self, memory_store):
        memory_store.available = False

        assert memory_store.is_available() is False
        with pytest.raises(StoreUnavailable) as exc_info:
            memory_store.increment([sliding()], T0)
        assert exc_info.value.operation == "increment"


class TestRedisCounterStore:
    def test_one_script_call_per_request(self):
        client = Mock()
        script = Mock(return_value=[1, 1, to_epoch_ms(T0), 1, to_epoch_ms(T0)])
        client.register_script.return_value = script
        store = RedisCounterStore(client)

        store.increment([sliding(key="a"), sliding(key="b", window_seconds=DAY)], T0)

        client.register_script.assert_called_once_with(CONSUME_SCRIPT)
        script.assert_called_once()
        kwargs = script.call_args.kwargs
        assert kwargs["keys"] == ["a", "b"]
        assert kwargs["args"][0] == to_epoch_ms(T0)
        assert kwargs["args"][2:] == [HOUR * 1000, 3, "sliding", DAY * 1000, 3, "sliding"]

    def test_keys_carry_a_ttl(self, fake_redis):
        store = RedisCounterStore(fake_redis)

        store.increment([sliding(key="ttl:hour"), fixed(key="ttl:day")], T0)

        assert 0 < fake_redis.pttl("ttl:hour") <= HOUR * 1000 + 1
        assert 0 < fake_redis.pttl("ttl:day") <= DAY * 1000

    def test_redis_error_becomes_store_unavailable(self):
        client = Mock()
        client.register_script.return_value = Mock(side_effect=RedisConnectionError("connection refused"))
        store = RedisCounterStore(client)

        with pytest.raises(StoreUnavailable) as exc_info:
            store.increment([sliding()], T0)
        assert exc_info.value.store == "redis"
        assert exc_info.value.operation == "increment"

    def test_missing_url_means_unavailable(self):
        store = RedisCounterStore.from_url("")

        assert store.is_available() is False
        with pytest.raises(StoreUnavailable):
            store.peek([sliding()], T0)
