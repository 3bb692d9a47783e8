"""
Durable counter store used by the rate limit engine.

The check and the increment happen in a single atomic call against the store:
Redis runs them inside one Lua script, the in-memory store under one lock.
Callers never read a count and write it back in two round trips.

A request may be counted against several windows at once (an hour and a day).
It is admitted only if every window has room, and then counted in all of them;
a denied request is counted in none.

A sliding window of length W limits a request at T by the requests made in
[T - W, T], so a request exactly W old still counts.

Key lifecycle: every key carries a TTL covering its window and is never deleted.
"""
import calendar
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import redis
from redis.exceptions import RedisError

from apptrack.core.errors import StoreUnavailable
from apptrack.core.quota_policies import WindowType

logger = logging.getLogger(__name__)

STORE_NAME = "redis"
EPOCH = datetime(1970, 1, 1)


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return calendar.timegm(moment.utctimetuple()) * 1000 + moment.microsecond // 1000


def from_epoch_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def fixed_bucket(now_ms: int, window_ms: int) -> int:
    return now_ms // window_ms


@dataclass(frozen=True)
class CounterWindow:
    key: str
    limit: int
    window_seconds: int
    window_type: WindowType = WindowType.SLIDING

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


@dataclass(frozen=True)
class CounterResult:
    # Whether this window had room; the request is admitted only if every window did
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_at: datetime

    @property
    def reset_at_epoch_ms(self) -> int:
        return to_epoch_ms(self.reset_at)


def _sliding_result(allowed: bool, count: int, limit: int, oldest_ms: Optional[int], now_ms: int, window_ms: int) -> CounterResult:
    # First instant at which the oldest request in the window no longer counts
    if oldest_ms is not None and count > 0:
        reset_ms = oldest_ms + window_ms + 1
    else:
        reset_ms = now_ms + window_ms
    return CounterResult(
        allowed=allowed,
        count=count,
        limit=limit,
        remaining=max(0, limit - count),
        reset_at=from_epoch_ms(reset_ms),
    )


def _fixed_result(allowed: bool, count: int, limit: int, now_ms: int, window_ms: int) -> CounterResult:
    bucket = fixed_bucket(now_ms, window_ms)
    return CounterResult(
        allowed=allowed,
        count=count,
        limit=limit,
        remaining=max(0, limit - count),
        reset_at=from_epoch_ms((bucket + 1) * window_ms),
    )


def _window_result(window: CounterWindow, allowed: bool, count: int, oldest_ms: Optional[int], now_ms: int) -> CounterResult:
    if window.window_type == WindowType.SLIDING:
        return _sliding_result(allowed, count, window.limit, oldest_ms, now_ms, window.window_ms)
    return _fixed_result(allowed, count, window.limit, now_ms, window.window_ms)


class CounterStore:
    """Interface consumed by the rate limit engine."""

    name = "counter-store"

    def is_available(self) -> bool:
        raise NotImplementedError

    def increment(self, windows: Sequence[CounterWindow], now: datetime) -> List[CounterResult]:
        """
        Atomically admit-and-count one request against every window.
        Returns one result per window, in order.
        """
        raise NotImplementedError

    def peek(self, windows: Sequence[CounterWindow], now: datetime) -> List[CounterResult]:
        """Read-only view of the same counters. Must not mutate state."""
        raise NotImplementedError


# KEYS = one counter key per window
# ARGV = now_ms, member, then (window_ms, limit, window type) for each key
CONSUME_SCRIPT = """
local now = tonumber(ARGV[1])
local member = ARGV[2]
local counts = {}
local allowed = 1
for i, key in ipairs(KEYS) do
  local base = 2 + (i - 1) * 3
  local window = tonumber(ARGV[base + 1])
  local limit = tonumber(ARGV[base + 2])
  local count
  if ARGV[base + 3] == 'sliding' then
    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
    count = redis.call('ZCARD', key)
  else
    count = tonumber(redis.call('GET', key) or '0')
  end
  counts[i] = count
  if count >= limit then
    allowed = 0
  end
end
local result = {allowed}
for i, key in ipairs(KEYS) do
  local base = 2 + (i - 1) * 3
  local window = tonumber(ARGV[base + 1])
  local sliding = ARGV[base + 3] == 'sliding'
  if allowed == 1 then
    if sliding then
      redis.call('ZADD', key, now, member)
      redis.call('PEXPIRE', key, window + 1)
    elseif redis.call('INCR', key) == 1 then
      redis.call('PEXPIRE', key, window)
    end
    counts[i] = counts[i] + 1
  end
  local oldest_score = -1
  if sliding then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    if oldest[2] then
      oldest_score = tonumber(oldest[2])
    end
  end
  table.insert(result, counts[i])
  table.insert(result, oldest_score)
end
return result
"""


class RedisCounterStore(CounterStore):
    """
    Redis-backed counters. Sliding windows are sorted sets of request timestamps
    (a true sliding log); fixed windows are plain integers keyed by bucket.
    """

    name = STORE_NAME

    def __init__(self, client: Optional["redis.Redis"] = None):
        self._client = client
        self._consume_script = None
        if client is not None:
            self._consume_script = client.register_script(CONSUME_SCRIPT)

    @classmethod
    def from_url(cls, url: Optional[str], socket_timeout: float = 2.0) -> "RedisCounterStore":
        if not url:
            logger.warning("[RATE LIMIT] REDIS_URL is not set. Rate limits will fail open.")
            return cls(None)
        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        logger.info("[RATE LIMIT] Redis counter store configured")
        return cls(client)

    def is_available(self) -> bool:
        return self._client is not None

    def increment(self, windows, now):
        if self._client is None:
            raise StoreUnavailable(self.name, "increment")
        now_ms = to_epoch_ms(now)
        args = [now_ms, f"{now_ms}-{uuid.uuid4().hex}"]
        for window in windows:
            args.extend([window.window_ms, window.limit, window.window_type.value])
        try:
            reply = self._consume_script(keys=[window.key for window in windows], args=args)
        except RedisError as e:
            raise StoreUnavailable(self.name, "increment", e) from e

        admitted = bool(int(reply[0]))
        results = []
        for i, window in enumerate(windows):
            count, oldest = int(reply[1 + 2 * i]), int(reply[2 + 2 * i])
            had_room = admitted or count < window.limit
            results.append(_window_result(window, had_room, count, oldest if oldest >= 0 else None, now_ms))
        return results

    def peek(self, windows, now):
        if self._client is None:
            raise StoreUnavailable(self.name, "peek")
        now_ms = to_epoch_ms(now)
        results = []
        try:
            for window in windows:
                if window.window_type == WindowType.SLIDING:
                    lower = now_ms - window.window_ms
                    count = int(self._client.zcount(window.key, lower, "+inf"))
                    oldest = self._client.zrangebyscore(window.key, lower, "+inf", start=0, num=1, withscores=True)
                    oldest_ms = int(oldest[0][1]) if oldest else None
                else:
                    count = int(self._client.get(window.key) or 0)
                    oldest_ms = None
                results.append(_window_result(window, count < window.limit, count, oldest_ms, now_ms))
        except RedisError as e:
            raise StoreUnavailable(self.name, "peek", e) from e
        return results


class InMemoryCounterStore(CounterStore):
    """
    Single-process counter store with the same semantics as RedisCounterStore.
    Used for local development and tests; not shared between processes.
    """

    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._sliding: Dict[str, List[int]] = {}
        self._fixed: Dict[str, Tuple[int, int]] = {}  # key -> (count, expires_at_ms)
        self.available = True

    def is_available(self) -> bool:
        return self.available

    def _check_available(self, operation: str) -> None:
        if not self.available:
            raise StoreUnavailable(self.name, operation)

    def _live_entries(self, window: CounterWindow, now_ms: int) -> List[int]:
        return [ts for ts in self._sliding.get(window.key, []) if ts >= now_ms - window.window_ms]

    def _live_count(self, window: CounterWindow, now_ms: int) -> int:
        count, expires_at = self._fixed.get(window.key, (0, 0))
        return count if expires_at > now_ms else 0

    def _count(self, window: CounterWindow, now_ms: int) -> int:
        if window.window_type == WindowType.SLIDING:
            return len(self._live_entries(window, now_ms))
        return self._live_count(window, now_ms)

    def _results(self, windows: Sequence[CounterWindow], admitted: bool, now_ms: int) -> List[CounterResult]:
        results = []
        for window in windows:
            count = self._count(window, now_ms)
            oldest_ms = None
            if window.window_type == WindowType.SLIDING:
                entries = self._live_entries(window, now_ms)
                oldest_ms = min(entries) if entries else None
            had_room = admitted or count < window.limit
            results.append(_window_result(window, had_room, count, oldest_ms, now_ms))
        return results

    def increment(self, windows, now):
        self._check_available("increment")
        now_ms = to_epoch_ms(now)
        with self._lock:
            admitted = all(self._count(window, now_ms) < window.limit for window in windows)
            if admitted:
                for window in windows:
                    if window.window_type == WindowType.SLIDING:
                        self._sliding[window.key] = self._live_entries(window, now_ms) + [now_ms]
                    else:
                        count = self._live_count(window, now_ms)
                        expires_at = self._fixed[window.key][1] if count else now_ms + window.window_ms
                        self._fixed[window.key] = (count + 1, expires_at)
            return self._results(windows, admitted, now_ms)

    def peek(self, windows, now):
        self._check_available("peek")
        now_ms = to_epoch_ms(now)
        with self._lock:
            return self._results(windows, False, now_ms)
