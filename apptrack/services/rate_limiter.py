"""
Rate limit engine for AI features.

Answers "is this identity allowed to use this feature right now?" against the quota
policy table, using the durable counter store's atomic increment as the only source
of truth. Every window of the policy (an hour and a day for AI features) is checked
and counted in the same store call. Signed-in users may carry a per-user override
that replaces the tier's limits.

When the store is unreachable the engine fails open: the request is allowed and
the degraded condition is logged.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import quote

from cachetools import TTLCache
from sqlalchemy.orm import Session

from apptrack.core import config
from apptrack.core.errors import StoreUnavailable, ValidationError
from apptrack.core.features import AIFeature, parse_feature
from apptrack.core.quota_policies import (
    QUOTA_POLICIES,
    PolicyTable,
    QuotaPolicy,
    QuotaWindow,
    WindowType,
    lookup,
    validate_policy_table,
)
from apptrack.core.tiers import Tier
from apptrack.services.counter_store import CounterResult, CounterStore, CounterWindow, fixed_bucket, to_epoch_ms
from apptrack.services.quota_overrides import resolve_user_policy
from apptrack.utils.request_identity import AuthenticatedIdentity, Identity

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    # True when the decision was made without the counter store (fail-open)
    degraded: bool = False
    # Length of the window reported above: the one that denied, or the tightest one
    window_seconds: Optional[int] = None

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        return max(0, int((self.reset_at - now).total_seconds() + 0.999))

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": self.reset_at.isoformat() + "Z",
        }


@dataclass(frozen=True)
class WindowUsage:
    used: int
    limit: int
    remaining: int
    reset_at: datetime
    window_seconds: int
    window_type: WindowType

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": self.reset_at.isoformat() + "Z",
            "windowSeconds": self.window_seconds,
            "windowType": self.window_type.value,
        }


@dataclass(frozen=True)
class UsageStats:
    """Usage of every window of a policy; the headline fields describe the shortest one."""

    feature: AIFeature
    windows: Tuple[WindowUsage, ...]
    degraded: bool = False

    @property
    def primary(self) -> WindowUsage:
        return self.windows[0]

    @property
    def used(self) -> int:
        return self.primary.used

    @property
    def limit(self) -> int:
        return self.primary.limit

    @property
    def remaining(self) -> int:
        return min(window.remaining for window in self.windows)

    @property
    def reset_at(self) -> datetime:
        return self.primary.reset_at

    def to_dict(self) -> dict:
        data = {"feature": self.feature.value, **self.primary.to_dict()}
        data["remaining"] = self.remaining
        data["windows"] = [window.to_dict() for window in self.windows]
        return data


def build_counter_key(identity: Identity, feature: AIFeature, window: QuotaWindow, now: datetime) -> str:
    """
    ratelimit:{feature}:{identity kind}:{escaped identity id}:{window seconds}s[:{bucket}]

    Identity ids are percent-escaped so a ':' inside an id cannot forge another key,
    and user ids and fingerprints live under different kinds.
    """
    identity_id = quote(identity.key, safe="")
    key = f"{KEY_PREFIX}:{feature.value}:{identity.kind}:{identity_id}:{window.window_seconds}s"
    if window.window_type == WindowType.FIXED:
        key = f"{key}:{fixed_bucket(to_epoch_ms(now), window.window_seconds * 1000)}"
    return key


def stats_cache_key(identity: Identity, feature: AIFeature) -> str:
    return f"{identity.kind}:{quote(identity.key, safe='')}:{feature.value}"


class UsageStatsCache:
    """
    Small in-process TTL cache for display-only usage stats.
    Advisory: never consulted by check_and_consume.
    """

    def __init__(self, ttl_seconds: int = 30, max_entries: int = 1024, timer: Callable[[], float] = time.monotonic):
        self._cache = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=timer)
        # TTLCache is not thread-safe
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[UsageStats]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, stats: UsageStats) -> None:
        with self._lock:
            self._cache[key] = stats

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def __len__(self):
        with self._lock:
            self._cache.expire()
            return len(self._cache)


def _reported_window(counters: Sequence[CounterResult], allowed: bool) -> int:
    """Index of the window to report: the denying window that frees up last, or the tightest one."""
    if allowed:
        return min(range(len(counters)), key=lambda i: counters[i].remaining)
    denied = [i for i, counter in enumerate(counters) if not counter.allowed]
    return max(denied, key=lambda i: counters[i].reset_at)


class RateLimitEngine:
    def __init__(
        self,
        store: CounterStore,
        policies: PolicyTable = QUOTA_POLICIES,
        clock: Callable[[], datetime] = datetime.utcnow,
        stats_cache: Optional[UsageStatsCache] = None,
    ):
        validate_policy_table(policies)
        self.store = store
        self.policies = policies
        self.clock = clock
        self.stats_cache = stats_cache

    @classmethod
    def from_config(cls, store: CounterStore) -> "RateLimitEngine":
        return cls(
            store,
            stats_cache=UsageStatsCache(config.USAGE_STATS_CACHE_TTL, config.USAGE_STATS_CACHE_SIZE),
        )

    def _resolve(self, identity: Identity, feature, tier, now: datetime, db: Optional[Session]) -> Tuple[AIFeature, QuotaPolicy]:
        feature = parse_feature(feature)
        if not isinstance(tier, Tier):
            raise ValidationError(f"Unknown subscription tier: {tier}")
        policy = lookup(feature, tier, self.policies)
        if db is not None and isinstance(identity, AuthenticatedIdentity):
            policy = resolve_user_policy(db, identity.user_id, policy, now)
        return feature, policy

    def counter_windows(self, identity: Identity, feature: AIFeature, policy: QuotaPolicy, now: datetime) -> List[CounterWindow]:
        return [
            CounterWindow(
                key=build_counter_key(identity, feature, window, now),
                limit=window.limit,
                window_seconds=window.window_seconds,
                window_type=window.window_type,
            )
            for window in policy.windows
        ]

    def _fail_open(self, policy: QuotaPolicy, identity: Identity, operation: str, now: datetime, error=None) -> RateLimitResult:
        logger.warning(
            "[RATE LIMIT] Counter store %s unavailable during %s for %s:%s feature=%s; failing open (%s)",
            self.store.name,
            operation,
            identity.kind,
            identity.key,
            policy.feature.value,
            error or "store not configured",
        )
        return RateLimitResult(
            allowed=True,
            limit=policy.limit,
            remaining=policy.limit,
            reset_at=now + timedelta(seconds=policy.window_seconds),
            degraded=True,
            window_seconds=policy.window_seconds,
        )

    def check_and_consume(self, identity: Identity, feature, tier: Tier, db: Optional[Session] = None) -> RateLimitResult:
        """
        Admit and count one request in a single atomic store call.
        Pass the request's db session to apply the user's limit override, if any.
        """
        now = self.clock()
        feature, policy = self._resolve(identity, feature, tier, now, db)
        if self.stats_cache is not None:
            self.stats_cache.invalidate(stats_cache_key(identity, feature))

        if not self.store.is_available():
            return self._fail_open(policy, identity, "increment", now)
        try:
            counters = self.store.increment(self.counter_windows(identity, feature, policy, now), now)
        except StoreUnavailable as e:
            return self._fail_open(policy, identity, e.operation, now, e)

        allowed = all(counter.allowed for counter in counters)
        index = _reported_window(counters, allowed)
        reported = counters[index]
        window = policy.windows[index]
        if not allowed:
            logger.info(
                "[RATE LIMIT] Denied %s:%s feature=%s tier=%s (%s/%s per %ss), resets at %s",
                identity.kind,
                identity.key,
                feature.value,
                tier.value,
                reported.count,
                reported.limit,
                window.window_seconds,
                reported.reset_at.isoformat(),
            )
        return RateLimitResult(
            allowed=allowed,
            limit=reported.limit,
            remaining=0 if not allowed else reported.remaining,
            reset_at=reported.reset_at,
            window_seconds=window.window_seconds,
        )

    def get_usage_stats(self, identity: Identity, feature, tier: Tier, db: Optional[Session] = None) -> UsageStats:
        """Read-only usage for display. Never increments."""
        now = self.clock()
        feature, policy = self._resolve(identity, feature, tier, now, db)
        cache_key = stats_cache_key(identity, feature)

        if self.stats_cache is not None:
            cached = self.stats_cache.get(cache_key)
            if cached is not None:
                return cached

        counters = None
        if self.store.is_available():
            try:
                counters = self.store.peek(self.counter_windows(identity, feature, policy, now), now)
            except StoreUnavailable as e:
                logger.warning("[RATE LIMIT] Could not read usage for %s: %s", cache_key, e)

        degraded = counters is None
        windows = []
        for i, window in enumerate(policy.windows):
            if degraded:
                used, remaining = 0, window.limit
                reset_at = now + timedelta(seconds=window.window_seconds)
            else:
                used, remaining, reset_at = counters[i].count, counters[i].remaining, counters[i].reset_at
            windows.append(
                WindowUsage(
                    used=used,
                    limit=window.limit,
                    remaining=remaining,
                    reset_at=reset_at,
                    window_seconds=window.window_seconds,
                    window_type=window.window_type,
                )
            )

        stats = UsageStats(feature=feature, windows=tuple(windows), degraded=degraded)
        if self.stats_cache is not None and not degraded:
            self.stats_cache.set(cache_key, stats)
        return stats

    def get_all_usage_stats(
        self,
        identity: Identity,
        tier: Tier,
        features: Sequence[AIFeature] = tuple(AIFeature),
        db: Optional[Session] = None,
    ) -> List[UsageStats]:
        return [self.get_usage_stats(identity, feature, tier, db=db) for feature in features]
