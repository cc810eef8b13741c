"""Windowed request counters backed by Redis."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import redis

from ag_gateway.core.errors import RateLimiterUnavailable
from ag_gateway.core.settings import Settings, settings

logger = logging.getLogger(__name__)

# Returned by TTL for a key that exists without an expiry.
_TTL_NO_EXPIRY = -1


class CounterStore(Protocol):
    """The slice of the Redis command set the limiter relies on."""

    def incr(self, name: str, amount: int = 1) -> Any: ...

    def expire(self, name: str, time: int) -> Any: ...

    def ttl(self, name: str) -> Any: ...


@dataclass(frozen=True)
class RateLimitPolicy:
    """Maximum number of requests allowed per fixed window."""

    name: str
    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int
    count: int


def global_policy(config: Settings | None = None) -> RateLimitPolicy:
    cfg = config or settings
    return RateLimitPolicy(
        "global",
        cfg.rate_limit_global_max,
        cfg.rate_limit_global_window_seconds,
    )


def purchase_burst_policy(config: Settings | None = None) -> RateLimitPolicy:
    cfg = config or settings
    return RateLimitPolicy(
        "purchase_burst",
        cfg.purchase_burst_max,
        cfg.purchase_burst_window_seconds,
    )


def purchase_sustained_policy(config: Settings | None = None) -> RateLimitPolicy:
    cfg = config or settings
    return RateLimitPolicy(
        "purchase_sustained",
        cfg.purchase_sustained_max,
        cfg.purchase_sustained_window_seconds,
    )


class RateLimiter:
    """Count requests per ``(policy, key)`` and decide whether to admit them.

    The limiter itself never chooses between failing open and failing closed:
    store errors are raised as :class:`RateLimiterUnavailable` and the caller
    picks the policy for its traffic class.
    """

    def __init__(self, store: CounterStore) -> None:
        self._store = store

    @staticmethod
    def counter_key(key: str, policy: RateLimitPolicy) -> str:
        return f"rl:{policy.name}:{key}"

    def check_and_increment(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        """Atomically count this request and report whether it is within the policy."""
        counter = self.counter_key(key, policy)
        try:
            count = int(self._store.incr(counter))
            if count == 1:
                self._store.expire(counter, policy.window_seconds)
                ttl = policy.window_seconds
            else:
                ttl = int(self._store.ttl(counter))
                if ttl == _TTL_NO_EXPIRY:
                    # A counter that lost its expiry would never reset.
                    self._store.expire(counter, policy.window_seconds)
                    ttl = policy.window_seconds
        except (redis.RedisError, OSError) as exc:
            raise RateLimiterUnavailable("Rate limiter store is unavailable") from exc

        if count > policy.max_requests:
            retry_after = ttl if ttl > 0 else policy.window_seconds
            return RateLimitDecision(allowed=False, retry_after_seconds=retry_after, count=count)
        return RateLimitDecision(allowed=True, retry_after_seconds=0, count=count)


def get_counter_store(config: Settings | None = None) -> CounterStore:
    """Return a Redis client configured for short, bounded socket operations."""
    cfg = config or settings
    return redis.from_url(  # type: ignore[no-any-return,no-untyped-call]
        cfg.redis_url,
        socket_timeout=cfg.redis_socket_timeout_seconds,
        socket_connect_timeout=cfg.redis_socket_timeout_seconds,
    )
