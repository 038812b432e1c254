"""
Shared fixtures for rate limiter tests.
"""

import fakeredis
import fakeredis.aioredis
import pytest

from service_ratelimit.app.ratelimit.token_bucket import TokenBucketRateLimiter
from service_ratelimit.app.store.redis_connector import RedisStoreConnector

START_MS = 1_700_000_000_000


class ManualClock:
    """Controllable millisecond clock."""

    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, delta_ms: int) -> None:
        self.now_ms += delta_ms

    def set(self, now_ms: int) -> None:
        self.now_ms = now_ms


@pytest.fixture
def clock():
    """Clock frozen at a fixed instant until advanced."""
    return ManualClock()


@pytest.fixture
def fake_redis():
    """In-memory Redis with Lua scripting and its own server state."""
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def connector(fake_redis):
    """Store connector backed by fake Redis."""
    return RedisStoreConnector(fake_redis)


@pytest.fixture
def rate_limiter(connector, clock):
    """Token bucket engine on fake Redis with a manual clock."""
    return TokenBucketRateLimiter(connector, clock=clock)
