"""
Unit tests for the distributed token bucket rate limiter.
"""

import asyncio
import math

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.errors import InvalidLimitError, StoreProtocolError, StoreUnavailableError
from shared.metrics import MetricsCollector
from service_ratelimit.app.ratelimit.token_bucket import (
    MAX_LIMIT,
    Decision,
    TokenBucketRateLimiter,
    wall_clock_ms,
)

from .conftest import START_MS, ManualClock


class TestBucketParameters:
    """Input validation and parameter derivation."""

    @pytest.fixture
    def engine(self):
        return TokenBucketRateLimiter(MagicMock(), clock=ManualClock())

    def test_make_key(self, engine):
        assert engine.make_key("client-1") == "ratelimit:client-1"

    @pytest.mark.parametrize("requests_per_minute", [0, -1, -60])
    def test_non_positive_limit_rejected(self, engine, requests_per_minute):
        with pytest.raises(InvalidLimitError) as exc_info:
            engine.bucket_parameters("client-1", requests_per_minute, 10)

        assert exc_info.value.code == "INVALID_LIMIT"
        assert exc_info.value.details["requests_per_minute"] == requests_per_minute

    @pytest.mark.parametrize("requests_per_minute, burst, field", [
        (MAX_LIMIT + 1, None, "requests_per_minute"),
        (10 ** 400, None, "requests_per_minute"),
        (60, MAX_LIMIT + 1, "burst"),
        (60, 10 ** 400, "burst"),
    ])
    def test_oversized_limit_rejected(self, engine, requests_per_minute, burst, field):
        with pytest.raises(InvalidLimitError) as exc_info:
            engine.bucket_parameters("client-1", requests_per_minute, burst)

        assert field in exc_info.value.details

    def test_largest_limit_accepted(self, engine):
        params = engine.bucket_parameters("client-1", MAX_LIMIT, MAX_LIMIT)

        assert params.max_tokens == MAX_LIMIT
        assert params.refill_rate == MAX_LIMIT / 60.0

    def test_burst_defaults_to_limit(self, engine):
        params = engine.bucket_parameters("client-1", 30)

        assert params.max_tokens == 30
        assert params.refill_rate == 0.5

    def test_zero_burst_still_admits_one(self, engine):
        params = engine.bucket_parameters("client-1", 60, 0)

        assert params.max_tokens == 1
        assert params.refill_rate == 1.0

    def test_explicit_burst(self, engine):
        params = engine.bucket_parameters("client-1", 120, 5)

        assert params.key == "ratelimit:client-1"
        assert params.max_tokens == 5
        assert params.refill_rate == 2.0


class TestTokenBucketRateLimiter:
    """Engine behaviour against a mocked connector."""

    @pytest.fixture
    def mock_connector(self):
        connector = MagicMock()
        connector.invoke_atomic = AsyncMock(return_value=(True, 9, 0))
        connector.ping = AsyncMock(return_value=True)
        return connector

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("ratelimit")

    @pytest.fixture
    def engine(self, mock_connector, metrics):
        return TokenBucketRateLimiter(mock_connector, clock=ManualClock(), metrics=metrics)

    @pytest.mark.asyncio
    async def test_check_invokes_store_with_derived_parameters(self, engine, mock_connector):
        decision = await engine.check("client-1", 60, 10)

        assert decision == Decision(allowed=True, remaining=9, retry_after_ms=0)
        mock_connector.invoke_atomic.assert_awaited_once_with("ratelimit:client-1", 10, 1.0, START_MS)

    @pytest.mark.asyncio
    async def test_check_denied(self, engine, mock_connector, metrics):
        mock_connector.invoke_atomic.return_value = (False, 0, 1000)

        decision = await engine.check("client-1", 60, 10)

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after_ms == 1000
        assert metrics.registry.get_sample_value(
            "ratelimit_decisions_total", {"decision": "denied"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_invalid_limit_never_reaches_store(self, engine, mock_connector):
        with pytest.raises(InvalidLimitError):
            await engine.check("client-1", 0, 10)

        mock_connector.invoke_atomic.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self, engine, mock_connector, metrics):
        mock_connector.invoke_atomic.side_effect = StoreUnavailableError("Redis unavailable")

        with pytest.raises(StoreUnavailableError):
            await engine.check("client-1", 60, 10)

        assert mock_connector.invoke_atomic.await_count == 1
        assert metrics.registry.get_sample_value(
            "store_errors_total", {"error_type": "STORE_UNAVAILABLE"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_store_protocol_error_propagates(self, engine, mock_connector):
        mock_connector.invoke_atomic.side_effect = StoreProtocolError("bad reply")

        with pytest.raises(StoreProtocolError):
            await engine.check("client-1", 60, 10)

    @pytest.mark.asyncio
    async def test_allowed_decision_recorded(self, engine, metrics):
        await engine.check("client-1", 60, 10)
        await engine.check("client-1", 60, 10)

        assert metrics.registry.get_sample_value(
            "ratelimit_decisions_total", {"decision": "allowed"}
        ) == 2.0
        assert metrics.registry.get_sample_value("ratelimit_check_duration_seconds_count") == 2.0

    @pytest.mark.asyncio
    async def test_ping_delegates_to_connector(self, engine, mock_connector):
        assert await engine.ping() is True
        mock_connector.ping.assert_awaited_once()

    def test_wall_clock_is_epoch_milliseconds(self):
        assert wall_clock_ms() > START_MS


class TestTokenBucketScript:
    """Refill and consume semantics executed by the Lua procedure."""

    @pytest.mark.asyncio
    async def test_saturation_and_refill_scenario(self, rate_limiter, clock):
        for i in range(10):
            decision = await rate_limiter.check("client-1", 60, 10)
            assert decision.allowed, f"Request {i} should be allowed"
            assert decision.remaining == 9 - i

        denied = await rate_limiter.check("client-1", 60, 10)
        assert denied == Decision(allowed=False, remaining=0, retry_after_ms=1000)

        clock.advance(2000)
        decision = await rate_limiter.check("client-1", 60, 10)
        assert decision == Decision(allowed=True, remaining=1, retry_after_ms=0)

    @pytest.mark.asyncio
    async def test_empty_bucket_retry_after_one_second(self, rate_limiter):
        await rate_limiter.check("client-1", 60, 0)

        decision = await rate_limiter.check("client-1", 60, 0)

        assert decision.allowed is False
        assert decision.retry_after_ms == 1000

    @pytest.mark.asyncio
    async def test_retry_after_for_partial_token(self, rate_limiter, clock):
        await rate_limiter.check("client-1", 60, 1)
        clock.advance(250)

        decision = await rate_limiter.check("client-1", 60, 1)

        # 0.25 tokens held, 0.75 still needed at 1 token/s
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after_ms == math.ceil((1 - 0.25) / 1.0 * 1000)

    @pytest.mark.asyncio
    async def test_retry_after_scales_with_rate(self, rate_limiter):
        await rate_limiter.check("client-1", 30, 1)

        decision = await rate_limiter.check("client-1", 30, 1)

        assert decision.retry_after_ms == 2000

    @pytest.mark.asyncio
    async def test_denied_check_does_not_consume(self, rate_limiter, clock, fake_redis):
        await rate_limiter.check("client-1", 60, 1)
        clock.advance(500)

        await rate_limiter.check("client-1", 60, 1)
        await rate_limiter.check("client-1", 60, 1)

        assert float(await fake_redis.hget("ratelimit:client-1", "tokens")) == 0.5
        clock.advance(500)
        assert (await rate_limiter.check("client-1", 60, 1)).allowed is True

    @pytest.mark.asyncio
    async def test_refill_is_partial_and_persisted(self, rate_limiter, clock, fake_redis):
        for _ in range(5):
            await rate_limiter.check("client-1", 60, 5)

        clock.advance(2500)
        decision = await rate_limiter.check("client-1", 60, 5)

        assert decision.allowed is True
        assert decision.remaining == 1
        stored = await fake_redis.hgetall("ratelimit:client-1")
        assert float(stored[b"tokens"]) == 1.5
        assert int(stored[b"last_refill"]) == clock.now_ms

    @pytest.mark.asyncio
    async def test_refill_saturates_at_capacity(self, rate_limiter, clock):
        await rate_limiter.check("client-1", 60, 5)

        clock.advance(10 * 60 * 1000)
        decision = await rate_limiter.check("client-1", 60, 5)

        assert decision.remaining == 4

    @pytest.mark.asyncio
    async def test_smaller_burst_clamps_stored_tokens(self, rate_limiter):
        first = await rate_limiter.check("client-1", 60, 10)
        assert first.remaining == 9

        decision = await rate_limiter.check("client-1", 60, 3)

        assert decision.allowed is True
        assert decision.remaining == 2

    @pytest.mark.asyncio
    async def test_clock_moving_backwards_never_removes_tokens(self, rate_limiter, clock, fake_redis):
        await rate_limiter.check("client-1", 60, 2)

        clock.advance(-5000)
        decision = await rate_limiter.check("client-1", 60, 2)
        assert decision == Decision(allowed=True, remaining=0, retry_after_ms=0)

        # last_refill keeps the later timestamp, so returning to it refills nothing
        clock.advance(5000)
        decision = await rate_limiter.check("client-1", 60, 2)
        assert decision.allowed is False
        assert int(await fake_redis.hget("ratelimit:client-1", "last_refill")) == clock.now_ms

    @pytest.mark.asyncio
    async def test_bucket_expires_after_idle_window(self, rate_limiter, fake_redis):
        await rate_limiter.check("client-1", 60, 10)

        ttl = await fake_redis.ttl("ratelimit:client-1")

        assert 0 < ttl <= 120

    @pytest.mark.asyncio
    async def test_expired_bucket_behaves_like_new(self, rate_limiter, fake_redis):
        for _ in range(3):
            await rate_limiter.check("client-1", 60, 3)
        await fake_redis.delete("ratelimit:client-1")

        recreated = await rate_limiter.check("client-1", 60, 3)
        fresh = await rate_limiter.check("client-2", 60, 3)

        assert recreated == fresh == Decision(allowed=True, remaining=2, retry_after_ms=0)

    @pytest.mark.asyncio
    async def test_clients_have_independent_buckets(self, rate_limiter):
        await rate_limiter.check("client-1", 60, 1)

        assert (await rate_limiter.check("client-1", 60, 1)).allowed is False
        assert (await rate_limiter.check("client-2", 60, 1)).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_checks_never_over_admit(self, rate_limiter):
        capacity = 10

        decisions = await asyncio.gather(
            *(rate_limiter.check("client-1", 60, capacity) for _ in range(capacity + 5))
        )

        assert sum(1 for d in decisions if d.allowed) == capacity
        assert all(d.retry_after_ms == 1000 for d in decisions if not d.allowed)
