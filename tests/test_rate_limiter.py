"""
Tests for the rate limiter and lockout guard.
"""

from datetime import timedelta

import pytest

from security_engine.exceptions import AccountLocked, RateLimitExceeded
from security_engine.services.rate_limiter import LockoutGuard, RateLimiter, rate_limit_key


class TestRateLimiter:
    """Test cases for RateLimiter."""

    @pytest.fixture
    def limiter(self, db_manager, clock):
        return RateLimiter(db_manager.rate_limits, clock)

    @pytest.fixture
    def key(self):
        return rate_limit_key("user_1", "shift_start", "otp_generate")

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, limiter, key):
        window = timedelta(minutes=15)

        decisions = [await limiter.check_and_increment(key, 3, window) for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert [d.count for d in decisions] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_denies_beyond_limit_with_retry_after(self, limiter, key, clock):
        window = timedelta(minutes=15)
        for _ in range(3):
            await limiter.check_and_increment(key, 3, window)

        clock.advance(minutes=5)
        decision = await limiter.check_and_increment(key, 3, window)

        assert not decision.allowed
        assert decision.retry_after == 600

    @pytest.mark.asyncio
    async def test_denied_calls_do_not_increment(self, limiter, key):
        window = timedelta(seconds=60)
        for _ in range(5):
            await limiter.check_and_increment(key, 2, window)

        decision = await limiter.check_and_increment(key, 2, window)
        assert decision.count == 2

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter, key, clock):
        window = timedelta(seconds=60)
        for _ in range(2):
            await limiter.check_and_increment(key, 2, window)

        clock.advance(seconds=60)
        decision = await limiter.check_and_increment(key, 2, window)

        assert decision.allowed
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        window = timedelta(seconds=60)
        await limiter.check_and_increment(rate_limit_key("user_1", "a", "x"), 1, window)

        other = await limiter.check_and_increment(rate_limit_key("user_1", "b", "x"), 1, window)
        assert other.allowed

    @pytest.mark.asyncio
    async def test_enforce_raises(self, limiter, key):
        window = timedelta(seconds=60)
        await limiter.enforce(key, 1, window)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.enforce(key, 1, window, "Slow down")

        assert exc_info.value.message == "Slow down"
        assert exc_info.value.retry_after == 60

    @pytest.mark.asyncio
    async def test_reset(self, limiter, key):
        window = timedelta(seconds=60)
        await limiter.enforce(key, 1, window)

        assert await limiter.reset(key)
        assert (await limiter.check_and_increment(key, 1, window)).allowed


class TestLockoutGuard:
    """Test cases for LockoutGuard."""

    @pytest.fixture
    def guard(self, db_manager, clock):
        return LockoutGuard(db_manager.lockouts, clock)

    @pytest.mark.asyncio
    async def test_locks_after_max_failures(self, guard, clock):
        duration = timedelta(minutes=15)

        first = await guard.register_failure("user_1", "face_verification", 3, duration)
        second = await guard.register_failure("user_1", "face_verification", 3, duration)
        third = await guard.register_failure("user_1", "face_verification", 3, duration)

        assert first.locked_until is None
        assert second.consecutive_failures == 2
        assert third.locked_until == clock.now + duration

        with pytest.raises(AccountLocked) as exc_info:
            await guard.ensure_not_locked("user_1", "face_verification")
        assert exc_info.value.retry_after == 900

    @pytest.mark.asyncio
    async def test_lock_expires(self, guard, clock):
        await guard.lock_until("user_1", "shift_start", clock.now + timedelta(minutes=15))

        clock.advance(minutes=15)

        await guard.ensure_not_locked("user_1", "shift_start")
        assert await guard.get_locked_until("user_1", "shift_start") is None

    @pytest.mark.asyncio
    async def test_served_lockout_restarts_count(self, guard, clock):
        duration = timedelta(minutes=15)
        for _ in range(3):
            await guard.register_failure("user_1", "face_verification", 3, duration)

        clock.advance(minutes=16)
        record = await guard.register_failure("user_1", "face_verification", 3, duration)

        assert record.consecutive_failures == 1
        assert record.locked_until is None

    @pytest.mark.asyncio
    async def test_reset_failures(self, guard):
        duration = timedelta(minutes=15)
        await guard.register_failure("user_1", "face_verification", 3, duration)
        await guard.register_failure("user_1", "face_verification", 3, duration)

        await guard.reset_failures("user_1", "face_verification")
        record = await guard.register_failure("user_1", "face_verification", 3, duration)

        assert record.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, guard, clock):
        await guard.lock_until("user_1", "shift_start", clock.now + timedelta(minutes=15))

        await guard.ensure_not_locked("user_1", "face_verification")
        await guard.ensure_not_locked("user_1", "shift_end")

    @pytest.mark.asyncio
    async def test_unlock(self, guard, clock):
        await guard.lock_until("user_1", "face_verification", clock.now + timedelta(minutes=15))

        assert await guard.unlock("user_1", "face_verification")
        await guard.ensure_not_locked("user_1", "face_verification")
        assert not await guard.unlock("user_1", "face_verification")
