"""
Rate limiting and lockout policy shared by the face and OTP managers.

The two mechanisms protect different things and are stored separately:
rate limits throttle request floods per (owner, purpose, action) in fixed
windows, while lockouts block guessing after repeated failures per
(owner, scope). Callers check both before doing work.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from security_engine.exceptions import AccountLocked, RateLimitExceeded
from security_engine.models.internal_models import LockoutRecord, RateLimitDecision
from security_engine.utils.time_utils import Clock, seconds_until, utcnow

logger = logging.getLogger(__name__)

RateLimitKey = Tuple[str, str, str]


def rate_limit_key(owner_id: str, purpose: str, action: str) -> RateLimitKey:
    return (owner_id, purpose, action)


class RateLimiter:
    """Fixed-window request counter backed by the persistent store."""

    def __init__(self, repository, clock: Clock = utcnow):
        self.repository = repository
        self.clock = clock

    async def check_and_increment(self, key: RateLimitKey, max_count: int, window: timedelta) -> RateLimitDecision:
        """Count one request against ``key`` unless the window is already full."""
        decision = await self.repository.check_and_increment(key, max_count, window, self.clock())
        if not decision.allowed:
            logger.warning(
                f"Rate limit exceeded for {key[1]}/{key[2]} (owner {key[0]}): "
                f"{decision.count}/{max_count}, retry in {decision.retry_after}s"
            )
        return decision

    async def enforce(
        self,
        key: RateLimitKey,
        max_count: int,
        window: timedelta,
        message: Optional[str] = None
    ) -> RateLimitDecision:
        """Like :meth:`check_and_increment` but raises when the request is denied."""
        decision = await self.check_and_increment(key, max_count, window)
        if not decision.allowed:
            raise RateLimitExceeded(message, retry_after=decision.retry_after)
        return decision

    async def reset(self, key: RateLimitKey) -> bool:
        return await self.repository.reset(key)


class LockoutGuard:
    """Time-boxed lockouts after repeated failures."""

    def __init__(self, repository, clock: Clock = utcnow):
        self.repository = repository
        self.clock = clock

    async def get_locked_until(self, owner_id: str, scope: str) -> Optional[datetime]:
        """Return the lockout deadline if one is currently in force."""
        record = await self.repository.get(owner_id, scope)
        return record.locked_until if record.is_locked(self.clock()) else None

    async def ensure_not_locked(self, owner_id: str, scope: str) -> None:
        """
        Raises:
            AccountLocked: If a lockout for (owner, scope) is still in force
        """
        now = self.clock()
        record = await self.repository.get(owner_id, scope)
        if record.is_locked(now):
            retry_after = seconds_until(record.locked_until, now)
            logger.info(f"Rejected {scope} request for locked owner {owner_id}, {retry_after}s remaining")
            raise AccountLocked(retry_after=retry_after)

    async def register_failure(
        self,
        owner_id: str,
        scope: str,
        max_failures: int,
        lockout_duration: timedelta
    ) -> LockoutRecord:
        """Count a consecutive failure; lock the key once ``max_failures`` is reached."""
        record = await self.repository.register_failure(
            owner_id, scope, max_failures, lockout_duration, self.clock()
        )
        if record.locked_until is not None:
            logger.warning(
                f"Lockout applied to {owner_id}/{scope} after {record.consecutive_failures} failures "
                f"until {record.locked_until.isoformat()}"
            )
        return record

    async def reset_failures(self, owner_id: str, scope: str) -> None:
        await self.repository.reset_failures(owner_id, scope)

    async def lock_until(self, owner_id: str, scope: str, until: datetime) -> LockoutRecord:
        logger.warning(f"Lockout applied to {owner_id}/{scope} until {until.isoformat()}")
        return await self.repository.lock_until(owner_id, scope, until)

    async def unlock(self, owner_id: str, scope: str) -> bool:
        return await self.repository.clear(owner_id, scope)
