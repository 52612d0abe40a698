"""
In-process store with the same repository interface as the Supabase client.

Used for tests and single-instance local runs. Each repository method runs
without awaiting between its read and its write, so every call is atomic with
respect to other coroutines on the event loop.
"""

import copy
import itertools
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from security_engine.exceptions import ConcurrentModification, ProfileExists, ProfileNotFound
from security_engine.models.internal_models import (
    AuditEvent,
    FaceProfile,
    LockoutRecord,
    OTPChallenge,
    RateLimitDecision,
    VerificationAttemptLog,
)
from security_engine.utils.time_utils import seconds_until

logger = logging.getLogger(__name__)


class InMemoryFaceProfileRepository:
    """Face profiles keyed by profile id."""

    def __init__(self):
        self._profiles: Dict[str, FaceProfile] = {}

    async def get_active_profile(self, owner_id: str) -> Optional[FaceProfile]:
        for profile in self._profiles.values():
            if profile.owner_id == owner_id and profile.active:
                return copy.deepcopy(profile)
        return None

    async def insert_profile(self, profile: FaceProfile) -> FaceProfile:
        if any(p.owner_id == profile.owner_id and p.active for p in self._profiles.values()):
            raise ProfileExists()
        self._profiles[profile.id] = copy.deepcopy(profile)
        return profile

    async def replace_active_profile(self, owner_id: str, profile: FaceProfile) -> str:
        """Swap the active profile for ``profile`` and discard the old one. Returns the old id."""
        previous = [p for p in self._profiles.values() if p.owner_id == owner_id and p.active]
        if not previous:
            raise ProfileNotFound()
        for old in previous:
            del self._profiles[old.id]
        self._profiles[profile.id] = copy.deepcopy(profile)
        return previous[0].id

    async def delete_profiles(self, owner_id: str) -> int:
        doomed = [pid for pid, p in self._profiles.items() if p.owner_id == owner_id]
        for pid in doomed:
            del self._profiles[pid]
        return len(doomed)

    async def record_verification(self, profile_id: str, verified_at: datetime) -> None:
        profile = self._profiles.get(profile_id)
        if profile is not None:
            profile.verification_count += 1
            profile.last_verification_at = verified_at

    async def count_active(self, owner_id: str) -> int:
        return sum(1 for p in self._profiles.values() if p.owner_id == owner_id and p.active)


class InMemoryAttemptLogRepository:
    """Append-only verification attempt log."""

    def __init__(self):
        self._logs: List[VerificationAttemptLog] = []
        self._ids = itertools.count(1)

    async def append(self, log: VerificationAttemptLog) -> VerificationAttemptLog:
        stored = replace(log, id=next(self._ids))
        self._logs.append(stored)
        return stored

    async def list_for_owner(self, owner_id: str, since: Optional[datetime] = None) -> List[VerificationAttemptLog]:
        return [
            log for log in self._logs
            if log.owner_id == owner_id and (since is None or log.timestamp >= since)
        ]

    async def delete_older_than(self, cutoff: datetime) -> int:
        before = len(self._logs)
        self._logs = [log for log in self._logs if log.timestamp >= cutoff]
        return before - len(self._logs)


class InMemoryOTPChallengeRepository:
    """One challenge per (owner, purpose)."""

    def __init__(self):
        self._challenges: Dict[Tuple[str, str], OTPChallenge] = {}

    async def get(self, owner_id: str, purpose: str) -> Optional[OTPChallenge]:
        challenge = self._challenges.get((owner_id, purpose))
        return copy.deepcopy(challenge) if challenge else None

    async def put(self, challenge: OTPChallenge) -> OTPChallenge:
        """Store a new challenge, superseding any previous one for the same key."""
        stored = replace(challenge, version=1)
        self._challenges[(challenge.owner_id, challenge.purpose)] = stored
        return copy.deepcopy(stored)

    async def update(self, challenge: OTPChallenge) -> OTPChallenge:
        """Write back a challenge if nobody else changed it since it was read."""
        key = (challenge.owner_id, challenge.purpose)
        current = self._challenges.get(key)
        if current is None or current.id != challenge.id or current.version != challenge.version:
            raise ConcurrentModification()
        stored = replace(challenge, version=challenge.version + 1)
        self._challenges[key] = stored
        return copy.deepcopy(stored)

    async def delete(self, owner_id: str, purpose: str) -> bool:
        return self._challenges.pop((owner_id, purpose), None) is not None

    async def delete_expired(self, now: datetime) -> int:
        doomed = [
            key for key, c in self._challenges.items()
            if c.expires_at <= now
            and (c.lockout_until is None or c.lockout_until <= now)
            and (c.authorized_until is None or c.authorized_until <= now)
        ]
        for key in doomed:
            del self._challenges[key]
        return len(doomed)


class InMemoryRateLimitRepository:
    """Fixed-window counters keyed by (owner, purpose, action)."""

    def __init__(self):
        self._counters: Dict[Tuple[str, ...], Tuple[int, datetime]] = {}

    async def check_and_increment(
        self,
        key: Tuple[str, ...],
        max_count: int,
        window: timedelta,
        now: datetime
    ) -> RateLimitDecision:
        count, window_start = self._counters.get(key, (0, now))
        if now >= window_start + window:
            count, window_start = 0, now

        reset_at = window_start + window
        if count >= max_count:
            return RateLimitDecision(
                allowed=False,
                count=count,
                limit=max_count,
                reset_at=reset_at,
                retry_after=seconds_until(reset_at, now),
            )

        self._counters[key] = (count + 1, window_start)
        return RateLimitDecision(allowed=True, count=count + 1, limit=max_count, reset_at=reset_at)

    async def reset(self, key: Tuple[str, ...]) -> bool:
        return self._counters.pop(key, None) is not None

    async def delete_expired(self, now: datetime, window: timedelta) -> int:
        doomed = [key for key, (_, start) in self._counters.items() if now >= start + window]
        for key in doomed:
            del self._counters[key]
        return len(doomed)


class InMemoryLockoutRepository:
    """Consecutive-failure counters and lockout deadlines keyed by (owner, scope)."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], LockoutRecord] = {}

    async def get(self, owner_id: str, scope: str) -> LockoutRecord:
        record = self._records.get((owner_id, scope))
        return copy.deepcopy(record) if record else LockoutRecord(owner_id=owner_id, scope=scope)

    async def register_failure(
        self,
        owner_id: str,
        scope: str,
        max_failures: int,
        lockout_duration: timedelta,
        now: datetime
    ) -> LockoutRecord:
        record = self._records.setdefault((owner_id, scope), LockoutRecord(owner_id=owner_id, scope=scope))
        if record.locked_until is not None and record.locked_until <= now:
            # Previous lockout served; start counting afresh
            record.locked_until = None
            record.consecutive_failures = 0
        record.consecutive_failures += 1
        if record.consecutive_failures >= max_failures:
            record.locked_until = now + lockout_duration
        return copy.deepcopy(record)

    async def reset_failures(self, owner_id: str, scope: str) -> None:
        self._records.pop((owner_id, scope), None)

    async def lock_until(self, owner_id: str, scope: str, until: datetime) -> LockoutRecord:
        record = self._records.setdefault((owner_id, scope), LockoutRecord(owner_id=owner_id, scope=scope))
        record.locked_until = until
        return copy.deepcopy(record)

    async def clear(self, owner_id: str, scope: str) -> bool:
        return self._records.pop((owner_id, scope), None) is not None


class InMemoryAuditRepository:
    """Append-only audit sink."""

    def __init__(self):
        self._events: List[AuditEvent] = []

    async def insert(self, event: AuditEvent) -> AuditEvent:
        self._events.append(event)
        return event

    async def list_for_owner(self, owner_id: str, limit: int = 20) -> List[AuditEvent]:
        events = [e for e in self._events if e.owner_id == owner_id]
        return sorted(events, key=lambda e: e.timestamp, reverse=True)[:limit]


class InMemoryDatabaseManager:
    """Database manager backed by process memory."""

    def __init__(self):
        self.face_profiles = InMemoryFaceProfileRepository()
        self.attempt_logs = InMemoryAttemptLogRepository()
        self.otp_challenges = InMemoryOTPChallengeRepository()
        self.rate_limits = InMemoryRateLimitRepository()
        self.lockouts = InMemoryLockoutRepository()
        self.audit_events = InMemoryAuditRepository()
        logger.info("Using in-memory security store")

    async def health_check(self) -> bool:
        return True
