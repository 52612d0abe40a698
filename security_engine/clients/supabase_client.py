"""Supabase client for security engine persistence.

Multi-step read-modify-write operations are implemented as Postgres functions
(see ``sql/schema.sql``) and called through RPC so that every instance of the
service shares one consistent view of counters, lockouts and profiles.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from supabase import create_client, Client
from postgrest.exceptions import APIError

from ..config import settings
from ..exceptions import ConcurrentModification, ProfileExists, ProfileNotFound, StorageError
from ..models.internal_models import (
    AuditEvent,
    EncryptedBlob,
    FaceProfile,
    LockoutRecord,
    OTPChallenge,
    RateLimitDecision,
    VerificationAttemptLog,
)
from ..utils.time_utils import seconds_until

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _rate_key(key: Tuple[str, ...]) -> str:
    return ":".join(key)


class SupabaseClient:
    """Client for Supabase database operations."""

    def __init__(self):
        """Initialize Supabase client with configuration."""
        self._client: Optional[Client] = None
        self._url = settings.supabase_url
        self._key = settings.supabase_anon_key

    @property
    def client(self) -> Client:
        """Get or create Supabase client instance."""
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    async def health_check(self) -> bool:
        """Check if database connection is healthy."""
        try:
            self.client.table("face_profiles").select("id", count="exact").limit(0).execute()
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


class FaceProfileRepository:
    """Repository for face profile operations."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    @staticmethod
    def _to_row(profile: FaceProfile) -> Dict[str, Any]:
        return {
            "id": profile.id,
            "owner_id": profile.owner_id,
            "purpose": profile.purpose,
            "encrypted_angles": [blob.to_dict() for blob in profile.encrypted_angles],
            "angle_count": profile.angle_count,
            "quality_score": profile.quality_score,
            "active": profile.active,
            "registered_at": _iso(profile.registered_at),
            "updated_at": _iso(profile.updated_at),
            "verification_count": profile.verification_count,
            "last_verification_at": _iso(profile.last_verification_at),
            "device_fingerprint": profile.device_fingerprint,
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> FaceProfile:
        return FaceProfile(
            id=row["id"],
            owner_id=row["owner_id"],
            purpose=row["purpose"],
            encrypted_angles=[EncryptedBlob.from_dict(blob) for blob in row["encrypted_angles"]],
            quality_score=row["quality_score"],
            active=row["active"],
            registered_at=_parse_ts(row["registered_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            verification_count=row["verification_count"],
            last_verification_at=_parse_ts(row.get("last_verification_at")),
            device_fingerprint=row.get("device_fingerprint"),
        )

    async def get_active_profile(self, owner_id: str) -> Optional[FaceProfile]:
        """Retrieve the active profile for a user."""
        try:
            result = (
                self.client.client.table("face_profiles")
                .select("*")
                .eq("owner_id", owner_id)
                .eq("active", True)
                .execute()
            )
            return self._from_row(result.data[0]) if result.data else None
        except APIError as e:
            logger.error(f"Database error retrieving face profile for {owner_id}: {e}")
            raise StorageError()

    async def insert_profile(self, profile: FaceProfile) -> FaceProfile:
        """Insert a profile; a partial unique index rejects a second active one."""
        try:
            result = self.client.client.table("face_profiles").insert(self._to_row(profile)).execute()
            if not result.data:
                raise StorageError("Failed to create face profile")
            logger.info(f"Created face profile {profile.id} for {profile.owner_id}")
            return profile
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ProfileExists()
            logger.error(f"Database error creating face profile for {profile.owner_id}: {e}")
            raise StorageError()

    async def replace_active_profile(self, owner_id: str, profile: FaceProfile) -> str:
        """Atomically delete the active profile and insert the replacement."""
        try:
            result = self.client.client.rpc(
                "replace_face_profile",
                {"p_owner_id": owner_id, "p_profile": self._to_row(profile)}
            ).execute()
            if not result.data:
                raise ProfileNotFound()
            logger.info(f"Replaced face profile {result.data} with {profile.id} for {owner_id}")
            return result.data
        except APIError as e:
            logger.error(f"Database error replacing face profile for {owner_id}: {e}")
            raise StorageError()

    async def delete_profiles(self, owner_id: str) -> int:
        """Hard delete every profile row owned by the user."""
        try:
            result = self.client.client.table("face_profiles").delete().eq("owner_id", owner_id).execute()
            return len(result.data)
        except APIError as e:
            logger.error(f"Database error deleting face profiles for {owner_id}: {e}")
            raise StorageError()

    async def record_verification(self, profile_id: str, verified_at: datetime) -> None:
        try:
            self.client.client.rpc(
                "record_face_verification",
                {"p_profile_id": profile_id, "p_verified_at": _iso(verified_at)}
            ).execute()
        except APIError as e:
            logger.error(f"Database error updating verification count for profile {profile_id}: {e}")
            raise StorageError()

    async def count_active(self, owner_id: str) -> int:
        try:
            result = (
                self.client.client.table("face_profiles")
                .select("id", count="exact")
                .eq("owner_id", owner_id)
                .eq("active", True)
                .execute()
            )
            return result.count or 0
        except APIError as e:
            logger.error(f"Database error counting face profiles for {owner_id}: {e}")
            raise StorageError()


class AttemptLogRepository:
    """Repository for the append-only verification attempt log."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    async def append(self, log: VerificationAttemptLog) -> VerificationAttemptLog:
        try:
            result = self.client.client.table("face_verification_logs").insert({
                "owner_id": log.owner_id,
                "purpose": log.purpose,
                "similarity": log.similarity,
                "liveness_score": log.liveness_score,
                "outcome": log.outcome,
                "device_fingerprint": log.device_fingerprint,
                "failure_reason": log.failure_reason,
                "created_at": _iso(log.timestamp),
            }).execute()
            if not result.data:
                raise StorageError("Failed to append verification attempt")
            return replace(log, id=result.data[0]["id"])
        except APIError as e:
            logger.error(f"Database error logging verification attempt for {log.owner_id}: {e}")
            raise StorageError()

    async def list_for_owner(self, owner_id: str, since: Optional[datetime] = None) -> List[VerificationAttemptLog]:
        try:
            query = self.client.client.table("face_verification_logs").select("*").eq("owner_id", owner_id)
            if since is not None:
                query = query.gte("created_at", _iso(since))
            result = query.order("created_at", desc=True).execute()
            return [
                VerificationAttemptLog(
                    id=row["id"],
                    owner_id=row["owner_id"],
                    purpose=row["purpose"],
                    similarity=row["similarity"],
                    liveness_score=row["liveness_score"],
                    outcome=row["outcome"],
                    device_fingerprint=row.get("device_fingerprint"),
                    failure_reason=row.get("failure_reason"),
                    timestamp=_parse_ts(row["created_at"]),
                )
                for row in result.data
            ]
        except APIError as e:
            logger.error(f"Database error retrieving verification attempts for {owner_id}: {e}")
            raise StorageError()

    async def delete_older_than(self, cutoff: datetime) -> int:
        try:
            result = self.client.client.table("face_verification_logs").delete().lt("created_at", _iso(cutoff)).execute()
            return len(result.data)
        except APIError as e:
            logger.error(f"Database error cleaning up verification logs: {e}")
            raise StorageError()


class OTPChallengeRepository:
    """Repository for OTP challenges with optimistic concurrency on ``version``."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    @staticmethod
    def _to_row(challenge: OTPChallenge) -> Dict[str, Any]:
        return {
            "id": challenge.id,
            "owner_id": challenge.owner_id,
            "purpose": challenge.purpose,
            "code_hash": challenge.code_hash,
            "phone_number": challenge.phone_number,
            "created_at": _iso(challenge.created_at),
            "expires_at": _iso(challenge.expires_at),
            "attempts": challenge.attempts,
            "max_attempts": challenge.max_attempts,
            "verified": challenge.verified,
            "verified_at": _iso(challenge.verified_at),
            "authorized_until": _iso(challenge.authorized_until),
            "lockout_until": _iso(challenge.lockout_until),
            "device_fingerprint": challenge.device_fingerprint,
            "version": challenge.version,
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> OTPChallenge:
        return OTPChallenge(
            id=row["id"],
            owner_id=row["owner_id"],
            purpose=row["purpose"],
            code_hash=row["code_hash"],
            phone_number=row["phone_number"],
            created_at=_parse_ts(row["created_at"]),
            expires_at=_parse_ts(row["expires_at"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            verified=row["verified"],
            verified_at=_parse_ts(row.get("verified_at")),
            authorized_until=_parse_ts(row.get("authorized_until")),
            lockout_until=_parse_ts(row.get("lockout_until")),
            device_fingerprint=row.get("device_fingerprint"),
            version=row["version"],
        )

    async def get(self, owner_id: str, purpose: str) -> Optional[OTPChallenge]:
        try:
            result = (
                self.client.client.table("otp_challenges")
                .select("*")
                .eq("owner_id", owner_id)
                .eq("purpose", purpose)
                .execute()
            )
            return self._from_row(result.data[0]) if result.data else None
        except APIError as e:
            logger.error(f"Database error retrieving OTP challenge for {owner_id}/{purpose}: {e}")
            raise StorageError()

    async def put(self, challenge: OTPChallenge) -> OTPChallenge:
        """Upsert on (owner_id, purpose) so a new challenge supersedes the old one."""
        row = self._to_row(challenge)
        row["version"] = 1
        try:
            result = self.client.client.table("otp_challenges").upsert(
                row,
                on_conflict="owner_id,purpose"
            ).execute()
            if not result.data:
                raise StorageError("Failed to store OTP challenge")
            return self._from_row(result.data[0])
        except APIError as e:
            logger.error(f"Database error storing OTP challenge for {challenge.owner_id}: {e}")
            raise StorageError()

    async def update(self, challenge: OTPChallenge) -> OTPChallenge:
        row = self._to_row(challenge)
        row["version"] = challenge.version + 1
        try:
            result = (
                self.client.client.table("otp_challenges")
                .update(row)
                .eq("id", challenge.id)
                .eq("version", challenge.version)
                .execute()
            )
        except APIError as e:
            logger.error(f"Database error updating OTP challenge {challenge.id}: {e}")
            raise StorageError()
        if not result.data:
            raise ConcurrentModification()
        return self._from_row(result.data[0])

    async def delete(self, owner_id: str, purpose: str) -> bool:
        try:
            result = (
                self.client.client.table("otp_challenges")
                .delete()
                .eq("owner_id", owner_id)
                .eq("purpose", purpose)
                .execute()
            )
            return len(result.data) > 0
        except APIError as e:
            logger.error(f"Database error deleting OTP challenge for {owner_id}/{purpose}: {e}")
            raise StorageError()

    async def delete_expired(self, now: datetime) -> int:
        try:
            result = self.client.client.rpc("delete_expired_otp_challenges", {"p_now": _iso(now)}).execute()
            return result.data or 0
        except APIError as e:
            logger.error(f"Database error cleaning up OTP challenges: {e}")
            raise StorageError()


class RateLimitRepository:
    """Repository for fixed-window rate limit counters."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    async def check_and_increment(
        self,
        key: Tuple[str, ...],
        max_count: int,
        window: timedelta,
        now: datetime
    ) -> RateLimitDecision:
        try:
            result = self.client.client.rpc("rate_limit_check_and_increment", {
                "p_key": _rate_key(key),
                "p_max_count": max_count,
                "p_window_seconds": int(window.total_seconds()),
                "p_now": _iso(now),
            }).execute()
        except APIError as e:
            logger.error(f"Database error checking rate limit {_rate_key(key)}: {e}")
            raise StorageError()

        row = result.data[0] if isinstance(result.data, list) else result.data
        reset_at = _parse_ts(row["reset_at"])
        return RateLimitDecision(
            allowed=row["allowed"],
            count=row["count"],
            limit=max_count,
            reset_at=reset_at,
            retry_after=0 if row["allowed"] else seconds_until(reset_at, now),
        )

    async def reset(self, key: Tuple[str, ...]) -> bool:
        try:
            result = self.client.client.table("rate_limit_counters").delete().eq("key", _rate_key(key)).execute()
            return len(result.data) > 0
        except APIError as e:
            logger.error(f"Database error resetting rate limit {_rate_key(key)}: {e}")
            raise StorageError()

    async def delete_expired(self, now: datetime, window: timedelta) -> int:
        try:
            result = (
                self.client.client.table("rate_limit_counters")
                .delete()
                .lt("window_start", _iso(now - window))
                .execute()
            )
            return len(result.data)
        except APIError as e:
            logger.error(f"Database error cleaning up rate limit counters: {e}")
            raise StorageError()


class LockoutRepository:
    """Repository for lockout records."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    @staticmethod
    def _from_row(owner_id: str, scope: str, row: Optional[Dict[str, Any]]) -> LockoutRecord:
        if not row:
            return LockoutRecord(owner_id=owner_id, scope=scope)
        return LockoutRecord(
            owner_id=owner_id,
            scope=scope,
            consecutive_failures=row["consecutive_failures"],
            locked_until=_parse_ts(row.get("locked_until")),
        )

    async def get(self, owner_id: str, scope: str) -> LockoutRecord:
        try:
            result = (
                self.client.client.table("security_lockouts")
                .select("*")
                .eq("owner_id", owner_id)
                .eq("scope", scope)
                .execute()
            )
            return self._from_row(owner_id, scope, result.data[0] if result.data else None)
        except APIError as e:
            logger.error(f"Database error reading lockout for {owner_id}/{scope}: {e}")
            raise StorageError()

    async def register_failure(
        self,
        owner_id: str,
        scope: str,
        max_failures: int,
        lockout_duration: timedelta,
        now: datetime
    ) -> LockoutRecord:
        try:
            result = self.client.client.rpc("register_lockout_failure", {
                "p_owner_id": owner_id,
                "p_scope": scope,
                "p_max_failures": max_failures,
                "p_lockout_seconds": int(lockout_duration.total_seconds()),
                "p_now": _iso(now),
            }).execute()
        except APIError as e:
            logger.error(f"Database error registering failure for {owner_id}/{scope}: {e}")
            raise StorageError()
        row = result.data[0] if isinstance(result.data, list) else result.data
        return self._from_row(owner_id, scope, row)

    async def reset_failures(self, owner_id: str, scope: str) -> None:
        await self.clear(owner_id, scope)

    async def lock_until(self, owner_id: str, scope: str, until: datetime) -> LockoutRecord:
        try:
            result = self.client.client.table("security_lockouts").upsert(
                {"owner_id": owner_id, "scope": scope, "locked_until": _iso(until)},
                on_conflict="owner_id,scope"
            ).execute()
            return self._from_row(owner_id, scope, result.data[0] if result.data else None)
        except APIError as e:
            logger.error(f"Database error locking {owner_id}/{scope}: {e}")
            raise StorageError()

    async def clear(self, owner_id: str, scope: str) -> bool:
        try:
            result = (
                self.client.client.table("security_lockouts")
                .delete()
                .eq("owner_id", owner_id)
                .eq("scope", scope)
                .execute()
            )
            return len(result.data) > 0
        except APIError as e:
            logger.error(f"Database error clearing lockout for {owner_id}/{scope}: {e}")
            raise StorageError()


class AuditRepository:
    """Repository for the biometric audit log."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    async def insert(self, event: AuditEvent) -> AuditEvent:
        result = self.client.client.table("biometric_audit_logs").insert({
            "owner_id": event.owner_id,
            "action": event.action,
            "outcome": event.outcome,
            "device_fingerprint": event.fingerprint,
            "detail": event.detail,
            "created_at": _iso(event.timestamp),
        }).execute()
        if not result.data:
            raise StorageError("Failed to write audit event")
        return event

    async def list_for_owner(self, owner_id: str, limit: int = 20) -> List[AuditEvent]:
        try:
            result = (
                self.client.client.table("biometric_audit_logs")
                .select("*")
                .eq("owner_id", owner_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
            return [
                AuditEvent(
                    owner_id=row["owner_id"],
                    action=row["action"],
                    outcome=row["outcome"],
                    fingerprint=row.get("device_fingerprint"),
                    detail=row.get("detail") or {},
                    timestamp=_parse_ts(row["created_at"]),
                )
                for row in result.data
            ]
        except APIError as e:
            logger.error(f"Database error retrieving audit events for {owner_id}: {e}")
            raise StorageError()


class DatabaseManager:
    """High-level database manager that coordinates repositories."""

    def __init__(self):
        """Initialize database manager with client and repositories."""
        self.client = SupabaseClient()
        self.face_profiles = FaceProfileRepository(self.client)
        self.attempt_logs = AttemptLogRepository(self.client)
        self.otp_challenges = OTPChallengeRepository(self.client)
        self.rate_limits = RateLimitRepository(self.client)
        self.lockouts = LockoutRepository(self.client)
        self.audit_events = AuditRepository(self.client)

    async def health_check(self) -> bool:
        """Check overall database health."""
        return await self.client.health_check()
