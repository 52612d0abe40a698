"""
Face profile service for biometric registration and verification.

This module provides the business logic for:
- Registering a multi-angle face profile with explicit consent
- Replacing a profile wholesale and deleting it irreversibly
- Verifying a live capture against the stored angles with liveness gating
- Lockout after consecutive failed verifications
"""

import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from security_engine.clients import StoreManager, get_database_manager
from security_engine.config import settings
from security_engine.exceptions import (
    CaptureQualityTooLow,
    ConsentRequired,
    DecryptionError,
    EncodingShapeMismatch,
    InvalidEncodingFormat,
    ProfileExists,
    ProfileNotFound,
    SecurityEngineError,
)
from security_engine.models.internal_models import (
    FaceProfile,
    FaceVerificationResult,
    RegistrationSummary,
    VerificationAttemptLog,
)
from security_engine.services.audit_service import AuditRecorder, fingerprint
from security_engine.services.cipher import TemplateCipher, get_template_cipher
from security_engine.services.rate_limiter import LockoutGuard, RateLimiter, rate_limit_key
from security_engine.services.similarity_service import SimilarityEngine, get_similarity_engine
from security_engine.utils.keyed_lock import KeyedLock
from security_engine.utils.time_utils import Clock, utcnow

logger = logging.getLogger(__name__)

FACE_LOCKOUT_SCOPE = "face:verification"
DEFAULT_VERIFICATION_PURPOSE = "face_verification"


class RegistrationState(str, Enum):
    """Stages a registration or update session moves through."""

    AWAITING_CONSENT = "awaiting_consent"
    COLLECTING_ANGLES = "collecting_angles"
    AGGREGATING = "aggregating"
    STORED = "stored"
    REJECTED = "rejected"


def _capture_field(capture: Any, name: str) -> Any:
    if isinstance(capture, dict):
        return capture.get(name)
    return getattr(capture, name, None)


def _unit_score(value: Any, label: str) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise InvalidEncodingFormat(f"{label} must be a number between 0 and 1")
    if not 0.0 <= score <= 1.0:
        raise InvalidEncodingFormat(f"{label} must be between 0 and 1, got {score}")
    return score


class FaceProfileManager:
    """
    Owns the face profile lifecycle and verification decisions.

    Read-modify-write sequences for one owner run inside a per-owner critical
    section; different owners proceed in parallel.
    """

    def __init__(
        self,
        db_manager: Optional[StoreManager] = None,
        cipher: Optional[TemplateCipher] = None,
        similarity_engine: Optional[SimilarityEngine] = None,
        clock: Clock = utcnow
    ):
        """
        Initialize face profile manager.

        Args:
            db_manager: Store with face profile, attempt log, rate limit,
                lockout and audit repositories. Defaults to the configured backend.
            cipher: Template cipher. Defaults to the process-wide key ring.
            similarity_engine: Similarity engine. Defaults to the global instance.
            clock: Source of the current UTC time.
        """
        self.db = db_manager or get_database_manager()
        self.cipher = cipher or get_template_cipher()
        self.similarity = similarity_engine or get_similarity_engine()
        self.clock = clock

        self.rate_limiter = RateLimiter(self.db.rate_limits, clock)
        self.lockout_guard = LockoutGuard(self.db.lockouts, clock)
        self.audit = AuditRecorder(self.db.audit_events, clock)
        self._locks = KeyedLock()

        self.match_threshold = settings.face_match_threshold
        self.liveness_threshold = settings.face_liveness_threshold
        self.min_capture_quality = settings.face_min_capture_quality
        self.max_requests = settings.face_verify_max_requests
        self.request_window = timedelta(seconds=settings.face_verify_window_seconds)
        self.max_failed_attempts = settings.face_max_failed_attempts
        self.lockout_duration = timedelta(minutes=settings.face_lockout_minutes)
        self.log_retention_days = settings.face_log_retention_days

        logger.info(
            f"Face profile manager initialized: match threshold {self.match_threshold}, "
            f"liveness threshold {self.liveness_threshold}"
        )

    def _build_profile(
        self,
        owner_id: str,
        angles: Sequence[Any],
        consent: bool,
        device_fingerprint: Optional[str]
    ) -> FaceProfile:
        """
        Validate a capture session and produce an encrypted profile.

        Raises:
            ConsentRequired, InvalidEncodingFormat, EncodingShapeMismatch,
            CaptureQualityTooLow
        """
        state = RegistrationState.AWAITING_CONSENT
        if not consent:
            logger.info(f"Face registration for {owner_id} rejected in {state.value}: no consent")
            raise ConsentRequired()

        state = RegistrationState.COLLECTING_ANGLES
        if not angles:
            raise InvalidEncodingFormat("At least one face capture is required")

        vectors: List[np.ndarray] = []
        qualities: List[float] = []
        for index, capture in enumerate(angles):
            vector = self.similarity.parse_encoding(_capture_field(capture, "vector"))
            quality = _unit_score(_capture_field(capture, "quality"), f"Quality of capture {index + 1}")

            if vectors and vector.shape != vectors[0].shape:
                raise EncodingShapeMismatch(
                    f"Capture {index + 1} has {vector.size} values, expected {vectors[0].size}"
                )
            if quality < self.min_capture_quality:
                raise CaptureQualityTooLow(
                    f"Capture {index + 1} quality {quality:.2f} is below the minimum {self.min_capture_quality:.2f}"
                )

            vectors.append(vector)
            qualities.append(quality)

        state = RegistrationState.AGGREGATING
        logger.debug(f"Face registration for {owner_id} in {state.value} with {len(vectors)} angle(s)")

        # Each angle is encrypted on its own so verification can compare per angle
        encrypted_angles = [self.cipher.encrypt_vector(vector) for vector in vectors]
        now = self.clock()

        return FaceProfile(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            encrypted_angles=encrypted_angles,
            quality_score=min(qualities),
            registered_at=now,
            updated_at=now,
            device_fingerprint=device_fingerprint,
        )

    @staticmethod
    def _summary(profile: FaceProfile) -> RegistrationSummary:
        return RegistrationSummary(
            profile_id=profile.id,
            angle_count=profile.angle_count,
            quality_score=profile.quality_score,
            registered_at=profile.registered_at,
        )

    async def register(
        self,
        owner_id: str,
        angles: Sequence[Any],
        consent: bool,
        device: Optional[Dict[str, Any]] = None
    ) -> RegistrationSummary:
        """
        Register a new face profile.

        Args:
            owner_id: User the profile belongs to
            angles: Captures, each with ``vector`` and ``quality``
            consent: Whether the user gave biometric consent
            device: Device attribute bundle for fingerprinting

        Returns:
            RegistrationSummary: Profile id, angle count, quality and timestamp

        Raises:
            ConsentRequired, InvalidEncodingFormat, EncodingShapeMismatch,
            CaptureQualityTooLow, ProfileExists, StorageError
        """
        device_fp = fingerprint(device)
        logger.info(f"Starting face registration for {owner_id} with {len(angles or [])} angle(s)")

        try:
            profile = self._build_profile(owner_id, angles, consent, device_fp)

            async with self._locks.acquire(("face", owner_id)):
                if await self.db.face_profiles.get_active_profile(owner_id) is not None:
                    raise ProfileExists()
                await self.db.face_profiles.insert_profile(profile)

        except SecurityEngineError as e:
            logger.info(f"Face registration for {owner_id} {RegistrationState.REJECTED.value}: {e.code}")
            await self.audit.record(owner_id, "profile_create", "rejected", device_fp, {"error": e.code})
            raise

        logger.info(f"Face registration for {owner_id} {RegistrationState.STORED.value}: profile {profile.id}")
        await self.audit.record(owner_id, "profile_create", "success", device_fp, {
            "profile_id": profile.id,
            "angle_count": profile.angle_count,
            "quality_score": profile.quality_score,
        })
        return self._summary(profile)

    async def update(
        self,
        owner_id: str,
        angles: Sequence[Any],
        consent: bool,
        device: Optional[Dict[str, Any]] = None
    ) -> RegistrationSummary:
        """
        Replace the active profile with a freshly captured one.

        The previous profile's ciphertext is discarded, never merged. The swap
        is a single store operation, so there is no moment with zero or two
        active profiles.

        Raises:
            ConsentRequired, InvalidEncodingFormat, EncodingShapeMismatch,
            CaptureQualityTooLow, ProfileNotFound, StorageError
        """
        device_fp = fingerprint(device)
        logger.info(f"Starting face profile update for {owner_id}")

        try:
            profile = self._build_profile(owner_id, angles, consent, device_fp)

            async with self._locks.acquire(("face", owner_id)):
                replaced_id = await self.db.face_profiles.replace_active_profile(owner_id, profile)

        except SecurityEngineError as e:
            await self.audit.record(owner_id, "profile_update", "rejected", device_fp, {"error": e.code})
            raise

        logger.info(f"Face profile for {owner_id} replaced: {replaced_id} -> {profile.id}")
        await self.audit.record(owner_id, "profile_update", "success", device_fp, {
            "profile_id": profile.id,
            "replaced_profile_id": replaced_id,
            "angle_count": profile.angle_count,
            "quality_score": profile.quality_score,
        })
        return self._summary(profile)

    async def delete(self, owner_id: str, device: Optional[Dict[str, Any]] = None) -> None:
        """
        Irreversibly erase the user's face profile, ciphertext included.

        Raises:
            ProfileNotFound: If the user has no active profile
        """
        device_fp = fingerprint(device)

        try:
            async with self._locks.acquire(("face", owner_id)):
                if await self.db.face_profiles.get_active_profile(owner_id) is None:
                    raise ProfileNotFound()
                deleted = await self.db.face_profiles.delete_profiles(owner_id)
        except SecurityEngineError as e:
            await self.audit.record(owner_id, "profile_delete", "rejected", device_fp, {"error": e.code})
            raise

        logger.info(f"Deleted {deleted} face profile record(s) for {owner_id}")
        await self.audit.record(owner_id, "profile_delete", "success", device_fp, {"deleted_records": deleted})

    def _decrypt_angles(self, profile: FaceProfile) -> List[np.ndarray]:
        return [self.cipher.decrypt_vector(blob) for blob in profile.encrypted_angles]

    def _failure_reason(self, similarity: float, matched: bool, liveness_passed: bool) -> str:
        if not matched:
            if similarity < 0.5:
                return "Face does not match registered profile"
            return "Face match confidence too low"
        if not liveness_passed:
            return "Liveness detection failed - please ensure you are looking at the camera"
        return "Verification failed"

    async def verify(
        self,
        owner_id: str,
        captured_vector: Any,
        liveness_score: float,
        device: Optional[Dict[str, Any]] = None,
        purpose: str = DEFAULT_VERIFICATION_PURPOSE,
        threshold: Optional[float] = None
    ) -> FaceVerificationResult:
        """
        Verify a live capture against the user's active profile.

        Complete verification workflow:
        1. Validate the captured encoding and liveness score
        2. Check the face lockout and the per-purpose rate limit
        3. Decrypt each stored angle and take the best similarity
        4. Accept only if similarity and liveness both pass
        5. Log the attempt and update the consecutive-failure lockout

        A normal mismatch is returned as an unsuccessful result, not raised.

        Args:
            owner_id: User being verified
            captured_vector: Encoding from the external encoder
            liveness_score: Liveness confidence in [0, 1]
            device: Device attribute bundle for fingerprinting
            purpose: Action this verification gates
            threshold: Similarity threshold set by the calling service;
                defaults to the configured one. Never taken from end users.

        Returns:
            FaceVerificationResult

        Raises:
            ValueError: If ``threshold`` is outside [0, 1], before any state changes
            InvalidEncodingFormat, EncodingShapeMismatch, AccountLocked,
            RateLimitExceeded, ProfileNotFound, DecryptionError, StorageError
        """
        device_fp = fingerprint(device)
        threshold = self.match_threshold if threshold is None else threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be between 0.0 and 1.0, got: {threshold}")
        logger.info(f"Starting face verification for {owner_id} ({purpose})")

        try:
            candidate = self.similarity.parse_encoding(captured_vector)
            liveness = _unit_score(liveness_score, "Liveness score")

            async with self._locks.acquire(("face", owner_id)):
                await self.lockout_guard.ensure_not_locked(owner_id, FACE_LOCKOUT_SCOPE)
                await self.rate_limiter.enforce(
                    rate_limit_key(owner_id, purpose, "face_verify"),
                    self.max_requests,
                    self.request_window
                )

                profile = await self.db.face_profiles.get_active_profile(owner_id)
                if profile is None:
                    raise ProfileNotFound()

                stored_angles = self._decrypt_angles(profile)
                similarity, angle_index = self.similarity.best_match(stored_angles, candidate)
                matched = self.similarity.is_match(similarity, threshold)
                liveness_passed = liveness >= self.liveness_threshold
                success = matched and liveness_passed
                failure_reason = None if success else self._failure_reason(similarity, matched, liveness_passed)

                logger.info(
                    f"Face comparison for {owner_id}: similarity={similarity:.4f} (angle {angle_index + 1}), "
                    f"threshold={threshold}, liveness={liveness:.2f}, success={success}"
                )

                now = self.clock()
                await self.db.attempt_logs.append(VerificationAttemptLog(
                    owner_id=owner_id,
                    purpose=purpose,
                    similarity=similarity,
                    liveness_score=liveness,
                    outcome="accepted" if success else "rejected",
                    device_fingerprint=device_fp,
                    failure_reason=failure_reason,
                    timestamp=now,
                ))

                if success:
                    await self.lockout_guard.reset_failures(owner_id, FACE_LOCKOUT_SCOPE)
                    await self.db.face_profiles.record_verification(profile.id, now)
                    remaining_attempts = self.max_failed_attempts
                    locked_until = None
                else:
                    record = await self.lockout_guard.register_failure(
                        owner_id, FACE_LOCKOUT_SCOPE, self.max_failed_attempts, self.lockout_duration
                    )
                    remaining_attempts = max(0, self.max_failed_attempts - record.consecutive_failures)
                    locked_until = record.locked_until

        except DecryptionError as e:
            logger.error(f"Stored face profile for {owner_id} could not be decrypted: {type(e).__name__}")
            await self.audit.record(owner_id, "face_verification", "error", device_fp, {
                "error": "decryption_failed",
                "reregistration_required": True,
                "purpose": purpose,
            })
            raise
        except SecurityEngineError as e:
            await self.audit.record(owner_id, "face_verification", "rejected", device_fp, {
                "error": e.code,
                "purpose": purpose,
            })
            raise

        await self.audit.record(owner_id, "face_verification", "accepted" if success else "rejected", device_fp, {
            "purpose": purpose,
            "similarity": round(similarity, 4),
            "liveness_score": liveness,
            "failure_reason": failure_reason,
        })
        if locked_until is not None:
            await self.audit.record(owner_id, "lockout_applied", "locked", device_fp, {
                "scope": FACE_LOCKOUT_SCOPE,
                "locked_until": locked_until.isoformat(),
            })

        return FaceVerificationResult(
            success=success,
            similarity=similarity,
            liveness_score=liveness,
            liveness_passed=liveness_passed,
            matched_angle=angle_index,
            failure_reason=failure_reason,
            remaining_attempts=remaining_attempts,
            locked_until=locked_until,
            device_fingerprint=device_fp,
        )

    async def get_registration_status(self, owner_id: str) -> Dict[str, Any]:
        """Registration and lockout status for a user. Never includes template data."""
        profile = await self.db.face_profiles.get_active_profile(owner_id)
        locked_until = await self.lockout_guard.get_locked_until(owner_id, FACE_LOCKOUT_SCOPE)

        if profile is None:
            return {
                "registered": False,
                "angle_count": 0,
                "verification_count": 0,
                "locked_until": locked_until,
            }

        return {
            "registered": True,
            "profile_id": profile.id,
            "angle_count": profile.angle_count,
            "quality_score": profile.quality_score,
            "registered_at": profile.registered_at,
            "updated_at": profile.updated_at,
            "verification_count": profile.verification_count,
            "last_verification_at": profile.last_verification_at,
            "locked_until": locked_until,
        }

    async def get_verification_statistics(self, owner_id: str, days: int = 30) -> Dict[str, Any]:
        """Aggregate the attempt log over the last ``days`` days."""
        since = self.clock() - timedelta(days=days)
        attempts = await self.db.attempt_logs.list_for_owner(owner_id, since)

        accepted = [a for a in attempts if a.accepted]
        return {
            "days": days,
            "total_attempts": len(attempts),
            "successful_attempts": len(accepted),
            "failed_attempts": len(attempts) - len(accepted),
            "avg_similarity": float(np.mean([a.similarity for a in attempts])) if attempts else None,
            "avg_success_similarity": float(np.mean([a.similarity for a in accepted])) if accepted else None,
            "liveness_passed_count": sum(1 for a in attempts if a.liveness_score >= self.liveness_threshold),
        }

    async def unlock(self, owner_id: str, performed_by: str) -> bool:
        """Clear the face lockout and failure count (admin action)."""
        async with self._locks.acquire(("face", owner_id)):
            cleared = await self.lockout_guard.unlock(owner_id, FACE_LOCKOUT_SCOPE)
        await self.audit.record(owner_id, "user_unlocked", "success", None, {
            "scope": FACE_LOCKOUT_SCOPE,
            "performed_by": performed_by,
            "had_lockout": cleared,
        })
        return cleared

    async def cleanup_old_logs(self, retention_days: Optional[int] = None) -> int:
        """Delete attempt logs older than the retention window."""
        retention_days = retention_days or self.log_retention_days
        cutoff = self.clock() - timedelta(days=retention_days)
        deleted = await self.db.attempt_logs.delete_older_than(cutoff)
        logger.info(f"Removed {deleted} face verification log(s) older than {retention_days} days")
        return deleted


# Global service instance
_face_profile_manager: Optional[FaceProfileManager] = None


def get_face_profile_manager() -> FaceProfileManager:
    """
    Get the global face profile manager instance.

    Returns:
        FaceProfileManager: The global face profile manager instance
    """
    global _face_profile_manager
    if _face_profile_manager is None:
        _face_profile_manager = FaceProfileManager()
    return _face_profile_manager
