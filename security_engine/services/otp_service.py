"""
One-time passcode lifecycle: generation, delivery, verification and lockout.

Per (owner, purpose) a challenge moves through
``None -> Pending -> Verified | Expired | Locked``. Only an HMAC of the code
is ever stored; the plaintext code exists in memory just long enough to be
handed to the delivery provider.
"""

import hashlib
import hmac
import logging
import re
import secrets
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from security_engine.clients import StoreManager, get_database_manager, get_sms_provider
from security_engine.clients.sms_client import (
    OTPMessage,
    SMSProvider,
    is_valid_phone_number,
    mask_phone_number,
)
from security_engine.config import DEFAULT_OTP_HASH_SECRET, settings
from security_engine.exceptions import (
    AccountLocked,
    InvalidOTPFormat,
    InvalidPhoneNumber,
    MissingOTP,
    NoPendingChallenge,
    OTPExpired,
    ResendFailed,
    SecurityEngineError,
)
from security_engine.models.internal_models import (
    OTPChallenge,
    OTPGenerationResult,
    OTPVerificationResult,
)
from security_engine.services.audit_service import AuditRecorder, fingerprint
from security_engine.services.rate_limiter import LockoutGuard, RateLimiter, rate_limit_key
from security_engine.utils.keyed_lock import KeyedLock
from security_engine.utils.time_utils import Clock, seconds_until, utcnow

logger = logging.getLogger(__name__)

OTP_CODE_PATTERN = re.compile(r"[0-9]{6}")


def otp_lockout_scope(purpose: str) -> str:
    """Lockout scope for an OTP purpose, kept apart from the face scope."""
    return f"otp:{purpose}"


def generate_code() -> str:
    """Six-digit code drawn from the OS CSPRNG."""
    return str(100000 + secrets.randbelow(900000))


class OTPManager:
    """Issues and checks one-time passcodes for sensitive actions."""

    def __init__(
        self,
        db_manager: Optional[StoreManager] = None,
        sms_provider: Optional[SMSProvider] = None,
        clock: Clock = utcnow,
        hash_secret: Optional[str] = None
    ):
        """
        Initialize OTP manager.

        Args:
            db_manager: Store with challenge, rate limit, lockout and audit repositories
            sms_provider: Delivery provider. Defaults to the configured one.
            clock: Source of the current UTC time
            hash_secret: HMAC key for code hashes. Defaults to OTP_HASH_SECRET.
        """
        self.db = db_manager or get_database_manager()
        self.sms_provider = sms_provider or get_sms_provider()
        self.clock = clock
        hash_secret = hash_secret or settings.otp_hash_secret
        if hash_secret == DEFAULT_OTP_HASH_SECRET:
            logger.warning(
                "OTP_HASH_SECRET not configured; using the built-in default. "
                "Stored code hashes can be brute-forced by anyone who reads them."
            )
        self._hash_key = hash_secret.encode("utf-8")

        self.rate_limiter = RateLimiter(self.db.rate_limits, clock)
        self.lockout_guard = LockoutGuard(self.db.lockouts, clock)
        self.audit = AuditRecorder(self.db.audit_events, clock)
        self._locks = KeyedLock()

        self.ttl = timedelta(minutes=settings.otp_ttl_minutes)
        self.max_attempts = settings.otp_max_attempts
        self.lockout_duration = timedelta(minutes=settings.otp_lockout_minutes)
        self.max_generations = settings.otp_max_generations
        self.generation_window = timedelta(minutes=settings.otp_generation_window_minutes)
        self.session_validity = timedelta(minutes=settings.otp_session_validity_minutes)

        logger.info(f"OTP manager initialized with {self.sms_provider.name} delivery")

    def _hash_code(self, owner_id: str, purpose: str, code: str) -> str:
        # Bound to owner and purpose so a hash cannot be replayed across challenges
        message = f"{owner_id}:{purpose}:{code}".encode("utf-8")
        return hmac.new(self._hash_key, message, hashlib.sha256).hexdigest()

    async def _deliver(self, message: OTPMessage) -> bool:
        try:
            result = await self.sms_provider.send(message)
        except Exception as e:
            logger.error(f"OTP delivery to {message.phone_number_masked} failed: {e}")
            return False
        if not result.success:
            logger.error(f"OTP delivery to {message.phone_number_masked} failed: {result.error}")
        return result.success

    async def generate(
        self,
        owner_id: str,
        purpose: str,
        phone_number: str,
        device: Optional[Dict[str, Any]] = None
    ) -> OTPGenerationResult:
        """
        Issue a new code for (owner, purpose), superseding any previous one.

        Delivery failure is logged and audited but does not fail generation;
        the result reports ``delivered=False`` and the caller may resend.

        Raises:
            InvalidPhoneNumber, AccountLocked, RateLimitExceeded, StorageError
        """
        device_fp = fingerprint(device)
        masked = mask_phone_number(phone_number or "")

        try:
            if not is_valid_phone_number(phone_number):
                raise InvalidPhoneNumber()

            async with self._locks.acquire(("otp", owner_id, purpose)):
                await self.lockout_guard.ensure_not_locked(owner_id, otp_lockout_scope(purpose))
                await self.rate_limiter.enforce(
                    rate_limit_key(owner_id, purpose, "otp_generate"),
                    self.max_generations,
                    self.generation_window,
                    "Too many verification codes requested, please wait before trying again"
                )

                code = generate_code()
                now = self.clock()
                challenge = await self.db.otp_challenges.put(OTPChallenge(
                    id=str(uuid.uuid4()),
                    owner_id=owner_id,
                    purpose=purpose,
                    code_hash=self._hash_code(owner_id, purpose, code),
                    phone_number=phone_number,
                    created_at=now,
                    expires_at=now + self.ttl,
                    max_attempts=self.max_attempts,
                    device_fingerprint=device_fp,
                ))

        except SecurityEngineError as e:
            await self.audit.record(owner_id, "otp_generate", "rejected", device_fp, {
                "purpose": purpose,
                "error": e.code,
            })
            raise

        delivered = await self._deliver(OTPMessage(
            phone_number=phone_number,
            phone_number_masked=masked,
            code=code,
            purpose=purpose,
            expires_at=challenge.expires_at,
        ))

        logger.info(f"OTP issued for {owner_id}/{purpose} to {masked}, delivered={delivered}")
        await self.audit.record(owner_id, "otp_generate", "success" if delivered else "delivery_failed", device_fp, {
            "purpose": purpose,
            "challenge_id": challenge.id,
            "phone_number": masked,
            "provider": self.sms_provider.name,
        })

        return OTPGenerationResult(
            challenge_id=challenge.id,
            phone_number_masked=masked,
            expires_at=challenge.expires_at,
            delivered=delivered,
        )

    async def verify(
        self,
        owner_id: str,
        code: Optional[str],
        purpose: str,
        device: Optional[Dict[str, Any]] = None
    ) -> OTPVerificationResult:
        """
        Check a submitted code against the pending challenge.

        Args:
            owner_id: User submitting the code
            code: Six ASCII digits
            purpose: Purpose the code was issued for
            device: Device attribute bundle for fingerprinting

        Returns:
            OTPVerificationResult: Success with ``authorized_until``, or a
            failure with ``remaining_attempts``

        Raises:
            MissingOTP, InvalidOTPFormat: Before any storage access
            AccountLocked: While locked, and on the attempt that exhausts the limit
            NoPendingChallenge, OTPExpired, StorageError
        """
        device_fp = fingerprint(device)
        lockout_applied = False

        try:
            if code is None or not str(code).strip():
                raise MissingOTP()
            if not isinstance(code, str) or OTP_CODE_PATTERN.fullmatch(code) is None:
                raise InvalidOTPFormat()

            async with self._locks.acquire(("otp", owner_id, purpose)):
                await self.lockout_guard.ensure_not_locked(owner_id, otp_lockout_scope(purpose))

                challenge = await self.db.otp_challenges.get(owner_id, purpose)
                if challenge is None or challenge.verified or challenge.attempts >= challenge.max_attempts:
                    raise NoPendingChallenge()

                now = self.clock()
                if challenge.is_expired(now):
                    raise OTPExpired()

                expected = self._hash_code(owner_id, purpose, code)
                if hmac.compare_digest(expected, challenge.code_hash):
                    challenge.verified = True
                    challenge.verified_at = now
                    challenge.authorized_until = now + self.session_validity
                    await self.db.otp_challenges.update(challenge)
                    result = OTPVerificationResult(
                        success=True,
                        message="Verification successful",
                        authorized_until=challenge.authorized_until,
                    )
                else:
                    challenge.attempts += 1
                    if challenge.attempts >= challenge.max_attempts:
                        challenge.lockout_until = now + self.lockout_duration
                        await self.db.otp_challenges.update(challenge)
                        await self.lockout_guard.lock_until(owner_id, otp_lockout_scope(purpose), challenge.lockout_until)
                        lockout_applied = True
                        raise AccountLocked(
                            "Too many failed attempts, verification locked",
                            retry_after=seconds_until(challenge.lockout_until, now)
                        )
                    await self.db.otp_challenges.update(challenge)
                    result = OTPVerificationResult(
                        success=False,
                        message=f"Invalid verification code. {challenge.remaining_attempts} attempt(s) remaining",
                        remaining_attempts=challenge.remaining_attempts,
                    )

        except SecurityEngineError as e:
            await self.audit.record(owner_id, "otp_verify", "rejected", device_fp, {
                "purpose": purpose,
                "error": e.code,
            })
            if lockout_applied:
                await self.audit.record(owner_id, "lockout_applied", "locked", device_fp, {
                    "scope": otp_lockout_scope(purpose),
                    "retry_after": e.retry_after,
                })
            raise

        logger.info(f"OTP verification for {owner_id}/{purpose}: success={result.success}")
        detail: Dict[str, Any] = {"purpose": purpose}
        if not result.success:
            detail["remaining_attempts"] = result.remaining_attempts
        await self.audit.record(owner_id, "otp_verify", "accepted" if result.success else "rejected", device_fp, detail)
        return result

    async def resend(
        self,
        owner_id: str,
        purpose: str,
        device: Optional[Dict[str, Any]] = None
    ) -> OTPGenerationResult:
        """
        Issue a fresh code to the phone number of the previous challenge.

        Counts against the same generation window as :meth:`generate`.

        Raises:
            ResendFailed: If there is no previous challenge to resend
        """
        previous = await self.db.otp_challenges.get(owner_id, purpose)
        if previous is None:
            await self.audit.record(owner_id, "otp_resend", "rejected", fingerprint(device), {
                "purpose": purpose,
                "error": ResendFailed.code,
            })
            raise ResendFailed()

        logger.info(f"Resending OTP for {owner_id}/{purpose}")
        return await self.generate(owner_id, purpose, previous.phone_number, device)

    async def invalidate(self, owner_id: str, purpose: str) -> bool:
        """Remove the challenge for (owner, purpose). Idempotent."""
        async with self._locks.acquire(("otp", owner_id, purpose)):
            removed = await self.db.otp_challenges.delete(owner_id, purpose)
        if removed:
            await self.audit.record(owner_id, "otp_invalidate", "success", None, {"purpose": purpose})
        return removed

    async def get_status(self, owner_id: str, purpose: str) -> Dict[str, Any]:
        """Current challenge state, without the code hash."""
        challenge = await self.db.otp_challenges.get(owner_id, purpose)
        locked_until = await self.lockout_guard.get_locked_until(owner_id, otp_lockout_scope(purpose))

        if challenge is None:
            return {"exists": False, "locked_until": locked_until}

        now = self.clock()
        return {
            "exists": True,
            "verified": challenge.verified,
            "expired": challenge.is_expired(now),
            "attempts": challenge.attempts,
            "remaining_attempts": challenge.remaining_attempts,
            "expires_in_seconds": seconds_until(challenge.expires_at, now),
            "phone_number_masked": mask_phone_number(challenge.phone_number),
            "authorized_until": challenge.authorized_until,
            "locked_until": locked_until,
        }

    async def is_authorized(self, owner_id: str, purpose: str) -> bool:
        """True while a verified challenge's authorization window is open."""
        challenge = await self.db.otp_challenges.get(owner_id, purpose)
        if challenge is None or not challenge.verified or challenge.authorized_until is None:
            return False
        return challenge.authorized_until > self.clock()

    async def unlock(self, owner_id: str, purpose: str, performed_by: Optional[str] = None) -> bool:
        """Lift an OTP lockout and drop the exhausted challenge (admin action)."""
        async with self._locks.acquire(("otp", owner_id, purpose)):
            cleared = await self.lockout_guard.unlock(owner_id, otp_lockout_scope(purpose))
            challenge = await self.db.otp_challenges.get(owner_id, purpose)
            if challenge is not None and challenge.lockout_until is not None:
                await self.db.otp_challenges.delete(owner_id, purpose)
        await self.audit.record(owner_id, "user_unlocked", "success", None, {
            "scope": otp_lockout_scope(purpose),
            "performed_by": performed_by,
            "had_lockout": cleared,
        })
        return cleared

    async def cleanup_expired(self) -> int:
        """Delete expired challenges that no longer carry a lockout or authorization."""
        now = self.clock()
        deleted = await self.db.otp_challenges.delete_expired(now)
        await self.db.rate_limits.delete_expired(now, self.generation_window)
        logger.info(f"Removed {deleted} expired OTP challenge(s)")
        return deleted


# Global service instance
_otp_manager: Optional[OTPManager] = None


def get_otp_manager() -> OTPManager:
    """
    Get the global OTP manager instance.

    Returns:
        OTPManager: The global OTP manager instance
    """
    global _otp_manager
    if _otp_manager is None:
        _otp_manager = OTPManager()
    return _otp_manager
