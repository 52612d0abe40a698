"""Internal data models for the security engine."""

import base64
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


FACE_PROFILE_PURPOSE = "verification"


@dataclass(frozen=True)
class EncryptedBlob:
    """AES-GCM ciphertext with the IV and key version needed to decrypt it."""

    key_version: str
    iv: bytes
    ciphertext: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "kv": self.key_version,
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "ct": base64.b64encode(self.ciphertext).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "EncryptedBlob":
        return cls(
            key_version=data["kv"],
            iv=base64.b64decode(data["iv"]),
            ciphertext=base64.b64decode(data["ct"]),
        )


@dataclass
class FaceProfile:
    """Encrypted multi-angle face template owned by one user."""

    id: str
    owner_id: str
    encrypted_angles: List[EncryptedBlob]
    quality_score: float
    registered_at: datetime
    updated_at: datetime
    active: bool = True
    verification_count: int = 0
    last_verification_at: Optional[datetime] = None
    device_fingerprint: Optional[str] = None
    purpose: str = FACE_PROFILE_PURPOSE

    @property
    def angle_count(self) -> int:
        return len(self.encrypted_angles)

    def __post_init__(self):
        if not self.encrypted_angles:
            raise ValueError("Face profile requires at least one encrypted angle")
        if not 0.0 <= self.quality_score <= 1.0:
            raise ValueError(f"Quality score must be between 0.0 and 1.0, got {self.quality_score}")


@dataclass(frozen=True)
class VerificationAttemptLog:
    """Append-only record of a single face verification attempt."""

    owner_id: str
    purpose: str
    similarity: float
    liveness_score: float
    outcome: str  # "accepted" or "rejected"
    timestamp: datetime
    device_fingerprint: Optional[str] = None
    failure_reason: Optional[str] = None
    id: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.outcome == "accepted"


@dataclass
class OTPChallenge:
    """Pending one-time passcode for an (owner, purpose) pair."""

    id: str
    owner_id: str
    purpose: str
    code_hash: str
    phone_number: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    verified: bool = False
    verified_at: Optional[datetime] = None
    authorized_until: Optional[datetime] = None
    lockout_until: Optional[datetime] = None
    device_fingerprint: Optional[str] = None
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.attempts)


@dataclass
class RateLimitDecision:
    """Outcome of a fixed-window rate limit check."""

    allowed: bool
    count: int
    limit: int
    reset_at: datetime
    retry_after: int = 0


@dataclass
class LockoutRecord:
    """Consecutive failure count and lockout deadline for an (owner, scope) pair."""

    owner_id: str
    scope: str
    consecutive_failures: int = 0
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class AuditEvent:
    """Security-relevant event recorded for correlation and review."""

    owner_id: str
    action: str
    outcome: str
    timestamp: datetime
    fingerprint: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RegistrationSummary:
    """What callers learn about a stored profile. Never includes vectors."""

    profile_id: str
    angle_count: int
    quality_score: float
    registered_at: datetime


@dataclass
class FaceVerificationResult:
    success: bool
    similarity: float
    liveness_score: float
    liveness_passed: bool
    matched_angle: Optional[int] = None
    failure_reason: Optional[str] = None
    remaining_attempts: Optional[int] = None
    locked_until: Optional[datetime] = None
    device_fingerprint: Optional[str] = None


@dataclass(frozen=True)
class OTPGenerationResult:
    challenge_id: str
    phone_number_masked: str
    expires_at: datetime
    delivered: bool


@dataclass(frozen=True)
class OTPVerificationResult:
    success: bool
    message: str
    remaining_attempts: Optional[int] = None
    authorized_until: Optional[datetime] = None
