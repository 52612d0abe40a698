"""Data models for the biometric and OTP security engine."""

from .api_models import (
    ErrorResponse,
    FaceRegistrationRequest,
    FaceRegistrationResponse,
    FaceVerificationRequest,
    FaceVerificationResponse,
    HealthResponse,
    OTPGenerateRequest,
    OTPGenerateResponse,
    OTPVerifyRequest,
    OTPVerifyResponse,
)
from .internal_models import (
    AuditEvent,
    EncryptedBlob,
    FaceProfile,
    LockoutRecord,
    OTPChallenge,
    RateLimitDecision,
    VerificationAttemptLog,
)

__all__ = [
    "AuditEvent",
    "EncryptedBlob",
    "ErrorResponse",
    "FaceProfile",
    "FaceRegistrationRequest",
    "FaceRegistrationResponse",
    "FaceVerificationRequest",
    "FaceVerificationResponse",
    "HealthResponse",
    "LockoutRecord",
    "OTPChallenge",
    "OTPGenerateRequest",
    "OTPGenerateResponse",
    "OTPVerifyRequest",
    "OTPVerifyResponse",
    "RateLimitDecision",
    "VerificationAttemptLog",
]
