"""Error taxonomy for the biometric and OTP security engine.

Every error carries a machine-readable ``code``, a user-facing ``message`` and
the HTTP status the transport layer should use. Lockout and rate-limit errors
also carry ``retry_after`` in seconds.
"""

from typing import Optional


class SecurityEngineError(Exception):
    """Base exception for all security engine errors."""

    code = "SecurityEngineError"
    status_code = 500
    default_message = "Security operation failed"

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        self.message = message or self.default_message
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


# Face profile errors

class ConsentRequired(SecurityEngineError):
    code = "ConsentRequired"
    status_code = 400
    default_message = "Biometric consent is required before registering a face profile"


class InvalidEncodingFormat(SecurityEngineError):
    code = "InvalidEncodingFormat"
    status_code = 422
    default_message = "Face encoding must be a non-empty list of finite numbers"


class EncodingShapeMismatch(SecurityEngineError):
    code = "EncodingShapeMismatch"
    status_code = 422
    default_message = "Face encodings have different dimensions"


class CaptureQualityTooLow(SecurityEngineError):
    code = "CaptureQualityTooLow"
    status_code = 422
    default_message = "Face capture quality is too low, please retake in better lighting"


class ProfileExists(SecurityEngineError):
    code = "ProfileExists"
    status_code = 409
    default_message = "An active face profile already exists; use update instead"


class ProfileNotFound(SecurityEngineError):
    code = "ProfileNotFound"
    status_code = 404
    default_message = "No active face profile found for user"


class DecryptionError(SecurityEngineError):
    """Stored ciphertext failed authentication or could not be parsed."""

    code = "BiometricDataUnavailable"
    status_code = 500
    default_message = "Stored biometric data could not be read"


class KeyVersionUnavailable(DecryptionError):
    default_message = "Cannot decrypt biometric data, re-registration required"


# Throttling errors

class AccountLocked(SecurityEngineError):
    code = "AccountLocked"
    status_code = 423
    default_message = "Too many failed attempts, try again later"


class RateLimitExceeded(SecurityEngineError):
    code = "RateLimitExceeded"
    status_code = 429
    default_message = "Too many requests, try again later"


# OTP errors

class MissingOTP(SecurityEngineError):
    code = "MissingOTP"
    status_code = 400
    default_message = "Verification code is required"


class InvalidOTPFormat(SecurityEngineError):
    code = "InvalidOTPFormat"
    status_code = 400
    default_message = "Verification code must be exactly 6 digits"


class InvalidPhoneNumber(SecurityEngineError):
    code = "InvalidPhoneNumber"
    status_code = 400
    default_message = "Invalid phone number format, use international format (+1234567890)"


class OTPExpired(SecurityEngineError):
    code = "OTPExpired"
    status_code = 410
    default_message = "Verification code has expired, please request a new one"


class NoPendingChallenge(SecurityEngineError):
    code = "NoPendingChallenge"
    status_code = 404
    default_message = "No pending verification code for this request"


class ResendFailed(SecurityEngineError):
    code = "ResendFailed"
    status_code = 400
    default_message = "No previous verification request to resend"


class StorageError(SecurityEngineError):
    code = "StorageError"
    status_code = 503
    default_message = "Security storage is temporarily unavailable"


class ConcurrentModification(StorageError):
    """A versioned record changed between read and write."""

    default_message = "Record was modified concurrently, please retry"
