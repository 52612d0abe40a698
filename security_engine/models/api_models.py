"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FaceCaptureModel(BaseModel):
    """One captured angle from the external face encoder."""

    vector: List[float] = Field(..., description="Face encoding produced by the encoder")
    quality: float = Field(..., description="Capture quality score between 0 and 1")


class FaceRegistrationRequest(BaseModel):
    """Request model for face profile registration and update."""

    owner_id: str = Field(..., min_length=1, max_length=128, description="User the profile belongs to")
    angles: List[FaceCaptureModel] = Field(..., description="Captured angles, at least one")
    consent: bool = Field(..., description="Explicit biometric consent from the user")
    device: Optional[Dict[str, Any]] = Field(None, description="Device attributes for fingerprinting")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "owner_id": "user_123",
            "angles": [
                {"vector": [0.1, 0.2, 0.3], "quality": 0.9},
                {"vector": [0.2, 0.1, 0.3], "quality": 0.8}
            ],
            "consent": True,
            "device": {"platform": "ios", "os_version": "17.4"}
        }
    })


class FaceRegistrationResponse(BaseModel):
    """Response model for face profile registration and update."""

    profile_id: str = Field(..., description="Identifier of the stored profile")
    angle_count: int = Field(..., ge=1, description="Number of stored angles")
    quality_score: float = Field(..., ge=0.0, le=1.0, description="Lowest capture quality")
    registered_at: datetime = Field(..., description="Registration timestamp")


class FaceVerificationRequest(BaseModel):
    """Request model for face verification."""

    owner_id: str = Field(..., min_length=1, max_length=128)
    vector: List[float] = Field(..., description="Live face encoding")
    liveness_score: float = Field(..., description="Liveness confidence between 0 and 1")
    purpose: str = Field("face_verification", min_length=1, max_length=64, description="Action being gated")
    device: Optional[Dict[str, Any]] = None


class FaceVerificationResponse(BaseModel):
    """Response model for face verification."""

    success: bool = Field(..., description="Whether the capture was accepted")
    similarity: float = Field(..., ge=0.0, le=1.0, description="Best similarity across stored angles")
    liveness_score: float
    liveness_passed: bool
    matched_angle: Optional[int] = None
    failure_reason: Optional[str] = None
    remaining_attempts: Optional[int] = None
    locked_until: Optional[datetime] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "success": True,
            "similarity": 0.93,
            "liveness_score": 0.88,
            "liveness_passed": True,
            "matched_angle": 1,
            "failure_reason": None,
            "remaining_attempts": 3,
            "locked_until": None
        }
    })


class FaceStatusResponse(BaseModel):
    """Registration and lockout status for a user."""

    registered: bool
    profile_id: Optional[str] = None
    angle_count: int = 0
    quality_score: Optional[float] = None
    registered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    verification_count: int = 0
    last_verification_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None


class FaceStatisticsResponse(BaseModel):
    """Aggregated verification attempts over a period."""

    days: int
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    avg_similarity: Optional[float] = None
    avg_success_similarity: Optional[float] = None
    liveness_passed_count: int


class UnlockRequest(BaseModel):
    """Administrative unlock request."""

    performed_by: str = Field(..., min_length=1, max_length=128, description="Administrator performing the unlock")


class StatusResponse(BaseModel):
    """Generic acknowledgement."""

    status: str
    message: Optional[str] = None


class OTPGenerateRequest(BaseModel):
    """Request model for issuing a one-time passcode."""

    owner_id: str = Field(..., min_length=1, max_length=128)
    purpose: str = Field(..., min_length=1, max_length=64, description="Action the code authorizes")
    phone_number: str = Field(..., description="Destination in E.164 format")
    device: Optional[Dict[str, Any]] = None

    @field_validator('phone_number')
    @classmethod
    def strip_phone_number(cls, v):
        """Drop surrounding whitespace; format is checked by the OTP manager."""
        return v.strip()

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "owner_id": "user_123",
            "purpose": "shift_start",
            "phone_number": "+15551234567"
        }
    })


class OTPGenerateResponse(BaseModel):
    """Response model for issued passcodes. Never contains the code."""

    challenge_id: str
    phone_number_masked: str
    expires_at: datetime
    delivered: bool


class OTPVerifyRequest(BaseModel):
    """Request model for verifying a one-time passcode."""

    owner_id: str = Field(..., min_length=1, max_length=128)
    purpose: str = Field(..., min_length=1, max_length=64)
    code: Optional[str] = Field(None, description="Six-digit code")
    device: Optional[Dict[str, Any]] = None


class OTPVerifyResponse(BaseModel):
    """Response model for passcode verification."""

    success: bool
    message: str
    remaining_attempts: Optional[int] = None
    authorized_until: Optional[datetime] = None


class OTPResendRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=128)
    purpose: str = Field(..., min_length=1, max_length=64)
    device: Optional[Dict[str, Any]] = None


class OTPInvalidateRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=128)
    purpose: str = Field(..., min_length=1, max_length=64)


class OTPStatusResponse(BaseModel):
    """Current passcode state for an (owner, purpose) pair."""

    exists: bool
    verified: Optional[bool] = None
    expired: Optional[bool] = None
    attempts: Optional[int] = None
    remaining_attempts: Optional[int] = None
    expires_in_seconds: Optional[int] = None
    phone_number_masked: Optional[str] = None
    authorized_until: Optional[datetime] = None
    locked_until: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field("1.0.0", description="Service version")
    storage: Optional[str] = Field(None, description="Storage backend status")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "healthy",
            "timestamp": "2024-01-01T12:00:00Z",
            "version": "1.0.0",
            "storage": "ok"
        }
    })


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")
    retry_after: Optional[int] = Field(None, description="Seconds until the request may be retried")
    remaining_attempts: Optional[int] = Field(None, description="Attempts left before lockout")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "AccountLocked",
            "message": "Too many failed attempts, try again later",
            "correlation_id": "req_123456789",
            "timestamp": "2024-01-01T12:00:00Z",
            "retry_after": 900
        }
    })
