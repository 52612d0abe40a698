"""
Face profile API endpoints for registration, verification and administration.
"""

import time

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from security_engine.api.errors import internal_error_response, security_error_response
from security_engine.exceptions import SecurityEngineError
from security_engine.middleware import get_correlation_id
from security_engine.models.api_models import (
    FaceRegistrationRequest,
    FaceRegistrationResponse,
    FaceStatisticsResponse,
    FaceStatusResponse,
    FaceVerificationRequest,
    FaceVerificationResponse,
    StatusResponse,
    UnlockRequest,
)
from security_engine.observability import (
    record_face_registration_metrics,
    record_face_verification_metrics,
    trace_function,
)
from security_engine.services.face_profile_service import get_face_profile_manager

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/face", tags=["face"])


def _registration_response(summary) -> FaceRegistrationResponse:
    return FaceRegistrationResponse(
        profile_id=summary.profile_id,
        angle_count=summary.angle_count,
        quality_score=summary.quality_score,
        registered_at=summary.registered_at
    )


@router.post("/register", response_model=FaceRegistrationResponse, status_code=201)
@trace_function("face_register_endpoint")
async def register_face(request: FaceRegistrationRequest, http_request: Request):
    """
    Register a face profile for a user.

    Every angle is encrypted independently; the stored quality score is the
    lowest of the capture qualities. The response never contains vectors.

    Args:
        request: Owner id, captured angles, consent flag and device attributes
        http_request: HTTP request for correlation ID extraction

    Returns:
        FaceRegistrationResponse with profile id, angle count and quality
    """
    correlation_id = get_correlation_id(http_request)
    manager = get_face_profile_manager()
    start_time = time.time()

    logger.info(
        "Face registration request received",
        owner_id=request.owner_id,
        angle_count=len(request.angles)
    )

    try:
        summary = await manager.register(
            owner_id=request.owner_id,
            angles=request.angles,
            consent=request.consent,
            device=request.device
        )
        record_face_registration_metrics("register", "success", time.time() - start_time)
        logger.info("Face registration completed", owner_id=request.owner_id, profile_id=summary.profile_id)
        return _registration_response(summary)

    except SecurityEngineError as e:
        record_face_registration_metrics("register", e.code, time.time() - start_time)
        logger.warning("Face registration rejected", owner_id=request.owner_id, error=e.code)
        return security_error_response(e, correlation_id)

    except Exception as e:
        logger.error("Unexpected face registration error", owner_id=request.owner_id, error=str(e))
        return internal_error_response(correlation_id, "face registration")


@router.put("/profile", response_model=FaceRegistrationResponse)
@trace_function("face_update_endpoint")
async def update_face_profile(request: FaceRegistrationRequest, http_request: Request):
    """Replace the user's face profile with freshly captured angles."""
    correlation_id = get_correlation_id(http_request)
    manager = get_face_profile_manager()
    start_time = time.time()

    try:
        summary = await manager.update(
            owner_id=request.owner_id,
            angles=request.angles,
            consent=request.consent,
            device=request.device
        )
        record_face_registration_metrics("update", "success", time.time() - start_time)
        logger.info("Face profile updated", owner_id=request.owner_id, profile_id=summary.profile_id)
        return _registration_response(summary)

    except SecurityEngineError as e:
        record_face_registration_metrics("update", e.code, time.time() - start_time)
        logger.warning("Face profile update rejected", owner_id=request.owner_id, error=e.code)
        return security_error_response(e, correlation_id)

    except Exception as e:
        logger.error("Unexpected face profile update error", owner_id=request.owner_id, error=str(e))
        return internal_error_response(correlation_id, "face profile update")


@router.delete("/profile/{owner_id}", response_model=StatusResponse)
@trace_function("face_delete_endpoint")
async def delete_face_profile(owner_id: str, http_request: Request):
    """Irreversibly delete the user's face profile."""
    correlation_id = get_correlation_id(http_request)

    try:
        await get_face_profile_manager().delete(owner_id)
        logger.info("Face profile deleted", owner_id=owner_id)
        return StatusResponse(status="deleted", message="Face profile and biometric data erased")

    except SecurityEngineError as e:
        logger.warning("Face profile delete rejected", owner_id=owner_id, error=e.code)
        return security_error_response(e, correlation_id)

    except Exception as e:
        logger.error("Unexpected face profile delete error", owner_id=owner_id, error=str(e))
        return internal_error_response(correlation_id, "face profile deletion")


@router.post("/verify", response_model=FaceVerificationResponse)
@trace_function("face_verify_endpoint")
async def verify_face(request: FaceVerificationRequest, http_request: Request):
    """
    Verify a live face capture against the user's stored profile.

    A rejected capture is answered with 401 and the same body as a success,
    so clients can show the failure reason and remaining attempts.

    Args:
        request: Owner id, live encoding, liveness score and purpose
        http_request: HTTP request for correlation ID extraction

    Returns:
        FaceVerificationResponse
    """
    correlation_id = get_correlation_id(http_request)
    manager = get_face_profile_manager()
    start_time = time.time()

    logger.info("Face verification request received", owner_id=request.owner_id, purpose=request.purpose)

    try:
        result = await manager.verify(
            owner_id=request.owner_id,
            captured_vector=request.vector,
            liveness_score=request.liveness_score,
            device=request.device,
            purpose=request.purpose
        )

    except SecurityEngineError as e:
        record_face_verification_metrics(e.code, time.time() - start_time, None, request.purpose)
        logger.warning("Face verification rejected", owner_id=request.owner_id, error=e.code)
        return security_error_response(e, correlation_id)

    except Exception as e:
        logger.error("Unexpected face verification error", owner_id=request.owner_id, error=str(e))
        return internal_error_response(correlation_id, "face verification")

    outcome = "accepted" if result.success else "rejected"
    record_face_verification_metrics(outcome, time.time() - start_time, result.similarity, request.purpose)
    logger.info(
        "Face verification completed",
        owner_id=request.owner_id,
        success=result.success,
        similarity=round(result.similarity, 4)
    )

    response = FaceVerificationResponse(
        success=result.success,
        similarity=result.similarity,
        liveness_score=result.liveness_score,
        liveness_passed=result.liveness_passed,
        matched_angle=result.matched_angle,
        failure_reason=result.failure_reason,
        remaining_attempts=result.remaining_attempts,
        locked_until=result.locked_until
    )
    if result.success:
        return response
    return JSONResponse(status_code=401, content=response.model_dump(mode="json"))


@router.get("/status/{owner_id}", response_model=FaceStatusResponse)
async def get_face_status(owner_id: str, http_request: Request):
    """Registration and lockout status for a user."""
    try:
        status = await get_face_profile_manager().get_registration_status(owner_id)
        return FaceStatusResponse(**status)
    except SecurityEngineError as e:
        return security_error_response(e, get_correlation_id(http_request))


@router.get("/statistics/{owner_id}", response_model=FaceStatisticsResponse)
async def get_face_statistics(owner_id: str, http_request: Request, days: int = Query(30, ge=1, le=365)):
    """Verification statistics for a user over the last ``days`` days."""
    try:
        stats = await get_face_profile_manager().get_verification_statistics(owner_id, days)
        return FaceStatisticsResponse(**stats)
    except SecurityEngineError as e:
        return security_error_response(e, get_correlation_id(http_request))


@router.post("/unlock/{owner_id}", response_model=StatusResponse)
@trace_function("face_unlock_endpoint")
async def unlock_face(owner_id: str, request: UnlockRequest, http_request: Request):
    """Clear a face verification lockout (administrative)."""
    try:
        cleared = await get_face_profile_manager().unlock(owner_id, request.performed_by)
    except SecurityEngineError as e:
        return security_error_response(e, get_correlation_id(http_request))

    logger.info("Face lockout cleared", owner_id=owner_id, performed_by=request.performed_by, had_lockout=cleared)
    return StatusResponse(
        status="unlocked",
        message="Face verification lockout cleared" if cleared else "No active lockout"
    )
