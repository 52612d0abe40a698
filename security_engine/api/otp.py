"""
One-time passcode API endpoints.
"""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from security_engine.api.errors import internal_error_response, security_error_response
from security_engine.clients.sms_client import mask_phone_number
from security_engine.exceptions import SecurityEngineError
from security_engine.middleware import get_correlation_id
from security_engine.models.api_models import (
    OTPGenerateRequest,
    OTPGenerateResponse,
    OTPInvalidateRequest,
    OTPResendRequest,
    OTPStatusResponse,
    OTPVerifyRequest,
    OTPVerifyResponse,
    StatusResponse,
)
from security_engine.observability import record_otp_metrics, trace_function
from security_engine.services.otp_service import get_otp_manager

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/otp", tags=["otp"])


def _generation_response(result) -> OTPGenerateResponse:
    return OTPGenerateResponse(
        challenge_id=result.challenge_id,
        phone_number_masked=result.phone_number_masked,
        expires_at=result.expires_at,
        delivered=result.delivered
    )


@router.post("/generate", response_model=OTPGenerateResponse, status_code=201)
@trace_function("otp_generate_endpoint")
async def generate_otp(request: OTPGenerateRequest, http_request: Request):
    """
    Issue a one-time passcode and send it to the user's phone.

    Args:
        request: Owner id, purpose and E.164 phone number
        http_request: HTTP request for correlation ID extraction

    Returns:
        OTPGenerateResponse with the masked phone number and expiry
    """
    correlation_id = get_correlation_id(http_request)

    logger.info(
        "OTP generation request received",
        owner_id=request.owner_id,
        purpose=request.purpose,
        phone=mask_phone_number(request.phone_number)
    )

    try:
        result = await get_otp_manager().generate(
            owner_id=request.owner_id,
            purpose=request.purpose,
            phone_number=request.phone_number,
            device=request.device
        )
    except SecurityEngineError as e:
        record_otp_metrics("generate", e.code, request.purpose)
        logger.warning("OTP generation rejected", owner_id=request.owner_id, error=e.code)
        return security_error_response(e, correlation_id)
    except Exception as e:
        logger.error("Unexpected OTP generation error", owner_id=request.owner_id, error=str(e))
        return internal_error_response(correlation_id, "code generation")

    record_otp_metrics("generate", "success" if result.delivered else "delivery_failed", request.purpose)
    return _generation_response(result)


@router.post("/verify", response_model=OTPVerifyResponse)
@trace_function("otp_verify_endpoint")
async def verify_otp(request: OTPVerifyRequest, http_request: Request):
    """
    Verify a one-time passcode.

    A wrong code that leaves attempts is answered with 401 and
    ``remaining_attempts``; the attempt that exhausts the limit is answered
    with 423.
    """
    correlation_id = get_correlation_id(http_request)

    try:
        result = await get_otp_manager().verify(
            owner_id=request.owner_id,
            code=request.code,
            purpose=request.purpose,
            device=request.device
        )
    except SecurityEngineError as e:
        record_otp_metrics("verify", e.code, request.purpose)
        logger.warning("OTP verification rejected", owner_id=request.owner_id, error=e.code)
        return security_error_response(e, correlation_id)
    except Exception as e:
        logger.error("Unexpected OTP verification error", owner_id=request.owner_id, error=str(e))
        return internal_error_response(correlation_id, "code verification")

    record_otp_metrics("verify", "success" if result.success else "rejected", request.purpose)
    logger.info("OTP verification completed", owner_id=request.owner_id, success=result.success)

    response = OTPVerifyResponse(
        success=result.success,
        message=result.message,
        remaining_attempts=result.remaining_attempts,
        authorized_until=result.authorized_until
    )
    if result.success:
        return response
    return JSONResponse(status_code=401, content=response.model_dump(mode="json"))


@router.post("/resend", response_model=OTPGenerateResponse)
@trace_function("otp_resend_endpoint")
async def resend_otp(request: OTPResendRequest, http_request: Request):
    """Issue a fresh code to the phone number of the previous request."""
    correlation_id = get_correlation_id(http_request)

    try:
        result = await get_otp_manager().resend(
            owner_id=request.owner_id,
            purpose=request.purpose,
            device=request.device
        )
    except SecurityEngineError as e:
        record_otp_metrics("resend", e.code, request.purpose)
        logger.warning("OTP resend rejected", owner_id=request.owner_id, error=e.code)
        return security_error_response(e, correlation_id)
    except Exception as e:
        logger.error("Unexpected OTP resend error", owner_id=request.owner_id, error=str(e))
        return internal_error_response(correlation_id, "code resend")

    record_otp_metrics("resend", "success" if result.delivered else "delivery_failed", request.purpose)
    return _generation_response(result)


@router.post("/invalidate", response_model=StatusResponse)
async def invalidate_otp(request: OTPInvalidateRequest, http_request: Request):
    """Withdraw any pending code for (owner, purpose). Safe to repeat."""
    try:
        removed = await get_otp_manager().invalidate(request.owner_id, request.purpose)
    except SecurityEngineError as e:
        return security_error_response(e, get_correlation_id(http_request))

    return StatusResponse(
        status="invalidated",
        message="Pending code removed" if removed else "No pending code"
    )


@router.get("/status/{owner_id}/{purpose}", response_model=OTPStatusResponse)
async def get_otp_status(owner_id: str, purpose: str, http_request: Request):
    """Current passcode state without the code or its hash."""
    try:
        status = await get_otp_manager().get_status(owner_id, purpose)
    except SecurityEngineError as e:
        return security_error_response(e, get_correlation_id(http_request))
    return OTPStatusResponse(**status)
