"""Main FastAPI application for the biometric and OTP security engine."""

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from security_engine.api.errors import create_error_response
from security_engine.api.face import router as face_router
from security_engine.api.otp import router as otp_router
from security_engine.clients import get_database_manager
from security_engine.config import settings
from security_engine.middleware import (
    MetricsMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    get_correlation_id,
    get_metrics,
)
from security_engine.models.api_models import HealthResponse
from security_engine.observability import (
    TracingContextMiddleware,
    instrument_fastapi_app,
    setup_observability,
)
from security_engine.services.cipher import get_template_cipher
from security_engine.services.face_profile_service import get_face_profile_manager
from security_engine.services.otp_service import get_otp_manager
from security_engine.utils.time_utils import utcnow

SERVICE_NAME = "biometric-security-engine"
SERVICE_VERSION = "1.0.0"

logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


async def run_cleanup_cycle() -> None:
    """Purge expired OTP state and attempt logs past retention. Failures are logged."""
    try:
        challenges = await get_otp_manager().cleanup_expired()
        logger.info("Expired OTP challenges removed", count=challenges)
    except Exception as e:
        logger.error("OTP cleanup failed", error=str(e))

    try:
        logs = await get_face_profile_manager().cleanup_old_logs()
        logger.info("Old face verification logs removed", count=logs)
    except Exception as e:
        logger.error("Face verification log cleanup failed", error=str(e))


async def periodic_cleanup(interval_seconds: float) -> None:
    """Run :func:`run_cleanup_cycle` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        await run_cleanup_cycle()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "Starting security engine",
        port=settings.port,
        host=settings.host,
        storage_backend=settings.storage_backend,
        sms_provider=settings.sms_provider
    )

    setup_observability(
        service_name=SERVICE_NAME,
        service_version=SERVICE_VERSION,
        otlp_endpoint=settings.otlp_endpoint or None,
        enable_console_export=settings.enable_console_export
    )

    instrument_fastapi_app(app)

    # Load the key ring up front so a bad key configuration fails at startup
    cipher = get_template_cipher()
    logger.info("Template cipher ready", key_versions=cipher.key_versions, active=cipher.active_version)

    # Built here so configuration warnings surface at startup
    get_face_profile_manager()
    get_otp_manager()

    app.state.cleanup_task = asyncio.create_task(periodic_cleanup(settings.cleanup_interval_minutes * 60))
    logger.info("Cleanup task started", interval_minutes=settings.cleanup_interval_minutes)

    yield

    logger.info("Shutting down security engine")
    app.state.cleanup_task.cancel()
    try:
        await app.state.cleanup_task
    except asyncio.CancelledError:
        pass


# Create FastAPI application
app = FastAPI(
    title="Biometric & OTP Security Engine",
    description="Face profile verification and one-time passcodes for sensitive actions",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Add middleware (order matters - last added is executed first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(face_router)
app.include_router(otp_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Render request validation failures in the standard error shape."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "Invalid request")
    return create_error_response(
        error_type="ValidationError",
        message=message,
        correlation_id=get_correlation_id(request),
        status_code=422
    )


@app.get("/healthz", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    storage_ok = await get_database_manager().health_check()
    return HealthResponse(
        status="healthy" if storage_ok else "degraded",
        timestamp=utcnow(),
        version=SERVICE_VERSION,
        storage="ok" if storage_ok else "unavailable"
    )


@app.get("/metrics")
async def metrics_endpoint():
    """Application metrics endpoint."""
    return {
        "timestamp": utcnow().isoformat(),
        "metrics": get_metrics()
    }


def handle_shutdown(signum, frame):
    """Handle graceful shutdown signals."""
    logger.info("Received shutdown signal", signal=signum)
    sys.exit(0)


if __name__ == "__main__":
    import uvicorn

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    uvicorn.run(
        "security_engine.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )
