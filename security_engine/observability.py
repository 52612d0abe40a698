"""
Observability and monitoring setup for the security engine.
"""

import asyncio
from functools import wraps
from typing import Any, Callable, Dict, Optional

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
request_counter: Optional[metrics.Counter] = None
request_duration: Optional[metrics.Histogram] = None
error_counter: Optional[metrics.Counter] = None
face_registration_counter: Optional[metrics.Counter] = None
face_verification_counter: Optional[metrics.Counter] = None
face_similarity_histogram: Optional[metrics.Histogram] = None
otp_generation_counter: Optional[metrics.Counter] = None
otp_verification_counter: Optional[metrics.Counter] = None


def setup_observability(
    service_name: str = "biometric-security-engine",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False
) -> None:
    """
    Set up OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for tracing
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint for trace/metric export
        enable_console_export: Whether to enable console export for development
    """
    global tracer, meter
    global request_counter, request_duration, error_counter
    global face_registration_counter, face_verification_counter, face_similarity_histogram
    global otp_generation_counter, otp_verification_counter

    logger.info(
        "Setting up observability",
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint
    )

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })

    # Set up tracing
    trace_provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    if enable_console_export:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    # Set up metrics
    metric_readers = []

    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000  # 30 seconds
            )
        )

    if enable_console_export:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000  # 60 seconds
            )
        )

    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=metric_readers))
    meter = metrics.get_meter(__name__)

    # Create metric instruments
    request_counter = meter.create_counter(
        name="http_requests_total",
        description="Total number of HTTP requests",
        unit="1"
    )

    request_duration = meter.create_histogram(
        name="http_request_duration_seconds",
        description="HTTP request duration in seconds",
        unit="s"
    )

    error_counter = meter.create_counter(
        name="http_errors_total",
        description="Total number of HTTP errors",
        unit="1"
    )

    face_registration_counter = meter.create_counter(
        name="face_registrations_total",
        description="Total number of face profile registrations and updates",
        unit="1"
    )

    face_verification_counter = meter.create_counter(
        name="face_verifications_total",
        description="Total number of face verifications",
        unit="1"
    )

    face_similarity_histogram = meter.create_histogram(
        name="face_verification_similarity",
        description="Face verification similarity scores",
        unit="1"
    )

    otp_generation_counter = meter.create_counter(
        name="otp_generations_total",
        description="Total number of one-time passcodes issued",
        unit="1"
    )

    otp_verification_counter = meter.create_counter(
        name="otp_verifications_total",
        description="Total number of one-time passcode verifications",
        unit="1"
    )

    logger.info("Observability setup completed")


def instrument_fastapi_app(app) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: FastAPI application instance
    """
    if tracer is None:
        logger.warning("Tracer not initialized, call setup_observability() first")
        return

    FastAPIInstrumentor.instrument_app(app)

    # Outbound SMS provider calls go through httpx
    HTTPXClientInstrumentor().instrument()

    LoggingInstrumentor().instrument(set_logging_format=True)

    logger.info("FastAPI application instrumented with OpenTelemetry")


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)

            span_name = operation_name or f"{func.__module__}.{func.__name__}"

            with tracer.start_as_current_span(span_name) as span:
                try:
                    span.set_attribute("function.name", func.__name__)
                    span.set_attribute("function.module", func.__module__)

                    result = await func(*args, **kwargs)

                    span.set_attribute("success", True)
                    return result

                except Exception as e:
                    span.record_exception(e)
                    span.set_attribute("success", False)
                    span.set_attribute("error.type", type(e).__name__)
                    raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)

            span_name = operation_name or f"{func.__module__}.{func.__name__}"

            with tracer.start_as_current_span(span_name) as span:
                try:
                    span.set_attribute("function.name", func.__name__)
                    span.set_attribute("function.module", func.__module__)

                    result = func(*args, **kwargs)

                    span.set_attribute("success", True)
                    return result

                except Exception as e:
                    span.record_exception(e)
                    span.set_attribute("success", False)
                    span.set_attribute("error.type", type(e).__name__)
                    raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_face_registration_metrics(operation: str, outcome: str, processing_time: float) -> None:
    """
    Record metrics for face profile registration and update.

    Args:
        operation: "register" or "update"
        outcome: "success" or the error code
        processing_time: Time taken in seconds
    """
    if face_registration_counter is None or request_duration is None:
        return

    attributes = {"operation": f"face_{operation}", "outcome": outcome}
    face_registration_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)


def record_face_verification_metrics(
    outcome: str,
    processing_time: float,
    similarity: Optional[float],
    purpose: str
) -> None:
    """
    Record metrics for face verification.

    Owner ids are deliberately not used as attributes; they would make the
    metric cardinality unbounded.

    Args:
        outcome: "accepted", "rejected" or the error code
        processing_time: Time taken in seconds
        similarity: Best similarity score, if one was computed
        purpose: Action the verification gated
    """
    if face_verification_counter is None or request_duration is None:
        return

    attributes = {"operation": "face_verification", "outcome": outcome, "purpose": purpose}
    face_verification_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if similarity is not None and face_similarity_histogram is not None:
        face_similarity_histogram.record(similarity, {"outcome": outcome})

    logger.info(
        "Face verification metrics recorded",
        outcome=outcome,
        processing_time=processing_time,
        similarity=similarity
    )


def record_otp_metrics(operation: str, outcome: str, purpose: str) -> None:
    """
    Record metrics for OTP generation and verification.

    Args:
        operation: "generate", "resend" or "verify"
        outcome: "success", "delivery_failed", "rejected" or the error code
        purpose: OTP purpose
    """
    counter = otp_verification_counter if operation == "verify" else otp_generation_counter
    if counter is None:
        return
    counter.add(1, {"operation": f"otp_{operation}", "outcome": outcome, "purpose": purpose})


def record_http_metrics(
    method: str,
    path: str,
    status_code: int,
    processing_time: float
) -> None:
    """
    Record HTTP request metrics.

    Args:
        method: HTTP method
        path: Request path
        status_code: HTTP status code
        processing_time: Request processing time in seconds
    """
    if request_counter is None or request_duration is None or error_counter is None:
        return

    attributes = {
        "method": method,
        "path": path,
        "status_code": str(status_code)
    }

    request_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if status_code >= 400:
        error_counter.add(1, {
            **attributes,
            "error_type": "client_error" if status_code < 500 else "server_error"
        })


def get_trace_context() -> Dict[str, Any]:
    """
    Get current trace context information.

    Returns:
        Dict with trace ID and span ID if available
    """
    current_span = trace.get_current_span()
    if current_span is None or not current_span.is_recording():
        return {}

    span_context = current_span.get_span_context()
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
    }


class TracingContextMiddleware:
    """
    Middleware to add tracing context to structured logs.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        trace_context = get_trace_context()
        if trace_context:
            structlog.contextvars.bind_contextvars(**trace_context)

        await self.app(scope, receive, send)
