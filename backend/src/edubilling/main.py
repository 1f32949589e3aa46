"""FastAPI application entry point."""
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from edubilling.api.v1 import billing, health
from edubilling.api.webhooks import stripe as stripe_webhooks
from edubilling.config import settings
from edubilling.errors import BillingError, ProcessorError
from edubilling.middleware.logging import LoggingMiddleware, setup_logging
from edubilling.middleware.metrics import MetricsMiddleware
from edubilling.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse

# Setup structured logging
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    logger.info("application_starting", env=settings.app_env)
    yield
    logger.info("application_shutting_down")


app = FastAPI(
    title="School Billing Service",
    description="Plans, checkout, upgrades and Stripe reconciliation for school accounts",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

# Mount Prometheus metrics endpoint
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(
        "x-request-id", f"req_{uuid.uuid4().hex[:12]}"
    )


def _error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: list[ErrorDetail],
    remediation: str | None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        details=details,
        remediation=remediation,
        request_id=_request_id(request),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render taxonomy errors with their status, code and remediation hint."""
    log = logger.error if isinstance(exc, ProcessorError) or exc.status_code >= 500 else logger.info
    log(
        "billing_error",
        path=request.url.path,
        error_type=exc.error_type,
        code=exc.code,
        error_message=exc.message,
        **{f"ctx_{key}": value for key, value in exc.context.items()},
    )
    headers = {"Retry-After": "60"} if exc.status_code in (429, 503) else None
    return _error_response(
        request,
        exc.status_code,
        exc.error_type,
        exc.message,
        [ErrorDetail(code=exc.code, message=exc.message)],
        REMEDIATION_HINTS.get(exc.code),
        headers=headers,
    )


def _validation_code(error: dict[str, Any]) -> str:
    location = [str(part) for part in error.get("loc", ())]
    if error.get("type") == "enum" and "purchase_type" in location:
        return ErrorCode.INVALID_PURCHASE_TYPE
    if any(part in ("teacher_seats", "student_seats") for part in location):
        return ErrorCode.INVALID_ADDON_COUNT
    if error.get("type") == "missing":
        return ErrorCode.MISSING_REQUIRED_FIELD
    return "validation_error"


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle request validation errors with structured response.

    Returns 422 with field-level details.
    """
    details = [
        ErrorDetail(
            code=_validation_code(error),
            message=error["msg"],
            field=".".join(str(loc) for loc in error["loc"]),
            value=error.get("input") if isinstance(error.get("input"), (str, int, float, bool)) else None,
        )
        for error in exc.errors()
    ]

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        error_count=len(details),
    )
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "ValidationError",
        "Request validation failed",
        details,
        REMEDIATION_HINTS.get(details[0].code) if details else None,
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """
    Handle database errors.

    Returns 503 Service Unavailable.
    """
    logger.error(
        "database_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )
    error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)
    return _error_response(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DatabaseError",
        "A database error occurred",
        [ErrorDetail(code=ErrorCode.DATABASE_ERROR, message=error_message)],
        REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
        headers={"Retry-After": "30"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle all other uncaught exceptions.

    Logs the stack trace and returns a safe 500 body.
    """
    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        exception_type=type(exc).__name__,
    )
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "InternalServerError",
        "An unexpected error occurred",
        [ErrorDetail(code=ErrorCode.INTERNAL_ERROR, message=str(exc) if settings.debug else "Internal server error")],
        "Please contact support with the request ID",
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "School Billing Service",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }


app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/v1", tags=["Billing"])
app.include_router(stripe_webhooks.router, prefix="/v1", tags=["Webhooks"])
