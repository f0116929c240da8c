"""FastAPI application entry point."""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from credit_ledger import __version__
from credit_ledger.config import settings
from credit_ledger.database import create_engine, create_session_factory
from credit_ledger.exceptions import (
    AlertNotFoundError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvariantViolationError,
    LedgerError,
    TransientStorageError,
)
from credit_ledger.factory import build_ledger
from credit_ledger.middleware.logging import LoggingMiddleware, setup_logging
from credit_ledger.middleware.metrics import MetricsMiddleware
from credit_ledger.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse

# Setup structured logging
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the engine and ledger on startup, dispose the pool on shutdown."""
    logger.info("application_starting", env=settings.app_env)
    engine = create_engine(settings)
    app.state.engine = engine
    app.state.ledger = build_ledger(create_session_factory(engine), settings)
    yield
    logger.info("application_shutting_down")
    await engine.dispose()


# Create FastAPI application
app = FastAPI(
    title="Credit Ledger",
    description="FIFO credit batches with expiration, alerts and balances",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Add CORS middleware
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
    return request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"


def _error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    code: str,
    details: Optional[list[ErrorDetail]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        details=details or [ErrorDetail(code=code, message=message)],
        remediation=REMEDIATION_HINTS.get(code),
        request_id=_request_id(request),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


# Exception handlers with structured error responses
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field-level validation errors."""
    details = [
        ErrorDetail(
            code=ErrorCode.VALIDATION_ERROR,
            message=error["msg"],
            field=".".join(str(loc) for loc in error["loc"]),
            value=str(error.get("input")) if error.get("input") is not None else None,
        )
        for error in exc.errors()
    ]
    logger.warning("validation_error", path=request.url.path, method=request.method, error_count=len(details))
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "ValidationError",
        "Request validation failed",
        ErrorCode.VALIDATION_ERROR,
        details=details,
    )


@app.exception_handler(InsufficientCreditsError)
async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError) -> JSONResponse:
    """Expected outcome: ask the user to purchase more credits."""
    logger.info(
        "insufficient_credits",
        user_id=exc.user_id,
        requested=str(exc.requested),
        available=str(exc.available),
    )
    return _error_response(
        request,
        status.HTTP_402_PAYMENT_REQUIRED,
        "InsufficientCredits",
        str(exc),
        ErrorCode.INSUFFICIENT_CREDITS,
        details=[
            ErrorDetail(
                code=ErrorCode.INSUFFICIENT_CREDITS,
                message=f"Requested {exc.requested} credits, {exc.available} available",
                field="amount",
                value=str(exc.requested),
            )
        ],
    )


@app.exception_handler(InvalidAmountError)
async def invalid_amount_handler(request: Request, exc: InvalidAmountError) -> JSONResponse:
    """Return 400 for malformed or non-positive amounts."""
    return _error_response(request, status.HTTP_400_BAD_REQUEST, "InvalidAmount", str(exc), ErrorCode.INVALID_AMOUNT)


@app.exception_handler(AlertNotFoundError)
async def alert_not_found_handler(request: Request, exc: AlertNotFoundError) -> JSONResponse:
    """Return 404 for unknown alerts."""
    return _error_response(request, status.HTTP_404_NOT_FOUND, "NotFound", str(exc), ErrorCode.ALERT_NOT_FOUND)


@app.exception_handler(TransientStorageError)
async def transient_storage_handler(request: Request, exc: TransientStorageError) -> JSONResponse:
    """Retries inside the ledger are exhausted; the client may retry with the same reference."""
    logger.error("ledger_storage_unavailable", path=request.url.path, error=str(exc))
    message = "Credit ledger temporarily unavailable" if settings.app_env == "production" else str(exc)
    return _error_response(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "StorageUnavailable",
        message,
        ErrorCode.STORAGE_UNAVAILABLE,
        headers={"Retry-After": "5"},
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Return 503 for database errors that escaped the ledger's classification."""
    logger.error(
        "database_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )
    # Don't expose internal database details in production
    message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)
    return _error_response(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DatabaseError",
        message,
        ErrorCode.DATABASE_ERROR,
        headers={"Retry-After": "30"},
    )


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Invariant violations and other ledger failures: loud in the logs, generic to the client."""
    logger.error(
        "ledger_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "InternalServerError",
        str(exc) if settings.debug else "Internal server error",
        ErrorCode.LEDGER_INVARIANT_VIOLATION if isinstance(exc, InvariantViolationError) else ErrorCode.INTERNAL_ERROR,
    )


# Root endpoint
@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "Credit Ledger",
        "version": __version__,
        "status": "operational",
        "docs": "/docs",
    }


# Include routers
from credit_ledger.api.v1 import credits, health  # noqa: E402

app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/v1", tags=["Credits"])
