"""FastAPI application entry point."""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from creditledger.config import Settings, settings as default_settings
from creditledger.container import Container
from creditledger.exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    InvalidStateTransitionError,
    LedgerError,
    MinimumBalanceViolationError,
    ProviderError,
)
from creditledger.middleware.logging import LoggingMiddleware, setup_logging
from creditledger.middleware.metrics import MetricsMiddleware
from creditledger.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse

logger = structlog.get_logger(__name__)

LEDGER_ERROR_STATUS = {
    AccountNotFoundError: (status.HTTP_404_NOT_FOUND, "NotFound"),
    InsufficientCreditsError: (status.HTTP_402_PAYMENT_REQUIRED, "PaymentRequired"),
    MinimumBalanceViolationError: (status.HTTP_402_PAYMENT_REQUIRED, "PaymentRequired"),
    InvalidStateTransitionError: (status.HTTP_409_CONFLICT, "Conflict"),
}

VALIDATION_CODES = {
    "uuid_parsing": ErrorCode.INVALID_UUID,
    "enum": ErrorCode.INVALID_ENUM_VALUE,
    "missing": ErrorCode.MISSING_REQUIRED_FIELD,
    "decimal_parsing": ErrorCode.INVALID_AMOUNT,
    "greater_than_equal": ErrorCode.INVALID_AMOUNT,
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(
        "x-request-id", f"req_{uuid.uuid4().hex[:12]}"
    )


def _error_response(request: Request, status_code: int, body: ErrorResponse, headers: dict | None = None) -> JSONResponse:
    body.request_id = _request_id(request)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Map the error taxonomy onto structured HTTP error responses."""

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            ErrorDetail(
                code=VALIDATION_CODES.get(error["type"], "validation_error"),
                message=error["msg"],
                field=".".join(str(loc) for loc in error["loc"]),
                value=error.get("input"),
            )
            for error in exc.errors()
        ]
        logger.warning("validation_error", path=request.url.path, error_count=len(details))
        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorResponse(
                error="ValidationError",
                message="Request validation failed",
                details=details,
                remediation="Check the API documentation for correct request format at /docs",
            ),
        )

    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
        status_code, error = LEDGER_ERROR_STATUS.get(type(exc), (status.HTTP_400_BAD_REQUEST, "BadRequest"))
        logger.info("ledger_error", path=request.url.path, code=exc.code, message=exc.message)

        max_affordable = None
        if isinstance(exc, MinimumBalanceViolationError):
            max_affordable = str(exc.max_affordable)

        return _error_response(
            request,
            status_code,
            ErrorResponse(
                error=error,
                message=exc.message,
                details=[
                    ErrorDetail(code=exc.code, message=exc.message, value=exc.details or None),
                ],
                remediation=REMEDIATION_HINTS.get(exc.code),
                max_affordable=max_affordable,
            ),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error(
            "database_error",
            path=request.url.path,
            error_type=type(exc).__name__,
            error_message=str(exc),
        )
        # Don't expose internal database details in production
        error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)
        return _error_response(
            request,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            ErrorResponse(
                error="DatabaseError",
                message="A database error occurred",
                details=[ErrorDetail(code=ErrorCode.DATABASE_ERROR, message=error_message)],
                remediation=REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
            ),
            headers={"Retry-After": "30"},
        )

    @app.exception_handler(ProviderError)
    async def provider_exception_handler(request: Request, exc: ProviderError) -> JSONResponse:
        logger.error("provider_error", path=request.url.path, code=exc.code, message=exc.message)
        return _error_response(
            request,
            status.HTTP_502_BAD_GATEWAY,
            ErrorResponse(
                error="ProviderError",
                message="Billing provider error occurred",
                details=[
                    ErrorDetail(
                        code=ErrorCode.PROVIDER_ERROR,
                        message=exc.message if settings.app_env != "production" else "Billing provider error",
                    )
                ],
                remediation=REMEDIATION_HINTS.get(ErrorCode.PROVIDER_ERROR),
            ),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            exception_type=type(exc).__name__,
            exc_info=exc,
        )
        return _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorResponse(
                error="InternalServerError",
                message="An unexpected error occurred",
                details=[
                    ErrorDetail(
                        code=ErrorCode.INTERNAL_ERROR,
                        message=str(exc) if settings.debug else "Internal server error",
                    )
                ],
                remediation="Please contact support with the request ID",
            ),
        )


def create_app(settings: Settings = default_settings, container: Container | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings
        container: Pre-built container (tests); one is built from settings otherwise
    """
    container = container or Container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("application_starting", env=settings.app_env)
        await container.startup()
        if settings.meter_worker_enabled:
            await container.create_meter_worker().start()
        yield
        logger.info("application_shutting_down")
        await container.shutdown()

    app = FastAPI(
        title="Credit Ledger",
        description="Prepaid credit ledger and metered usage billing",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.settings = settings

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.mount("/metrics", make_asgi_app())

    register_exception_handlers(app, settings)

    if settings.tracing_enabled:
        from creditledger.tracing import setup_tracing

        setup_tracing(app, container.engine, settings)

    from creditledger.api.v1 import auto_top_up, credits, health, meter_events, usage

    app.include_router(health.router, tags=["Health"])
    app.include_router(credits.router, prefix="/v1", tags=["Credits"])
    app.include_router(usage.router, prefix="/v1", tags=["Usage"])
    app.include_router(meter_events.router, prefix="/v1", tags=["Meter Events"])
    app.include_router(auto_top_up.router, prefix="/v1", tags=["Auto Top-Up"])

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "service": "Credit Ledger",
            "version": "0.1.0",
            "status": "operational",
            "docs": "/docs",
        }

    return app


def get_app() -> FastAPI:
    """Uvicorn factory: `uvicorn creditledger.main:get_app --factory`."""
    setup_logging()
    return create_app()
