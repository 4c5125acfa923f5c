"""AlphaMail API - Main FastAPI Application."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from alphamail.api.deps import build_services
from alphamail.api.routes import email, user, webhooks
from alphamail.core.config import settings
from alphamail.core.exceptions import AlphaMailException, sanitize_error
from alphamail.core.resilience import get_all_circuit_breakers


# JSON for production (stdout is captured by the host), text for dev
def _configure_logging() -> None:
    """Set up logging based on LOG_FORMAT.

    json: Structured JSON via python-json-logger.
    text: Human-readable format (for local development).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output
    root_logger.handlers.clear()

    handler = logging.StreamHandler()

    if settings.LOG_FORMAT == "json":
        from pythonjsonlogger.json import JsonFormatter

        formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "service",
            },
            static_fields={"app": "alphamail-api"},
        )
        handler.setFormatter(formatter)
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    root_logger.addHandler(handler)


_configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """Application lifespan handler for startup and shutdown events."""
    logger.info("Starting AlphaMail API...")

    if not settings.RESEND_API_KEY.get_secret_value():
        logger.warning("RESEND_API_KEY not configured - outbound email DISABLED")
    if not settings.webhook_secret_for("inbound"):
        logger.warning("Inbound webhook secret not configured - signature checks DISABLED")

    app.state.services = build_services(settings)
    yield
    logger.info("Shutting down AlphaMail API...")


app = FastAPI(
    title="AlphaMail API",
    description="Email accountability partner",
    version="1.0.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(email.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")
app.include_router(user.router, prefix="/api/v1")


@app.get("/health", tags=["system"])
async def health_check() -> dict[str, Any]:
    """Health check with circuit breaker states."""
    return {
        "status": "healthy",
        "circuit_breakers": [cb.to_dict() for cb in get_all_circuit_breakers().values()],
    }


@app.exception_handler(AlphaMailException)
async def alphamail_exception_handler(request: Request, exc: AlphaMailException) -> JSONResponse:
    """Handle AlphaMail-specific exceptions.

    Returns:
        JSON error response with a safe message.
    """
    request_id = str(uuid.uuid4())
    logger.warning(
        "AlphaMail exception occurred",
        extra={
            "code": exc.code,
            "status_code": exc.status_code,
            "request_id": request_id,
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": sanitize_error(exc),
            "code": exc.code,
            "request_id": request_id,
        },
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request body parsing errors."""
    request_id = str(uuid.uuid4())
    logger.warning(
        "Request validation error",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "error_count": len(exc.errors()),
        },
    )
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request",
            "code": "REQUEST_VALIDATION_ERROR",
            "request_id": request_id,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions without exposing internals."""
    request_id = str(uuid.uuid4())
    logger.exception(
        "Unhandled exception occurred",
        exc_info=exc,
        extra={
            "request_id": request_id,
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
            "request_id": request_id,
        },
    )
