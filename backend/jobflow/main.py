"""FastAPI application."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .domain_errors import DomainError
from .envelopes import build_error_response, error_payload
from .logging_config import configure_logging
from .middleware import init_request_timing
from .routers import jobs, stages, tasks

configure_logging(settings)
logger = logging.getLogger(__name__)

# Production safety checks (fail closed on insecure config).
if settings.is_production and not settings.cors_origins:
    raise RuntimeError("ALLOWED_ORIGINS must be set in production (explicit frontend origin required).")
if settings.is_production and any(origin == "*" for origin in settings.cors_origins):
    raise RuntimeError("ALLOWED_ORIGINS must be explicit in production (no wildcard when using credentials).")
if settings.is_production and settings.JWT_SECRET_KEY == "change-me-in-production":
    raise RuntimeError("JWT_SECRET_KEY must be set in production.")

# Create app
app = FastAPI(
    title="Jobflow Stage Progression Engine",
    version="1.0.0",
    description="Question-driven stage progression, audit trail and task spawning for jobs",
)

# CORS
cors_headers = ["Authorization", "Content-Type", "X-Request-ID"]
if not settings.is_production:
    cors_headers = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=cors_headers,
)
init_request_timing(app)


@app.exception_handler(DomainError)
async def _handle_domain_error(_: Request, exc: DomainError):
    return build_error_response(exc)


@app.exception_handler(RequestValidationError)
async def _handle_validation_error(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=error_payload(
            message="Malformed request",
            code="MALFORMED_REQUEST",
            retryable=False,
            details={
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ]
            },
        ),
    )


@app.exception_handler(StarletteHTTPException)
async def _handle_http_error(_: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(
            message=str(exc.detail),
            code=f"HTTP_{exc.status_code}",
            retryable=exc.status_code >= 500,
        ),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SQLAlchemyError)
async def _handle_storage_error(_: Request, exc: SQLAlchemyError):
    logger.error("Storage error: %s", exc, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=error_payload(message="Storage operation failed", code="STORAGE_ERROR", retryable=True),
    )


# Include routers
app.include_router(jobs.router, prefix="/api/v1")
app.include_router(tasks.router, prefix="/api/v1")
app.include_router(tasks.sla_router, prefix="/api/v1")
app.include_router(stages.router, prefix="/api/v1")


@app.get("/api/v1/system/health")
def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": "1.0.0",
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": "Jobflow Stage Progression Engine API",
        "version": "1.0.0",
        "docs": "/docs"
    }
