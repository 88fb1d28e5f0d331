"""
Caseflow - Mobile sync service for field verification

FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from caseflow import __version__
from caseflow.config import settings
from caseflow.db.session import build_engine, build_session_factory, create_tables
from caseflow.db.types import isoformat_utc, utcnow
from caseflow.sync.errors import SyncError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Rate limiter
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.mobile_rate_limit])


_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_FAILED",
    429: "RATE_LIMIT_EXCEEDED",
}


def error_response(
    status_code: int,
    message: str,
    code: str,
    details: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Render the error envelope the mobile app expects."""
    error: dict[str, Any] = {"code": code, "timestamp": isoformat_utc(utcnow())}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error": error},
        headers=headers,
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        # HSTS (only in production with HTTPS)
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        if "server" in response.headers:
            del response.headers["server"]

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log requests with timing and a request id."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        request_id = request.headers.get("X-Request-ID", f"req_{int(time.time() * 1000)}")

        logger.info(
            f"Request: {request.method} {request.url.path} "
            f"[{request_id}] from {request.client.host if request.client else 'unknown'}"
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)

        logger.info(
            f"Response: {request.method} {request.url.path} "
            f"[{request_id}] status={response.status_code} time={process_time:.3f}s"
        )

        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    logger.info("Starting Caseflow sync service...")

    engine = build_engine(settings)
    if settings.database_create_tables:
        logger.warning("Creating missing database tables (DATABASE_CREATE_TABLES is set)")
        await create_tables(engine)

    app.state.engine = engine
    app.state.db_session = build_session_factory(engine)

    logger.info("Caseflow sync service started successfully")

    yield

    logger.info("Shutting down Caseflow sync service...")
    await engine.dispose()
    logger.info("Caseflow sync service shutdown complete")


app = FastAPI(
    title="Caseflow Sync",
    description="Offline-first mobile synchronization for field verification cases",
    version=__version__,
    lifespan=lifespan,
    # Disable docs in production
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    openapi_url="/openapi.json" if not settings.is_production else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

# Security headers middleware (must be added before CORS)
app.add_middleware(SecurityHeadersMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-Request-ID",
        "X-Device-Id",
        "X-App-Version",
    ],
    expose_headers=["X-Request-ID", "X-Process-Time"],
    max_age=600,
)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    """Reject a whole sync call with the error envelope."""
    if exc.status_code >= 500:
        logger.error(f"Sync failure on {request.url.path}: {exc.code} {exc.message}")
    else:
        logger.warning(f"Sync request rejected on {request.url.path}: {exc.code} {exc.message}")
    return error_response(exc.status_code, exc.message, exc.code, exc.details or None)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Authentication and routing errors in the same envelope."""
    return error_response(
        exc.status_code,
        str(exc.detail),
        _STATUS_CODES.get(exc.status_code, "HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies or query parameters."""
    errors = [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return error_response(422, "Request validation failed", "VALIDATION_FAILED", {"errors": errors})


# Rate limit exceeded handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors."""
    return error_response(
        429,
        "Too many sync requests. Please try again later.",
        "RATE_LIMIT_EXCEEDED",
        {"limit": str(exc.detail)},
        headers={"Retry-After": "60"},
    )


@app.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """
    Health check endpoint.

    Reports database reachability.
    """
    health_status: dict[str, Any] = {
        "status": "healthy",
        "timestamp": isoformat_utc(utcnow()),
        "version": __version__,
        "services": {},
    }

    try:
        async with request.app.state.db_session() as session:
            await session.execute(text("SELECT 1"))
        health_status["services"]["database"] = {"status": "healthy"}
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        health_status["services"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    return health_status


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "name": "Caseflow Sync",
        "description": "Offline-first mobile synchronization for field verification",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions securely."""
    logger.exception(f"Unhandled exception: {exc}")

    # Never expose internal error details in production
    if settings.is_production:
        return error_response(500, "An unexpected error occurred. Please contact support.", "INTERNAL_ERROR")

    return error_response(500, str(exc), "INTERNAL_ERROR", {"type": type(exc).__name__})


# Import and include routers
from caseflow.api.routes import sync_router  # noqa: E402

app.include_router(sync_router, prefix="/api/v1/mobile/sync", tags=["mobile-sync"])
