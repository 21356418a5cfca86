import logging
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from twofactor.api.rate_limit import router as rate_limit_router
from twofactor.api.two_factor import router as two_factor_router
from twofactor.core.config import APP_VERSION, INSECURE_SECRET_DEFAULTS, settings
from twofactor.core.errors import (
    two_factor_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from twofactor.core.exceptions import TwoFactorError
from twofactor.core.logging import setup_logging
from twofactor.core.redis import close_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    setup_logging()

    # Reject insecure secret defaults in production
    if not settings.DEBUG and settings.JWT_SECRET_KEY.lower() in INSECURE_SECRET_DEFAULTS:
        raise RuntimeError(
            "CRITICAL SECURITY CONFIGURATION ERROR: JWT_SECRET_KEY is using an insecure default. "
            "Set JWT_SECRET_KEY=$(openssl rand -base64 32)"
        )

    if settings.ALLOW_REPROVISION_WHEN_ENABLED:
        logger.info("2FA setup may overwrite an enabled credential (ALLOW_REPROVISION_WHEN_ENABLED=true)")

    yield

    logger.info("Closing Redis connection")
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

app.add_exception_handler(TwoFactorError, two_factor_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add unique request ID for tracking and debugging."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.clear_contextvars()

    response.headers["X-Request-ID"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add OWASP-recommended security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    # Setup responses carry the shared secret and plaintext backup codes
    response.headers["Cache-Control"] = "no-store"
    return response


app.include_router(two_factor_router, prefix="/api")
app.include_router(rate_limit_router, prefix="/api")


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": APP_VERSION}
