"""Storefront account-security API - FastAPI Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from storefront.config import settings
from storefront.database import engine, Base
from storefront.middleware.error_capture import ErrorCaptureMiddleware
from storefront.services.rate_limit import close_auth_limiter
from storefront.api import auth, devices, two_factor
import storefront.models  # noqa: F401  registers every table on Base.metadata

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (dev only); in prod the schema is provisioned ahead of time."""
    if settings.environment == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Development schema ready")
    yield
    await engine.dispose()
    close_auth_limiter()


limiter = Limiter(key_func=get_remote_address, enabled=settings.request_throttle_enabled)

app = FastAPI(
    title="Storefront Account API",
    description="Accounts, sessions and two-factor authentication for the storefront",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ── Security headers middleware ──────────────────────────────────
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # auth responses carry tokens and backup codes
        if request.url.path.startswith("/api/auth"):
            response.headers["Cache-Control"] = "no-store"
        if settings.environment != "development":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response


# Error capture middleware (wraps the routers, sits inside CORS and headers)
app.add_middleware(ErrorCaptureMiddleware)

# Security headers
app.add_middleware(SecurityHeadersMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With"],
)

# Routers
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(two_factor.router, prefix="/api/auth/2fa", tags=["Two-Factor"])
app.include_router(devices.router, prefix="/api/auth/devices", tags=["Trusted Devices"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "storefront-api", "version": "0.1.0"}
