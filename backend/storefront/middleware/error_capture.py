"""FastAPI middleware that captures unhandled exceptions and logs them to the DB.

5xx responses are recorded as errors, other 4xx responses as warnings. Auth
outcomes (401/403/429 anywhere, 400 under /api/auth such as a wrong
verification code) are expected noise and already land in login_attempts
or audit_log, so they are skipped.

Request bodies are never stored: every route here carries passwords, codes
or secrets.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from storefront.models.error_log import ErrorSeverity
from storefront.services.error_logger import log_error_standalone

logger = logging.getLogger("storefront.middleware")

_QUIET_STATUSES = {401, 403, 429}
_QUIET_AUTH_STATUSES = {400}
_AUTH_PREFIX = "/api/auth"


def _is_quiet(request: Request, status_code: int) -> bool:
    if status_code in _QUIET_STATUSES:
        return True
    return status_code in _QUIET_AUTH_STATUSES and request.url.path.startswith(_AUTH_PREFIX)


def _user_id_from_request(request: Request) -> Optional[int]:
    from jose import JWTError
    from storefront.auth_utils import decode_token

    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    try:
        payload = decode_token(auth_header[7:])
        return int(payload.get("sub", 0)) or None
    except (JWTError, ValueError, TypeError):
        return None


class ErrorCaptureMiddleware(BaseHTTPMiddleware):
    """Catches unhandled exceptions, returns 500, and persists the error."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.time()
        ip_address = request.client.host if request.client else None

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = round((time.time() - start) * 1000, 2)
            severity = ErrorSeverity.CRITICAL if "database" in str(exc).lower() else ErrorSeverity.ERROR
            await log_error_standalone(
                exc,
                severity=severity,
                module="middleware.error_capture",
                request_method=request.method,
                request_path=str(request.url.path),
                status_code=500,
                response_time_ms=elapsed_ms,
                user_id=_user_id_from_request(request),
                ip_address=ip_address,
            )
            logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=500,
                content={"detail": {"code": "internal_error", "message": "Internal Server Error"}},
            )

        if response.status_code >= 400 and not _is_quiet(request, response.status_code):
            elapsed_ms = round((time.time() - start) * 1000, 2)
            await log_error_standalone(
                Exception(f"HTTP {response.status_code} on {request.method} {request.url.path}"),
                severity=ErrorSeverity.ERROR if response.status_code >= 500 else ErrorSeverity.WARNING,
                module="middleware.error_capture",
                function_name="dispatch",
                request_method=request.method,
                request_path=str(request.url.path),
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
                user_id=_user_id_from_request(request),
                ip_address=ip_address,
            )
        return response
