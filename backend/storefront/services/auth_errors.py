"""Error taxonomy for authentication and two-factor operations.

Each error carries the HTTP status the API answers with and a stable
machine-readable ``code``. Routers translate them with ``to_http_exception``.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import HTTPException


class AuthError(Exception):
    """Base exception for authentication errors."""

    status_code = 400
    code = "auth_error"
    default_message = "Authentication error"

    def __init__(self, message: Optional[str] = None, **extra: Any) -> None:
        super().__init__(message or self.default_message)
        self.extra = extra

    def to_detail(self) -> dict:
        return {"code": self.code, "message": str(self), **self.extra}

    def headers(self) -> dict[str, str] | None:
        return None


class Unauthenticated(AuthError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Not authenticated"


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "Not permitted"


class InvalidInput(AuthError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class InvalidCredentials(AuthError):
    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid email or password"


class InvalidCode(AuthError):
    status_code = 400
    code = "invalid_code"
    default_message = "Invalid verification code"


class AlreadyEnabled(AuthError):
    status_code = 409
    code = "already_enabled"
    default_message = "Two-factor authentication is already enabled"


class NotEnabled(AuthError):
    status_code = 400
    code = "not_enabled"
    default_message = "Two-factor authentication is not enabled for this account"


class NoPendingSetup(AuthError):
    status_code = 400
    code = "no_pending_setup"
    default_message = "No two-factor setup in progress. Start setup again."


class SecretMissing(AuthError):
    status_code = 400
    code = "secret_missing"
    default_message = "Authenticator secret is not configured"


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many attempts. Please try again later."

    def __init__(self, *, limit: int, remaining: int, reset: int, retry_after: int) -> None:
        super().__init__(
            None, limit=limit, remaining=remaining, reset=reset, retry_after=retry_after,
        )
        self.retry_after = retry_after

    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.extra["limit"]),
            "X-RateLimit-Remaining": str(self.extra["remaining"]),
            "X-RateLimit-Reset": str(self.extra["reset"]),
        }


class UpstreamFailure(AuthError):
    status_code = 503
    code = "upstream_failure"
    default_message = "A backing service is unavailable. Please retry."


def to_http_exception(exc: AuthError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code, detail=exc.to_detail(), headers=exc.headers(),
    )
