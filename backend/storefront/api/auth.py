"""Authentication endpoints: register, login, device-aware 2FA login, refresh, me."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from jose import JWTError
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.models.user import User, UserStatus
from storefront.models.session import UserSession, LoginAttempt
from storefront.models.audit import AuditLog
from storefront.schemas import (
    UserCreate, UserLogin, TokenResponse, UserResponse, RefreshRequest,
    ChangePasswordRequest, LoginWithTwoFactorRequest,
    CheckTwoFactorRequest, CheckTwoFactorResponse,
)
from storefront.auth_utils import (
    hash_password,
    verify_password,
    validate_password_strength,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_user,
    generate_jti,
    as_utc,
    client_ip,
    user_agent,
    MAX_FAILED_ATTEMPTS,
    LOCKOUT_MINUTES,
)
from storefront.config import settings
from storefront.services import trusted_devices, two_factor
from storefront.services.auth_errors import (
    AuthError,
    Forbidden,
    InvalidCredentials,
    InvalidInput,
    NotEnabled,
    to_http_exception,
)
from storefront.services.rate_limit import (
    SlidingWindowLimiter,
    check_rate_limit,
    get_auth_limiter,
    rate_limit_identifier,
)
from storefront.services.two_factor import LoginState
from storefront.services.error_logger import log_error
import logging

logger = logging.getLogger(__name__)
router = APIRouter()
limiter = Limiter(key_func=get_remote_address, enabled=settings.request_throttle_enabled)


async def _record_login_attempt(
    db: AsyncSession,
    *,
    email: str,
    user_id: int | None,
    ip: str,
    ua: str,
    success: bool,
    failure_reason: str | None = None,
) -> None:
    attempt = LoginAttempt(
        email=email,
        user_id=user_id,
        ip_address=ip,
        user_agent=ua,
        success=success,
        failure_reason=failure_reason,
    )
    db.add(attempt)


async def _create_session(
    db: AsyncSession,
    user: User,
    jti: str,
    request: Request,
    expires_delta: timedelta | None = None,
    refresh_jti: str | None = None,
    auth_method: str = "password",
) -> UserSession:
    """Create a tracked session for the user."""
    expires = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    session = UserSession(
        user_id=user.id,
        token_jti=jti,
        refresh_token_jti=refresh_jti,
        auth_method=auth_method,
        device_info=user_agent(request)[:255],
        ip_address=client_ip(request),
        expires_at=expires,
    )
    db.add(session)
    return session


async def _issue_tokens(
    db: AsyncSession,
    user: User,
    request: Request,
    *,
    auth_method: str,
    login_state: LoginState = LoginState.AUTHENTICATED,
) -> TokenResponse:
    """Mint an access/refresh pair bound to a new session row."""
    jti = generate_jti()
    refresh_jti = generate_jti()
    access_token = create_access_token({"sub": str(user.id), "email": user.email}, jti=jti)
    refresh_token = create_refresh_token({"sub": str(user.id)}, jti=refresh_jti)
    await _create_session(db, user, jti, request, refresh_jti=refresh_jti, auth_method=auth_method)
    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        login_state=login_state.value,
    )


async def _authenticate_password(
    db: AsyncSession, email: str, password: str, *, ip: str, ua: str,
) -> User:
    """First factor. Failed attempts are committed before the error is raised."""
    result = await db.execute(select(User).where(func.lower(User.email) == email))
    user = result.scalar_one_or_none()

    if not user:
        await _record_login_attempt(
            db, email=email, user_id=None, ip=ip, ua=ua,
            success=False, failure_reason="user_not_found",
        )
        await db.commit()
        raise InvalidCredentials()

    # Account lockout check
    locked_until = as_utc(user.locked_until)
    now = datetime.now(timezone.utc)
    if locked_until and locked_until > now:
        remaining = int((locked_until - now).total_seconds() / 60) + 1
        await _record_login_attempt(
            db, email=email, user_id=user.id, ip=ip, ua=ua,
            success=False, failure_reason="account_locked",
        )
        await db.commit()
        raise Forbidden(f"Account locked. Try again in {remaining} minutes.")

    if user.status in (UserStatus.DEACTIVATED.value, UserStatus.SUSPENDED.value):
        await _record_login_attempt(
            db, email=email, user_id=user.id, ip=ip, ua=ua,
            success=False, failure_reason=user.status,
        )
        await db.commit()
        raise Forbidden(f"Account is {user.status}")

    if not verify_password(password, user.hashed_password):
        user.failed_login_attempts += 1
        locked = user.failed_login_attempts >= MAX_FAILED_ATTEMPTS
        if locked:
            user.locked_until = now + timedelta(minutes=LOCKOUT_MINUTES)
            user.status = UserStatus.LOCKED.value
        await _record_login_attempt(
            db, email=email, user_id=user.id, ip=ip, ua=ua,
            success=False, failure_reason="bad_password",
        )
        db.add(AuditLog(
            user_id=user.id, ip_address=ip,
            action="login_failed_locked" if locked else "login_failed",
            details=f"Failed login for {email} (attempt {user.failed_login_attempts})"
            + (f", account locked for {LOCKOUT_MINUTES}m" if locked else ""),
        ))
        await db.commit()
        raise InvalidCredentials()

    # Successful first factor, reset counters
    user.failed_login_attempts = 0
    user.locked_until = None
    if user.status == UserStatus.LOCKED.value:
        user.status = UserStatus.ACTIVE.value
    return user


# ── Register ─────────────────────────────────────────────────


@router.post("/register", response_model=TokenResponse, status_code=201)
@limiter.limit("10/minute")
async def register(
    data: UserCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    try:
        pwd_error = validate_password_strength(data.password)
        if pwd_error:
            raise InvalidInput(pwd_error)

        email = data.email.lower()
        result = await db.execute(select(User).where(func.lower(User.email) == email))
        if result.scalar_one_or_none():
            raise InvalidInput(
                "Registration could not be completed. If you already have an account, please log in."
            )

        user = User(
            email=email,
            hashed_password=hash_password(data.password),
            first_name=data.first_name,
            last_name=data.last_name,
            last_login_at=datetime.now(timezone.utc),
        )
        db.add(user)
        await db.flush()

        ip = client_ip(request)
        resp = await _issue_tokens(db, user, request, auth_method="password")
        await _record_login_attempt(
            db, email=email, user_id=user.id, ip=ip, ua=user_agent(request), success=True,
        )
        db.add(AuditLog(
            user_id=user.id, action="register", ip_address=ip,
            details=f"New account registered: {email}",
        ))
        await two_factor.commit_or_raise(db, "register")
        return resp
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.auth", function_name="register")
        raise


# ── Login ────────────────────────────────────────────────────


@router.post("/login", response_model=TokenResponse)
@limiter.limit("600/minute")
async def login(
    data: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Password login.

    With 2FA active and an unrecognised device no session is issued; the
    client is told to call ``/login-with-2fa`` instead.
    """
    try:
        ip = client_ip(request)
        ua = user_agent(request)
        email = data.email.lower()

        user = await _authenticate_password(db, email, data.password, ip=ip, ua=ua)
        state = await two_factor.resolve_login_state(user.id, data.fingerprint, db)

        if state == LoginState.CHALLENGE_REQUIRED:
            await _record_login_attempt(
                db, email=email, user_id=user.id, ip=ip, ua=ua,
                success=True, failure_reason="mfa_pending",
            )
            await two_factor.commit_or_raise(db, "login_challenge")
            return TokenResponse(
                access_token="",
                refresh_token="",
                token_type="mfa_required",
                login_state=state.value,
            )

        auth_method = "password"
        if state == LoginState.DEVICE_TRUSTED:
            await trusted_devices.touch_device(user.id, data.fingerprint, db)
            auth_method = "trusted_device"

        user.last_login_at = datetime.now(timezone.utc)
        resp = await _issue_tokens(db, user, request, auth_method=auth_method, login_state=state)
        await _record_login_attempt(db, email=email, user_id=user.id, ip=ip, ua=ua, success=True)
        db.add(AuditLog(
            user_id=user.id, action="login", ip_address=ip,
            details=f"Login successful: {user.email}",
            context={"auth_method": auth_method},
        ))
        await two_factor.commit_or_raise(db, "login")
        return resp
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.auth", function_name="login")
        raise


@router.post("/check-2fa-required", response_model=CheckTwoFactorResponse)
@limiter.limit("30/minute")
async def check_two_factor_required(
    data: CheckTwoFactorRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Pre-login probe. Unknown emails get the same answer as accounts without 2FA."""
    try:
        requirement = await two_factor.check_login_requirement(data.email, data.fingerprint, db)
        return CheckTwoFactorResponse(
            requires_2fa=requirement.requires_2fa,
            account_exists=requirement.account_exists,
            device_remembered=requirement.device_remembered,
        )
    except Exception as e:
        await log_error(e, db=db, module="api.auth", function_name="check_two_factor_required")
        raise


@router.post("/login-with-2fa", response_model=TokenResponse)
@limiter.limit("30/minute")
async def login_with_two_factor(
    data: LoginWithTwoFactorRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth_limiter: Optional[SlidingWindowLimiter] = Depends(get_auth_limiter),
):
    """Password plus TOTP or backup code, skipping the code on a trusted device."""
    try:
        ip = client_ip(request)
        ua = user_agent(request)
        email = data.email.lower()

        # per target account first, then per caller address
        await check_rate_limit(auth_limiter, rate_limit_identifier(email=email))
        await check_rate_limit(auth_limiter, rate_limit_identifier(ip=ip))

        user = await _authenticate_password(db, email, data.password, ip=ip, ua=ua)
        state = await two_factor.resolve_login_state(user.id, data.effective_fingerprint, db)
        if state == LoginState.AUTHENTICATED:
            await db.commit()
            raise NotEnabled()

        has_code = bool(data.totp_code or data.backup_code)
        if state == LoginState.DEVICE_TRUSTED and not has_code:
            await trusted_devices.touch_device(user.id, data.effective_fingerprint, db)
            auth_method = "trusted_device"
        else:
            try:
                method = await two_factor.verify_second_factor(
                    user, db,
                    totp_code=data.totp_code,
                    backup_code=data.backup_code,
                    window=settings.totp_window_login,
                )
            except AuthError as e:
                await _record_login_attempt(
                    db, email=email, user_id=user.id, ip=ip, ua=ua,
                    success=False, failure_reason=e.code,
                )
                await db.commit()
                raise
            auth_method = method.value
            state = LoginState.AUTHENTICATED

        if data.remember_device and data.device_info:
            device = await trusted_devices.remember_device(
                user.id,
                data.device_info.fingerprint,
                db,
                name=data.device_info.device_name,
                user_agent=data.device_info.user_agent or ua,
                ip_address=ip,
            )
            db.add(AuditLog(
                user_id=user.id, action="device_remembered", ip_address=ip,
                details=f"Device '{device.name}' remembered for {user.email}",
                context={"device_id": device.id},
            ))

        user.last_login_at = datetime.now(timezone.utc)
        resp = await _issue_tokens(db, user, request, auth_method=auth_method, login_state=state)
        await _record_login_attempt(db, email=email, user_id=user.id, ip=ip, ua=ua, success=True)
        db.add(AuditLog(
            user_id=user.id, action="login", ip_address=ip,
            details=f"Login successful: {user.email}",
            context={"auth_method": auth_method},
        ))
        await two_factor.commit_or_raise(db, "login_with_two_factor")
        return resp
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.auth", function_name="login_with_two_factor")
        raise


# ── Refresh ──────────────────────────────────────────────────


@router.post("/refresh", response_model=TokenResponse)
@limiter.limit("600/minute")
async def refresh_token(
    data: RefreshRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Exchange a refresh token for a new access + refresh token pair.

    Implements refresh token rotation: the old refresh token is invalidated
    and a new one is issued. If a revoked token is reused, all sessions for
    that user are revoked (stolen token detection).
    """
    try:
        payload = decode_token(data.refresh_token)
        if payload.get("type") != "refresh":
            raise HTTPException(status_code=401, detail={"code": "unauthenticated", "message": "Invalid refresh token"})

        user_id = int(payload["sub"])
        old_refresh_jti = payload.get("jti")

        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user or not user.is_active:
            raise HTTPException(status_code=401, detail={"code": "unauthenticated", "message": "User not found or inactive"})

        sess_result = await db.execute(
            select(UserSession).where(
                UserSession.refresh_token_jti == old_refresh_jti,
                UserSession.is_active.is_(True),
            )
        )
        old_session = sess_result.scalar_one_or_none()
        if old_session is None:
            # Possible token reuse, revoke every session for this user
            logger.warning("Refresh token reuse detected for user %s, revoking all sessions", user_id)
            await db.execute(
                update(UserSession).where(
                    UserSession.user_id == user_id,
                    UserSession.is_active.is_(True),
                ).values(is_active=False)
            )
            await db.commit()
            raise HTTPException(status_code=401, detail={"code": "unauthenticated", "message": "Refresh token has been revoked"})
        old_session.is_active = False

        # The new session inherits how the original one was established
        resp = await _issue_tokens(db, user, request, auth_method=old_session.auth_method)
        await two_factor.commit_or_raise(db, "refresh_token")
        return resp
    except (JWTError, ValueError, TypeError, KeyError):
        raise HTTPException(status_code=401, detail={"code": "unauthenticated", "message": "Invalid refresh token"})
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.auth", function_name="refresh_token")
        raise


# ── Logout ───────────────────────────────────────────────────


@router.post("/logout")
async def logout(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Revoke all active sessions for current user."""
    await db.execute(
        update(UserSession).where(
            UserSession.user_id == current_user.id,
            UserSession.is_active.is_(True),
        ).values(is_active=False)
    )
    db.add(AuditLog(
        user_id=current_user.id, action="logout",
        details=f"User {current_user.email} logged out",
    ))
    await two_factor.commit_or_raise(db, "logout")
    return {"status": "ok", "message": "Logged out"}


# ── Me ───────────────────────────────────────────────────────


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    return current_user


# ── Sessions ─────────────────────────────────────────────────


@router.get("/sessions")
async def list_sessions(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List active sessions for the current user."""
    result = await db.execute(
        select(UserSession).where(
            UserSession.user_id == current_user.id,
            UserSession.is_active.is_(True),
        ).order_by(UserSession.last_activity_at.desc())
    )
    sessions = result.scalars().all()
    return [
        {
            "id": s.id,
            "auth_method": s.auth_method,
            "device_info": s.device_info,
            "ip_address": s.ip_address,
            "created_at": s.created_at.isoformat() if s.created_at else None,
            "last_activity_at": s.last_activity_at.isoformat() if s.last_activity_at else None,
        }
        for s in sessions
    ]


@router.delete("/sessions/{session_id}")
async def revoke_session(
    session_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Revoke a specific session."""
    result = await db.execute(
        select(UserSession).where(
            UserSession.id == session_id,
            UserSession.user_id == current_user.id,
        )
    )
    session = result.scalar_one_or_none()
    if not session:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Session not found"})
    session.is_active = False
    await two_factor.commit_or_raise(db, "revoke_session")
    return {"status": "ok", "message": "Session revoked"}


# ── Change Password ──────────────────────────────────────────


@router.post("/change-password")
async def change_password(
    data: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Change the current user's password and revoke every session."""
    try:
        pwd_error = validate_password_strength(data.new_password)
        if pwd_error:
            raise InvalidInput(pwd_error)

        if not verify_password(data.old_password, current_user.hashed_password):
            raise InvalidCredentials("Current password is incorrect")

        current_user.hashed_password = hash_password(data.new_password)
        current_user.password_changed_at = datetime.now(timezone.utc)

        await db.execute(
            update(UserSession).where(
                UserSession.user_id == current_user.id,
                UserSession.is_active.is_(True),
            ).values(is_active=False)
        )
        db.add(AuditLog(
            user_id=current_user.id, action="password_changed",
            details=f"Password changed by {current_user.email}",
        ))
        await two_factor.commit_or_raise(db, "change_password")
        return {"status": "ok", "message": "Password changed. All sessions revoked."}
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.auth", function_name="change_password")
        raise
