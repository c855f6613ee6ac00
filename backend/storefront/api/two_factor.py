"""Two-factor endpoints: authenticator setup, enable, disable, status, step-up verify."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.auth_utils import client_ip, get_current_user, user_agent
from storefront.config import settings
from storefront.database import get_db
from storefront.models.audit import AuditLog
from storefront.models.user import User
from storefront.schemas import (
    TrustedDeviceResponse,
    TwoFactorCodeRequest,
    TwoFactorEnableResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    StepUpVerifyRequest,
    StepUpVerifyResponse,
)
from storefront.services import trusted_devices, two_factor
from storefront.services.auth_errors import AuthError, to_http_exception
from storefront.services.error_logger import log_error
from storefront.services.rate_limit import (
    SlidingWindowLimiter,
    check_rate_limit,
    get_auth_limiter,
    rate_limit_identifier,
)

logger = logging.getLogger(__name__)
router = APIRouter()
limiter = Limiter(key_func=get_remote_address, enabled=settings.request_throttle_enabled)


@router.post("/setup", response_model=TwoFactorSetupResponse)
async def setup_two_factor(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Start authenticator enrollment; restarting replaces the pending secret."""
    try:
        started = await two_factor.begin_enrollment(current_user, db)
        return TwoFactorSetupResponse(
            secret=started.secret,
            otp_url=started.provisioning_uri,
            qr_code=started.qr_code,
        )
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.two_factor", function_name="setup_two_factor")
        raise


@router.post("/enable", response_model=TwoFactorEnableResponse)
@limiter.limit("10/minute")
async def enable_two_factor(
    data: TwoFactorCodeRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Confirm the pending secret with a code. Backup codes are shown only here."""
    try:
        codes = await two_factor.confirm_enrollment(current_user, data.code, db)
        return TwoFactorEnableResponse(backup_codes=codes)
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.two_factor", function_name="enable_two_factor")
        raise


@router.post("/disable")
@limiter.limit("10/minute")
async def disable_two_factor(
    data: TwoFactorCodeRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await two_factor.disable_two_factor(current_user, data.code, db)
        return {"status": "ok", "message": "Two-factor authentication disabled"}
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.two_factor", function_name="disable_two_factor")
        raise


@router.get("/status", response_model=TwoFactorStatusResponse)
async def two_factor_status(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    status = await two_factor.get_status(current_user, db)
    return TwoFactorStatusResponse(
        enabled=status.enabled,
        setup_in_progress=status.setup_in_progress,
        methods=status.methods,
        enabled_at=status.enabled_at,
        backup_codes_remaining=status.backup_codes_remaining,
    )


@router.post("/verify", response_model=StepUpVerifyResponse)
@limiter.limit("30/minute")
async def step_up_verify(
    data: StepUpVerifyRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth_limiter: Optional[SlidingWindowLimiter] = Depends(get_auth_limiter),
):
    """Re-check a second factor inside an existing session.

    Optionally remembers the current device so later logins skip the challenge.
    """
    try:
        await check_rate_limit(auth_limiter, rate_limit_identifier(user_id=current_user.id))

        method = await two_factor.verify_second_factor(
            current_user, db,
            totp_code=data.totp_code,
            backup_code=data.backup_code,
            window=settings.totp_window_step_up,
        )

        device = None
        ip = client_ip(request)
        if data.remember_device and data.device_info:
            device = await trusted_devices.remember_device(
                current_user.id,
                data.device_info.fingerprint,
                db,
                name=data.device_info.device_name,
                user_agent=data.device_info.user_agent or user_agent(request),
                ip_address=ip,
            )
            db.add(AuditLog(
                user_id=current_user.id, action="device_remembered", ip_address=ip,
                details=f"Device '{device.name}' remembered for {current_user.email}",
                context={"device_id": device.id},
            ))

        db.add(AuditLog(
            user_id=current_user.id, action="2fa_verified", ip_address=ip,
            details=f"Step-up verification passed for {current_user.email}",
            context={"method": method.value},
        ))
        await two_factor.commit_or_raise(db, "step_up_verify")
        return StepUpVerifyResponse(
            method=method.value,
            device=TrustedDeviceResponse.model_validate(device) if device else None,
        )
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.two_factor", function_name="step_up_verify")
        raise
