"""Trusted device management for the signed-in user."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.auth_utils import client_ip, get_current_user, user_agent
from storefront.database import get_db
from storefront.models.audit import AuditLog
from storefront.models.user import User
from storefront.schemas import (
    DeviceCheckRequest,
    DeviceCheckResponse,
    DeviceInfo,
    DeviceListResponse,
    TrustedDeviceResponse,
)
from storefront.services import trusted_devices, two_factor
from storefront.services.auth_errors import AuthError, NotEnabled, to_http_exception
from storefront.services.error_logger import log_error

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=DeviceListResponse)
async def list_devices(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Remembered devices, most recently used first."""
    devices = await trusted_devices.list_devices(current_user.id, db)
    return DeviceListResponse(
        devices=[TrustedDeviceResponse.model_validate(d) for d in devices],
    )


@router.delete("/{device_id}")
async def forget_device(
    device_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        removed = await trusted_devices.forget_device(current_user.id, device_id, db)
        if removed:
            db.add(AuditLog(
                user_id=current_user.id, action="device_forgotten",
                details=f"Trusted device removed by {current_user.email}",
                context={"device_id": device_id},
            ))
        await two_factor.commit_or_raise(db, "forget_device")
        return {"status": "ok", "message": "Device removed"}
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.devices", function_name="forget_device")
        raise


@router.post("/check", response_model=DeviceCheckResponse)
async def check_device(
    data: DeviceCheckRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    active = await two_factor.is_two_factor_active(current_user.id, db)
    remembered = await trusted_devices.is_trusted(current_user.id, data.fingerprint, db)
    return DeviceCheckResponse(
        is_remembered=remembered,
        requires_2fa=active and not remembered,
    )


@router.post("/remember", response_model=TrustedDeviceResponse)
async def remember_device(
    data: DeviceInfo,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Remember the caller's device. Only meaningful once 2FA is on."""
    try:
        if not await two_factor.is_two_factor_active(current_user.id, db):
            raise NotEnabled()

        ip = client_ip(request)
        device = await trusted_devices.remember_device(
            current_user.id,
            data.fingerprint,
            db,
            name=data.device_name,
            user_agent=data.user_agent or user_agent(request),
            ip_address=ip,
        )
        db.add(AuditLog(
            user_id=current_user.id, action="device_remembered", ip_address=ip,
            details=f"Device '{device.name}' remembered for {current_user.email}",
            context={"device_id": device.id},
        ))
        await two_factor.commit_or_raise(db, "remember_device")
        return TrustedDeviceResponse.model_validate(device)
    except AuthError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.devices", function_name="remember_device")
        raise
