"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, EmailStr, Field, model_validator

TOTP_CODE_PATTERN = r"^\d{6}$"
BACKUP_CODE_PATTERN = r"^[0-9A-Fa-f]{8}$"


# ── Auth ──────────────────────────────────────────────

class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)


class UserLogin(BaseModel):
    email: EmailStr
    password: str
    fingerprint: Optional[str] = Field(None, max_length=255)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    login_state: str = "authenticated"


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    display_name: Optional[str] = None
    status: str = "active"
    last_login_at: Optional[datetime] = None
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class RefreshRequest(BaseModel):
    refresh_token: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str = Field(min_length=8)


# ── Devices ───────────────────────────────────────────

class DeviceInfo(BaseModel):
    """Client-supplied description of the device to remember."""
    fingerprint: str = Field(min_length=1, max_length=255)
    device_name: Optional[str] = Field(None, max_length=100)
    user_agent: Optional[str] = Field(None, max_length=500)


class TrustedDeviceResponse(BaseModel):
    id: str
    name: str
    fingerprint: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_used_at: datetime

    model_config = {"from_attributes": True}


class DeviceListResponse(BaseModel):
    devices: list[TrustedDeviceResponse]


class DeviceCheckRequest(BaseModel):
    fingerprint: str = Field(min_length=1, max_length=255)


class DeviceCheckResponse(BaseModel):
    is_remembered: bool
    requires_2fa: bool


# ── Two-factor ────────────────────────────────────────

class TwoFactorSetupResponse(BaseModel):
    secret: str
    otp_url: str
    qr_code: str


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(pattern=TOTP_CODE_PATTERN)


class TwoFactorEnableResponse(BaseModel):
    enabled: bool = True
    backup_codes: list[str]


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    setup_in_progress: bool
    methods: list[str]
    enabled_at: Optional[datetime] = None
    backup_codes_remaining: int = 0


class SecondFactorFields(BaseModel):
    """Exactly one of totp_code / backup_code, plus optional device remembering."""
    totp_code: Optional[str] = Field(None, pattern=TOTP_CODE_PATTERN)
    backup_code: Optional[str] = Field(None, pattern=BACKUP_CODE_PATTERN)
    remember_device: bool = False
    device_info: Optional[DeviceInfo] = None

    @model_validator(mode="after")
    def _one_code_only(self):
        if self.totp_code and self.backup_code:
            raise ValueError("Provide either totp_code or backup_code, not both")
        return self


class StepUpVerifyRequest(SecondFactorFields):
    @model_validator(mode="after")
    def _code_required(self):
        if not self.totp_code and not self.backup_code:
            raise ValueError("TOTP code or backup code is required")
        return self


class StepUpVerifyResponse(BaseModel):
    verified: bool = True
    method: str
    device: Optional[TrustedDeviceResponse] = None


class LoginWithTwoFactorRequest(SecondFactorFields):
    email: EmailStr
    password: str
    fingerprint: Optional[str] = Field(None, max_length=255)

    @property
    def effective_fingerprint(self) -> Optional[str]:
        if self.fingerprint:
            return self.fingerprint
        return self.device_info.fingerprint if self.device_info else None


class CheckTwoFactorRequest(BaseModel):
    email: EmailStr
    fingerprint: Optional[str] = Field(None, max_length=255)


class CheckTwoFactorResponse(BaseModel):
    requires_2fa: bool
    account_exists: bool
    device_remembered: bool
