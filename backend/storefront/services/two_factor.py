"""Two-factor enrollment and login state machine.

Credential states::

    disabled ──begin_enrollment──▶ pending_setup ──confirm_enrollment──▶ active
        ▲                                                                  │
        └──────────────────────────── disable_two_factor ◀────────────────┘

Each state-changing call ends with a single commit; nothing is committed
before the final write, and a failed commit surfaces as UpstreamFailure.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.models.audit import AuditLog
from storefront.models.mfa import TwoFactorCredential, TwoFactorState
from storefront.models.user import User
from storefront.services import backup_codes, totp, trusted_devices
from storefront.services.auth_errors import (
    AlreadyEnabled,
    InvalidCode,
    InvalidInput,
    NoPendingSetup,
    NotEnabled,
    SecretMissing,
    UpstreamFailure,
)
from storefront.services.encryption import TOTP_SECRET_AAD, decrypt_text, encrypt_text

logger = logging.getLogger(__name__)


class LoginState(str, enum.Enum):
    CHALLENGE_REQUIRED = "challenge_required"
    DEVICE_TRUSTED = "device_trusted"
    AUTHENTICATED = "authenticated"


class SecondFactorMethod(str, enum.Enum):
    TOTP = "totp"
    BACKUP_CODE = "backup_code"


@dataclass
class EnrollmentStart:
    secret: str
    provisioning_uri: str
    qr_code: str


@dataclass
class TwoFactorStatus:
    enabled: bool
    setup_in_progress: bool
    methods: list[str] = field(default_factory=list)
    enabled_at: Optional[datetime] = None
    backup_codes_remaining: int = 0


@dataclass
class LoginRequirement:
    requires_2fa: bool
    account_exists: bool
    device_remembered: bool


# ── Helpers ──────────────────────────────────────────────────


async def commit_or_raise(db: AsyncSession, action: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Commit failed during %s: %s", action, e)
        raise UpstreamFailure() from e


async def get_credential(user_id: int, db: AsyncSession) -> Optional[TwoFactorCredential]:
    result = await db.execute(
        select(TwoFactorCredential)
        .where(TwoFactorCredential.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def is_two_factor_active(user_id: int, db: AsyncSession) -> bool:
    result = await db.execute(
        select(TwoFactorCredential.state).where(TwoFactorCredential.user_id == user_id)
    )
    return result.scalar_one_or_none() == TwoFactorState.ACTIVE


def _verify(secret_token: str, code: str, window: int) -> bool:
    secret = decrypt_text(secret_token, TOTP_SECRET_AAD)
    return totp.verify_code(
        secret,
        code,
        window=window,
        interval=settings.totp_interval_seconds,
        digits=settings.totp_digits,
    )


def _setup_cutoff() -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=settings.two_factor_setup_ttl_minutes)


# ── Enrollment ───────────────────────────────────────────────


async def begin_enrollment(user: User, db: AsyncSession) -> EnrollmentStart:
    """Create a pending secret and return what the authenticator app needs.

    Restarting setup replaces any earlier pending secret.
    """
    credential = await get_credential(user.id, db)
    if credential is not None and credential.is_active:
        raise AlreadyEnabled()

    secret = totp.generate_secret()
    now = datetime.now(timezone.utc)
    if credential is None:
        credential = TwoFactorCredential(user_id=user.id)
        db.add(credential)
    credential.state = TwoFactorState.PENDING_SETUP
    credential.pending_secret = encrypt_text(secret, TOTP_SECRET_AAD)
    credential.setup_started_at = now

    db.add(AuditLog(
        user_id=user.id, action="2fa_setup_started",
        details=f"Authenticator setup started for {user.email}",
    ))
    await commit_or_raise(db, "begin_enrollment")

    uri = totp.provisioning_uri(secret, user.email)
    return EnrollmentStart(secret=secret, provisioning_uri=uri, qr_code=totp.qr_png_data_url(uri))


async def confirm_enrollment(user: User, code: str, db: AsyncSession) -> list[str]:
    """Activate the pending secret if ``code`` proves possession of it.

    Returns the new plaintext backup codes; they are never retrievable again.
    """
    credential = await get_credential(user.id, db)
    if credential is None or credential.state == TwoFactorState.DISABLED:
        raise NoPendingSetup()
    if credential.is_active:
        raise AlreadyEnabled()
    if not credential.pending_secret:
        raise NoPendingSetup()

    pending_token = credential.pending_secret
    if not _verify(pending_token, code, settings.totp_window_enrollment):
        raise InvalidCode()

    now = datetime.now(timezone.utc)
    # Compare-and-swap on the exact pending secret that was verified, so a
    # concurrent confirm or a restarted setup makes this a no-op.
    result = await db.execute(
        update(TwoFactorCredential)
        .where(
            TwoFactorCredential.user_id == user.id,
            TwoFactorCredential.state == TwoFactorState.PENDING_SETUP,
            TwoFactorCredential.pending_secret == pending_token,
            TwoFactorCredential.setup_started_at >= _setup_cutoff(),
        )
        .values(
            state=TwoFactorState.ACTIVE,
            secret=pending_token,
            pending_secret=None,
            setup_started_at=None,
            enabled_at=now,
            disabled_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise NoPendingSetup()

    codes = backup_codes.generate_backup_codes(settings.backup_code_count)
    await backup_codes.replace_backup_codes(user.id, codes, db)
    db.add(AuditLog(
        user_id=user.id, action="2fa_enabled",
        details=f"Two-factor authentication enabled for {user.email}",
    ))
    await commit_or_raise(db, "confirm_enrollment")
    logger.info("Two-factor authentication enabled for user %s", user.id)
    return codes


async def disable_two_factor(user: User, code: str, db: AsyncSession) -> None:
    """Turn 2FA off after a valid current code.

    Clears both secrets, every backup code and every trusted device, so a
    later re-enrollment starts with no device allowed to skip the challenge.
    """
    credential = await get_credential(user.id, db)
    if credential is None or not credential.is_active:
        raise NotEnabled()
    if not credential.secret:
        raise SecretMissing()
    if not _verify(credential.secret, code, settings.totp_window_disable):
        raise InvalidCode()

    credential.state = TwoFactorState.DISABLED
    credential.secret = None
    credential.pending_secret = None
    credential.setup_started_at = None
    credential.enabled_at = None
    credential.disabled_at = datetime.now(timezone.utc)
    await backup_codes.clear_backup_codes(user.id, db)
    forgotten = await trusted_devices.forget_all_devices(user.id, db)

    db.add(AuditLog(
        user_id=user.id, action="2fa_disabled",
        details=f"Two-factor authentication disabled for {user.email}",
        context={"devices_forgotten": forgotten},
    ))
    await commit_or_raise(db, "disable_two_factor")
    logger.info("Two-factor authentication disabled for user %s", user.id)


async def get_status(user: User, db: AsyncSession) -> TwoFactorStatus:
    credential = await get_credential(user.id, db)
    if credential is None:
        return TwoFactorStatus(enabled=False, setup_in_progress=False)
    enabled = credential.is_active
    return TwoFactorStatus(
        enabled=enabled,
        setup_in_progress=credential.state == TwoFactorState.PENDING_SETUP,
        methods=["authenticator"] if enabled else [],
        enabled_at=credential.enabled_at if enabled else None,
        backup_codes_remaining=await backup_codes.count_backup_codes(user.id, db) if enabled else 0,
    )


# ── Login ────────────────────────────────────────────────────


async def check_login_requirement(
    email: str, fingerprint: Optional[str], db: AsyncSession,
) -> LoginRequirement:
    """Pre-login probe: does this email need a second factor on this device?

    An unknown email and an account without 2FA return the same answer, so
    the probe cannot be used to enumerate accounts.
    """
    result = await db.execute(
        select(User.id, TwoFactorCredential.state)
        .outerjoin(TwoFactorCredential, TwoFactorCredential.user_id == User.id)
        .where(func.lower(User.email) == email.strip().lower())
    )
    row = result.first()
    if row is None or row.state != TwoFactorState.ACTIVE:
        return LoginRequirement(requires_2fa=False, account_exists=False, device_remembered=False)

    if await trusted_devices.is_trusted(row.id, fingerprint, db):
        return LoginRequirement(requires_2fa=False, account_exists=True, device_remembered=True)
    return LoginRequirement(requires_2fa=True, account_exists=True, device_remembered=False)


async def resolve_login_state(
    user_id: int, fingerprint: Optional[str], db: AsyncSession,
) -> LoginState:
    """Where a login stands once the password has been verified."""
    if not await is_two_factor_active(user_id, db):
        return LoginState.AUTHENTICATED
    if await trusted_devices.is_trusted(user_id, fingerprint, db):
        return LoginState.DEVICE_TRUSTED
    return LoginState.CHALLENGE_REQUIRED


async def verify_second_factor(
    user: User,
    db: AsyncSession,
    *,
    totp_code: Optional[str] = None,
    backup_code: Optional[str] = None,
    window: int,
) -> SecondFactorMethod:
    """Check a TOTP or backup code for an account with 2FA active.

    A matching backup code is deleted in the caller's transaction; the caller
    commits once everything else for the login has been written.
    """
    if not totp_code and not backup_code:
        raise InvalidInput("TOTP code or backup code is required")

    credential = await get_credential(user.id, db)
    if credential is None or not credential.is_active:
        raise NotEnabled()

    if backup_code:
        if not await backup_codes.consume_backup_code(user.id, backup_code, db):
            raise InvalidCode()
        db.add(AuditLog(
            user_id=user.id, action="backup_code_used",
            details=f"Backup code used by {user.email}",
        ))
        return SecondFactorMethod.BACKUP_CODE

    if not credential.secret:
        raise SecretMissing()
    if not _verify(credential.secret, totp_code, window):
        raise InvalidCode()
    return SecondFactorMethod.TOTP


# ── Maintenance ──────────────────────────────────────────────


async def expire_stale_setups(db: AsyncSession) -> int:
    """Reset setups left pending past the TTL back to disabled. Returns the count."""
    result = await db.execute(
        update(TwoFactorCredential)
        .where(
            TwoFactorCredential.state == TwoFactorState.PENDING_SETUP,
            TwoFactorCredential.setup_started_at < _setup_cutoff(),
        )
        .values(state=TwoFactorState.DISABLED, pending_secret=None, setup_started_at=None)
        .execution_options(synchronize_session=False)
    )
    await commit_or_raise(db, "expire_stale_setups")
    return result.rowcount
