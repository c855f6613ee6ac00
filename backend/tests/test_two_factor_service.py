"""Tests for the two-factor enrollment and login state machine."""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from storefront.database import async_session
from storefront.models.audit import AuditLog
from storefront.models.mfa import TwoFactorCredential, TwoFactorState
from storefront.services import backup_codes, trusted_devices
from storefront.services.auth_errors import (
    AlreadyEnabled,
    InvalidCode,
    InvalidInput,
    NoPendingSetup,
    NotEnabled,
    SecretMissing,
)
from storefront.services.encryption import TOTP_SECRET_AAD, decrypt_text
from storefront.services.totp import derive_code
from storefront.services.two_factor import (
    LoginState,
    SecondFactorMethod,
    begin_enrollment,
    check_login_requirement,
    confirm_enrollment,
    disable_two_factor,
    expire_stale_setups,
    get_credential,
    get_status,
    resolve_login_state,
    verify_second_factor,
)


def _now_code(secret: str) -> str:
    return derive_code(secret, time.time())


def _wrong_code(secret: str) -> str:
    now = time.time()
    valid = {derive_code(secret, now + d) for d in (-60, -30, 0, 30, 60)}
    return next(c for c in ("000000", "111111", "222222", "333333", "444444", "555555", "666666") if c not in valid)


async def _enable(user, db) -> tuple[str, list[str]]:
    started = await begin_enrollment(user, db)
    codes = await confirm_enrollment(user, _now_code(started.secret), db)
    return started.secret, codes


# ── Enrollment ─────────────────────────────────────────────────────

class TestEnrollment:

    @pytest.mark.asyncio
    async def test_begin_creates_encrypted_pending_secret(self, db, make_user):
        user = await make_user()
        started = await begin_enrollment(user, db)

        credential = await get_credential(user.id, db)
        assert credential.state == TwoFactorState.PENDING_SETUP
        assert credential.secret is None
        assert credential.pending_secret != started.secret
        assert decrypt_text(credential.pending_secret, TOTP_SECRET_AAD) == started.secret
        assert started.provisioning_uri.startswith("otpauth://totp/")
        assert started.qr_code.startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_confirm_activates_and_returns_ten_codes(self, db, make_user):
        user = await make_user()
        secret, codes = await _enable(user, db)

        assert len(codes) == 10
        status = await get_status(user, db)
        assert status.enabled is True
        assert status.setup_in_progress is False
        assert status.methods == ["authenticator"]
        assert status.backup_codes_remaining == 10
        credential = await get_credential(user.id, db)
        assert decrypt_text(credential.secret, TOTP_SECRET_AAD) == secret
        assert credential.pending_secret is None

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_setup_pending(self, db, make_user):
        user = await make_user()
        started = await begin_enrollment(user, db)
        with pytest.raises(InvalidCode):
            await confirm_enrollment(user, _wrong_code(started.secret), db)
        status = await get_status(user, db)
        assert status.enabled is False
        assert status.setup_in_progress is True

    @pytest.mark.asyncio
    async def test_confirm_without_setup(self, db, make_user):
        user = await make_user()
        with pytest.raises(NoPendingSetup):
            await confirm_enrollment(user, "123456", db)

    @pytest.mark.asyncio
    async def test_confirm_succeeds_only_once(self, db, make_user):
        user = await make_user()
        started = await begin_enrollment(user, db)
        code = _now_code(started.secret)
        await confirm_enrollment(user, code, db)
        with pytest.raises(AlreadyEnabled):
            await confirm_enrollment(user, code, db)

    @pytest.mark.asyncio
    async def test_concurrent_confirms_activate_once(self, db, make_user):
        user = await make_user()
        started = await begin_enrollment(user, db)
        code = _now_code(started.secret)

        async def attempt():
            async with async_session() as session:
                try:
                    return await confirm_enrollment(user, code, session)
                except (AlreadyEnabled, NoPendingSetup) as e:
                    return e

        results = await asyncio.gather(attempt(), attempt())
        winners = [r for r in results if isinstance(r, list)]
        assert len(winners) == 1
        assert await backup_codes.count_backup_codes(user.id, db) == 10

    @pytest.mark.asyncio
    async def test_restarting_setup_replaces_pending_secret(self, db, make_user):
        user = await make_user()
        first = await begin_enrollment(user, db)
        second = await begin_enrollment(user, db)
        assert first.secret != second.secret

        stale = _now_code(first.secret)
        if stale not in {derive_code(second.secret, time.time() + d) for d in (-30, 0, 30)}:
            with pytest.raises(InvalidCode):
                await confirm_enrollment(user, stale, db)
        await confirm_enrollment(user, _now_code(second.secret), db)

    @pytest.mark.asyncio
    async def test_expired_setup_cannot_be_confirmed(self, db, make_user):
        user = await make_user()
        started = await begin_enrollment(user, db)
        await db.execute(
            update(TwoFactorCredential)
            .where(TwoFactorCredential.user_id == user.id)
            .values(setup_started_at=datetime.now(timezone.utc) - timedelta(minutes=16))
        )
        await db.commit()
        with pytest.raises(NoPendingSetup):
            await confirm_enrollment(user, _now_code(started.secret), db)

    @pytest.mark.asyncio
    async def test_begin_when_active_rejected(self, db, make_user):
        user = await make_user()
        await _enable(user, db)
        with pytest.raises(AlreadyEnabled):
            await begin_enrollment(user, db)

    @pytest.mark.asyncio
    async def test_enrollment_is_audited(self, db, make_user):
        user = await make_user()
        await _enable(user, db)
        actions = (await db.execute(
            select(AuditLog.action).where(AuditLog.user_id == user.id)
        )).scalars().all()
        assert "2fa_setup_started" in actions
        assert "2fa_enabled" in actions


# ── Disable ────────────────────────────────────────────────────────

class TestDisable:

    @pytest.mark.asyncio
    async def test_disable_clears_secret_codes_and_devices(self, db, make_user):
        user = await make_user()
        secret, _ = await _enable(user, db)
        await trusted_devices.remember_device(user.id, "fp-laptop", db)
        await db.commit()

        await disable_two_factor(user, _now_code(secret), db)

        credential = await get_credential(user.id, db)
        assert credential.state == TwoFactorState.DISABLED
        assert credential.secret is None
        assert credential.disabled_at is not None
        assert await backup_codes.count_backup_codes(user.id, db) == 0
        assert await trusted_devices.list_devices(user.id, db) == []

    @pytest.mark.asyncio
    async def test_disable_requires_valid_code(self, db, make_user):
        user = await make_user()
        secret, _ = await _enable(user, db)
        with pytest.raises(InvalidCode):
            await disable_two_factor(user, _wrong_code(secret), db)
        assert (await get_status(user, db)).enabled is True

    @pytest.mark.asyncio
    async def test_disable_when_not_enabled(self, db, make_user):
        user = await make_user()
        with pytest.raises(NotEnabled):
            await disable_two_factor(user, "123456", db)

    @pytest.mark.asyncio
    async def test_disable_with_missing_secret(self, db, make_user):
        user = await make_user()
        await _enable(user, db)
        await db.execute(
            update(TwoFactorCredential)
            .where(TwoFactorCredential.user_id == user.id)
            .values(secret=None)
        )
        await db.commit()
        with pytest.raises(SecretMissing):
            await disable_two_factor(user, "123456", db)

    @pytest.mark.asyncio
    async def test_old_backup_codes_dead_after_reenable(self, db, make_user):
        user = await make_user()
        secret, old_codes = await _enable(user, db)
        await disable_two_factor(user, _now_code(secret), db)
        await _enable(user, db)

        with pytest.raises(InvalidCode):
            await verify_second_factor(user, db, backup_code=old_codes[0], window=1)

    @pytest.mark.asyncio
    async def test_old_secret_code_rejected_after_reenrollment(self, db, make_user):
        user = await make_user()
        old_secret, _ = await _enable(user, db)
        await disable_two_factor(user, _now_code(old_secret), db)

        fresh = await begin_enrollment(user, db)
        old_code = _now_code(old_secret)
        now = time.time()
        if old_code in {derive_code(fresh.secret, now + d) for d in (-60, -30, 0, 30, 60)}:
            pytest.skip("old code happens to fall in the new secret's window")

        with pytest.raises(InvalidCode):
            await confirm_enrollment(user, old_code, db)
        credential = await get_credential(user.id, db)
        assert credential.state == TwoFactorState.PENDING_SETUP

        await confirm_enrollment(user, _now_code(fresh.secret), db)
        assert (await get_status(user, db)).enabled is True


# ── Second factor ──────────────────────────────────────────────────

class TestVerifySecondFactor:

    @pytest.mark.asyncio
    async def test_totp_code(self, db, make_user):
        user = await make_user()
        secret, _ = await _enable(user, db)
        method = await verify_second_factor(user, db, totp_code=_now_code(secret), window=1)
        assert method == SecondFactorMethod.TOTP

    @pytest.mark.asyncio
    async def test_backup_code_consumed(self, db, make_user):
        user = await make_user()
        _, codes = await _enable(user, db)
        method = await verify_second_factor(user, db, backup_code=codes[0], window=1)
        await db.commit()
        assert method == SecondFactorMethod.BACKUP_CODE
        assert await backup_codes.count_backup_codes(user.id, db) == 9
        with pytest.raises(InvalidCode):
            await verify_second_factor(user, db, backup_code=codes[0], window=1)

    @pytest.mark.asyncio
    async def test_no_code(self, db, make_user):
        user = await make_user()
        await _enable(user, db)
        with pytest.raises(InvalidInput):
            await verify_second_factor(user, db, window=1)

    @pytest.mark.asyncio
    async def test_not_enabled(self, db, make_user):
        user = await make_user()
        with pytest.raises(NotEnabled):
            await verify_second_factor(user, db, totp_code="123456", window=1)

    @pytest.mark.asyncio
    async def test_wrong_totp(self, db, make_user):
        user = await make_user()
        secret, _ = await _enable(user, db)
        with pytest.raises(InvalidCode):
            await verify_second_factor(user, db, totp_code=_wrong_code(secret), window=1)


# ── Login requirement ──────────────────────────────────────────────

class TestLoginRequirement:

    @pytest.mark.asyncio
    async def test_unknown_email_matches_account_without_2fa(self, db, make_user):
        await make_user("plain@example.com")
        unknown = await check_login_requirement("ghost@example.com", None, db)
        plain = await check_login_requirement("plain@example.com", None, db)
        assert unknown == plain
        assert unknown.requires_2fa is False
        assert unknown.account_exists is False

    @pytest.mark.asyncio
    async def test_active_account_requires_challenge(self, db, make_user):
        user = await make_user()
        await _enable(user, db)
        requirement = await check_login_requirement("Shopper@Example.com", "fp-new", db)
        assert requirement.requires_2fa is True
        assert requirement.account_exists is True
        assert requirement.device_remembered is False

    @pytest.mark.asyncio
    async def test_trusted_device_skips_challenge(self, db, make_user):
        user = await make_user()
        await _enable(user, db)
        await trusted_devices.remember_device(user.id, "fp-home", db)
        await db.commit()
        requirement = await check_login_requirement(user.email, "fp-home", db)
        assert requirement.requires_2fa is False
        assert requirement.device_remembered is True

    @pytest.mark.asyncio
    async def test_resolve_login_state(self, db, make_user):
        user = await make_user()
        assert await resolve_login_state(user.id, "fp", db) == LoginState.AUTHENTICATED
        await _enable(user, db)
        assert await resolve_login_state(user.id, "fp", db) == LoginState.CHALLENGE_REQUIRED
        await trusted_devices.remember_device(user.id, "fp", db)
        await db.commit()
        assert await resolve_login_state(user.id, "fp", db) == LoginState.DEVICE_TRUSTED


# ── Maintenance ────────────────────────────────────────────────────

class TestExpireStaleSetups:

    @pytest.mark.asyncio
    async def test_only_stale_pending_setups_reset(self, db, make_user):
        stale = await make_user("stale@example.com")
        fresh = await make_user("fresh@example.com")
        active = await make_user("active@example.com")
        await begin_enrollment(stale, db)
        await begin_enrollment(fresh, db)
        await _enable(active, db)
        await db.execute(
            update(TwoFactorCredential)
            .where(TwoFactorCredential.user_id == stale.id)
            .values(setup_started_at=datetime.now(timezone.utc) - timedelta(hours=1))
        )
        await db.commit()

        assert await expire_stale_setups(db) == 1
        assert (await get_credential(stale.id, db)).state == TwoFactorState.DISABLED
        assert (await get_credential(stale.id, db)).pending_secret is None
        assert (await get_credential(fresh.id, db)).state == TwoFactorState.PENDING_SETUP
        assert (await get_credential(active.id, db)).state == TwoFactorState.ACTIVE
