"""Backup (recovery) codes: generation, storage and single-use consumption."""

import hashlib
import logging
import secrets

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.backup_code import BackupCode

logger = logging.getLogger(__name__)

BACKUP_CODE_COUNT = 10
BACKUP_CODE_BYTES = 4  # 8 hex characters


def normalize_code(code: str) -> str:
    return code.strip().upper()


def hash_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode("utf-8")).hexdigest()


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    """Return ``count`` distinct 8-character uppercase hex codes."""
    codes: list[str] = []
    while len(codes) < count:
        code = secrets.token_hex(BACKUP_CODE_BYTES).upper()
        if code not in codes:
            codes.append(code)
    return codes


async def replace_backup_codes(user_id: int, codes: list[str], db: AsyncSession) -> None:
    """Invalidate every existing code for the user and store ``codes``.

    Flushes only; the caller commits together with the state change that
    triggered the regeneration.
    """
    await db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
    db.add_all(BackupCode(user_id=user_id, code_hash=hash_code(c)) for c in codes)
    await db.flush()


async def consume_backup_code(user_id: int, code: str, db: AsyncSession) -> bool:
    """Remove ``code`` from the user's set; True only if this call removed it.

    A single conditional DELETE, so of two concurrent submissions of the same
    code only one sees a deleted row. The caller commits.
    """
    if not code or not code.strip():
        return False
    result = await db.execute(
        delete(BackupCode).where(
            BackupCode.user_id == user_id,
            BackupCode.code_hash == hash_code(code),
        )
    )
    consumed = result.rowcount == 1
    if consumed:
        logger.info("Backup code consumed for user %s", user_id)
    return consumed


async def count_backup_codes(user_id: int, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(BackupCode.id)).where(BackupCode.user_id == user_id)
    )
    return result.scalar() or 0


async def clear_backup_codes(user_id: int, db: AsyncSession) -> None:
    await db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
