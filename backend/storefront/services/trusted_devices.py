"""Trusted device store: remembered fingerprints that skip the 2FA challenge.

Fingerprints are opaque strings supplied by the client. They are advisory:
a spoofed or lost fingerprint only changes whether the second factor is
asked for, the password check always runs.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.trusted_device import TrustedDevice

logger = logging.getLogger(__name__)

MAX_TRUSTED_DEVICES = 10
DEFAULT_DEVICE_NAME = "Unknown Device"


def _insert_for(db: AsyncSession):
    """Dialect insert construct that supports ON CONFLICT."""
    dialect = db.bind.dialect.name if db.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite.insert
    return postgresql.insert


async def is_trusted(user_id: int, fingerprint: Optional[str], db: AsyncSession) -> bool:
    if not fingerprint:
        return False
    result = await db.execute(
        select(TrustedDevice.id).where(
            TrustedDevice.user_id == user_id,
            TrustedDevice.fingerprint == fingerprint,
        )
    )
    return result.first() is not None


async def remember_device(
    user_id: int,
    fingerprint: str,
    db: AsyncSession,
    *,
    name: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TrustedDevice:
    """Upsert the device and keep only the most recently used records.

    The upsert is one INSERT ... ON CONFLICT statement, so concurrent logins
    from different devices never overwrite each other's rows. A known
    fingerprint gets its last-used time (and user agent, when given) refreshed.
    """
    now = now or datetime.now(timezone.utc)
    insert = _insert_for(db)
    stmt = insert(TrustedDevice).values(
        id=str(uuid.uuid4()),
        user_id=user_id,
        fingerprint=fingerprint,
        name=(name or DEFAULT_DEVICE_NAME)[:100],
        user_agent=user_agent[:500] if user_agent else None,
        ip_address=ip_address[:45] if ip_address else None,
        created_at=now,
        last_used_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "fingerprint"],
        set_={
            "last_used_at": stmt.excluded.last_used_at,
            "user_agent": func.coalesce(stmt.excluded.user_agent, TrustedDevice.user_agent),
        },
    )
    await db.execute(stmt)
    await _evict_least_recent(user_id, db)

    result = await db.execute(
        select(TrustedDevice)
        .where(TrustedDevice.user_id == user_id, TrustedDevice.fingerprint == fingerprint)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _evict_least_recent(user_id: int, db: AsyncSession) -> int:
    overflow = (
        select(TrustedDevice.id)
        .where(TrustedDevice.user_id == user_id)
        .order_by(TrustedDevice.last_used_at.desc(), TrustedDevice.created_at.desc())
        .offset(MAX_TRUSTED_DEVICES)
    )
    stale_ids = (await db.execute(overflow)).scalars().all()
    if not stale_ids:
        return 0
    await db.execute(delete(TrustedDevice).where(TrustedDevice.id.in_(stale_ids)))
    logger.info("Evicted %d trusted device(s) for user %s", len(stale_ids), user_id)
    return len(stale_ids)


async def touch_device(
    user_id: int, fingerprint: str, db: AsyncSession, now: Optional[datetime] = None,
) -> None:
    await db.execute(
        update(TrustedDevice)
        .where(TrustedDevice.user_id == user_id, TrustedDevice.fingerprint == fingerprint)
        .values(last_used_at=now or datetime.now(timezone.utc))
    )


async def list_devices(user_id: int, db: AsyncSession) -> list[TrustedDevice]:
    result = await db.execute(
        select(TrustedDevice)
        .where(TrustedDevice.user_id == user_id)
        .order_by(TrustedDevice.last_used_at.desc(), TrustedDevice.created_at.desc())
    )
    return list(result.scalars().all())


async def forget_device(user_id: int, device_id: str, db: AsyncSession) -> bool:
    """Remove one device. Returns whether a row existed; absence is not an error."""
    result = await db.execute(
        delete(TrustedDevice).where(
            TrustedDevice.user_id == user_id,
            TrustedDevice.id == device_id,
        )
    )
    return result.rowcount > 0


async def forget_all_devices(user_id: int, db: AsyncSession) -> int:
    result = await db.execute(delete(TrustedDevice).where(TrustedDevice.user_id == user_id))
    return result.rowcount
