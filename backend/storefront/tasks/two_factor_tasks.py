"""Celery tasks for two-factor housekeeping."""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from storefront.tasks import celery_app
from storefront.config import settings

logger = logging.getLogger(__name__)

__all__ = ["expire_pending_setups"]


def _get_session() -> async_sessionmaker:
    engine = create_async_engine(settings.database_url)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@celery_app.task(name="storefront.tasks.two_factor_tasks.expire_pending_setups")
def expire_pending_setups() -> dict:
    """Disable authenticator setups that were started but never confirmed."""
    async def _run():
        from storefront.services.two_factor import expire_stale_setups

        SessionLocal = _get_session()
        async with SessionLocal() as db:
            try:
                expired = await expire_stale_setups(db)
                result = {"expired": expired}
                logger.info("Expire pending 2FA setups: %s", result)
                return result
            except Exception as e:
                await db.rollback()
                logger.error("Expire pending 2FA setups failed: %s", e)
                return {"error": str(e)}

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_run())
    finally:
        loop.close()
