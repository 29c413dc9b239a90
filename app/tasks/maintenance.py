# tasks/maintenance.py - Periodic housekeeping
# ============================================================================

import asyncio
import logging

from app.core.config import settings
from app.core.database import session_scope
from app.core.store import get_store
from app.services.learning import InteractionLog

logger = logging.getLogger(__name__)


async def run_maintenance() -> dict:
    """One pass: prune stale chat interactions and expired transient state."""
    async with session_scope() as db:
        pruned = await InteractionLog().prune(db)
    swept = await get_store().sweep()
    return {"pruned_interactions": pruned, "swept_entries": swept}


async def maintenance_loop(interval_seconds: int):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_maintenance()
            logger.info(f"🧹 Maintenance done: {result}")
        except Exception:
            logger.exception("❌ Maintenance pass failed")


def start_maintenance():
    if settings.MAINTENANCE_INTERVAL_SECONDS <= 0:
        return None
    return asyncio.create_task(maintenance_loop(settings.MAINTENANCE_INTERVAL_SECONDS))
